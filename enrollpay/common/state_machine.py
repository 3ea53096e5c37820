"""Checkout record status transitions enforced by the orchestrator."""

PROCESSING = "processing"
APPROVED = "approved"
DECLINED = "declined"
PENDING_AUTHENTICATION = "pending_authentication"
PROVIDER_UNAVAILABLE = "provider_unavailable"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PROCESSING: {APPROVED, DECLINED, PENDING_AUTHENTICATION, PROVIDER_UNAVAILABLE},
    APPROVED: set(),
    DECLINED: set(),
    # Resolved out of band by 3-D Secure completion, never by this service.
    PENDING_AUTHENTICATION: set(),
    PROVIDER_UNAVAILABLE: set(),
}

# Lead payment statuses that mean a charge may still be running.
IN_FLIGHT_LEAD_STATUSES = frozenset({PROCESSING, PENDING_AUTHENTICATION})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def checkout_http_status(status: str) -> int:
    """HTTP status used for a checkout response carrying `status`."""

    if status == PROCESSING:
        return 202
    if status == PROVIDER_UNAVAILABLE:
        return 502
    return 200
