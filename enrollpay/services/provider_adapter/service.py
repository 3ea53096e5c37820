"""Card charges against e.Rede (live) or a deterministic local mock.

Both modes answer with the same `ProviderResult`. Network failures and
timeouts of the live provider raise `GatewayUnavailableError`; an answer the
provider did give, even a malformed one, is always returned as a result.
"""

import json
import re
import secrets
import time

import httpx

from enrollpay.common.config import settings
from enrollpay.common.logging import logger
from enrollpay.common.metrics import gateway_failures_total, gateway_latency_seconds
from enrollpay.services.provider_adapter.config import MODE_MOCK, MODE_REDE, RedeConfig
from enrollpay.services.provider_adapter.schemas import CreditChargeRequest, GatewayResponse, ProviderResult


class GatewayUnavailableError(Exception):
    """The provider could not be reached or did not answer in time."""


def only_digits(value: object) -> str:
    return re.sub(r"\D+", "", str(value if value is not None else ""))


def mask_card(value: str) -> str:
    digits = only_digits(value)
    if not digits:
        return ""
    return f"{digits[:6]}******{digits[-4:]}"


def infer_brand(card_number: str) -> str:
    """Display-only brand guess from the leading digits."""

    digits = only_digits(card_number)
    if digits.startswith("4"):
        return "Visa"
    if re.match(r"^5[1-5]", digits):
        return "Mastercard"
    if re.match(r"^3[47]", digits):
        return "Amex"
    if digits.startswith("6"):
        return "Discover"
    return "Unknown"


def safe_json_parse(raw: str) -> dict:
    """Parse a provider body, yielding `{}` for anything that is not a JSON object."""

    trimmed = (raw or "").strip()
    if not trimmed:
        return {}
    try:
        parsed = json.loads(trimmed)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _mock_tid() -> str:
    return f"MOCK{int(time.time() * 1000):X}{secrets.token_hex(2).upper()}"


class ProviderAdapterService:
    """Sends one credit charge and returns the normalized provider result."""

    def __init__(self, transport: httpx.BaseTransport | None = None, service_name: str | None = None) -> None:
        self.transport = transport
        self.service_name = service_name or settings.service_name

    def charge(self, mode: str, config: RedeConfig | None, request: CreditChargeRequest) -> ProviderResult:
        started = time.perf_counter()
        try:
            if mode == MODE_REDE:
                if config is None:
                    raise ValueError("live provider mode requires a RedeConfig")
                return self.charge_live(config, request)
            if mode == MODE_MOCK:
                return self.charge_mock(request)
            raise ValueError(f"unknown provider mode: {mode}")
        except GatewayUnavailableError:
            gateway_failures_total.labels(service=self.service_name, mode=mode).inc()
            raise
        finally:
            gateway_latency_seconds.labels(service=self.service_name, mode=mode).observe(
                max(0.0, time.perf_counter() - started)
            )

    def charge_live(self, config: RedeConfig, request: CreditChargeRequest) -> ProviderResult:
        if config.soft_descriptor and not request.soft_descriptor:
            request = request.model_copy(update={"soft_descriptor": config.soft_descriptor})
        try:
            with httpx.Client(timeout=config.timeout_seconds, transport=self.transport) as client:
                response = client.post(
                    config.endpoint,
                    auth=(config.pv, config.token),
                    headers={
                        "Content-Type": "application/json; charset=utf-8",
                        "Transaction-Response": "brand-return-opened",
                    },
                    content=json.dumps(request.provider_payload()),
                )
        except httpx.TransportError as exc:
            logger.warning(
                "provider_request_failed environment=%s reference=%s error_type=%s",
                config.environment,
                request.reference,
                type(exc).__name__,
            )
            raise GatewayUnavailableError(f"{type(exc).__name__} calling e.Rede") from exc

        data = safe_json_parse(response.text)
        return ProviderResult(
            ok=response.is_success,
            http_status=response.status_code,
            data=GatewayResponse.from_payload(data),
        )

    def charge_mock(self, request: CreditChargeRequest) -> ProviderResult:
        digits = only_digits(request.card_number)
        base = {
            "tid": _mock_tid(),
            "reference": request.reference,
            "brand": infer_brand(digits),
            "mock": True,
            "mockMaskedCard": mask_card(digits),
        }

        if len(digits) < 13:
            payload = {**base, "returnCode": "14", "returnMessage": "Invalid card number"}
            return ProviderResult(ok=False, http_status=422, data=GatewayResponse.from_payload(payload))

        suffix = digits[-4:]
        if suffix == "0000":
            payload = {
                **base,
                "returnCode": "05",
                "returnMessage": "Transaction denied (mock)",
                "authorizationCode": "",
            }
        elif suffix == "1111":
            payload = {
                **base,
                "returnCode": "220",
                "returnMessage": "Authentication required (mock)",
                "authorizationCode": "",
                "threeDSecure": {"url": f"https://mock-gateway.local/3ds/{request.reference}"},
            }
        else:
            payload = {
                **base,
                "returnCode": "00",
                "returnMessage": "Approved (mock)",
                "authorizationCode": secrets.token_hex(3).upper(),
            }
        return ProviderResult(ok=True, http_status=200, data=GatewayResponse.from_payload(payload))
