"""Idempotency keys and checkout references.

An explicit key from the client is normalized and must keep at least 8
characters. Without one, a key is derived from the payment fingerprint and a
10-minute time bucket, so blind retries inside the window collapse onto the
same attempt while a deliberate new attempt later gets a fresh key.
"""

import hashlib
import re
import time
from dataclasses import dataclass

MAX_KEY_LENGTH = 120
MIN_KEY_LENGTH = 8
BUCKET_MS = 600_000
AUTO_DIGEST_LENGTH = 48


class InvalidIdempotencyKey(ValueError):
    """An explicit key was supplied but does not survive normalization."""


@dataclass(frozen=True)
class KeyFingerprint:
    lead_id: str
    course_slug: str
    amount_cents: int
    installments: int
    card_bin: str
    card_last4: str
    expiration_month: str
    expiration_year: str


@dataclass(frozen=True)
class ResolvedKey:
    value: str
    explicit: bool


def normalize_idempotency_key(value: object) -> str | None:
    raw = str(value if value is not None else "").strip()
    if not raw:
        return None
    normalized = re.sub(r"[^a-zA-Z0-9._:-]", "-", raw)
    normalized = re.sub(r"-+", "-", normalized)[:MAX_KEY_LENGTH]
    if len(normalized) < MIN_KEY_LENGTH:
        return None
    return normalized


def build_automatic_idempotency_key(fingerprint: KeyFingerprint, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    bucket = now_ms // BUCKET_MS
    material = "|".join(
        [
            fingerprint.lead_id,
            fingerprint.course_slug,
            str(fingerprint.amount_cents),
            str(fingerprint.installments),
            fingerprint.card_bin,
            fingerprint.card_last4,
            fingerprint.expiration_month,
            fingerprint.expiration_year,
            str(bucket),
        ]
    )
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:AUTO_DIGEST_LENGTH]
    return f"auto-{digest}"


def _slugify(value: str, max_len: int) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")[:max_len]
    return slug or "course"


def build_reference_from_idempotency_key(course_slug: str, idempotency_key: str) -> str:
    """Deterministic reference, also the fallback match when keys cannot be stored."""

    digest = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:14]
    return f"chk-{_slugify(course_slug, 16)}-{digest}"


class IdempotencyKeyResolver:
    def __init__(self, clock=time.time) -> None:
        self.clock = clock

    def resolve(self, explicit_key_raw: str | None, fingerprint: KeyFingerprint) -> ResolvedKey:
        if explicit_key_raw is not None and str(explicit_key_raw).strip():
            normalized = normalize_idempotency_key(explicit_key_raw)
            if normalized is None:
                raise InvalidIdempotencyKey("idempotency key must keep at least 8 valid characters")
            return ResolvedKey(value=normalized, explicit=True)
        now_ms = int(self.clock() * 1000)
        return ResolvedKey(value=build_automatic_idempotency_key(fingerprint, now_ms), explicit=False)
