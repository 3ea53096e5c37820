"""Provider mode and e.Rede credential resolution from settings."""

import re
from dataclasses import dataclass

from enrollpay.common.config import CommonSettings

REDE_PRODUCTION_URL = "https://api.userede.com.br/erede/v1/transactions"
REDE_SANDBOX_URL = "https://api.userede.com.br/desenvolvedores/v1/transactions"

MODE_MOCK = "mock"
MODE_REDE = "rede"

DEFAULT_TIMEOUT_MS = 15_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 60_000


class ProviderConfigError(ValueError):
    """Raised when provider settings are missing or malformed."""


@dataclass(frozen=True)
class RedeConfig:
    pv: str
    token: str
    environment: str
    endpoint: str
    timeout_ms: int
    soft_descriptor: str | None = None

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


def normalize_env_value(raw: object) -> str:
    """Strip whitespace, literal `\\n`/`\\r` escapes and wrapping quotes."""

    base = str(raw if raw is not None else "").strip()
    base = base.replace("\\n", "").replace("\\r", "")
    return re.sub(r"^['\"]|['\"]$", "", base).strip()


def normalize_environment(raw: str) -> str:
    value = normalize_env_value(raw).lower()
    if value in ("production", "prod"):
        return "production"
    if value in ("sandbox", "sdb", "hml"):
        return "sandbox"
    raise ProviderConfigError("Invalid REDE_ENV. Use 'sandbox' or 'production'.")


def normalize_payment_provider_mode(raw: str) -> str:
    value = normalize_env_value(raw).lower()
    if value in ("", MODE_MOCK):
        return MODE_MOCK
    if value in (MODE_REDE, "real"):
        return MODE_REDE
    raise ProviderConfigError("Invalid PAYMENT_PROVIDER_MODE. Use 'mock' or 'rede'.")


def parse_timeout_ms(raw: str) -> int:
    try:
        parsed = float(normalize_env_value(raw))
    except ValueError:
        return DEFAULT_TIMEOUT_MS
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return DEFAULT_TIMEOUT_MS
    return int(min(MAX_TIMEOUT_MS, max(MIN_TIMEOUT_MS, parsed)))


def get_rede_config(settings: CommonSettings) -> RedeConfig:
    """Build live-provider config; raise `ProviderConfigError` when incomplete."""

    pv = re.sub(r"\D+", "", normalize_env_value(settings.rede_pv))
    token = normalize_env_value(settings.rede_token)
    if not pv:
        raise ProviderConfigError("Missing or invalid REDE_PV.")
    if not token:
        raise ProviderConfigError("Missing REDE_TOKEN.")

    environment = normalize_environment(settings.rede_env or "sandbox")
    soft_descriptor = normalize_env_value(settings.rede_soft_descriptor)[:22] or None
    return RedeConfig(
        pv=pv,
        token=token,
        environment=environment,
        endpoint=REDE_PRODUCTION_URL if environment == "production" else REDE_SANDBOX_URL,
        timeout_ms=parse_timeout_ms(settings.rede_timeout_ms),
        soft_descriptor=soft_descriptor,
    )
