"""Startup-time logging of the effective checkout configuration."""

from typing import Any

from enrollpay.common.config import CommonSettings
from enrollpay.common.logging import logger

SECRET_MARKERS = ("token", "secret", "password", "dsn", "_pv", "redis_url")


def redact_setting(name: str, value: Any) -> Any:
    """Hide credentials and connection strings; mark empty values as unset."""

    if value is None or value == "":
        return "<unset>"
    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def log_startup_config(app_settings: CommonSettings, names: list[str] | None = None) -> dict[str, Any]:
    """Log selected settings (all of them by default) for quick troubleshooting."""

    values = app_settings.model_dump()
    config: dict[str, Any] = {"service": app_settings.service_name}
    for name in names or sorted(values):
        config[name] = redact_setting(name, values.get(name))
    logger.info("startup_config=%s", config)
    return config
