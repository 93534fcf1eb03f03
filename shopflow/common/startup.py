"""Startup-time helpers for safe config logging."""

from pydantic_settings import BaseSettings

from shopflow.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token", "dsn")


def _safe_value(name: str, value):
    """Return a setting value with redaction for secret-like field names."""

    if any(marker in name.lower() for marker in SECRET_MARKERS):
        return "<redacted>" if value else "<unset>"
    return value


def log_startup_config(config: BaseSettings, keys: list[str]) -> None:
    """Log selected settings fields for quick troubleshooting."""

    snapshot = {key: _safe_value(key, getattr(config, key, None)) for key in keys}
    logger.info("startup_config=%s", snapshot)
