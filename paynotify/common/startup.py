"""Startup-time config logging with secrets redacted."""

from sqlalchemy.engine import make_url

from paynotify.common.config import CommonSettings
from paynotify.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value) -> str:
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    if name.endswith(("_dsn", "_url")):
        # Keep the target host visible, hide credentials.
        return make_url(str(value)).render_as_string(hide_password=True)
    return str(value)


def log_startup_config(settings: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Log selected settings fields for quick troubleshooting; returns what was logged."""

    config = {"service": settings.service_name}
    for name in fields:
        config[name] = _safe_value(name, getattr(settings, name))
    logger.info("startup_config=%s", config)
    return config
