import logging
import re
import sys
from typing import Any, cast

import structlog

from chainsync.shared.core.config import get_settings

_SENSITIVE_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "signature",
    "api_key",
    "authorization_code",
    "autopay_reference",
    "credential",
}
_SENSITIVE_SUFFIXES = ("_token", "_secret", "_key", "_signature")
_SENSITIVE_FRAGMENTS = ("secret", "token", "authorization")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")


def _is_sensitive_key(key: Any) -> bool:
    key_norm = str(key).lower().strip().replace("-", "_")
    if key_norm in _SENSITIVE_FIELDS:
        return True
    if key_norm.endswith(_SENSITIVE_SUFFIXES):
        return True
    return any(fragment in key_norm for fragment in _SENSITIVE_FRAGMENTS)


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact provider secrets, stored payment credentials and
    e-mail addresses before the event is rendered.
    """

    def redact(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if _is_sensitive_key(k) else redact(v))
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [redact(item) for item in data]
        if isinstance(data, str):
            return _EMAIL_RE.sub("[EMAIL_REDACTED]", data)
        return data

    redacted = redact(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def add_service_context(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Stamp every event with the service and environment it came from."""
    settings = get_settings()
    event_dict.setdefault("service", settings.APP_NAME)
    event_dict.setdefault("environment", settings.ENVIRONMENT)
    return event_dict


def setup_logging() -> None:
    settings = get_settings()
    min_level = logging.DEBUG if settings.DEBUG else logging.INFO

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        add_service_context,
        secret_redactor,
    ]
    if settings.DEBUG:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # uvicorn, celery and sqlalchemy log through stdlib logging.
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=min_level)
    # Library request logging only at DEBUG.
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(min_level if settings.DEBUG else logging.WARNING)


def audit_log(
    event: str,
    org_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for billing-critical audit events
    (lock/unlock, state transitions).
    """
    logger = structlog.get_logger("audit")
    logger.info(event, org_id=str(org_id), metadata=details or {})
