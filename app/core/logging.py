import logging
import re
import sys
import structlog
from typing import Any, Mapping


SENSITIVE_KEYS = {
    "authorization",
    "x-hub-signature-256",
    "token",
    "access_token",
    "api_key",
    "gemini_api_key",
    "x-admin-token",
    "admin_api_token",
    "secret",
    "signature",
    "wa_webhook_secret",
    "wa_verify_token",
}

# Telefones E.164 ou locais (10 a 15 dígitos, com ou sem "+")
_PHONE_RE = re.compile(r"(?<!\d)\+?(\d{6,11})(\d{4})(?!\d)")


def _mask(value: str) -> str:
    if not isinstance(value, str):
        return "***"
    if len(value) <= 8:
        return "***"
    return value[:2] + "***" + value[-2:]


def mask_phone_text(text: str) -> str:
    """Mantém apenas os 4 últimos dígitos de qualquer telefone dentro do texto."""
    return _PHONE_RE.sub(lambda m: "***" + m.group(2), text)


def _redact_mapping(d: Mapping[str, Any]) -> dict:
    out = {}
    for k, v in d.items():
        lk = str(k).lower()
        if lk in SENSITIVE_KEYS:
            out[k] = _mask(str(v))
        elif isinstance(v, Mapping):
            out[k] = _redact_mapping(v)
        elif isinstance(v, str):
            out[k] = mask_phone_text(v)
        else:
            out[k] = v
    return out


def redact_processor(logger, method_name, event_dict):  # type: ignore[no-untyped-def]
    return _redact_mapping(event_dict)


def configure_logging(level: int = logging.INFO) -> None:
    timestamper = structlog.processors.TimeStamper(fmt="iso")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            timestamper,
            redact_processor,
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
