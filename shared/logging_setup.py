import ipaddress
import logging
import os
import re
from typing import Any, Dict

import structlog
from structlog.contextvars import merge_contextvars

SENSITIVE_KEYS = {
    "password", "passwd", "secret", "token", "api_key", "admin_token",
    "x-admin-token", "authorization", "cookie", "set-cookie", "session",
}

# follower metadata carries raw client addresses; logs only get the network
IP_KEYS = {"ip", "ip_address", "client_ip"}

_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9\-\._~\+\/]+=*")


def mask_ip(value: Any) -> Any:
    try:
        addr = ipaddress.ip_address(str(value))
    except ValueError:
        return value
    prefix = 24 if addr.version == 4 else 48
    return str(ipaddress.ip_network(f"{addr}/{prefix}", strict=False))


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            key = str(k).lower()
            if key in SENSITIVE_KEYS:
                out[k] = "[REDACTED]"
            elif key in IP_KEYS:
                out[k] = mask_ip(v)
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(x) for x in obj]
    if isinstance(obj, str):
        return _BEARER.sub(r"\1[REDACTED]", obj)
    return obj


def _redact_processor(_, __, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    return _redact(event_dict)


def configure_structured_logging(service_name: str) -> None:
    """JSON logs on stderr for api / worker / beat.

    ``LOG_FORMAT=console`` switches to the human renderer for local runs.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    if os.getenv("LOG_FORMAT", "json").lower() == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    # --- 1) stdlib root logger: celery, uvicorn and sqlalchemy records get the same shape ---
    pre_chain = [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_processor,
    ]

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=pre_chain,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    # --- 2) structlog loggers used by the fraud engine ---
    structlog.configure(
        processors=[
            merge_contextvars,
            structlog.processors.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            _redact_processor,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    # --- 3) service name on every event ---
    structlog.contextvars.bind_contextvars(service=service_name)
