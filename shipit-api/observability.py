import contextvars
import logging
import time
from typing import Any, Dict

from redaction import redact_text


REQUEST_ID_HEADER = "X-Request-Id"

request_id_ctx = contextvars.ContextVar("request_id", default="")
_logger = logging.getLogger("shipit.obs")


def get_request_id() -> str:
    return request_id_ctx.get() or ""


def outbound_headers(**extra: str) -> Dict[str, str]:
    """Headers for a call to the search cluster, Slack or Jira.

    The current request id travels with the call so downstream logs can be
    joined with ours.
    """
    headers = dict(extra)
    request_id = get_request_id()
    if request_id:
        headers[REQUEST_ID_HEADER] = request_id
    return headers


def elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 1)


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    payload = {"event": event, "request_id": get_request_id()}
    for key, value in fields.items():
        if value is None:
            continue
        payload[key] = redact_text(value) if isinstance(value, str) else value
    line = " ".join(f"{key}={payload[key]}" for key in sorted(payload))
    _logger.log(level, line)
