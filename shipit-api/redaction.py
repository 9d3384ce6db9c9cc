import re
from urllib.parse import urlsplit


_SECRET_PATTERNS = [
    re.compile(r"(Authorization\s*:\s*)([^\n\r]+)", re.IGNORECASE),
    re.compile(r"((?:Bearer|Basic|ApiKey)\s+)\S+", re.IGNORECASE),
    re.compile(r"(X-Api-Key\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(X-Amz-Security-Token\s*[:=]\s*)\S+", re.IGNORECASE),
    re.compile(r"(Signature=)[0-9a-f]+", re.IGNORECASE),
    re.compile(r"(Credential=)[^/\s,]+", re.IGNORECASE),
    re.compile(r"((?:password|secret|token)=)[^&\s]+", re.IGNORECASE),
    re.compile(r"(shipit_session=)[^;\s]+", re.IGNORECASE),
]


def redact_url(value: str) -> str:
    """Keep only scheme and host; webhook paths and query strings carry secrets."""
    if not value:
        return ""
    try:
        parsed = urlsplit(value)
    except ValueError:
        return "<redacted-url>"
    if not parsed.scheme or not parsed.netloc:
        return "<redacted-url>"
    host = parsed.netloc.rsplit("@", 1)[-1]
    return f"{parsed.scheme}://{host}/..."


def redact_text(value: str) -> str:
    if not value:
        return value
    redacted = value
    for pattern in _SECRET_PATTERNS:
        redacted = pattern.sub(r"\1[REDACTED]", redacted)
    redacted = re.sub(r"https?://[^\s]+", lambda match: redact_url(match.group(0)), redacted)
    return redacted
