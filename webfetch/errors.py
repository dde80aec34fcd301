"""
Failure taxonomy for fetches and chunk retrieval.

Every failure boundary raises a FetchError carrying a structured kind when the
underlying library tells us what went wrong (HTTP status, exception type).
classify() trusts that kind and only falls back to keyword matching on the
diagnostic text for opaque errors.
"""

import json
import re
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    ACCESS_DENIED = "access_denied"
    TIMEOUT = "timeout"
    PARSE = "parse"
    VALIDATION = "validation"
    BROWSER = "browser"
    UNKNOWN = "unknown"
    INVALID_CHUNK_ID = "invalid_chunk_id"
    INVALID_CURSOR = "invalid_cursor"


class FetchError(Exception):
    """A failure raised at a fetch boundary.

    Attributes:
        kind: structured category, or None when only the text is known
        message: human readable diagnostic
        cause: the original exception, if any
        status_code: HTTP status of the failed response, if any
        code: short machine code (e.g. "CONNECT_TIMEOUT", "ETIMEDOUT")
    """

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        cause: Optional[BaseException] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.cause = cause
        self.status_code = status_code
        self.code = code

    @classmethod
    def wrap(cls, error: Any) -> "FetchError":
        """Turn an arbitrary failure into a FetchError without losing it."""
        if isinstance(error, FetchError):
            return error
        cause = error if isinstance(error, BaseException) else None
        return cls(error_message(error), kind=_structured_kind(error), cause=cause)

    def __repr__(self) -> str:
        kind = self.kind.value if self.kind else None
        return f"FetchError(kind={kind!r}, message={self.message!r}, status_code={self.status_code!r})"


class InvalidChunkIdError(FetchError):
    def __init__(self, chunk_id: str):
        super().__init__(f"Unknown or expired chunk id: {chunk_id}", kind=ErrorKind.INVALID_CHUNK_ID)
        self.chunk_id = chunk_id


class InvalidCursorError(FetchError):
    def __init__(self, chunk_id: str, cursor: int, total_bytes: int, total_chunks: int):
        super().__init__(
            f"Cursor {cursor} is out of range for chunk {chunk_id} "
            f"({total_bytes} bytes, {total_chunks} parts)",
            kind=ErrorKind.INVALID_CURSOR,
        )
        self.chunk_id = chunk_id
        self.cursor = cursor
        self.total_bytes = total_bytes
        self.total_chunks = total_chunks


ACCESS_DENIED_STATUS = re.compile(r"\b403\b")
ACCESS_DENIED_KEYWORDS = (
    "forbidden",
    "access denied",
    "access-denied",
    "cloudflare",
    "captcha",
    "blocked",
    "security check",
)
NETWORK_KEYWORDS = (
    "network",
    "connection",
    "timeout",
    "unreachable",
    "econnrefused",
    "connection refused",
)
TIMEOUT_KEYWORDS = ("timeout", "timed out")
PARSE_KEYWORDS = ("parse", "json", "syntax")
BROWSER_KEYWORDS = ("browser", "playwright", "puppeteer", "page", "chrome", "chromium")
VALIDATION_KEYWORDS = ("valid", "schema", "type")

# Extra signatures that justify a browser retry on top of the switching kinds.
BROWSER_SWITCH_KEYWORDS = (
    "timeout",
    "timed out",
    "socket",
    "javascript required",
    "requires javascript",
    "enable javascript",
    "fetch failed",
)

SWITCH_KINDS = (ErrorKind.ACCESS_DENIED, ErrorKind.NETWORK, ErrorKind.TIMEOUT)

_ORDERED_RULES = (
    (ErrorKind.NETWORK, NETWORK_KEYWORDS),
    (ErrorKind.TIMEOUT, TIMEOUT_KEYWORDS),
    (ErrorKind.PARSE, PARSE_KEYWORDS),
    (ErrorKind.BROWSER, BROWSER_KEYWORDS),
    (ErrorKind.VALIDATION, VALIDATION_KEYWORDS),
)


def _content_text(content: Any) -> Optional[str]:
    # {"isError": true, "content": [{"type": "text", "text": "..."}]}
    if not isinstance(content, (list, tuple)):
        return None
    texts = []
    for item in content:
        text = item.get("text") if isinstance(item, Mapping) else getattr(item, "text", None)
        if isinstance(text, str):
            texts.append(text)
    return "\n".join(texts) if texts else None


def _extract(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__

    if isinstance(error, Mapping):
        message = error.get("message")
        if isinstance(message, str):
            return message
        inner = error.get("error")
        if isinstance(inner, str):
            return inner
        if isinstance(inner, Mapping) and isinstance(inner.get("message"), str):
            return inner["message"]
        text = _content_text(error.get("content"))
        if text is not None:
            return text
        return json.dumps(error, default=str)

    message = getattr(error, "message", None)
    if isinstance(message, str):
        return message
    inner = getattr(error, "error", None)
    if inner is not None and inner is not error:
        return _extract(inner)
    text = _content_text(getattr(error, "content", None))
    if text is not None:
        return text
    return str(error)


def error_message(error: Any) -> str:
    """Extract a diagnostic string from any failure shape. Never raises."""
    try:
        return _extract(error)
    except Exception:
        try:
            return str(error)
        except Exception:
            return object.__repr__(error)


def _structured_kind(error: Any) -> Optional[ErrorKind]:
    if isinstance(error, FetchError):
        if error.kind is not None:
            return error.kind
        if error.status_code == 403:
            return ErrorKind.ACCESS_DENIED
        return None
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(error, json.JSONDecodeError):
        return ErrorKind.PARSE
    return None


def classify_text(text: str) -> ErrorKind:
    if _denied(text):
        return ErrorKind.ACCESS_DENIED
    for kind, keywords in _ORDERED_RULES:
        if _mentions(text, keywords):
            return kind
    return ErrorKind.UNKNOWN


def _mentions(text: str, keywords) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in keywords)


def _denied(text: str) -> bool:
    return _mentions(text, ACCESS_DENIED_KEYWORDS) or ACCESS_DENIED_STATUS.search(text) is not None


def classify(error: Any) -> ErrorKind:
    """Map a failure to an ErrorKind. Never raises.

    Access-denied signatures win over everything except the chunk conditions,
    so a blocked request reaches the browser fallback even when the failure
    surfaced as a timeout or a connection reset.
    """
    try:
        kind = _structured_kind(error)
    except Exception:
        kind = None
    if kind in (ErrorKind.INVALID_CHUNK_ID, ErrorKind.INVALID_CURSOR):
        return kind

    text = error_message(error)
    if _denied(text):
        return ErrorKind.ACCESS_DENIED
    if kind is not None:
        return kind
    return classify_text(text)


def should_switch_to_browser(error: Any) -> bool:
    """Whether a lightweight failure warrants a browser-automation retry."""
    if classify(error) in SWITCH_KINDS:
        return True

    text = error_message(error)
    code = getattr(error, "code", None)
    if isinstance(code, str):
        text = f"{text} {code}"
    return _mentions(text, BROWSER_SWITCH_KEYWORDS)
