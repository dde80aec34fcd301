"""
Request and response schemas for the fetch tools.

Field names are snake_case in Python and camelCase on the wire
(FetchRequest.model_validate({"useBrowser": True, ...})).
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ABOUT_BLANK = "about:blank"


class ContentType(str, Enum):
    HTML = "html"
    JSON = "json"
    TEXT = "txt"
    MARKDOWN = "markdown"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FetchRequest(_CamelModel):
    """Inbound fetch request.

    Attributes:
        url: http(s) URL, or about:blank together with close_browser to only
            close the shared browser
        timeout: overall request timeout in milliseconds
        content_size_limit: maximum bytes per delivered response
        chunk_id: continuation handle from a previous chunked response
        start_cursor: byte offset to resume from (takes precedence over chunk_index)
        chunk_index: zero-based part index to resume from
    """

    url: str = Field(..., min_length=1)
    method: str = Field(default="GET")
    headers: Dict[str, str] = Field(default_factory=dict)
    proxy: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    max_redirects: Optional[int] = Field(default=None, ge=0)
    no_delay: bool = False
    use_system_proxy: bool = True

    use_browser: bool = False
    auto_detect_mode: bool = True
    wait_for_selector: Optional[str] = "body"
    wait_for_timeout: Optional[int] = Field(default=None, ge=0)
    scroll_to_bottom: bool = False
    save_cookies: bool = True
    close_browser: bool = False

    content_size_limit: Optional[int] = Field(default=None, gt=0)
    enable_content_splitting: bool = True
    extract_content: bool = False
    include_metadata: bool = False

    chunk_id: Optional[str] = None
    start_cursor: Optional[int] = None
    chunk_index: Optional[int] = None

    debug: bool = False

    @field_validator("url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        value = value.strip()
        if value == ABOUT_BLANK:
            return value
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"Invalid scheme: {parsed.scheme or '(none)'}")
        if not parsed.netloc:
            raise ValueError("URL has no host")
        return value

    @field_validator("method")
    @classmethod
    def normalize_method(cls, value: str) -> str:
        return value.upper()

    @property
    def is_close_only(self) -> bool:
        return self.url == ABOUT_BLANK and self.close_browser

    @property
    def is_continuation(self) -> bool:
        return bool(self.chunk_id)


class ContentItem(BaseModel):
    type: str = "text"
    text: str


class FetchResponse(_CamelModel):
    content: List[ContentItem]
    is_error: bool = False
    is_chunked: Optional[bool] = None
    total_chunks: Optional[int] = None
    current_chunk: Optional[int] = None
    chunk_id: Optional[str] = None
    has_more_chunks: Optional[bool] = None
    total_bytes: Optional[int] = None
    fetched_bytes: Optional[int] = None
    remaining_bytes: Optional[int] = None
    is_last_chunk: Optional[bool] = None
    next_cursor: Optional[int] = None
    metadata: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None

    @classmethod
    def text(cls, text: str, **fields) -> "FetchResponse":
        return cls(content=[ContentItem(text=text)], **fields)

    @classmethod
    def error(cls, message: str, kind: Optional[str] = None) -> "FetchResponse":
        return cls(content=[ContentItem(text=message)], is_error=True, error_kind=kind)

    @property
    def first_text(self) -> str:
        return self.content[0].text if self.content else ""

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
