"""
Byte accounting for size-bounded delivery.

A delivered segment carries a continuation note (part counters, byte counts,
the chunk id and the follow-up parameters). The note's size depends on the
locale and on the magnitude of the numbers in it, so the room left for content
is computed from the widest note that could ever be rendered for a given limit.
"""

import sys
from typing import Any, Callable, Mapping, Optional

import structlog

from .i18n import translate as default_translate

logger = structlog.get_logger(__name__)

Translate = Callable[[str, Optional[Mapping[str, Any]]], str]

# Widest values a note can contain.
WORST_CASE_CHUNK_ID = "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx"
WORST_CASE_COUNT = sys.maxsize
WORST_CASE_PERCENT = 100


def byte_length(text: str) -> int:
    return len(text.encode("utf-8"))


def _fmt(value: int) -> str:
    return f"{value:,}"


def _wrap(translate: Translate, body: str) -> str:
    return f"\n\n{translate('note.start', None)}\n{body}\n{translate('note.end', None)}"


def render_chunk_note(
    translate: Translate,
    *,
    current: int,
    total: int,
    fetched_bytes: int,
    total_bytes: int,
    remaining_bytes: int,
    size_limit: int,
    chunk_id: str,
    next_cursor: int,
    estimated_requests: int,
    first_request: bool = True,
    percent: Optional[int] = None,
) -> str:
    """Note attached to every segment that has a successor."""
    if percent is None:
        percent = round(fetched_bytes * 100 / total_bytes) if total_bytes else 100
    prefix = translate("chunk.first_prefix", None) if first_request else ""
    body = translate("chunk.more", {
        "current": _fmt(current),
        "total": _fmt(total),
        "fetched_bytes": _fmt(fetched_bytes),
        "percent": percent,
        "total_bytes": _fmt(total_bytes),
        "remaining_bytes": _fmt(remaining_bytes),
        "size_limit": _fmt(size_limit),
        "estimated_requests": _fmt(estimated_requests),
        "chunk_id": chunk_id,
        "next_cursor": next_cursor,
    })
    return _wrap(translate, prefix + body)


def render_last_chunk_note(
    translate: Translate,
    *,
    current: int,
    total: int,
    fetched_bytes: int,
    total_bytes: int,
    first_request: bool = True,
) -> str:
    """Note attached to the final segment."""
    prefix = translate("chunk.first_prefix", None) if first_request else ""
    body = translate("chunk.last", {
        "current": _fmt(current),
        "total": _fmt(total),
        "fetched_bytes": _fmt(fetched_bytes),
        "total_bytes": _fmt(total_bytes),
    })
    return _wrap(translate, prefix + body)


def render_truncation_note(translate: Translate, *, total_bytes: int, size_limit: int) -> str:
    body = translate("content.truncated", {
        "total_bytes": _fmt(total_bytes),
        "size_limit": _fmt(size_limit),
    })
    return _wrap(translate, body)


class SizeBudgetCalculator:
    """Computes how many content bytes fit next to a continuation note.

    The overhead is measured on every call: it changes with the size limit
    (printed in the note) and with the translator's locale.
    """

    def __init__(self, translate: Optional[Translate] = None, min_size_limit: int = 4096):
        self.translate = translate or default_translate
        self.min_size_limit = min_size_limit

    def note_overhead(self, size_limit: int) -> int:
        """Byte size of the widest note that could accompany a segment."""
        more = render_chunk_note(
            self.translate,
            current=WORST_CASE_COUNT,
            total=WORST_CASE_COUNT,
            fetched_bytes=WORST_CASE_COUNT,
            total_bytes=WORST_CASE_COUNT,
            remaining_bytes=WORST_CASE_COUNT,
            size_limit=size_limit,
            chunk_id=WORST_CASE_CHUNK_ID,
            next_cursor=WORST_CASE_COUNT,
            estimated_requests=WORST_CASE_COUNT,
            first_request=True,
            percent=WORST_CASE_PERCENT,
        )
        last = render_last_chunk_note(
            self.translate,
            current=WORST_CASE_COUNT,
            total=WORST_CASE_COUNT,
            fetched_bytes=WORST_CASE_COUNT,
            total_bytes=WORST_CASE_COUNT,
            first_request=True,
        )
        return max(byte_length(more), byte_length(last))

    def effective_chunk_size(self, size_limit: int) -> int:
        """Content bytes per segment so that segment + note never exceeds size_limit."""
        effective = size_limit - self.note_overhead(size_limit)
        if effective <= 0:
            raise ValueError(
                f"Size limit {size_limit} leaves no room for content "
                f"(minimum supported limit is {self.min_size_limit} bytes)"
            )
        logger.debug("effective_chunk_size", size_limit=size_limit, effective=effective)
        return effective

    def truncation_budget(self, size_limit: int, total_bytes: int) -> int:
        """Content bytes that fit next to the truncation note."""
        note = render_truncation_note(self.translate, total_bytes=total_bytes, size_limit=size_limit)
        return max(size_limit - byte_length(note), 0)

    @staticmethod
    def exceeds_limit(content: str, size_limit: int) -> bool:
        return byte_length(content) > size_limit
