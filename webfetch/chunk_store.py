"""
In-memory store for oversized content split into ordered segments.

Segments are addressed by an opaque chunk id plus either a part index or a
byte cursor into the original content. Entries expire a fixed time after they
are created; expired entries are swept on every store and never returned.
"""

import bisect
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from .errors import InvalidChunkIdError, InvalidCursorError
from .size_budget import SizeBudgetCalculator, byte_length

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_continuation_byte(byte: int) -> bool:
    return byte & 0xC0 == 0x80


@dataclass(frozen=True)
class ChunkSet:
    id: str
    segments: Tuple[str, ...]
    offsets: Tuple[int, ...]
    total_bytes: int
    created_at: datetime
    expires_at: datetime
    size_limit: Optional[int] = None

    @property
    def total_chunks(self) -> int:
        return len(self.segments)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass(frozen=True)
class ChunkSlice:
    """One delivered segment together with its position in the whole."""
    chunk_id: str
    index: int
    text: str
    total_chunks: int
    total_bytes: int
    start_cursor: int
    fetched_bytes: int
    remaining_bytes: int
    size_limit: Optional[int] = None

    @property
    def current_chunk(self) -> int:
        return self.index + 1

    @property
    def is_last_chunk(self) -> bool:
        return self.remaining_bytes == 0

    @property
    def has_more_chunks(self) -> bool:
        return not self.is_last_chunk

    @property
    def next_cursor(self) -> Optional[int]:
        return None if self.is_last_chunk else self.fetched_bytes


@dataclass(frozen=True)
class SplitResult:
    segments: List[str]
    total_bytes: int
    offset: int = 0


def split_content_into_raw_chunks(content: str, size_limit: int) -> List[str]:
    """Greedy split into segments of at most size_limit UTF-8 bytes.

    Never cuts through a multi-byte character, so joining the segments gives
    back the input exactly.
    """
    if size_limit <= 0:
        raise ValueError(f"size_limit must be positive, got {size_limit}")

    data = content.encode("utf-8")
    if len(data) <= size_limit:
        return [content]

    segments = []
    start = 0
    total = len(data)
    while start < total:
        end = min(start + size_limit, total)
        while end < total and end > start and _is_continuation_byte(data[end]):
            end -= 1
        if end == start:
            # size_limit is smaller than a single character; emit it whole
            end = start + 1
            while end < total and _is_continuation_byte(data[end]):
                end += 1
        segments.append(data[start:end].decode("utf-8"))
        start = end
    return segments


class ChunkStore:
    def __init__(
        self,
        budget: Optional[SizeBudgetCalculator] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.budget = budget or SizeBudgetCalculator()
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._sets: Dict[str, ChunkSet] = {}
        self._lock = threading.Lock()

    split_content_into_raw_chunks = staticmethod(split_content_into_raw_chunks)

    def split_content_into_chunks(self, content: str, size_limit: int, offset: int = 0) -> SplitResult:
        """Split content so each segment leaves room for a continuation note.

        offset is a byte position in content where splitting starts; bytes before
        it are not returned but still count towards total_bytes.
        """
        data = content.encode("utf-8")
        if offset < 0 or offset > len(data) or (offset < len(data) and _is_continuation_byte(data[offset])):
            raise ValueError(f"offset {offset} is not a character boundary of the content")

        effective = self.budget.effective_chunk_size(size_limit)
        remainder = data[offset:].decode("utf-8")
        segments = split_content_into_raw_chunks(remainder, effective)
        logger.debug(
            "content_split",
            total_bytes=len(data),
            size_limit=size_limit,
            effective_chunk_size=effective,
            segments=len(segments),
        )
        return SplitResult(segments=segments, total_bytes=len(data), offset=offset)

    def store_chunks(
        self,
        segments: Sequence[str],
        size_limit: Optional[int] = None,
        base_offset: int = 0,
    ) -> str:
        """Record an ordered segment sequence and return its new chunk id.

        base_offset is the byte cursor of the first segment, for segments split
        from a later position in the content (SplitResult.offset).
        """
        if not segments:
            raise ValueError("cannot store an empty segment sequence")
        if base_offset < 0:
            raise ValueError(f"base_offset must not be negative, got {base_offset}")

        offsets = []
        position = base_offset
        for segment in segments:
            offsets.append(position)
            position += byte_length(segment)

        now = self._clock()
        chunk_set = ChunkSet(
            id=str(uuid.uuid4()),
            segments=tuple(segments),
            offsets=tuple(offsets),
            total_bytes=position,
            created_at=now,
            expires_at=now + self.ttl,
            size_limit=size_limit,
        )
        with self._lock:
            self._sweep_locked(now)
            self._sets[chunk_set.id] = chunk_set

        logger.info(
            "chunks_stored",
            chunk_id=chunk_set.id,
            total_chunks=chunk_set.total_chunks,
            total_bytes=chunk_set.total_bytes,
        )
        return chunk_set.id

    def get_chunk_set(self, chunk_id: str) -> Optional[ChunkSet]:
        with self._lock:
            chunk_set = self._sets.get(chunk_id)
            if chunk_set is None:
                return None
            if chunk_set.is_expired(self._clock()):
                del self._sets[chunk_id]
                logger.debug("chunks_expired", chunk_id=chunk_id)
                return None
            return chunk_set

    def get_chunk(self, chunk_id: str, index: int) -> Optional[str]:
        """Segment at index, or None for an unknown/expired id or a bad index."""
        chunk_set = self.get_chunk_set(chunk_id)
        if chunk_set is None or not isinstance(index, int) or isinstance(index, bool):
            return None
        if 0 <= index < chunk_set.total_chunks:
            return chunk_set.segments[index]
        return None

    def get_total_chunks(self, chunk_id: str) -> int:
        chunk_set = self.get_chunk_set(chunk_id)
        return chunk_set.total_chunks if chunk_set else 0

    def read_by_index(self, chunk_id: str, index: int) -> ChunkSlice:
        chunk_set = self._require(chunk_id)
        if not 0 <= index < chunk_set.total_chunks:
            raise InvalidCursorError(chunk_id, index, chunk_set.total_bytes, chunk_set.total_chunks)
        return self._slice(chunk_set, index, chunk_set.offsets[index])

    def read_by_cursor(self, chunk_id: str, cursor: int) -> ChunkSlice:
        """Serve the content starting at byte cursor up to the end of its segment."""
        chunk_set = self._require(chunk_id)
        if not chunk_set.offsets[0] <= cursor < chunk_set.total_bytes:
            raise InvalidCursorError(chunk_id, cursor, chunk_set.total_bytes, chunk_set.total_chunks)

        index = bisect.bisect_right(chunk_set.offsets, cursor) - 1
        if cursor == chunk_set.offsets[index]:
            return self._slice(chunk_set, index, cursor)

        data = chunk_set.segments[index].encode("utf-8")
        relative = cursor - chunk_set.offsets[index]
        if _is_continuation_byte(data[relative]):
            raise InvalidCursorError(chunk_id, cursor, chunk_set.total_bytes, chunk_set.total_chunks)
        return self._slice(chunk_set, index, cursor, data[relative:].decode("utf-8"))

    def delete(self, chunk_id: str) -> bool:
        with self._lock:
            return self._sets.pop(chunk_id, None) is not None

    def sweep(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        with self._lock:
            return self._sweep_locked(self._clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sets)

    def _require(self, chunk_id: str) -> ChunkSet:
        chunk_set = self.get_chunk_set(chunk_id)
        if chunk_set is None:
            raise InvalidChunkIdError(chunk_id)
        return chunk_set

    def _slice(self, chunk_set: ChunkSet, index: int, cursor: int, text: Optional[str] = None) -> ChunkSlice:
        if text is None:
            text = chunk_set.segments[index]
        fetched = cursor + byte_length(text)
        return ChunkSlice(
            chunk_id=chunk_set.id,
            index=index,
            text=text,
            total_chunks=chunk_set.total_chunks,
            total_bytes=chunk_set.total_bytes,
            start_cursor=cursor,
            fetched_bytes=fetched,
            remaining_bytes=chunk_set.total_bytes - fetched,
            size_limit=chunk_set.size_limit,
        )

    def _sweep_locked(self, now: datetime) -> int:
        expired = [key for key, chunk_set in self._sets.items() if chunk_set.is_expired(now)]
        for key in expired:
            del self._sets[key]
        if expired:
            logger.info("chunks_swept", removed=len(expired), remaining=len(self._sets))
        return len(expired)
