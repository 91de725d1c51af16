"""Serializable state of a chunked transfer.

A TransferState describes one upload or download split into fixed-size
chunks: which byte ranges exist, which are done, and the fingerprint of
the source captured when the transfer started. It is what the resume
store persists between runs.
"""

import os
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from s3wire.models import ChunkStatus, TransferDirection

# S3 limits for multipart uploads
MIN_PART_SIZE = 5 * 1024 * 1024
MAX_PARTS = 10_000

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class ChunkRecord:
    """One contiguous byte range ``[start, end)`` of a transfer.

    Records are immutable; TransferState.update replaces them whole.
    """

    index: int
    start: int
    end: int
    status: ChunkStatus = ChunkStatus.PENDING
    retry_count: int = 0
    etag: Optional[str] = None
    checksum: Optional[str] = None
    bytes_transferred: int = 0
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def part_number(self) -> int:
        """1-based part number used by the multipart API."""
        return self.index + 1

    @property
    def http_range(self) -> str:
        """Value for a ``Range`` header covering this chunk."""
        return f"bytes={self.start}-{self.end - 1}"

    @property
    def is_complete(self) -> bool:
        return (
            self.status == ChunkStatus.COMPLETED
            and self.bytes_transferred == self.length
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "etag": self.etag,
            "checksum": self.checksum,
            "bytes_transferred": self.bytes_transferred,
            "error": self.error,
            "completed_at": _format_time(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkRecord":
        return cls(
            index=int(data["index"]),
            start=int(data["start"]),
            end=int(data["end"]),
            status=ChunkStatus(data.get("status", ChunkStatus.PENDING.value)),
            retry_count=int(data.get("retry_count", 0)),
            etag=data.get("etag"),
            checksum=data.get("checksum"),
            bytes_transferred=int(data.get("bytes_transferred", 0)),
            error=data.get("error"),
            completed_at=_parse_time(data.get("completed_at")),
        )


@dataclass(frozen=True)
class SourceFingerprint:
    """What the source looked like when the transfer started.

    Uploads fingerprint the local file (size and mtime); downloads
    fingerprint the remote object (size, Last-Modified and ETag).
    """

    size: int
    last_modified: Optional[str] = None
    etag: Optional[str] = None

    @classmethod
    def from_path(cls, path: str) -> "SourceFingerprint":
        """Fingerprint a local file.

        Raises:
            OSError: If the file cannot be stat'ed.
        """
        st = os.stat(path)
        mtime = datetime.fromtimestamp(st.st_mtime, timezone.utc)
        return cls(size=st.st_size, last_modified=mtime.isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "last_modified": self.last_modified,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SourceFingerprint":
        return cls(
            size=int(data["size"]),
            last_modified=data.get("last_modified"),
            etag=data.get("etag"),
        )


def partition(total_size: int, chunk_size: int) -> list[ChunkRecord]:
    """Split ``[0, total_size)`` into consecutive chunks.

    Every chunk has ``chunk_size`` bytes except possibly the last.
    An empty source yields a single empty chunk so that there is
    always at least one part.

    Raises:
        ValueError: If the sizes are invalid.
    """
    if total_size < 0:
        raise ValueError(f"total_size must be >= 0, got {total_size}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be > 0, got {chunk_size}")

    if total_size == 0:
        return [ChunkRecord(index=0, start=0, end=0)]

    return [
        ChunkRecord(index=i, start=start, end=min(start + chunk_size, total_size))
        for i, start in enumerate(range(0, total_size, chunk_size))
    ]


def part_size_for(
    total_size: int,
    chunk_size: int,
    minimum: int = MIN_PART_SIZE,
    max_parts: int = MAX_PARTS,
) -> int:
    """Chunk size for a multipart upload.

    At least ``minimum``, and grown (in whole MiB) until the source fits
    in ``max_parts`` parts.
    """
    size = max(chunk_size, minimum)
    if total_size > size * max_parts:
        mib = 1024 * 1024
        needed = -(-total_size // max_parts)
        size = -(-needed // mib) * mib
    return size


def check_tiling(chunks: list[ChunkRecord], total_size: int) -> None:
    """Check that chunks tile ``[0, total_size)`` in index order.

    Raises:
        ValueError: On gaps, overlaps, or misnumbered records.
    """
    if not chunks:
        raise ValueError("Transfer has no chunks")
    position = 0
    for i, chunk in enumerate(chunks):
        if chunk.index != i:
            raise ValueError(f"Chunk {i} has index {chunk.index}")
        if chunk.start != position:
            raise ValueError(
                f"Chunk {i} starts at {chunk.start}, expected {position}"
            )
        if chunk.end < chunk.start:
            raise ValueError(f"Chunk {i} ends before it starts")
        position = chunk.end
    if position != total_size:
        raise ValueError(f"Chunks cover {position} bytes, expected {total_size}")


@dataclass
class TransferState:
    """In-flight or interrupted chunked transfer.

    Chunk records are replaced whole under a per-index lock, so workers
    on different chunks never contend and readers never observe a
    half-updated record.
    """

    bucket: str
    key: str
    local_path: str
    total_size: int
    chunk_size: int
    direction: TransferDirection
    chunks: list[ChunkRecord]
    fingerprint: SourceFingerprint
    upload_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    _locks: list[threading.Lock] = field(
        default_factory=list, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        check_tiling(self.chunks, self.total_size)
        self._locks = [threading.Lock() for _ in self.chunks]

    @classmethod
    def create(
        cls,
        bucket: str,
        key: str,
        local_path: str,
        total_size: int,
        chunk_size: int,
        direction: TransferDirection,
        fingerprint: SourceFingerprint,
        upload_id: Optional[str] = None,
    ) -> "TransferState":
        """Start a fresh transfer with every chunk pending."""
        return cls(
            bucket=bucket,
            key=key,
            local_path=os.path.abspath(local_path),
            total_size=total_size,
            chunk_size=chunk_size,
            direction=direction,
            chunks=partition(total_size, chunk_size),
            fingerprint=fingerprint,
            upload_id=upload_id,
        )

    def get(self, index: int) -> ChunkRecord:
        return self.chunks[index]

    def update(self, index: int, **changes: Any) -> ChunkRecord:
        """Replace the record at ``index`` with a modified copy.

        Returns:
            The new record.
        """
        with self._locks[index]:
            record = replace(self.chunks[index], **changes)
            self.chunks[index] = record
            self.updated_at = utcnow()
        return record

    def snapshot(self) -> list[ChunkRecord]:
        """Copy of the current chunk list."""
        return list(self.chunks)

    def pending_indices(self) -> list[int]:
        """Indices of chunks that still need transferring."""
        return [c.index for c in self.snapshot() if not c.is_complete]

    @property
    def completed_chunks(self) -> int:
        return sum(1 for c in self.snapshot() if c.is_complete)

    @property
    def completed_bytes(self) -> int:
        return sum(c.length for c in self.snapshot() if c.is_complete)

    @property
    def is_complete(self) -> bool:
        return all(c.is_complete for c in self.snapshot())

    def reset(self) -> None:
        """Throw away all progress (and the upload id)."""
        for chunk in self.snapshot():
            self.update(chunk.index, **_PENDING_FIELDS)
        self.upload_id = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "version": STATE_VERSION,
            "bucket": self.bucket,
            "key": self.key,
            "local_path": self.local_path,
            "total_size": self.total_size,
            "chunk_size": self.chunk_size,
            "direction": self.direction.value,
            "upload_id": self.upload_id,
            "fingerprint": self.fingerprint.to_dict(),
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "chunks": [c.to_dict() for c in self.snapshot()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransferState":
        """Rebuild a state from its dictionary form.

        Raises:
            ValueError: If the data is incomplete or inconsistent.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Invalid transfer state: expected an object, got {type(data).__name__}")
        try:
            if data.get("version", STATE_VERSION) != STATE_VERSION:
                raise ValueError(f"Unsupported state version: {data.get('version')}")
            return cls(
                bucket=data["bucket"],
                key=data["key"],
                local_path=data["local_path"],
                total_size=int(data["total_size"]),
                chunk_size=int(data["chunk_size"]),
                direction=TransferDirection(data["direction"]),
                chunks=[ChunkRecord.from_dict(c) for c in data["chunks"]],
                fingerprint=SourceFingerprint.from_dict(data["fingerprint"]),
                upload_id=data.get("upload_id"),
                created_at=_parse_time(data.get("created_at")) or utcnow(),
                updated_at=_parse_time(data.get("updated_at")) or utcnow(),
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise ValueError(f"Invalid transfer state: {e}") from e


_PENDING_FIELDS = {
    "status": ChunkStatus.PENDING,
    "retry_count": 0,
    "etag": None,
    "checksum": None,
    "bytes_transferred": 0,
    "error": None,
    "completed_at": None,
}
