"""Data models for the s3wire client."""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class TransferDirection(Enum):
    """Direction of a chunked transfer."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


class ChunkStatus(Enum):
    """Status of a single chunk within a transfer."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadPhase(Enum):
    """Phases of the multipart upload state machine."""

    NOT_STARTED = "not_started"
    INITIATED = "initiated"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class ProgressEventKind(Enum):
    """Kinds of progress events posted by transfer workers."""

    CHUNK_STARTED = "chunk_started"
    CHUNK_PROGRESS = "chunk_progress"
    CHUNK_COMPLETED = "chunk_completed"
    CHUNK_FAILED = "chunk_failed"
    TRANSFER_COMPLETED = "transfer_completed"


@dataclass(frozen=True)
class Credentials:
    """Connection credentials for an S3-compatible endpoint."""

    access_key: str
    secret_key: str
    region: str = "us-east-1"
    endpoint: str = ""
    secure: bool = True

    def __repr__(self) -> str:
        return (
            f"Credentials(access_key={self.access_key!r}, secret_key='***', "
            f"region={self.region!r}, endpoint={self.endpoint!r}, secure={self.secure})"
        )


@dataclass(frozen=True)
class BucketInfo:
    """A bucket as reported by ListBuckets."""

    name: str
    creation_date: Optional[datetime] = None


@dataclass(frozen=True)
class ObjectDescriptor:
    """Read-only snapshot of an object from a list or head call."""

    bucket: str
    key: str
    size: int = 0
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_type: Optional[str] = None
    storage_class: Optional[str] = None
    is_prefix: bool = False
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PartInfo:
    """A part already stored for a multipart upload (from ListParts)."""

    part_number: int
    etag: str
    size: int = 0
    last_modified: Optional[datetime] = None


@dataclass(frozen=True)
class ProgressEvent:
    """A progress report from a transfer worker.

    ``bytes_transferred`` is cumulative for the whole transfer at the
    time the event was posted.
    """

    kind: ProgressEventKind
    chunk_index: Optional[int] = None
    bytes_transferred: int = 0
    total_bytes: int = 0
    timestamp: float = 0.0
    message: Optional[str] = None


@dataclass
class TransferOptions:
    """Per-call overrides for upload_file and download_file.

    Any field left as None falls back to the client configuration.
    """

    chunk_size: Optional[int] = None
    max_parallel: Optional[int] = None
    max_retries: Optional[int] = None
    resume: bool = True
    content_type: Optional[str] = None
    metadata: Optional[dict[str, str]] = None
    cancel_event: Optional[threading.Event] = None


@dataclass
class _TransferResultBase:
    """Fields shared by upload and download results.

    ``bytes_transferred`` counts bytes moved by this call only; chunks
    carried over from a resumed transfer are not included.
    """

    bucket: str
    key: str
    local_path: str
    size: int = 0
    etag: Optional[str] = None
    bytes_transferred: int = 0
    duration_seconds: float = 0.0
    total_chunks: int = 0
    completed_chunks: int = 0
    resumed: bool = False
    multipart: bool = False
    error: Optional[Exception] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def average_throughput(self) -> float:
        """Average throughput in bytes per second."""
        if self.duration_seconds <= 0:
            return 0.0
        return self.bytes_transferred / self.duration_seconds

    def raise_for_error(self) -> None:
        """Re-raise the stored error, if the transfer failed."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "bucket": self.bucket,
            "key": self.key,
            "local_path": self.local_path,
            "size": self.size,
            "etag": self.etag,
            "bytes_transferred": self.bytes_transferred,
            "duration_seconds": self.duration_seconds,
            "average_throughput": self.average_throughput,
            "total_chunks": self.total_chunks,
            "completed_chunks": self.completed_chunks,
            "resumed": self.resumed,
            "multipart": self.multipart,
            "success": self.success,
            "error": str(self.error) if self.error else None,
        }


@dataclass
class UploadResult(_TransferResultBase):
    """Outcome of upload_file."""

    upload_id: Optional[str] = None
    phase: UploadPhase = UploadPhase.NOT_STARTED

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["direction"] = TransferDirection.UPLOAD.value
        data["upload_id"] = self.upload_id
        data["phase"] = self.phase.value
        return data


@dataclass
class DownloadResult(_TransferResultBase):
    """Outcome of download_file."""

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["direction"] = TransferDirection.DOWNLOAD.value
        return data


@dataclass
class BucketStats:
    """Object count and stored bytes of one bucket."""

    name: str
    object_count: int = 0
    total_size: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "object_count": self.object_count,
            "total_size": self.total_size,
            "error": self.error,
        }


@dataclass
class StorageStats:
    """Totals across the buckets visible to one endpoint.

    A bucket whose listing failed keeps its error and counts as zero
    objects.
    """

    endpoint: str
    secure: bool
    buckets: list[BucketStats] = field(default_factory=list)
    collected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def bucket_count(self) -> int:
        return len(self.buckets)

    @property
    def object_count(self) -> int:
        return sum(b.object_count for b in self.buckets)

    @property
    def total_size(self) -> int:
        return sum(b.total_size for b in self.buckets)

    @property
    def average_object_size(self) -> float:
        if not self.object_count:
            return 0.0
        return self.total_size / self.object_count

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "endpoint": self.endpoint,
            "secure": self.secure,
            "bucket_count": self.bucket_count,
            "object_count": self.object_count,
            "total_size": self.total_size,
            "average_object_size": self.average_object_size,
            "collected_at": self.collected_at.isoformat(),
            "buckets": [b.to_dict() for b in self.buckets],
        }
