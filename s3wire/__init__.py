"""
s3wire: a client for S3-compatible object storage.

Speaks the S3 REST protocol directly with its own SigV4 signer, and
runs large transfers as parallel, resumable multipart operations.
"""

__version__ = "1.0.0"

from s3wire.client import StorageClient, connect
from s3wire.config import ClientConfig, ConfigError
from s3wire.errors import (
    IncompleteChunkError,
    ResumeDataInvalid,
    S3WireError,
    SigningError,
    StorageError,
    TransferError,
)
from s3wire.models import DownloadResult, StorageStats, TransferOptions, UploadResult
from s3wire.progress import ProgressCollector

__all__ = [
    "__version__",
    "ClientConfig",
    "ConfigError",
    "DownloadResult",
    "IncompleteChunkError",
    "ProgressCollector",
    "ResumeDataInvalid",
    "S3WireError",
    "SigningError",
    "StorageClient",
    "StorageError",
    "StorageStats",
    "TransferError",
    "TransferOptions",
    "UploadResult",
    "connect",
]
