"""Parallel ranged downloads with resume support.

Data is written to ``<destination>.s3wire-part``, preallocated to the
object size before any worker starts. Each worker opens its own handle
and writes its range at the absolute offset, so there is no shared file
cursor. Once every chunk is complete the partial file is renamed over
the destination.
"""

import hashlib
import logging
import os
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from s3wire.errors import IncompleteChunkError, ResumeDataInvalid, StorageError, TransferError
from s3wire.models import (
    DownloadResult,
    ObjectDescriptor,
    ProgressEventKind,
    TransferDirection,
    TransferOptions,
)
from s3wire.progress import ProgressCollector, ProgressConsumer, as_collector
from s3wire.resume import ResumeStore
from s3wire.retry import retry_with_backoff
from s3wire.state import SourceFingerprint, TransferState
from s3wire.workers import DEFAULT_DRAIN_INTERVAL, ChunkRunner

if TYPE_CHECKING:
    from s3wire.client import StorageClient

logger = logging.getLogger(__name__)

PART_SUFFIX = ".s3wire-part"


def partial_path(path: str) -> str:
    """Where a download is written before it is complete."""
    return f"{path}{PART_SUFFIX}"


def remote_fingerprint(descriptor: ObjectDescriptor) -> SourceFingerprint:
    return SourceFingerprint(
        size=descriptor.size,
        last_modified=descriptor.last_modified.isoformat() if descriptor.last_modified else None,
        etag=descriptor.etag,
    )


class MultipartDownloadManager:
    """Downloads objects from one client's endpoint to local files."""

    def __init__(
        self,
        client: "StorageClient",
        resume_store: Optional[ResumeStore] = None,
        progress: Union[ProgressCollector, ProgressConsumer, None] = None,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
    ):
        """Initialize the download manager.

        Args:
            client: Storage client used for every request.
            resume_store: Where state is persisted; defaults to the client's.
            progress: Collector or event consumer for progress reports.
            drain_interval: Seconds between progress pumps while waiting.
        """
        self.client = client
        self.config = client.config
        self.resume_store = resume_store or client.resume_store
        self.collector = as_collector(progress)
        self.drain_interval = drain_interval
        self._save_lock = threading.Lock()

    def download(
        self,
        bucket: str,
        key: str,
        path: str,
        options: Optional[TransferOptions] = None,
    ) -> DownloadResult:
        """Download an object to ``path``.

        Blocks until the download completes or fails. Errors are returned
        in the result, never raised.
        """
        options = options or TransferOptions()
        result = DownloadResult(bucket=bucket, key=key, local_path=path)
        started = time.monotonic()

        try:
            descriptor = self.client.head_object(bucket, key)
            if descriptor is None:
                raise StorageError(
                    "Object does not exist",
                    status_code=404,
                    code="NoSuchKey",
                    resource=f"{bucket}/{key}",
                )
            result.size = descriptor.size
            result.etag = descriptor.etag
            chunk_size = options.chunk_size or self.config.chunk_size

            if descriptor.size <= chunk_size:
                self._download_single(result, descriptor, path, options)
            else:
                self._download_multipart(result, descriptor, path, chunk_size, options)
        except Exception as e:
            result.error = e
            logger.error("Download of %s/%s failed: %s", bucket, key, e)
        finally:
            result.duration_seconds = time.monotonic() - started
            self.collector.pump()

        if result.success:
            self.collector.emit(
                ProgressEventKind.TRANSFER_COMPLETED,
                bytes_transferred=result.size,
                total_bytes=result.size,
            )
            self.collector.pump()
            logger.info("Downloaded %s/%s to %s (%d bytes)", bucket, key, path, result.size)
        return result

    def _max_retries(self, options: TransferOptions) -> int:
        if options.max_retries is not None:
            return options.max_retries
        return self.config.max_retries

    def _download_single(
        self,
        result: DownloadResult,
        descriptor: ObjectDescriptor,
        path: str,
        options: TransferOptions,
    ) -> None:
        temp_path = partial_path(path)
        result.total_chunks = 1

        def on_progress(so_far: int) -> None:
            result.bytes_transferred = so_far
            self.collector.emit(
                ProgressEventKind.CHUNK_PROGRESS,
                chunk_index=0,
                bytes_transferred=so_far,
                total_bytes=descriptor.size,
            )
            # Single requests run on the calling thread
            self.collector.pump()

        def fetch() -> int:
            with open(temp_path, "wb") as f:
                received = self.client.get_object(
                    result.bucket, result.key, f, on_progress=on_progress
                )
            if received != descriptor.size:
                raise IncompleteChunkError(
                    f"Received {received} of {descriptor.size} bytes for {result.key}"
                )
            return received

        try:
            result.bytes_transferred = retry_with_backoff(
                fetch,
                max_attempts=self._max_retries(options) + 1,
                delays=self.config.retry_delays,
                cancel_event=options.cancel_event,
            )
        except Exception:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

        os.replace(temp_path, path)
        result.completed_chunks = 1

    def _prepare_state(
        self,
        bucket: str,
        key: str,
        path: str,
        fingerprint: SourceFingerprint,
        chunk_size: int,
        options: TransferOptions,
    ) -> Optional[TransferState]:
        """Load resumable state if the object and the partial file still match."""
        if not options.resume:
            return None
        stored = self.resume_store.load(bucket, key, path, TransferDirection.DOWNLOAD)
        if stored is None:
            return None

        temp_path = partial_path(path)
        try:
            if stored.fingerprint != fingerprint:
                raise ResumeDataInvalid(f"{bucket}/{key} changed since the download started")
            if stored.chunk_size != chunk_size:
                raise ResumeDataInvalid(
                    f"Chunk size changed from {stored.chunk_size} to {chunk_size}"
                )
            if not os.path.exists(temp_path) or os.path.getsize(temp_path) != fingerprint.size:
                raise ResumeDataInvalid(f"Partial file {temp_path} is missing or truncated")
        except ResumeDataInvalid as e:
            logger.warning("Cannot resume download of %s/%s: %s; starting over", bucket, key, e)
            self.resume_store.delete(stored)
            return None

        logger.info(
            "Resuming download of %s/%s (%d/%d chunks done)",
            bucket, key, stored.completed_chunks, len(stored.chunks),
        )
        return stored

    def _checkpoint(self, state: TransferState) -> None:
        with self._save_lock:
            try:
                self.resume_store.save(state)
            except OSError as e:
                logger.warning("Could not save resume state: %s", e)

    def _download_multipart(
        self,
        result: DownloadResult,
        descriptor: ObjectDescriptor,
        path: str,
        chunk_size: int,
        options: TransferOptions,
    ) -> None:
        bucket, key = result.bucket, result.key
        fingerprint = remote_fingerprint(descriptor)
        temp_path = partial_path(path)
        result.multipart = True

        state = self._prepare_state(bucket, key, path, fingerprint, chunk_size, options)
        result.resumed = state is not None
        if state is None:
            state = TransferState.create(
                bucket, key, path, descriptor.size, chunk_size,
                TransferDirection.DOWNLOAD, fingerprint,
            )
            # Preallocate so no worker ever extends the file
            with open(temp_path, "wb") as f:
                f.truncate(descriptor.size)
        result.total_chunks = len(state.chunks)

        runner = ChunkRunner(
            state,
            self._range_worker(state, temp_path),
            self.collector,
            max_parallel=options.max_parallel or self.config.max_parallel,
            max_retries=self._max_retries(options),
            retry_delays=self.config.retry_delays,
            cancel_event=options.cancel_event,
            checkpoint=self._checkpoint if options.resume else None,
            drain_interval=self.drain_interval,
        )
        error = runner.run()
        result.bytes_transferred = runner.sent
        result.completed_chunks = state.completed_chunks

        if error is None and not state.is_complete:
            error = TransferError("Not every chunk completed", state=state)
        if error is not None:
            if options.resume:
                self._checkpoint(state)
            failure = TransferError(
                f"Download of {bucket}/{key} to {path} failed: {error}", state=state
            )
            raise failure from error

        os.replace(temp_path, path)
        self.resume_store.delete(state)

    def _range_worker(self, state: TransferState, temp_path: str) -> Callable[..., dict[str, Any]]:
        etag = state.fingerprint.etag

        def download_range(record, on_bytes):
            md5 = hashlib.md5()
            with open(temp_path, "r+b") as f:
                f.seek(record.start)
                received = self.client.get_range(
                    state.bucket,
                    state.key,
                    _HashingWriter(f, md5),
                    record.start,
                    record.end,
                    if_match=etag,
                    on_progress=on_bytes,
                )
            if received != record.length:
                raise IncompleteChunkError(
                    f"Chunk {record.index} received {received} of {record.length} bytes"
                )
            return {"bytes_transferred": received, "checksum": md5.hexdigest()}

        return download_range


class _HashingWriter:
    def __init__(self, f, md5):
        self._f = f
        self._md5 = md5

    def write(self, data: bytes) -> int:
        self._md5.update(data)
        return self._f.write(data)
