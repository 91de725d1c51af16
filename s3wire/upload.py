"""Multipart upload lifecycle management.

Handles the complete lifecycle of a (possibly resumed) multipart upload:
- Initiate upload (or pick up a stored upload id)
- Upload parts in parallel, checkpointing after each one
- Complete with the parts in ascending order
- Keep state on failure, abort on request

Sources no larger than one chunk go up in a single PutObject.
"""

import hashlib
import logging
import re
import threading
import time
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, Optional, Union

from s3wire.errors import ResumeDataInvalid, StorageError, TransferError
from s3wire.models import (
    ProgressEventKind,
    TransferDirection,
    TransferOptions,
    UploadPhase,
    UploadResult,
)
from s3wire.progress import ProgressCollector, ProgressConsumer, as_collector
from s3wire.resume import ResumeStore
from s3wire.retry import RetryExhausted, retry_with_backoff
from s3wire.state import SourceFingerprint, TransferState, part_size_for
from s3wire.workers import DEFAULT_DRAIN_INTERVAL, ChunkRunner

if TYPE_CHECKING:
    from s3wire.client import StorageClient

logger = logging.getLogger(__name__)

# ETags of non-encrypted single parts are the hex MD5 of the part
_PLAIN_MD5_ETAG = re.compile(r"^[0-9a-fA-F]{32}$")

_TERMINAL = {UploadPhase.COMPLETED, UploadPhase.ABORTED}

# Allowed phase changes. FAILED and ABORTED are reachable from every
# non-terminal phase; a failed upload can still be aborted.
_TRANSITIONS = {
    UploadPhase.NOT_STARTED: {UploadPhase.INITIATED, UploadPhase.UPLOADING},
    UploadPhase.INITIATED: {UploadPhase.UPLOADING},
    UploadPhase.UPLOADING: {UploadPhase.COMPLETING, UploadPhase.COMPLETED},
    UploadPhase.COMPLETING: {UploadPhase.COMPLETED},
    UploadPhase.FAILED: set(),
}


def advance(current: UploadPhase, target: UploadPhase) -> UploadPhase:
    """Validate a phase change.

    NOT_STARTED -> UPLOADING -> COMPLETED is the single-request path.

    Raises:
        RuntimeError: If the transition is not allowed.
    """
    if current in _TERMINAL:
        raise RuntimeError(f"Upload is already {current.value}")
    if target == UploadPhase.ABORTED:
        return target
    if target == UploadPhase.FAILED and current != UploadPhase.FAILED:
        return target
    if target not in _TRANSITIONS.get(current, set()):
        raise RuntimeError(
            f"Illegal upload transition: {current.value} -> {target.value}"
        )
    return target


class HashingReader:
    """File wrapper that feeds everything read through an MD5."""

    def __init__(self, f: BinaryIO):
        self._f = f
        self.md5 = hashlib.md5()

    def read(self, size: int = -1) -> bytes:
        data = self._f.read(size)
        self.md5.update(data)
        return data

    def hexdigest(self) -> str:
        return self.md5.hexdigest()


class MultipartUploadManager:
    """Uploads local files to one client's endpoint.

    This class handles:
    - Choosing between single and multipart uploads
    - Partitioning the file and driving parallel part uploads
    - Persisting and resuming interrupted uploads
    - Completing or aborting the upload
    """

    def __init__(
        self,
        client: "StorageClient",
        resume_store: Optional[ResumeStore] = None,
        progress: Union[ProgressCollector, ProgressConsumer, None] = None,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
    ):
        """Initialize the upload manager.

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

    def upload(
        self,
        bucket: str,
        key: str,
        path: str,
        options: Optional[TransferOptions] = None,
    ) -> UploadResult:
        """Upload a local file.

        Blocks until the upload completes or fails. Errors are returned
        in the result, never raised.

        Args:
            bucket: Target bucket.
            key: Target key.
            path: Local file to upload.
            options: Per-call overrides.

        Returns:
            The upload result.
        """
        options = options or TransferOptions()
        result = UploadResult(bucket=bucket, key=key, local_path=path)
        started = time.monotonic()

        try:
            fingerprint = SourceFingerprint.from_path(path)
        except OSError as e:
            result.phase = advance(result.phase, UploadPhase.FAILED)
            result.error = e
            return result

        result.size = fingerprint.size
        chunk_size = options.chunk_size or self.config.chunk_size

        try:
            if fingerprint.size <= chunk_size:
                self._upload_single(result, path, fingerprint.size, options)
            else:
                self._upload_multipart(result, path, fingerprint, chunk_size, options)
        except Exception as e:
            result.error = result.error or e
            if result.phase not in (UploadPhase.FAILED, UploadPhase.ABORTED, UploadPhase.COMPLETED):
                result.phase = advance(result.phase, UploadPhase.FAILED)
            logger.error("Upload of %s failed: %s", path, e)
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
            logger.info(
                "Uploaded %s to %s/%s (%d bytes)", path, bucket, key, result.size
            )
        return result

    def _upload_single(
        self,
        result: UploadResult,
        path: str,
        size: int,
        options: TransferOptions,
    ) -> None:
        result.phase = advance(result.phase, UploadPhase.UPLOADING)
        result.total_chunks = 1

        def on_progress(so_far: int) -> None:
            result.bytes_transferred = so_far
            self.collector.emit(
                ProgressEventKind.CHUNK_PROGRESS,
                chunk_index=0,
                bytes_transferred=so_far,
                total_bytes=size,
            )
            # Single requests run on the calling thread
            self.collector.pump()

        def put() -> Optional[str]:
            with open(path, "rb") as f:
                return self.client.put_object(
                    result.bucket,
                    result.key,
                    f,
                    length=size,
                    content_type=options.content_type,
                    metadata=options.metadata,
                    on_progress=on_progress,
                )

        try:
            result.etag = retry_with_backoff(
                put,
                max_attempts=self._max_retries(options) + 1,
                delays=self.config.retry_delays,
                cancel_event=options.cancel_event,
            )
        except Exception as e:
            result.phase = advance(result.phase, UploadPhase.FAILED)
            result.error = e
            logger.error("Upload of %s failed: %s", path, e)
            return

        result.bytes_transferred = size
        result.completed_chunks = 1
        result.phase = advance(result.phase, UploadPhase.COMPLETED)

    def _max_retries(self, options: TransferOptions) -> int:
        if options.max_retries is not None:
            return options.max_retries
        return self.config.max_retries

    def _prepare_state(
        self,
        bucket: str,
        key: str,
        path: str,
        fingerprint: SourceFingerprint,
        part_size: int,
        options: TransferOptions,
    ) -> Optional[TransferState]:
        """Load resumable state, discarding it if the source changed."""
        if not options.resume:
            return None
        stored = self.resume_store.load(bucket, key, path, TransferDirection.UPLOAD)
        if stored is None:
            return None

        try:
            if stored.fingerprint != fingerprint:
                raise ResumeDataInvalid(f"{path} changed since the upload started")
            if stored.chunk_size != part_size:
                raise ResumeDataInvalid(
                    f"Chunk size changed from {stored.chunk_size} to {part_size}"
                )
            if not stored.upload_id:
                raise ResumeDataInvalid("Stored upload has no upload id")
        except ResumeDataInvalid as e:
            logger.warning("Cannot resume upload of %s: %s; starting over", path, e)
            if stored.upload_id:
                self._abort_quietly(bucket, key, stored.upload_id)
            self.resume_store.delete(stored)
            return None

        logger.info(
            "Resuming upload %s of %s (%d/%d parts done)",
            stored.upload_id, path, stored.completed_chunks, len(stored.chunks),
        )
        return stored

    def _abort_quietly(self, bucket: str, key: str, upload_id: str) -> None:
        try:
            self.client.abort_multipart_upload(bucket, key, upload_id)
        except Exception as e:
            # The stale upload may already be gone
            logger.debug("Abort of stale upload %s failed: %s", upload_id, e)

    def _checkpoint(self, state: TransferState) -> None:
        with self._save_lock:
            try:
                self.resume_store.save(state)
            except OSError as e:
                logger.warning("Could not save resume state: %s", e)

    def _upload_multipart(
        self,
        result: UploadResult,
        path: str,
        fingerprint: SourceFingerprint,
        chunk_size: int,
        options: TransferOptions,
    ) -> None:
        bucket, key = result.bucket, result.key
        part_size = part_size_for(fingerprint.size, chunk_size)
        result.multipart = True

        state = self._prepare_state(bucket, key, path, fingerprint, part_size, options)
        result.resumed = state is not None
        if state is None:
            state = TransferState.create(
                bucket, key, path, fingerprint.size, part_size,
                TransferDirection.UPLOAD, fingerprint,
            )
        result.total_chunks = len(state.chunks)
        checkpoint = self._checkpoint if options.resume else None

        try:
            if state.upload_id is None:
                state.upload_id = self.client.create_multipart_upload(
                    bucket, key, content_type=options.content_type, metadata=options.metadata
                )
                if checkpoint:
                    checkpoint(state)
            result.upload_id = state.upload_id
            result.phase = advance(result.phase, UploadPhase.INITIATED)
        except Exception as e:
            self._fail(result, state, e, options, save=False)
            return

        result.phase = advance(result.phase, UploadPhase.UPLOADING)
        runner = ChunkRunner(
            state,
            self._part_worker(state),
            self.collector,
            max_parallel=options.max_parallel or self.config.max_parallel,
            max_retries=self._max_retries(options),
            retry_delays=self.config.retry_delays,
            cancel_event=options.cancel_event,
            checkpoint=checkpoint,
            drain_interval=self.drain_interval,
        )
        error = runner.run()
        result.bytes_transferred = runner.sent
        result.completed_chunks = state.completed_chunks

        if error is not None:
            self._fail(result, state, error, options)
            return

        result.phase = advance(result.phase, UploadPhase.COMPLETING)
        parts = [(c.part_number, c.etag) for c in state.snapshot()]
        try:
            result.etag = self.client.complete_multipart_upload(
                bucket, key, state.upload_id, parts
            )
        except Exception as e:
            self._fail(result, state, e, options)
            return

        result.phase = advance(result.phase, UploadPhase.COMPLETED)
        self.resume_store.delete(state)

    def _part_worker(self, state: TransferState) -> Callable[..., dict[str, Any]]:
        def upload_part(record, on_bytes):
            with open(state.local_path, "rb") as f:
                f.seek(record.start)
                reader = HashingReader(f)
                etag = self.client.upload_part(
                    state.bucket,
                    state.key,
                    state.upload_id,
                    record.part_number,
                    reader,
                    record.length,
                    on_progress=on_bytes,
                )
            checksum = reader.hexdigest()
            if _PLAIN_MD5_ETAG.match(etag) and etag.lower() != checksum:
                raise TransferError(
                    f"Part {record.part_number} ETag {etag} does not match "
                    f"local MD5 {checksum}"
                )
            return {"etag": etag, "checksum": checksum, "bytes_transferred": record.length}

        return upload_part

    def _fail(
        self,
        result: UploadResult,
        state: TransferState,
        error: Exception,
        options: TransferOptions,
        save: bool = True,
    ) -> None:
        cause = error.last_error if isinstance(error, RetryExhausted) and error.last_error else error
        result.phase = advance(result.phase, UploadPhase.FAILED)
        result.completed_chunks = state.completed_chunks

        if isinstance(cause, StorageError) and cause.code == "NoSuchUpload":
            # The backend no longer knows the upload id; next attempt starts fresh
            logger.warning("Upload %s no longer exists on the server", state.upload_id)
            self.resume_store.delete(state)
        elif save and options.resume:
            self._checkpoint(state)

        message = f"Upload of {result.local_path} to {result.bucket}/{result.key} failed: {cause}"
        logger.error(message)
        failure = TransferError(message, state=state)
        failure.__cause__ = error
        result.error = failure

    def abort(self, state: TransferState) -> UploadPhase:
        """Abort a stored multipart upload and drop its resume file.

        Returns:
            UploadPhase.ABORTED

        Raises:
            StorageError: If the backend rejects the abort (other than
                          the upload already being gone).
        """
        if state.upload_id:
            try:
                self.client.abort_multipart_upload(state.bucket, state.key, state.upload_id)
            except StorageError as e:
                if e.code != "NoSuchUpload":
                    raise
        self.resume_store.delete(state)
        logger.info("Aborted upload of %s to %s/%s", state.local_path, state.bucket, state.key)
        return UploadPhase.ABORTED
