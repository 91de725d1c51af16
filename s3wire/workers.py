"""Parallel chunk execution shared by the upload and download managers.

A ChunkRunner fans the pending chunks of a TransferState out to a
ThreadPoolExecutor. Each chunk is retried on the same index until it
succeeds or its retry budget runs out. The first chunk that fails for
good stops the rest: chunks that have not started stay PENDING so a
later resume picks them up.

The calling thread blocks in run() and pumps the progress collector
between waits, so progress reaches the front end on the caller's thread.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Optional, Sequence

from s3wire.errors import TransferError
from s3wire.models import ChunkStatus, ProgressEventKind
from s3wire.progress import ProgressCollector
from s3wire.retry import DEFAULT_DELAYS, RetryExhausted, retry_with_backoff
from s3wire.state import ChunkRecord, TransferState, utcnow

logger = logging.getLogger(__name__)

# Seconds between progress pumps while the caller waits on workers
DEFAULT_DRAIN_INTERVAL = 0.25

# Transfers one chunk; receives the record and a bytes-so-far callback,
# returns the fields to store on the completed record
ChunkWorker = Callable[[ChunkRecord, Callable[[int], None]], dict[str, Any]]


class ByteCounter:
    """Thread-safe running total of transferred bytes."""

    def __init__(self, initial: int = 0):
        self._value = initial
        self._lock = threading.Lock()

    def add(self, delta: int) -> int:
        with self._lock:
            self._value += delta
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class ChunkRunner:
    """Runs the pending chunks of one transfer on a bounded worker pool."""

    def __init__(
        self,
        state: TransferState,
        worker: ChunkWorker,
        collector: ProgressCollector,
        max_parallel: int = 4,
        max_retries: int = 3,
        retry_delays: Sequence[float] = DEFAULT_DELAYS,
        cancel_event: Optional[threading.Event] = None,
        checkpoint: Optional[Callable[[TransferState], None]] = None,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
    ):
        """Initialize the runner.

        Args:
            state: Transfer whose pending chunks are run.
            worker: Transfers a single chunk.
            collector: Receives progress events.
            max_parallel: Maximum concurrent chunks.
            max_retries: Retries per chunk after the first attempt.
            retry_delays: Backoff delays between attempts.
            cancel_event: Set by the caller to stop the transfer.
            checkpoint: Called after each completed chunk (persists state).
            drain_interval: Seconds between progress pumps.
        """
        self.state = state
        self.worker = worker
        self.collector = collector
        self.max_parallel = max(1, max_parallel)
        self.max_retries = max(0, max_retries)
        self.retry_delays = retry_delays
        self.cancel_event = cancel_event
        self.checkpoint = checkpoint
        self.drain_interval = drain_interval

        # Progress is cumulative, so a resumed transfer starts from its completed bytes
        self.resumed_bytes = state.completed_bytes
        self.transferred = ByteCounter(self.resumed_bytes)
        self.error: Optional[Exception] = None
        self._stop = threading.Event()
        self._error_lock = threading.Lock()

    @property
    def sent(self) -> int:
        """Bytes transferred by this run, excluding resumed chunks."""
        return self.transferred.value - self.resumed_bytes

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _fail(self, error: Exception) -> None:
        with self._error_lock:
            if self.error is None:
                self.error = error
        self._stop.set()

    def run(self) -> Optional[Exception]:
        """Transfer every pending chunk.

        Returns:
            None on success, otherwise the error that stopped the transfer
            (a TransferError when cancelled).
        """
        pending = self.state.pending_indices()
        if not pending:
            return None

        workers = min(self.max_parallel, len(pending))
        logger.debug(
            "Transferring %d chunk(s) of %s/%s with %d worker(s)",
            len(pending), self.state.bucket, self.state.key, workers,
        )

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="s3wire-chunk") as pool:
            futures = [pool.submit(self._run_chunk, index) for index in pending]
            outstanding = set(futures)
            while outstanding:
                _, outstanding = wait(outstanding, timeout=self.drain_interval)
                if self.cancelled:
                    self._stop.set()
                self.collector.pump()

            for future in futures:
                future.result()

        self.collector.pump()

        if self.error is None and self.cancelled and not self.state.is_complete:
            self.error = TransferError("Transfer cancelled", state=self.state)
        return self.error

    def _run_chunk(self, index: int) -> None:
        if self._stop.is_set():
            return

        record = self.state.update(index, status=ChunkStatus.IN_FLIGHT, error=None)
        self.collector.emit(
            ProgressEventKind.CHUNK_STARTED,
            chunk_index=index,
            bytes_transferred=self.transferred.value,
            total_bytes=self.state.total_size,
        )

        reported = [0]

        def on_bytes(so_far: int) -> None:
            total = self.transferred.add(so_far - reported[0])
            reported[0] = so_far
            self.collector.emit(
                ProgressEventKind.CHUNK_PROGRESS,
                chunk_index=index,
                bytes_transferred=total,
                total_bytes=self.state.total_size,
            )

        def attempt() -> dict[str, Any]:
            return self.worker(self.state.get(index), on_bytes)

        def on_retry(attempt_number: int, error: Exception) -> None:
            # Bytes from the failed attempt will be sent again
            self.transferred.add(-reported[0])
            reported[0] = 0
            current = self.state.get(index)
            self.state.update(index, retry_count=current.retry_count + 1, error=str(error))
            logger.warning(
                "Chunk %d of %s failed (attempt %d/%d): %s",
                index, self.state.key, attempt_number, self.max_retries + 1, error,
            )

        try:
            changes = retry_with_backoff(
                attempt,
                max_attempts=self.max_retries + 1,
                delays=self.retry_delays,
                cancel_event=self._stop,
                on_retry=on_retry,
            )
        except Exception as e:
            cause = e.last_error if isinstance(e, RetryExhausted) and e.last_error else e
            self.transferred.add(-reported[0])
            self.state.update(index, status=ChunkStatus.FAILED, error=str(cause))
            self.collector.emit(
                ProgressEventKind.CHUNK_FAILED,
                chunk_index=index,
                bytes_transferred=self.transferred.value,
                total_bytes=self.state.total_size,
                message=str(cause),
            )
            logger.error("Chunk %d of %s failed: %s", index, self.state.key, cause)
            self._fail(e)
            return

        changes.setdefault("bytes_transferred", record.length)
        self.state.update(
            index,
            status=ChunkStatus.COMPLETED,
            error=None,
            completed_at=utcnow(),
            **changes,
        )
        if self.checkpoint is not None:
            self.checkpoint(self.state)
        self.collector.emit(
            ProgressEventKind.CHUNK_COMPLETED,
            chunk_index=index,
            bytes_transferred=self.transferred.value,
            total_bytes=self.state.total_size,
        )
