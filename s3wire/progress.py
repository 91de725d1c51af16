"""Thread-safe mailbox for transfer progress.

Workers post ProgressEvents from any thread; the front end drains them
on its own thread, either after each unit of work or on a fixed interval
while it waits on workers. Posting never blocks and never raises.
"""

import queue
import time
from typing import Callable, Optional, Union

from s3wire.models import ProgressEvent, ProgressEventKind

ProgressConsumer = Callable[[ProgressEvent], None]


class ProgressCollector:
    """Multi-writer, single-reader queue of progress events."""

    def __init__(self, consumer: Optional[ProgressConsumer] = None):
        """Initialize the collector.

        Args:
            consumer: Receives events during pump() on the draining thread.
        """
        self.consumer = consumer
        self._queue: "queue.SimpleQueue[ProgressEvent]" = queue.SimpleQueue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def post(self, event: ProgressEvent) -> None:
        """Enqueue an event. Dropped once the collector is closed."""
        if self._closed:
            return
        self._queue.put_nowait(event)

    def emit(
        self,
        kind: ProgressEventKind,
        chunk_index: Optional[int] = None,
        bytes_transferred: int = 0,
        total_bytes: int = 0,
        message: Optional[str] = None,
    ) -> None:
        """Build and post an event stamped with the current time."""
        self.post(
            ProgressEvent(
                kind=kind,
                chunk_index=chunk_index,
                bytes_transferred=bytes_transferred,
                total_bytes=total_bytes,
                timestamp=time.time(),
                message=message,
            )
        )

    def drain(self) -> list[ProgressEvent]:
        """Remove and return all queued events in FIFO order."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def pump(self) -> int:
        """Drain the queue and hand each event to the consumer.

        Returns:
            Number of events drained.
        """
        events = self.drain()
        if self.consumer is not None:
            for event in events:
                self.consumer(event)
        return len(events)

    def close(self) -> list[ProgressEvent]:
        """Stop accepting events and return whatever was still queued."""
        self._closed = True
        return self.drain()


def as_collector(sink: Union[ProgressCollector, ProgressConsumer, None]) -> ProgressCollector:
    """Wrap a plain callable in a collector; collectors pass through."""
    if isinstance(sink, ProgressCollector):
        return sink
    return ProgressCollector(consumer=sink)
