"""Console reporter using Rich library for formatted CLI output.

Provides colorful, formatted output during transfers including:
- A live progress bar per transfer, fed from the main thread
- A result line with size, duration and throughput
- Plain command output (listings, URLs, errors)
"""

from typing import Optional, Union

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from s3wire.formatting import format_bytes, format_duration, format_speed
from s3wire.models import (
    DownloadResult,
    ProgressEvent,
    ProgressEventKind,
    TransferDirection,
    UploadResult,
)
from s3wire.reporters.base import Reporter


class ConsoleReporter(Reporter):
    """Rich-based console reporter for CLI output.

    Args:
        quiet: If True, suppress progress bars (results are still shown)
        console: Console to draw on (defaults to stdout)
    """

    def __init__(self, quiet: bool = False, console: Optional[Console] = None):
        # Use legacy_windows=True for ASCII-safe output on Windows consoles
        self.console = console or Console(legacy_windows=True)
        self.quiet = quiet
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def on_transfer_start(
        self,
        direction: TransferDirection,
        bucket: str,
        key: str,
        local_path: str,
    ) -> None:
        """Start a progress bar for the transfer."""
        if self.quiet:
            return

        verb = "Uploading" if direction == TransferDirection.UPLOAD else "Downloading"
        self._progress = Progress(
            TextColumn("[bold cyan]{task.description}"),
            BarColumn(),
            DownloadColumn(binary_units=True),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self.console,
        )
        self._task = self._progress.add_task(f"{verb} {key}", total=None)
        self._progress.start()

    def on_progress(self, event: ProgressEvent) -> None:
        """Advance the bar to the transfer's cumulative byte count."""
        if self._progress is None or self._task is None:
            return

        self._progress.update(
            self._task,
            completed=event.bytes_transferred,
            total=event.total_bytes or None,
        )
        if event.kind == ProgressEventKind.CHUNK_FAILED and event.message:
            self._progress.console.print(
                f"  [yellow]chunk {event.chunk_index} failed:[/yellow] {event.message}"
            )

    def _stop(self) -> None:
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task = None

    def on_transfer_complete(self, result: Union[UploadResult, DownloadResult]) -> None:
        """Close the progress bar and print the outcome."""
        self._stop()

        if result.success:
            status = "[bold green]OK[/bold green]"
        else:
            status = "[bold red]FAILED[/bold red]"

        details = (
            f"{format_bytes(result.size)} in {format_duration(result.duration_seconds)}"
            f" ({format_speed(result.average_throughput)})"
        )
        if result.multipart:
            details += f", {result.completed_chunks}/{result.total_chunks} chunks"
        if result.resumed:
            details += ", resumed"

        self.console.print(f"{status} {result.bucket}/{result.key}: {details}")

        if result.error is not None:
            self.console.print(f"   [dim red]{result.error}[/dim red]")

    def on_message(self, message: str, error: bool = False) -> None:
        if error:
            self.console.print(f"[red]{message}[/red]")
        else:
            self.console.print(message, highlight=False)
