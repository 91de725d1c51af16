"""Base reporter interface."""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from s3wire.models import DownloadResult, ProgressEvent, TransferDirection, UploadResult


class Reporter(ABC):
    """Abstract base class for transfer reporters."""

    @abstractmethod
    def on_transfer_start(
        self,
        direction: "TransferDirection",
        bucket: str,
        key: str,
        local_path: str,
    ) -> None:
        """Called before a transfer starts."""
        pass

    @abstractmethod
    def on_progress(self, event: "ProgressEvent") -> None:
        """Called on the main thread for each drained progress event."""
        pass

    @abstractmethod
    def on_transfer_complete(self, result: Union["UploadResult", "DownloadResult"]) -> None:
        """Called when a transfer finishes, successfully or not."""
        pass

    @abstractmethod
    def on_message(self, message: str, error: bool = False) -> None:
        """Called for command output that is not a transfer."""
        pass

    def on_run_complete(self) -> None:
        """Called once when the command is done."""
        pass
