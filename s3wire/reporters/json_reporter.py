"""JSON reporter for structured output.

Collects transfer results and command messages and writes them as one
JSON document when the command finishes, for scripts and CI jobs.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from s3wire.models import DownloadResult, ProgressEvent, TransferDirection, UploadResult
from s3wire.reporters.base import Reporter


class JsonReporter(Reporter):
    """JSON reporter for structured output.

    Args:
        output_path: File path to write the JSON document to
    """

    def __init__(self, output_path: Optional[str] = None):
        self.output_path = output_path
        self._results: list[Union[UploadResult, DownloadResult]] = []
        self._messages: list[dict] = []

    def on_transfer_start(
        self,
        direction: TransferDirection,
        bucket: str,
        key: str,
        local_path: str,
    ) -> None:
        """No-op for JSON reporter."""
        pass

    def on_progress(self, event: ProgressEvent) -> None:
        """No-op for JSON reporter."""
        pass

    def on_transfer_complete(self, result: Union[UploadResult, DownloadResult]) -> None:
        """Store the result for final output generation."""
        self._results.append(result)

    def on_message(self, message: str, error: bool = False) -> None:
        self._messages.append({"message": message, "error": error})

    def generate_output(self) -> dict:
        """Build the JSON output structure."""
        succeeded = sum(1 for r in self._results if r.success)
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "transfers": [r.to_dict() for r in self._results],
            "messages": self._messages,
            "summary": {
                "total_transfers": len(self._results),
                "succeeded": succeeded,
                "failed": len(self._results) - succeeded,
                "bytes_transferred": sum(r.bytes_transferred for r in self._results),
            },
        }

    def on_run_complete(self) -> dict:
        """Write the JSON document if an output path was given.

        Returns:
            The generated JSON data as a dictionary
        """
        output = self.generate_output()
        if self.output_path:
            path = Path(self.output_path)
            # Create parent directories if needed
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(output, f, indent=2)
        return output
