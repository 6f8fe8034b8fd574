"""Console reporter using Rich library for formatted CLI output.

Provides:
- A progress bar while bytes are transferred
- A result line per transfer with size, duration and URL
- Error details when a transfer fails
"""

from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from oss_uploader.errors import PartialMultipartFailure, TransferError
from oss_uploader.models import Operation, TransferRequest, TransferResult
from oss_uploader.reporters.base import Reporter


def format_size(size_bytes: float) -> str:
    """Format a byte count with a binary unit, e.g. ``10.00 MB``."""
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


class ConsoleReporter(Reporter):
    """Rich-based console reporter for CLI output.

    Args:
        quiet: If True, suppress the progress bar and informational lines
            (errors are still printed)
        console: Console to write to (a new stdout console otherwise)
    """

    def __init__(self, quiet: bool = False, console: Optional[Console] = None):
        # Use legacy_windows=True for ASCII-safe output on Windows consoles
        self.console = console or Console(legacy_windows=True)
        self.quiet = quiet
        self._progress: Optional[Progress] = None
        self._task: Optional[TaskID] = None

    def on_transfer_start(self, request: TransferRequest) -> None:
        """Print what is about to happen and start the progress bar."""
        if self.quiet:
            return

        if request.operation == Operation.UPLOAD:
            self.console.print(
                f"Uploading [cyan]{escape(str(request.local_path))}[/cyan] -> {escape(request.key)}"
            )
        elif request.operation == Operation.DOWNLOAD:
            self.console.print(f"Downloading [cyan]{escape(request.key)}[/cyan]")
        else:
            self.console.print(f"Deleting [cyan]{escape(request.key)}[/cyan]")
            return

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(bar_width=40),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=self.console,
            transient=True,
        )
        self._task = self._progress.add_task(request.operation.value, total=None)
        self._progress.start()

    def on_progress(self, bytes_done: int, bytes_total: int) -> None:
        """Advance the progress bar."""
        if self._progress is None or self._task is None:
            return
        self._progress.update(self._task, completed=bytes_done, total=bytes_total)

    def _stop_progress(self) -> None:
        if self._progress is not None:
            self._progress.stop()
        self._progress = None
        self._task = None

    def on_transfer_complete(self, result: TransferResult) -> None:
        """Print a summary line for the finished transfer."""
        self._stop_progress()
        if self.quiet:
            return

        mode = f" in {result.part_count} parts" if result.multipart else ""
        duration = f" in {result.duration_seconds:.1f}s" if result.duration_seconds > 0 else ""

        if result.operation == Operation.UPLOAD:
            self.console.print(
                f"[green][OK][/green] Uploaded {escape(str(result.local_path))} "
                f"({format_size(result.bytes_transferred)}{mode}){duration}"
            )
            if result.url:
                self.console.print(f"Download url:\n{result.url}", soft_wrap=True)
        elif result.operation == Operation.DOWNLOAD:
            self.console.print(
                f"[green][OK][/green] Downloaded {escape(result.key)} to {escape(str(result.local_path))} "
                f"({format_size(result.bytes_transferred)}{mode}){duration}"
            )
        else:
            self.console.print(f"[green][OK][/green] Deleted {escape(result.key)}")

    def on_transfer_error(self, request: TransferRequest, error: TransferError) -> None:
        """Print the error, including every failed part."""
        self._stop_progress()
        self.console.print(f"[bold red][FAILED][/bold red] {escape(str(error))}")
        if isinstance(error, PartialMultipartFailure):
            for part_number, part_error in error.failures.items():
                self.console.print(
                    f"   [dim red]part {part_number}: {escape(part_error.message)}[/dim red]"
                )
