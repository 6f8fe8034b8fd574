"""Command-line interface for the object store client.

Provides argument parsing and main entry point for uploading, downloading
and deleting objects from the command line.
"""

import argparse
import logging
import os
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from oss_uploader.config import load_config
from oss_uploader.engine import TransferEngine
from oss_uploader.errors import ConfigurationError, TransferError
from oss_uploader.models import Operation, TransferRequest
from oss_uploader.reporters import ConsoleReporter, JsonReporter, Reporter


class CompositeReporter(Reporter):
    """Reporter that delegates to multiple reporters.

    Allows using both ConsoleReporter and JsonReporter simultaneously.
    """

    def __init__(self, reporters: list[Reporter]):
        """Initialize with list of reporters.

        Args:
            reporters: List of reporters to delegate to
        """
        self._reporters = reporters

    def on_transfer_start(self, request) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_transfer_start(request)

    def on_progress(self, bytes_done: int, bytes_total: int) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_progress(bytes_done, bytes_total)

    def on_transfer_complete(self, result) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_transfer_complete(result)

    def on_transfer_error(self, request, error) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_transfer_error(request, error)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="oss-uploader",
        description="Upload, download and delete objects on an S3-compatible store",
    )

    parser.add_argument(
        "-c", "--config",
        default="config.json",
        help="Path to configuration file (default: config.json)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress progress output, show only errors",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log requests and retries",
    )

    parser.add_argument(
        "-j", "--json-output",
        metavar="PATH",
        help="Write the transfer result as JSON to a file",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    upload = subparsers.add_parser("upload", help="Upload a file")
    upload.add_argument("file_path", help="Local file path")
    upload.add_argument(
        "-k", "--key",
        help="Remote key (default: <key_prefix>/<filename>)",
    )
    upload.add_argument(
        "-p", "--key-prefix",
        help="Key prefix (default: none, the file is stored at the bucket root)",
    )

    download = subparsers.add_parser("download", help="Download an object")
    download.add_argument("key", help="Remote key")
    download.add_argument(
        "-o", "--output",
        help="Local output path (default: file name of the key)",
    )

    delete = subparsers.add_parser("delete", help="Delete an object")
    delete.add_argument("key", help="Remote key")

    url = subparsers.add_parser("url", help="Generate a presigned download URL")
    url.add_argument("key", help="Remote key")
    url.add_argument(
        "-e", "--expires",
        type=int,
        default=3600,
        help="URL lifetime in seconds (default: 3600)",
    )

    return parser.parse_args(argv)


def resolve_key(file_path: str, key: Optional[str], key_prefix: Optional[str]) -> str:
    """Remote key for an upload: explicit key, or [prefix/]filename."""
    if key:
        return key
    filename = os.path.basename(file_path)
    if key_prefix:
        return f"{key_prefix.rstrip('/')}/{filename}"
    return filename


def build_request(args: argparse.Namespace) -> TransferRequest:
    """Translate parsed arguments into a TransferRequest."""
    if args.command == "upload":
        key = resolve_key(args.file_path, args.key, args.key_prefix)
        return TransferRequest(Operation.UPLOAD, key, local_path=args.file_path)
    if args.command == "download":
        output = args.output or os.path.basename(args.key.rstrip("/"))
        return TransferRequest(Operation.DOWNLOAD, args.key, local_path=output)
    return TransferRequest(Operation.DELETE, args.key)


def create_reporters(args: argparse.Namespace) -> list[Reporter]:
    """Create reporters based on command-line arguments.

    Args:
        args: Parsed command-line arguments

    Returns:
        List of configured reporters
    """
    reporters: list[Reporter] = [ConsoleReporter(quiet=args.quiet)]

    if args.json_output:
        reporters.append(JsonReporter(output_path=args.json_output))

    return reporters


def configure_logging(verbose: bool) -> None:
    """Route log records through Rich, on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 for success, 1 for transfer failures, 2 for
        configuration errors
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    # Load configuration
    try:
        credentials, transfer_config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print("Make sure the required OSS_* environment variables are set", file=sys.stderr)
        return 2

    reporters = create_reporters(args)
    if len(reporters) == 1:
        reporter = reporters[0]
    else:
        reporter = CompositeReporter(reporters)

    try:
        engine = TransferEngine(credentials, transfer_config, progress=reporter.on_progress)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    with engine:
        if args.command == "url":
            try:
                print(engine.presign(args.key, args.expires))
            except ConfigurationError as e:
                print(f"Configuration error: {e}", file=sys.stderr)
                return 2
            return 0

        request = build_request(args)
        reporter.on_transfer_start(request)
        try:
            result = engine.execute(request)
        except TransferError as e:
            reporter.on_transfer_error(request, e)
            return 2 if isinstance(e, ConfigurationError) else 1

        reporter.on_transfer_complete(result)

    return 0


if __name__ == "__main__":
    sys.exit(main())
