"""Command-line interface for the s3wire client.

Provides argument parsing and the main entry point for bucket, object
and transfer commands.
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

import httpx

from s3wire import __version__
from s3wire.client import StorageClient
from s3wire.config import ConfigError, load_config
from s3wire.errors import S3WireError
from s3wire.formatting import format_bytes
from s3wire.logging_config import setup_logging
from s3wire.models import TransferDirection, TransferOptions
from s3wire.progress import ProgressCollector
from s3wire.reporters import ConsoleReporter, JsonReporter, Reporter
from s3wire.resume import ResumeStore
from s3wire.retry import RetryExhausted

logger = logging.getLogger(__name__)


class CompositeReporter(Reporter):
    """Reporter that delegates to multiple reporters.

    Allows using both ConsoleReporter and JsonReporter simultaneously.
    """

    def __init__(self, reporters: list[Reporter]):
        self._reporters = reporters

    def on_transfer_start(self, direction, bucket, key, local_path) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_transfer_start(direction, bucket, key, local_path)

    def on_progress(self, event) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_progress(event)

    def on_transfer_complete(self, result) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_transfer_complete(result)

    def on_message(self, message: str, error: bool = False) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_message(message, error)

    def on_run_complete(self) -> None:
        """Delegate to all reporters."""
        for reporter in self._reporters:
            reporter.on_run_complete()


def _size(value: str) -> int:
    """Parse a size such as ``8388608``, ``64M`` or ``1G``."""
    units = {"k": 1024, "m": 1024**2, "g": 1024**3}
    text = value.strip().lower().rstrip("ib")
    try:
        if text and text[-1] in units:
            return int(float(text[:-1]) * units[text[-1]])
        return int(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid size: {value!r}") from e


def _add_transfer_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chunk-size", type=_size, metavar="SIZE",
                        help="Chunk size, e.g. 64M (default: from config)")
    parser.add_argument("--parallel", type=int, metavar="N",
                        help="Maximum concurrent chunks (default: from config)")
    parser.add_argument("--retries", type=int, metavar="N",
                        help="Retries per chunk (default: from config)")
    parser.add_argument("--no-resume", action="store_true",
                        help="Ignore and do not keep resume state")


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="s3wire",
        description="Client for S3-compatible object storage",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-c", "--config",
        default="config.json",
        help="Path to configuration file (default: config.json)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log requests and retries",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress progress bars, show only results",
    )
    parser.add_argument(
        "-j", "--json-output",
        metavar="PATH",
        help="Write JSON results to file",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("buckets", help="List buckets")

    ls = commands.add_parser("ls", help="List objects")
    ls.add_argument("bucket")
    ls.add_argument("prefix", nargs="?")
    ls.add_argument("-r", "--recursive", action="store_true", help="List all keys under the prefix")
    ls.add_argument("--max", type=int, dest="max_keys", metavar="N", help="Stop after N entries")

    mb = commands.add_parser("mb", help="Create a bucket")
    mb.add_argument("bucket")
    mb.add_argument("--region", help="Bucket region (default: from config)")

    rb = commands.add_parser("rb", help="Delete an empty bucket")
    rb.add_argument("bucket")

    put = commands.add_parser("put", help="Upload a file")
    put.add_argument("file")
    put.add_argument("bucket")
    put.add_argument("key", nargs="?", help="Object key (default: file name)")
    put.add_argument("--content-type", help="Content-Type of the object")
    _add_transfer_options(put)

    get = commands.add_parser("get", help="Download an object")
    get.add_argument("bucket")
    get.add_argument("key")
    get.add_argument("dest", nargs="?", help="Destination path (default: key's file name)")
    _add_transfer_options(get)

    put_dir = commands.add_parser("put-dir", help="Upload the files of a directory")
    put_dir.add_argument("directory")
    put_dir.add_argument("bucket")
    put_dir.add_argument("prefix", nargs="?", help="Key prefix (default: bucket root)")
    put_dir.add_argument("--no-recursive", dest="recursive", action="store_false",
                         help="Upload only the top-level files")
    put_dir.add_argument("--max-depth", type=int, metavar="N",
                         help="Deepest subdirectory level to include")
    put_dir.add_argument("--flatten", action="store_true",
                         help="Key files by name only, dropping their directories")
    put_dir.add_argument("--include", action="append", default=[], metavar="GLOB",
                         help="Upload only matching files (repeatable)")
    put_dir.add_argument("--exclude", action="append", default=[], metavar="GLOB",
                         help="Skip matching files (repeatable)")
    put_dir.add_argument("--content-type", help="Content-Type of every object")
    _add_transfer_options(put_dir)

    rm = commands.add_parser("rm", help="Delete an object, or every key under a prefix")
    rm.add_argument("bucket")
    rm.add_argument("key")
    rm.add_argument("--prefix", action="store_true", help="Treat KEY as a prefix")

    cp = commands.add_parser("cp", help="Server-side copy")
    cp.add_argument("src_bucket")
    cp.add_argument("src_key")
    cp.add_argument("dst_bucket")
    cp.add_argument("dst_key")

    presign = commands.add_parser("presign", help="Generate a presigned URL")
    presign.add_argument("bucket")
    presign.add_argument("key")
    presign.add_argument("--method", default="GET", help="HTTP method (default: GET)")
    presign.add_argument("--expires", type=int, default=3600,
                         help="Lifetime in seconds, up to 604800 (default: 3600)")

    policy = commands.add_parser("policy", help="Show, set or delete a bucket policy")
    policy.add_argument("bucket")
    group = policy.add_mutually_exclusive_group()
    group.add_argument("--set", dest="policy_file", metavar="FILE", help="Policy JSON file to apply")
    group.add_argument("--delete", action="store_true", help="Remove the bucket policy")

    stats = commands.add_parser("stats", help="Count buckets, objects and stored bytes")
    stats.add_argument("bucket", nargs="?", help="Limit to one bucket")
    stats.add_argument("--max-objects", type=int, metavar="N",
                       help="Count at most N objects per bucket")

    clean = commands.add_parser("resume-clean", help="Delete stale resume files")
    clean.add_argument("--days", type=float, default=7, help="Age in days (default: 7)")

    return parser.parse_args(argv)


def create_reporters(args: argparse.Namespace) -> list[Reporter]:
    """Create reporters based on command-line arguments."""
    reporters: list[Reporter] = [ConsoleReporter(quiet=args.quiet)]
    if args.json_output:
        reporters.append(JsonReporter(output_path=args.json_output))
    return reporters


def transfer_options(args: argparse.Namespace, cancel_event: threading.Event) -> TransferOptions:
    return TransferOptions(
        chunk_size=args.chunk_size,
        max_parallel=args.parallel,
        max_retries=args.retries,
        resume=not args.no_resume,
        content_type=getattr(args, "content_type", None),
        cancel_event=cancel_event,
    )


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cooperative cancel for the duration of a transfer."""
    cancel_event = threading.Event()
    if threading.current_thread() is not threading.main_thread():
        yield cancel_event
        return

    def handler(signum, frame):
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


def cmd_buckets(client: StorageClient, args, reporter: Reporter) -> int:
    for bucket in client.list_buckets():
        created = bucket.creation_date.strftime("%Y-%m-%d %H:%M") if bucket.creation_date else ""
        reporter.on_message(f"{created:16}  {bucket.name}")
    return 0


def cmd_ls(client: StorageClient, args, reporter: Reporter) -> int:
    for entry in client.iter_objects(
        args.bucket, prefix=args.prefix, recursive=args.recursive, max_keys=args.max_keys
    ):
        if entry.is_prefix:
            reporter.on_message(f"{'PRE':>12}  {entry.key}")
        else:
            reporter.on_message(f"{format_bytes(entry.size):>12}  {entry.key}")
    return 0


def cmd_mb(client: StorageClient, args, reporter: Reporter) -> int:
    client.create_bucket(args.bucket, region=args.region)
    reporter.on_message(f"Bucket created: {args.bucket}")
    return 0


def cmd_rb(client: StorageClient, args, reporter: Reporter) -> int:
    client.delete_bucket(args.bucket)
    reporter.on_message(f"Bucket removed: {args.bucket}")
    return 0


def cmd_put(client: StorageClient, args, reporter: Reporter) -> int:
    key = args.key or os.path.basename(args.file)
    reporter.on_transfer_start(TransferDirection.UPLOAD, args.bucket, key, args.file)
    with cancel_on_interrupt() as cancel_event:
        result = client.upload_file(
            args.bucket,
            key,
            args.file,
            options=transfer_options(args, cancel_event),
            progress=ProgressCollector(consumer=reporter.on_progress),
        )
    reporter.on_transfer_complete(result)
    return 0 if result.success else 1


def cmd_get(client: StorageClient, args, reporter: Reporter) -> int:
    dest = args.dest or os.path.basename(args.key.rstrip("/")) or "download"
    reporter.on_transfer_start(TransferDirection.DOWNLOAD, args.bucket, args.key, dest)
    with cancel_on_interrupt() as cancel_event:
        result = client.download_file(
            args.bucket,
            args.key,
            dest,
            options=transfer_options(args, cancel_event),
            progress=ProgressCollector(consumer=reporter.on_progress),
        )
    reporter.on_transfer_complete(result)
    return 0 if result.success else 1


def cmd_put_dir(client: StorageClient, args, reporter: Reporter) -> int:
    def on_file_start(entry):
        reporter.on_transfer_start(TransferDirection.UPLOAD, args.bucket, entry.key, entry.path)

    with cancel_on_interrupt() as cancel_event:
        results = client.upload_directory(
            args.bucket,
            args.directory,
            prefix=args.prefix,
            recursive=args.recursive,
            flatten=args.flatten,
            max_depth=args.max_depth,
            include=args.include,
            exclude=args.exclude,
            options=transfer_options(args, cancel_event),
            progress=ProgressCollector(consumer=reporter.on_progress),
            on_file_start=on_file_start,
            on_file_complete=reporter.on_transfer_complete,
        )

    failed = sum(1 for r in results if not r.success)
    reporter.on_message(
        f"Uploaded {len(results) - failed} of {len(results)} file(s) "
        f"({format_bytes(sum(r.size for r in results if r.success))})"
    )
    return 1 if failed else 0


def cmd_rm(client: StorageClient, args, reporter: Reporter) -> int:
    if args.prefix:
        count = client.delete_prefix(args.bucket, args.key)
        reporter.on_message(f"Deleted {count} object(s) under {args.bucket}/{args.key}")
    else:
        client.delete_object(args.bucket, args.key)
        reporter.on_message(f"Deleted {args.bucket}/{args.key}")
    return 0


def cmd_cp(client: StorageClient, args, reporter: Reporter) -> int:
    etag = client.copy_object(args.src_bucket, args.src_key, args.dst_bucket, args.dst_key)
    reporter.on_message(
        f"Copied {args.src_bucket}/{args.src_key} to {args.dst_bucket}/{args.dst_key} ({etag})"
    )
    return 0


def cmd_presign(client: StorageClient, args, reporter: Reporter) -> int:
    reporter.on_message(
        client.presigned_url(args.method.upper(), args.bucket, args.key, args.expires)
    )
    return 0


def cmd_policy(client: StorageClient, args, reporter: Reporter) -> int:
    if args.delete:
        client.delete_bucket_policy(args.bucket)
        reporter.on_message(f"Policy removed from {args.bucket}")
        return 0

    if args.policy_file:
        with open(args.policy_file, encoding="utf-8") as f:
            policy = json.load(f)
        client.set_bucket_policy(args.bucket, policy)
        reporter.on_message(f"Policy applied to {args.bucket}")
        return 0

    policy_text = client.get_bucket_policy(args.bucket)
    if policy_text is None:
        reporter.on_message(f"No policy set on {args.bucket}")
    else:
        reporter.on_message(policy_text)
    return 0


def cmd_stats(client: StorageClient, args, reporter: Reporter) -> int:
    stats = client.get_stats(args.bucket, max_objects=args.max_objects)
    for bucket in stats.buckets:
        if bucket.error:
            reporter.on_message(f"{bucket.name}: {bucket.error}", error=True)
        else:
            reporter.on_message(
                f"{bucket.name}: {bucket.object_count} object(s), {format_bytes(bucket.total_size)}"
            )
    reporter.on_message(
        f"{stats.bucket_count} bucket(s), {stats.object_count} object(s), "
        f"{format_bytes(stats.total_size)} total"
    )
    return 1 if any(b.error for b in stats.buckets) else 0


COMMANDS: dict[str, Callable[[StorageClient, argparse.Namespace, Reporter], int]] = {
    "buckets": cmd_buckets,
    "ls": cmd_ls,
    "mb": cmd_mb,
    "rb": cmd_rb,
    "put": cmd_put,
    "get": cmd_get,
    "put-dir": cmd_put_dir,
    "rm": cmd_rm,
    "cp": cmd_cp,
    "presign": cmd_presign,
    "policy": cmd_policy,
    "stats": cmd_stats,
}


def _resume_clean(args: argparse.Namespace, reporter: Reporter) -> int:
    resume_dir = None
    try:
        resume_dir = load_config(args.config).resume_dir
    except ConfigError:
        # No endpoint is needed to clean the default directory
        logger.debug("No configuration found, using the default resume directory")
    store = ResumeStore(resume_dir)
    removed = store.cleanup(older_than_days=args.days)
    reporter.on_message(f"Removed {removed} resume file(s) from {store.directory}")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 for success, 1 for operation failures, 2 for errors
    """
    args = parse_args(argv)
    setup_logging("DEBUG" if args.verbose else None)

    reporters = create_reporters(args)
    if len(reporters) == 1:
        reporter = reporters[0]
    else:
        reporter = CompositeReporter(reporters)

    if args.command == "resume-clean":
        code = _resume_clean(args, reporter)
        reporter.on_run_complete()
        return code

    # Load configuration
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    try:
        with StorageClient.from_config(config) as client:
            code = COMMANDS[args.command](client, args, reporter)
    except (S3WireError, RetryExhausted, httpx.HTTPError, OSError) as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        reporter.on_message(f"Error: {e}", error=True)
        code = 1
    except ValueError as e:
        reporter.on_message(f"Error: {e}", error=True)
        code = 2

    reporter.on_run_complete()
    return code


if __name__ == "__main__":
    sys.exit(main())
