"""Command-line interface for the S3 client.

Provides argument parsing and the main entry point for uploading,
downloading, listing, deleting and presigning objects from the command line.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional

import httpx
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from s3lite.client import S3Client
from s3lite.config import load_config
from s3lite.errors import ErrorKind, S3LiteError
from s3lite.models import CommonPrefix
from s3lite.retry import RetryExhausted, retry_with_backoff

# Size of the reads used to stream a local file into an upload
FILE_READ_SIZE = 1024 * 1024

console = Console()
error_console = Console(stderr=True)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="s3lite",
        description="Lightweight client for S3-compatible object storage",
    )

    parser.add_argument(
        "-c", "--config",
        default="s3lite.json",
        help="Path to configuration file (default: s3lite.json)",
    )

    parser.add_argument(
        "-b", "--bucket",
        help="Bucket to use instead of the configured default",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log requests and upload progress",
    )

    parser.add_argument(
        "--retries",
        type=int,
        default=1,
        metavar="N",
        help="Attempts per operation for transient failures (default: 1)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    put = commands.add_parser("put", help="Upload a file")
    put.add_argument("file", help="Local file to upload")
    put.add_argument("key", help="Object key")
    put.add_argument("--content-type", help="Content-Type to store")
    put.add_argument(
        "--concurrency",
        type=int,
        metavar="N",
        help="Maximum number of parts uploaded at once",
    )

    get = commands.add_parser("get", help="Download an object")
    get.add_argument("key", help="Object key")
    get.add_argument("dest", nargs="?", help="Local path (default: key basename)")

    ls = commands.add_parser("ls", help="List objects")
    ls.add_argument("prefix", nargs="?", default="", help="Key prefix")
    ls.add_argument("-r", "--recursive", action="store_true", help="Do not group by '/'")
    ls.add_argument("-n", "--max", type=int, metavar="N", help="List at most N entries")

    rm = commands.add_parser("rm", help="Delete an object")
    rm.add_argument("key", help="Object key")

    stat = commands.add_parser("stat", help="Show object metadata")
    stat.add_argument("key", help="Object key")

    presign = commands.add_parser("presign", help="Print a presigned download URL")
    presign.add_argument("key", help="Object key")
    presign.add_argument(
        "-e", "--expiry",
        type=int,
        default=3600,
        metavar="SECONDS",
        help="URL validity in seconds (default: 3600)",
    )

    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    """Send library logs to the console through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
    )
    # httpx logs every request at INFO; ours are enough
    logging.getLogger("httpx").setLevel(logging.WARNING)


def read_file_chunks(path: Path) -> Iterator[bytes]:
    """Read a local file in FILE_READ_SIZE chunks."""
    with open(path, "rb") as f:
        while True:
            chunk = f.read(FILE_READ_SIZE)
            if not chunk:
                break
            yield chunk


async def cmd_put(client: S3Client, args: argparse.Namespace) -> int:
    path = Path(args.file)
    if not path.is_file():
        error_console.print(f"[red]No such file:[/red] {path}")
        return 1
    metadata = {"Content-Type": args.content_type} if args.content_type else None

    async def upload():
        # A fresh reader per attempt, since a failed attempt consumed the last one
        return await client.put_object(
            args.key,
            read_file_chunks(path),
            metadata=metadata,
            size=path.stat().st_size,
            bucket_name=args.bucket,
            max_concurrency=args.concurrency,
        )

    info = await retry_with_backoff(upload, max_attempts=args.retries)
    console.print(f"[green]Uploaded[/green] {path} -> {args.key}")
    console.print(f"  ETag: {info.etag}")
    if info.version_id:
        console.print(f"  Version: {info.version_id}")
    return 0


async def cmd_get(client: S3Client, args: argparse.Namespace) -> int:
    dest = Path(args.dest or Path(args.key).name)
    size = 0
    with open(dest, "wb") as f:
        async for chunk in client.stream_object(args.key, bucket_name=args.bucket):
            f.write(chunk)
            size += len(chunk)
    console.print(f"[green]Downloaded[/green] {args.key} -> {dest} ({size} bytes)")
    return 0


async def cmd_ls(client: S3Client, args: argparse.Namespace) -> int:
    table = Table(box=box.SIMPLE)
    table.add_column("Last Modified")
    table.add_column("Size", justify="right")
    table.add_column("Key")

    async for entry in client.list_objects_grouped(
        args.prefix,
        delimiter=None if args.recursive else "/",
        max_results=args.max,
        bucket_name=args.bucket,
    ):
        if isinstance(entry, CommonPrefix):
            table.add_row("", "[dim]DIR[/dim]", f"[bold]{entry.prefix}[/bold]")
        else:
            modified = entry.last_modified.strftime("%Y-%m-%d %H:%M:%S") if entry.last_modified else ""
            table.add_row(modified, str(entry.size), entry.key)

    console.print(table)
    return 0


async def cmd_rm(client: S3Client, args: argparse.Namespace) -> int:
    await client.delete_object(args.key, bucket_name=args.bucket)
    console.print(f"[green]Deleted[/green] {args.key}")
    return 0


async def cmd_stat(client: S3Client, args: argparse.Namespace) -> int:
    status = await client.stat_object(args.key, bucket_name=args.bucket)
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Key", status.key)
    table.add_row("Size", str(status.size))
    table.add_row("ETag", status.etag)
    table.add_row("Last Modified", str(status.last_modified or ""))
    if status.version_id:
        table.add_row("Version", status.version_id)
    for name, value in sorted(status.metadata.items()):
        table.add_row(name, value)
    console.print(table)
    return 0


async def cmd_presign(client: S3Client, args: argparse.Namespace) -> int:
    url = client.presigned_get_object(
        args.key, bucket_name=args.bucket, expiry_seconds=args.expiry
    )
    # Plain print so the URL can be piped without Rich wrapping it
    print(url)
    return 0


COMMANDS = {
    "put": cmd_put,
    "get": cmd_get,
    "ls": cmd_ls,
    "rm": cmd_rm,
    "stat": cmd_stat,
    "presign": cmd_presign,
}


async def run_command(client: S3Client, args: argparse.Namespace) -> int:
    async with client:
        return await COMMANDS[args.command](client, args)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code: 0 for success, 1 for operation failures, 2 for
        configuration errors
    """
    args = parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
        client = config.create_client()
    except S3LiteError as e:
        error_console.print(f"[red]Configuration error:[/red] {e}")
        return 2

    try:
        return asyncio.run(run_command(client, args))
    except RetryExhausted as e:
        error_console.print(f"[red]Failed after {e.attempts} attempts:[/red] {e.last_error}")
        return 1
    except httpx.HTTPError as e:
        error_console.print(f"[red]Network error:[/red] {e}")
        return 1
    except S3LiteError as e:
        if e.kind == ErrorKind.CONFIGURATION:
            error_console.print(f"[red]Configuration error:[/red] {e}")
            return 2
        error_console.print(f"[red]Error:[/red] {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
