#!/usr/bin/env python3
"""
vstream CLI - administration and troubleshooting over the HTTP API.
"""

import argparse
import os
import sys
from pathlib import Path

import httpx
from rich.progress import (
    BarColumn,
    FileSizeColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TotalFileSizeColumn,
    TransferSpeedColumn,
)

from api.errors import InvalidIdentifier, truncate_error
from config import ADMIN_API_SECRET, API_BASE_URL, ERROR_DETAIL_MAX_LENGTH, ERROR_SUMMARY_MAX_LENGTH
from streaming import identity

# Default timeout for API requests (30 seconds)
DEFAULT_API_TIMEOUT = int(os.getenv("VSTREAM_API_TIMEOUT", "30"))

# Download timeout in seconds (default 1 hour)
DOWNLOAD_TIMEOUT = int(os.getenv("VSTREAM_DOWNLOAD_TIMEOUT", "3600"))

API_BASE = API_BASE_URL


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def get_headers(args) -> dict:
    """Bearer token from --token or VSTREAM_TOKEN, plus the admin secret when configured."""
    headers = {}
    token = getattr(args, "token", None) or os.getenv("VSTREAM_TOKEN", "")
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if ADMIN_API_SECRET:
        headers["X-Admin-Secret"] = ADMIN_API_SECRET
    return headers


def safe_json_response(response, default_error="Request failed"):
    """
    Parse a JSON response, turning API errors into CLIError.

    Error bodies have the form {"success": false, "error": ..., "details": ...}.
    """
    if not response.is_success:
        try:
            body = response.json()
            detail = body.get("error", default_error)
            if body.get("details"):
                detail = f"{detail} ({body['details']})"
        except ValueError:
            detail = truncate_error(response.text, ERROR_DETAIL_MAX_LENGTH) if response.text else default_error
        raise CLIError(f"API error ({response.status_code}): {detail}")

    try:
        return response.json()
    except ValueError:
        raise CLIError(f"Invalid JSON response: {truncate_error(response.text, ERROR_SUMMARY_MAX_LENGTH)}")


def handle_auth_error(response) -> None:
    """Exit with a helpful message on authentication failures."""
    if response.status_code == 401:
        print("Error: Authentication required.")
        print("Pass --token or set VSTREAM_TOKEN to a valid access token.")
        sys.exit(1)
    elif response.status_code == 403 and "Admin" in response.text:
        print("Error: Admin access denied.")
        print("Check that VSTREAM_ADMIN_API_SECRET matches the server configuration.")
        sys.exit(1)


def api_request(args, method: str, path: str, **kwargs):
    response = httpx.request(
        method,
        f"{API_BASE}{path}",
        headers=get_headers(args),
        timeout=DEFAULT_API_TIMEOUT,
        **kwargs,
    )
    handle_auth_error(response)
    return safe_json_response(response)


def run(command):
    """Run a command function with the CLI's uniform error reporting."""

    def wrapper(args):
        try:
            command(args)
        except httpx.ConnectError:
            print(f"Error: Could not connect to API at {API_BASE}")
            sys.exit(1)
        except httpx.TimeoutException:
            print(f"Error: Request timed out while connecting to {API_BASE}")
            sys.exit(1)
        except CLIError as e:
            print(f"Error: {e}")
            sys.exit(1)

    return wrapper


def format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}" if unit != "B" else f"{size} B"
        size /= 1024
    return f"{size:.1f} GB"


@run
def cmd_cache_status(args):
    """Show local cache usage."""
    status = api_request(args, "GET", "/cache/status")
    state = "enabled" if status["enabled"] else "disabled"
    print(f"Cache ({state}): {status['total_files']} file(s), "
          f"{format_size(status['total_size'])} of {format_size(status['max_size'])} "
          f"({status['usage_percentage']}%)")

    if args.verbose and status["files"]:
        print(f"{'Size':>10}  {'Age (s)':>9}  {'Idle (s)':>9}  Filename")
        print("-" * 90)
        for f in status["files"]:
            print(f"{format_size(f['size']):>10}  {f['age_seconds']:>9.0f}  "
                  f"{f['last_accessed_seconds_ago']:>9.0f}  {f['filename']}")


@run
def cmd_cache_clear(args):
    """Remove all cached files."""
    result = api_request(args, "POST", "/cache/clear")
    print(f"Removed {result['removed_files']} cached file(s).")


@run
def cmd_sync(args):
    """Reconcile a folder with its media server."""
    result = api_request(args, "POST", f"/folders/{args.folder_id}/sync")
    print(result["message"])
    print(f"  created: {result['created']}  unchanged: {result['skipped']}  "
          f"orphans removed: {result['orphans_removed']}  failed: {result['failed']}")


@run
def cmd_usage(args):
    """Show folder storage usage."""
    usage = api_request(args, "GET", f"/folders/{args.folder_id}/usage")["usage"]
    print(f"Used: {usage['used']} MB of {usage['total']} MB ({usage['percentage']}%)")
    print(f"Available: {usage['available']} MB")
    print(f"Recorded: {usage['database_used']} MB, from video records: {usage['real_used']} MB")


@run
def cmd_list(args):
    """List a folder's videos."""
    result = api_request(args, "GET", "/videos", params={"folder": args.folder})
    videos_list = result["videos"]
    if not videos_list:
        print("No videos found.")
        return

    print(f"{'ID':<6} {'Size':>10}  {'Name':<40} Video ID")
    print("-" * 100)
    for v in videos_list:
        name = v["name"][:38] + ".." if len(v["name"]) > 40 else v["name"]
        print(f"{v['id']:<6} {format_size(v['size_bytes']):>10}  {name:<40} {v['video_id']}")


def cmd_encode_id(args):
    """Print the opaque id for a remote path."""
    print(identity.encode(args.path))


def cmd_decode_id(args):
    """Print the remote path behind an opaque id."""
    try:
        print(identity.decode(args.video_id))
    except InvalidIdentifier as e:
        print(f"Error: {e}")
        sys.exit(1)


@run
def cmd_download(args):
    """Download a video through the direct-stream endpoint."""
    output = Path(args.output) if args.output else None
    if output is None:
        try:
            output = Path(Path(identity.decode(args.video_id)).name)
        except InvalidIdentifier as e:
            raise CLIError(str(e))
    if output.exists() and not args.force:
        raise CLIError(f"Output file already exists: {output} (use --force to overwrite)")

    url = f"{API_BASE}/stream/direct/{args.video_id}"
    with httpx.stream("GET", url, headers=get_headers(args), timeout=DOWNLOAD_TIMEOUT) as response:
        if not response.is_success:
            response.read()
            handle_auth_error(response)
            safe_json_response(response)

        total = int(response.headers.get("Content-Length", 0)) or None
        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            FileSizeColumn(),
            TotalFileSizeColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task_id = progress.add_task(output.name, total=total)
            with open(output, "wb") as f:
                for chunk in response.iter_bytes():
                    f.write(chunk)
                    progress.update(task_id, advance=len(chunk))

    print(f"Saved {output} ({format_size(output.stat().st_size)})")


def main(argv=None):
    parser = argparse.ArgumentParser(prog="vstream", description="vstream CLI - manage remote video streaming")
    parser.add_argument("--token", help="Access token (default: VSTREAM_TOKEN)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("cache-status", help="Show local cache usage")
    status_parser.add_argument("-v", "--verbose", action="store_true", help="List cached files")
    status_parser.set_defaults(func=cmd_cache_status)

    clear_parser = subparsers.add_parser("cache-clear", help="Remove all cached files")
    clear_parser.set_defaults(func=cmd_cache_clear)

    sync_parser = subparsers.add_parser("sync", help="Reconcile a folder with its media server")
    sync_parser.add_argument("folder_id", type=positive_int, help="Folder ID")
    sync_parser.set_defaults(func=cmd_sync)

    usage_parser = subparsers.add_parser("usage", help="Show folder storage usage")
    usage_parser.add_argument("folder_id", type=positive_int, help="Folder ID")
    usage_parser.set_defaults(func=cmd_usage)

    list_parser = subparsers.add_parser("list", help="List a folder's videos")
    list_parser.add_argument("folder", help="Folder name")
    list_parser.set_defaults(func=cmd_list)

    encode_parser = subparsers.add_parser("encode-id", help="Encode a remote path as a video ID")
    encode_parser.add_argument("path", help="Absolute remote path")
    encode_parser.set_defaults(func=cmd_encode_id)

    decode_parser = subparsers.add_parser("decode-id", help="Decode a video ID into its remote path")
    decode_parser.add_argument("video_id", help="Video ID")
    decode_parser.set_defaults(func=cmd_decode_id)

    dl_parser = subparsers.add_parser("download", help="Download a video via the direct-stream endpoint")
    dl_parser.add_argument("video_id", help="Video ID")
    dl_parser.add_argument("-o", "--output", help="Output file (default: remote file name)")
    dl_parser.add_argument("-f", "--force", action="store_true", help="Overwrite an existing output file")
    dl_parser.set_defaults(func=cmd_download)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
