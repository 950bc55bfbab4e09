"""
File operation utilities

This module handles the flat-file cache (JSON read/write), streamed file
downloads and temp-file cleanup. Persistence failures are logged and
reported through the return value, never raised.
"""
import json
import logging
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import httpx


logger = logging.getLogger(__name__)


async def read_json_file(file_path: Path) -> Any | None:
    """
    Read and decode a JSON file

    Args:
        file_path: File to read

    Returns:
        Decoded JSON value, or None if the file is missing or unreadable
    """
    if not file_path.exists():
        return None

    try:
        async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
            raw = await f.read()
        return json.loads(raw)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read cache file {file_path}: {e}")
        return None


async def write_json_file(file_path: Path, payload: Any, *, indent: int | None = None) -> bool:
    """
    Overwrite a JSON file, creating parent directories as needed

    Args:
        file_path: Destination file
        payload: JSON-serializable value
        indent: Optional pretty-print indentation

    Returns:
        True if written, False on failure (already logged)
    """
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(payload, indent=indent, ensure_ascii=False)
        async with aiofiles.open(file_path, "w", encoding="utf-8") as f:
            await f.write(data)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write cache file {file_path}: {e}", exc_info=True)
        return False


async def download_file(
    client: httpx.AsyncClient,
    url: str,
    filename: str,
    timeout: float = 20.0,
) -> Path:
    """
    Stream a URL to a temporary file

    The body is written chunk by chunk so large feeds never sit in memory.

    Args:
        client: Shared HTTP client
        url: URL to download from
        filename: Name for the temporary file
        timeout: HTTP timeout in seconds

    Returns:
        Path to downloaded temporary file

    Raises:
        httpx.HTTPError: On network failure, timeout or non-success status
        OSError: If the temporary file cannot be written
    """
    logger.info(f"Downloading file from {url}...")

    temp_file = Path(tempfile.gettempdir()) / filename
    size = 0
    async with client.stream("GET", url, timeout=timeout) as response:
        response.raise_for_status()
        async with aiofiles.open(temp_file, "wb") as f:
            async for chunk in response.aiter_bytes():
                size += len(chunk)
                await f.write(chunk)

    logger.info(f"Downloaded {size / (1024 * 1024):.2f} MB to {temp_file}")
    return temp_file


def cleanup_temp_file(file_path: Path) -> bool:
    """
    Safely delete a temporary file

    Args:
        file_path: Path to file to delete

    Returns:
        True if deleted successfully, False otherwise
    """
    if not file_path or not file_path.exists():
        return False

    try:
        file_path.unlink()
        logger.debug(f"Cleaned up temporary file: {file_path}")
        return True
    except (OSError, PermissionError) as e:
        logger.warning(f"Failed to delete temporary file {file_path}: {e}")
        return False
