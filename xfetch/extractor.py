"""Runs yt-dlp as a child process and returns its info document.

The process is started with ``asyncio.create_subprocess_exec`` so waiting on
it never blocks other requests. Output is read incrementally and the call is
bounded both in time and in captured bytes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
from collections.abc import Sequence
from typing import Any

import yt_dlp.version

from . import config
from .errors import (
    UpstreamEmptyOutput,
    UpstreamExtractionFailure,
    UpstreamOutputTooLarge,
    UpstreamTimeout,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
VERSION_CHECK_TIMEOUT = 15


async def _read_capped(stream: asyncio.StreamReader, limit: int, name: str) -> bytes:
    chunks = []
    size = 0
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        size += len(chunk)
        if size > limit:
            raise UpstreamOutputTooLarge(
                "yt-dlp output too large",
                details=f"{name} exceeded {limit} bytes",
            )
        chunks.append(chunk)
    return b"".join(chunks)


async def _collect(process: asyncio.subprocess.Process, limit: int) -> tuple[bytes, bytes]:
    readers = [
        asyncio.ensure_future(_read_capped(process.stdout, limit, "stdout")),
        asyncio.ensure_future(_read_capped(process.stderr, limit, "stderr")),
    ]
    try:
        stdout, stderr = await asyncio.gather(*readers)
    except BaseException:
        # gather leaves the other reader running when one of them fails
        for task in readers:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)
        raise
    await process.wait()
    return stdout, stderr


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").strip()


async def extract_info(
    url: str,
    *,
    command: Sequence[str] | None = None,
    timeout: float | None = None,
    max_output: int | None = None,
) -> dict[str, Any]:
    """Run ``<command> -J --no-warnings <url>`` and parse the JSON it prints."""
    command = list(command if command is not None else config.YTDLP_COMMAND)
    timeout = config.EXTRACT_TIMEOUT if timeout is None else timeout
    max_output = config.EXTRACT_MAX_OUTPUT if max_output is None else max_output

    cmd = [*command, "-J", "--no-warnings", url]
    logger.info("Extracting %s", url)

    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise UpstreamExtractionFailure(
            "Failed to start yt-dlp", details=str(exc)
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(_collect(process, max_output), timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("yt-dlp timed out after %ss for %s", timeout, url)
        raise UpstreamTimeout("Request timeout. Please try again.") from exc
    finally:
        await _kill(process)

    out = _decode(stdout)
    err = _decode(stderr)

    if process.returncode != 0:
        logger.error("yt-dlp exited with %s: %s", process.returncode, err)
        raise UpstreamExtractionFailure(
            "Failed to extract video. The tweet may be private, deleted, or require authentication.",
            details=err or out or None,
        )

    if not out:
        logger.error("yt-dlp produced no stdout, stderr: %s", err)
        raise UpstreamEmptyOutput("yt-dlp returned empty output", details=err or None)

    try:
        info = json.loads(out)
    except json.JSONDecodeError as exc:
        raise UpstreamExtractionFailure(
            "yt-dlp returned invalid JSON", details=str(exc)
        ) from exc

    if not isinstance(info, dict):
        raise UpstreamExtractionFailure(
            "yt-dlp returned an unexpected document",
            details=f"expected a JSON object, got {type(info).__name__}",
        )
    return info


# -------------------------
# Dependency check
# -------------------------

async def _tool_version(command: Sequence[str]) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return ""
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), VERSION_CHECK_TIMEOUT)
    except asyncio.TimeoutError:
        return ""
    finally:
        await _kill(process)
    return _decode(stdout) if process.returncode == 0 else ""


async def check_dependencies(command: Sequence[str] | None = None) -> dict[str, str]:
    """Report where yt-dlp lives and which version it is. Never raises."""
    command = list(command if command is not None else config.YTDLP_COMMAND)
    path = shutil.which(command[0]) if command else None
    version = await _tool_version([path, *command[1:]]) if path else ""
    return {
        "yt_dlp_path": path or "",
        "yt_dlp_version": version,
        "yt_dlp_module_version": yt_dlp.version.__version__,
    }
