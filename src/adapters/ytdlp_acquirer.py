"""yt-dlp media acquisition adapter.

Each download runs as its own yt-dlp process in a fresh temporary directory.
The directory lives exactly as long as the ``acquire`` context, so the file
is gone once the dispatch attempt that used it has finished.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shutil
import tempfile
from pathlib import Path
from typing import AsyncIterator, Optional

from core.config import MediaConfig
from core.errors import AcquireError, AcquireErrorKind
from core.models import MediaAsset

LOGGER = logging.getLogger(__name__)

# Telegram needs the dimensions to show the right aspect ratio; the simplest
# way to get them from yt-dlp is to have it write them into the filename.
OUTPUT_TEMPLATE = "%(title).80s_%(width)sx%(height)s_%(duration)s.%(ext)s"

_FILENAME_RE = re.compile(
    r"^(?P<title>.*)_(?P<width>\d+)x(?P<height>\d+)_(?P<duration>\d+(?:\.\d+)?|NA)\.[^.]+$"
)
_PARTIAL_SUFFIXES = (".part", ".ytdl", ".json", ".temp")


def make_ytdlp_args(output_dir: Path, url: str) -> list[str]:
    return [
        "--paths",
        str(output_dir),
        "--output",
        OUTPUT_TEMPLATE,
        "-S",
        "res,ext:mp4:m4a",
        "--recode",
        "mp4",
        "--no-playlist",
        "--no-progress",
        url,
    ]


def parse_metadata_from_path(path: Path) -> Optional[tuple[str, int, int, Optional[float]]]:
    """Return (title, width, height, duration) encoded in a downloaded filename."""

    match = _FILENAME_RE.match(path.name)
    if not match:
        return None
    duration_raw = match.group("duration")
    duration = None if duration_raw == "NA" else float(duration_raw)
    return match.group("title"), int(match.group("width")), int(match.group("height")), duration


def classify_failure(returncode: int, stderr: str) -> AcquireError:
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    detail = lines[-1] if lines else f"exit status {returncode}"
    if "Unsupported URL" in stderr:
        return AcquireError(AcquireErrorKind.UNSUPPORTED_URL, detail)
    return AcquireError(AcquireErrorKind.TOOL_FAILURE, detail)


def _find_output(workdir: Path) -> Optional[Path]:
    files = [
        entry
        for entry in workdir.iterdir()
        if entry.is_file() and not entry.name.endswith(_PARTIAL_SUFFIXES)
    ]
    if not files:
        return None
    return max(files, key=lambda entry: entry.stat().st_size)


def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()


class YtDlpAcquirer:
    """AcquirerPort implementation with a bounded process pool."""

    def __init__(self, config: MediaConfig) -> None:
        self._config = config
        self._pool = asyncio.Semaphore(max(1, config.max_concurrent))

    @contextlib.asynccontextmanager
    async def acquire(self, url: str, timeout: float) -> AsyncIterator[MediaAsset]:
        """Download ``url`` and yield the asset; storage is removed on exit."""

        workdir = Path(tempfile.mkdtemp(prefix="subrelay-"))
        try:
            async with self._pool:
                asset = await self._download(url, workdir, timeout)
            yield asset
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

    async def _download(self, url: str, workdir: Path, timeout: float) -> MediaAsset:
        args = make_ytdlp_args(workdir, url)
        LOGGER.info("Running yt-dlp for %s", url)
        LOGGER.debug("yt-dlp arguments: %s", args)

        try:
            proc = await asyncio.create_subprocess_exec(
                self._config.ytdlp_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise AcquireError(
                AcquireErrorKind.TOOL_FAILURE, f"{self._config.ytdlp_path} not found"
            ) from exc
        except OSError as exc:
            raise AcquireError(AcquireErrorKind.TOOL_FAILURE, f"failed to start yt-dlp: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            _kill(proc)
            await proc.wait()
            raise AcquireError(AcquireErrorKind.TIMEOUT, f"yt-dlp exceeded {timeout:.0f}s for {url}") from exc
        except asyncio.CancelledError:
            _kill(proc)
            raise

        for line in stdout.decode("utf-8", errors="replace").splitlines():
            LOGGER.debug("yt-dlp: %s", line)

        if proc.returncode != 0:
            raise classify_failure(proc.returncode or -1, stderr.decode("utf-8", errors="replace"))

        path = _find_output(workdir)
        if path is None:
            raise AcquireError(AcquireErrorKind.TOOL_FAILURE, f"yt-dlp produced no file for {url}")

        size = path.stat().st_size
        if size > self._config.max_upload_bytes:
            raise AcquireError(
                AcquireErrorKind.TOOL_FAILURE,
                f"{path.name} is {size} bytes, above the {self._config.max_upload_bytes} byte upload limit",
            )

        metadata = parse_metadata_from_path(path)
        if metadata is None:
            LOGGER.warning("Could not read dimensions from %s", path.name)
            return MediaAsset(path=path, size_bytes=size, title=path.stem)

        title, width, height, duration = metadata
        LOGGER.info("Got a video: %s (%sx%s, %s bytes)", path.name, width, height, size)
        return MediaAsset(
            path=path,
            size_bytes=size,
            duration_seconds=duration,
            width=width,
            height=height,
            title=title,
        )
