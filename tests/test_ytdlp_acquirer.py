from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from adapters import ytdlp_acquirer
from adapters.ytdlp_acquirer import (
    YtDlpAcquirer,
    classify_failure,
    make_ytdlp_args,
    parse_metadata_from_path,
)
from core.config import MediaConfig
from core.errors import AcquireError, AcquireErrorKind


def _script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-yt-dlp"
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    os.chmod(path, 0o755)
    return str(path)


@pytest.fixture()
def workdir(tmp_path: Path, monkeypatch) -> Path:
    path = tmp_path / "work"

    def fake_mkdtemp(prefix: str = "") -> str:
        path.mkdir()
        return str(path)

    monkeypatch.setattr(ytdlp_acquirer.tempfile, "mkdtemp", fake_mkdtemp)
    return path


def test_parse_metadata_from_path() -> None:
    assert parse_metadata_from_path(Path("My_clip_1280x720_12.5.mp4")) == ("My_clip", 1280, 720, 12.5)
    assert parse_metadata_from_path(Path("clip_640x480_NA.webm")) == ("clip", 640, 480, None)
    assert parse_metadata_from_path(Path("clip.mp4")) is None


def test_make_ytdlp_args_ends_with_url() -> None:
    args = make_ytdlp_args(Path("/tmp/out"), "https://v.redd.it/abc")

    assert args[-1] == "https://v.redd.it/abc"
    assert args[args.index("--paths") + 1] == "/tmp/out"
    assert "--no-playlist" in args


def test_classify_failure() -> None:
    unsupported = classify_failure(1, "WARNING: something\nERROR: Unsupported URL: https://x.test/\n")
    assert unsupported.kind == AcquireErrorKind.UNSUPPORTED_URL
    assert str(unsupported) == "ERROR: Unsupported URL: https://x.test/"

    other = classify_failure(2, "")
    assert other.kind == AcquireErrorKind.TOOL_FAILURE
    assert str(other) == "exit status 2"


def test_acquire_yields_asset_and_cleans_up(tmp_path: Path, workdir: Path) -> None:
    tool = _script(tmp_path, 'printf "video-bytes" > "$2/Clip_640x360_3.mp4"')
    acquirer = YtDlpAcquirer(MediaConfig(ytdlp_path=tool))

    async def scenario() -> None:
        async with acquirer.acquire("https://v.redd.it/abc", timeout=10) as asset:
            assert asset.path.exists()
            assert (asset.width, asset.height, asset.duration_seconds) == (640, 360, 3.0)
            assert asset.size_bytes == len("video-bytes")

    asyncio.run(scenario())
    assert not workdir.exists()


def test_acquire_times_out(tmp_path: Path, workdir: Path) -> None:
    tool = _script(tmp_path, "exec sleep 5")
    acquirer = YtDlpAcquirer(MediaConfig(ytdlp_path=tool))

    async def scenario() -> None:
        async with acquirer.acquire("https://v.redd.it/slow", timeout=0.2):
            pass

    with pytest.raises(AcquireError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.kind == AcquireErrorKind.TIMEOUT
    assert not workdir.exists()


def test_acquire_rejects_oversized_file(tmp_path: Path, workdir: Path) -> None:
    tool = _script(tmp_path, 'printf "0123456789" > "$2/Clip_640x360_3.mp4"')
    acquirer = YtDlpAcquirer(MediaConfig(ytdlp_path=tool, max_upload_bytes=5))

    async def scenario() -> None:
        async with acquirer.acquire("https://v.redd.it/big", timeout=10):
            pass

    with pytest.raises(AcquireError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.kind == AcquireErrorKind.TOOL_FAILURE


def test_acquire_reports_unsupported_url(tmp_path: Path, workdir: Path) -> None:
    tool = _script(tmp_path, 'echo "ERROR: Unsupported URL: $9" >&2; exit 1')
    acquirer = YtDlpAcquirer(MediaConfig(ytdlp_path=tool))

    async def scenario() -> None:
        async with acquirer.acquire("https://example.com/page", timeout=10):
            pass

    with pytest.raises(AcquireError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.kind == AcquireErrorKind.UNSUPPORTED_URL


def test_missing_tool_is_a_tool_failure(tmp_path: Path, workdir: Path) -> None:
    acquirer = YtDlpAcquirer(MediaConfig(ytdlp_path=str(tmp_path / "no-such-binary")))

    async def scenario() -> None:
        async with acquirer.acquire("https://v.redd.it/abc", timeout=10):
            pass

    with pytest.raises(AcquireError) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.kind == AcquireErrorKind.TOOL_FAILURE
    assert not workdir.exists()
