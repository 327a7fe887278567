"""
Shared fixtures.

The staging directory is redirected to a temp dir before ``main`` is
imported, because the module builds its artifact store at import time.
"""

import os
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

os.environ["DOWNLOADS_DIR"] = tempfile.mkdtemp(prefix="tubefetch-test-")
os.environ.setdefault("METADATA_MAX_RETRIES", "0")

import main  # noqa: E402

FAKE_TOOL_HEADER = """#!/bin/sh
out=""
while [ "$#" -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift ;;
  esac
  shift
done
target=$(printf '%s' "$out" | sed 's/%(ext)s/mp4/')
"""


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def sample_video_url() -> str:
    return "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture
def sample_video_ref(sample_video_url: str) -> main.VideoRef:
    return main.VideoRef(raw_url=sample_video_url, video_id="dQw4w9WgXcQ")


@pytest.fixture
def sample_formats() -> list[dict]:
    return [
        {"format_id": "18", "ext": "mp4", "width": 640, "height": 360, "vcodec": "avc1", "acodec": "mp4a"},
        {"format_id": "140", "ext": "m4a", "vcodec": "none", "acodec": "mp4a"},
        {"format_id": "136", "ext": "mp4", "width": 1280, "height": 720, "fps": 30, "vcodec": "avc1", "acodec": "none", "filesize": 1000},
        {"format_id": "247", "ext": "webm", "width": 1280, "height": 720, "fps": 30, "vcodec": "vp9", "acodec": "none"},
        {"format_id": "137", "ext": "mp4", "width": 1920, "height": 1080, "fps": 30, "vcodec": "avc1", "acodec": "none", "filesize_approx": 5000},
        {"format_id": "248", "ext": "webm", "width": 1920, "height": 1080, "fps": 30, "vcodec": "vp9", "acodec": "none"},
        {"format_id": "22", "ext": "mp4", "width": 1280, "height": 720, "vcodec": "avc1", "acodec": "mp4a"},
    ]


@pytest.fixture
def sample_video_info(sample_formats: list[dict]) -> dict:
    return {
        "id": "dQw4w9WgXcQ",
        "title": "Sample Video",
        "channel": "Sample Channel",
        "uploader": "Sample Uploader",
        "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/maxresdefault.jpg",
        "duration": 212,
        "duration_string": "3:32",
        "view_count": 1234567,
        "formats": sample_formats,
    }


@pytest.fixture
def retry_config() -> main.RetryConfig:
    return main.RetryConfig(
        max_retries=3,
        backoff_base=0.01,
        backoff_multiplier=2.0,
        jitter=False,
    )


@pytest.fixture
def downloader_config(temp_dir: Path) -> main.DownloaderConfig:
    return main.DownloaderConfig(
        downloads_dir=temp_dir / "downloads",
        resolver_backends=[],
        resolver_timeout=2.0,
        download_timeout=10.0,
        artifact_grace_seconds=0.0,
    )


@pytest.fixture
def store(downloader_config: main.DownloaderConfig) -> main.ArtifactStore:
    return main.ArtifactStore(downloader_config.downloads_dir)


@pytest.fixture
def fake_ytdlp(temp_dir: Path) -> Callable[[str], list[str]]:
    """Write a shell script that impersonates yt-dlp; returns its command prefix."""

    def make(body: str, name: str = "fake-yt-dlp.sh") -> list[str]:
        script = temp_dir / name
        script.write_text(FAKE_TOOL_HEADER + body)
        return ["/bin/sh", str(script)]

    return make


@pytest.fixture
def clean_staging() -> Iterator[Path]:
    """Empty the app's staging directory around an API test."""

    def wipe() -> None:
        for path in main.store.root.iterdir():
            if path.is_file():
                path.unlink()

    wipe()
    yield main.store.root
    wipe()
