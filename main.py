import asyncio
import contextlib
import contextvars
import logging
import os
import random
import re
import shlex
import sys
import time
import uuid
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar, cast
from urllib.parse import urlparse

import httpx
import uvicorn
import yt_dlp
from fastapi import FastAPI, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.datastructures import Headers, MutableHeaders
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

# ----------------------------
# Logging setup
# ----------------------------

_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")


class RequestIdFilter(logging.Filter):
    """Attach request_id to all log records for correlation."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = _request_id_ctx.get()
        return True


_log_handler = logging.StreamHandler(sys.stdout)
_log_handler.addFilter(RequestIdFilter())

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s",
    handlers=[_log_handler],
)
logger = logging.getLogger("tubefetch")


# ----------------------------
# Settings
# ----------------------------

DEFAULT_DOWNLOADS_DIR = "./downloads"
DEFAULT_YTDLP_COMMAND = "yt-dlp"
DEFAULT_OEMBED_ENDPOINT = "https://www.youtube.com/oembed"
DEFAULT_THUMBNAIL_URL_TEMPLATE = "https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"
DEFAULT_RESOLVER_BACKENDS = (
    "https://api.cobalt.tools/",
    "https://co.wuk.sh/api/json",
)
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
DEFAULT_REFERER = "https://www.youtube.com/"

# Cookie configuration environment variables
DEFAULT_COOKIES_FILE_ENV = "COOKIES_FILE"

# Metadata retry configuration environment variables
DEFAULT_MAX_RETRIES_ENV = "METADATA_MAX_RETRIES"
DEFAULT_RETRY_BACKOFF_ENV = "METADATA_RETRY_BACKOFF"
DEFAULT_RETRY_BACKOFF_MULTIPLIER_ENV = "METADATA_RETRY_BACKOFF_MULTIPLIER"
DEFAULT_RETRY_JITTER_ENV = "METADATA_RETRY_JITTER"


def _env_truthy(value: str | None, *, default: bool = False) -> bool:
    """Parse common truthy/falsey strings from environment variables."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _env_int(value: str | None, *, default: int) -> int:
    """Parse integer from environment variable with default."""
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(value: str | None, *, default: float) -> float:
    """Parse float from environment variable with default."""
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_list(value: str | None, *, default: Sequence[str]) -> list[str]:
    """Parse a comma-separated list, keeping order and dropping blanks."""
    if value is None:
        return list(default)
    items = [item.strip() for item in value.split(",")]
    return [item for item in items if item]


E = TypeVar("E", bound=Enum)


def _env_enum(value: str | None, enum_cls: type[E], *, default: E) -> E:
    if value is None:
        return default
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        logger.warning(
            "Ignoring invalid %s value=%r, using default=%s",
            enum_cls.__name__,
            value,
            default.value,
        )
        return default


class ExecutionMode(str, Enum):
    local = "local"
    remote = "remote"


class MetadataStrategy(str, Enum):
    full = "full"
    light = "light"


class BackendDescriptor(BaseModel):
    """One third-party resolver endpoint; lower priority is tried first."""

    model_config = ConfigDict(frozen=True)

    name: str
    endpoint: str
    priority: int


class DownloaderConfig(BaseModel):
    """
    Service configuration loaded from environment variables.

    - execution_mode: run yt-dlp locally or delegate to the resolver backends
    - metadata_strategy: yt-dlp extraction ("full") or oEmbed only ("light")
    - resolver_backends: ordered resolver endpoints for the remote model
    - artifact_*: staging retention policy enforced by the janitor
    """

    downloads_dir: Path = Field(default=Path(DEFAULT_DOWNLOADS_DIR))
    ytdlp_command: list[str] = Field(default_factory=lambda: [DEFAULT_YTDLP_COMMAND])
    execution_mode: ExecutionMode = Field(default=ExecutionMode.local)
    metadata_strategy: MetadataStrategy = Field(default=MetadataStrategy.full)
    oembed_endpoint: str = Field(default=DEFAULT_OEMBED_ENDPOINT)
    thumbnail_url_template: str = Field(default=DEFAULT_THUMBNAIL_URL_TEMPLATE)
    resolver_backends: list[str] = Field(default_factory=lambda: list(DEFAULT_RESOLVER_BACKENDS))
    resolver_api_key: str | None = Field(default=None)
    resolver_timeout: float = Field(default=15.0, gt=0)
    stage_remote_media: bool = Field(default=True)
    download_timeout: float = Field(default=1800.0, gt=0)
    max_concurrent_jobs: int = Field(default=4, ge=1)
    artifact_retention_seconds: float = Field(default=3600.0, ge=0)
    janitor_interval_seconds: float = Field(default=1800.0, gt=0)
    artifact_grace_seconds: float = Field(default=5.0, ge=0)
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    referer: str = Field(default=DEFAULT_REFERER)
    no_check_certificates: bool = Field(default=False)
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "DownloaderConfig":
        ytdlp_command = shlex.split(os.getenv("YTDLP_COMMAND", DEFAULT_YTDLP_COMMAND))
        cfg = cls(
            downloads_dir=Path(os.getenv("DOWNLOADS_DIR", DEFAULT_DOWNLOADS_DIR)),
            ytdlp_command=ytdlp_command or [DEFAULT_YTDLP_COMMAND],
            execution_mode=_env_enum(
                os.getenv("EXECUTION_MODE"), ExecutionMode, default=ExecutionMode.local
            ),
            metadata_strategy=_env_enum(
                os.getenv("METADATA_STRATEGY"), MetadataStrategy, default=MetadataStrategy.full
            ),
            oembed_endpoint=os.getenv("OEMBED_ENDPOINT", DEFAULT_OEMBED_ENDPOINT).strip(),
            thumbnail_url_template=os.getenv(
                "THUMBNAIL_URL_TEMPLATE", DEFAULT_THUMBNAIL_URL_TEMPLATE
            ).strip(),
            resolver_backends=_env_list(
                os.getenv("RESOLVER_BACKENDS"), default=DEFAULT_RESOLVER_BACKENDS
            ),
            resolver_api_key=os.getenv("RESOLVER_API_KEY") or None,
            resolver_timeout=max(_env_float(os.getenv("RESOLVER_TIMEOUT"), default=15.0), 0.1),
            stage_remote_media=_env_truthy(os.getenv("STAGE_REMOTE_MEDIA"), default=True),
            download_timeout=max(_env_float(os.getenv("DOWNLOAD_TIMEOUT"), default=1800.0), 1.0),
            max_concurrent_jobs=max(_env_int(os.getenv("MAX_CONCURRENT_JOBS"), default=4), 1),
            artifact_retention_seconds=max(
                _env_float(os.getenv("ARTIFACT_RETENTION_SECONDS"), default=3600.0), 0.0
            ),
            janitor_interval_seconds=max(
                _env_float(os.getenv("JANITOR_INTERVAL_SECONDS"), default=1800.0), 1.0
            ),
            artifact_grace_seconds=max(
                _env_float(os.getenv("ARTIFACT_GRACE_SECONDS"), default=5.0), 0.0
            ),
            user_agent=os.getenv("DOWNLOAD_USER_AGENT", DEFAULT_USER_AGENT),
            referer=os.getenv("DOWNLOAD_REFERER", DEFAULT_REFERER),
            no_check_certificates=_env_truthy(os.getenv("NO_CHECK_CERTIFICATES"), default=False),
            cors_allow_origins=_env_list(os.getenv("CORS_ALLOW_ORIGINS"), default=["*"]),
        )
        logger.info(
            "Downloader config loaded execution_mode=%s metadata_strategy=%s downloads_dir=%s "
            "ytdlp_command=%s backends=%d retention_s=%.0f janitor_interval_s=%.0f",
            cfg.execution_mode.value,
            cfg.metadata_strategy.value,
            cfg.downloads_dir,
            cfg.ytdlp_command,
            len(cfg.resolver_backends),
            cfg.artifact_retention_seconds,
            cfg.janitor_interval_seconds,
        )
        return cfg

    def backends(self) -> list[BackendDescriptor]:
        return [
            BackendDescriptor(
                name=urlparse(endpoint).netloc or endpoint,
                endpoint=endpoint,
                priority=index,
            )
            for index, endpoint in enumerate(self.resolver_backends)
        ]


class CookieConfig(BaseModel):
    """
    Cookie configuration loaded from environment variables.

    - cookies_file: path to a cookies.txt file handed to yt-dlp (optional)
    """

    cookies_file: str | None = Field(default=None)

    @classmethod
    def from_env(cls) -> "CookieConfig":
        cookies_file = os.getenv(DEFAULT_COOKIES_FILE_ENV)
        if cookies_file:
            cookies_file = cookies_file.strip()
            if not Path(cookies_file).is_file():
                logger.warning("COOKIES_FILE points to non-existent file=%s", cookies_file)
                cookies_file = None
            else:
                logger.info("Cookie config loaded cookies_file=%s", cookies_file)
        return cls(cookies_file=cookies_file or None)


config = DownloaderConfig.from_env()
cookie_config = CookieConfig.from_env()


# ----------------------------
# Errors
# ----------------------------


class DownloaderError(Exception):
    """
    A failure that crosses the HTTP boundary as ``{"error": message}``.

    ``message`` is safe to show to clients. ``detail`` carries raw upstream or
    tool output and is only ever logged.
    """

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


class InvalidUrl(DownloaderError):
    status_code = 400
    default_message = "Invalid YouTube URL"


class MetadataUnavailable(DownloaderError):
    status_code = 500
    default_message = "Could not fetch video information"


class UpstreamBlocked(MetadataUnavailable):
    status_code = 403
    default_message = "YouTube blocked the request (bot detection). Please try again later."


class AllBackendsExhausted(DownloaderError):
    status_code = 500
    default_message = "All download servers are busy. Please try again later."


class ToolNotInstalled(DownloaderError):
    status_code = 500
    default_message = "yt-dlp could not be started. Check that it is installed on the server."


class DownloadFailed(DownloaderError):
    status_code = 500
    default_message = "Video download failed"


class ArtifactMissing(DownloaderError):
    status_code = 404
    default_message = "File not found"


class JobStateError(RuntimeError):
    pass


# ----------------------------
# Utilities
# ----------------------------

_UNSAFE_TITLE_CHARS_RE = re.compile(r"[^A-Za-z0-9 _-]")


def sanitize_display_title(title: str | None, max_length: int = 100, fallback: str = "video") -> str:
    """Reduce a client-supplied title to an allow-listed filename stem."""
    if not title:
        return fallback
    value = _UNSAFE_TITLE_CHARS_RE.sub("", " ".join(title.split()))
    value = value[:max_length].strip()
    return value or fallback


def ensure_dir(path: str | Path) -> Path:
    target = Path(path)
    target.mkdir(parents=True, exist_ok=True)
    return target


# ----------------------------
# Domain models
# ----------------------------


class QualityTier(str, Enum):
    p1080 = "1080"
    p1440 = "1440"
    p2160 = "2160"

    @property
    def height(self) -> int:
        return int(self.value)

    @classmethod
    def parse(cls, value: str | int | None) -> "QualityTier":
        """Map a client quality value to a tier; unknown values fall back to 1080."""
        if value is None or str(value).strip() == "":
            return cls.p1080
        try:
            return cls(str(value).strip().removesuffix("p"))
        except ValueError:
            logger.warning("Unknown quality=%r, falling back to %s", value, cls.p1080.value)
            return cls.p1080


class VideoRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    raw_url: str
    video_id: str

    @property
    def canonical_url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"


class FormatPreference(BaseModel):
    """Ordered yt-dlp format selectors, each looser than the one before."""

    model_config = ConfigDict(frozen=True)

    tier: QualityTier
    entries: tuple[str, ...]

    @property
    def expression(self) -> str:
        return "/".join(self.entries)


class StreamFormat(BaseModel):
    format_id: str | None = None
    ext: str | None = None
    resolution: str
    height: int
    fps: float | None = None
    filesize: int | None = None
    vcodec: str | None = None
    acodec: str | None = None
    has_audio: bool = False


class VideoMetadata(BaseModel):
    title: str
    channel: str | None = None
    thumbnail: str | None = None
    duration: float | None = None
    duration_string: str | None = None
    view_count: int | None = None
    formats: list[StreamFormat] = Field(default_factory=list)


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class DownloadJob(BaseModel):
    """A single download request. Moves pending -> running -> succeeded|failed once."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    video: VideoRef
    quality: QualityTier
    status: JobStatus = JobStatus.pending
    artifact_path: str | None = None
    media_url: str | None = None
    backend_used: str | None = None
    progress: float = 0.0
    error_detail: str | None = None

    def _transition(self, expected: JobStatus | tuple[JobStatus, ...], target: JobStatus) -> None:
        allowed = expected if isinstance(expected, tuple) else (expected,)
        if self.status not in allowed:
            raise JobStateError(
                f"Job {self.id} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def mark_running(self) -> None:
        self._transition(JobStatus.pending, JobStatus.running)

    def mark_succeeded(
        self,
        *,
        artifact_path: str | None = None,
        media_url: str | None = None,
        backend_used: str | None = None,
    ) -> None:
        self._transition(JobStatus.running, JobStatus.succeeded)
        self.artifact_path = artifact_path
        self.media_url = media_url
        self.backend_used = backend_used
        self.progress = 100.0

    def mark_failed(self, detail: str) -> None:
        # a job still queued for a slot can fail (cancelled) without having run
        self._transition((JobStatus.pending, JobStatus.running), JobStatus.failed)
        self.error_detail = detail


class InfoRequest(BaseModel):
    url: str = ""


class DownloadRequest(BaseModel):
    url: str = ""
    quality: str | int | None = Field(
        default="1080",
        description="Target resolution ceiling: 1080, 1440 or 2160 (unknown values use 1080)",
    )


# ----------------------------
# URL classification
# ----------------------------

YOUTUBE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")

_ID_GROUP = r"(?P<id>[A-Za-z0-9_-]{11})(?=$|[?&#/])"
_URL_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "watch",
        re.compile(
            r"^(?:https?://)?(?:www\.|m\.|music\.)?youtube\.com/watch\?(?:[^#]*&)?v=" + _ID_GROUP,
            re.IGNORECASE,
        ),
    ),
    ("short", re.compile(r"^(?:https?://)?(?:www\.)?youtu\.be/" + _ID_GROUP, re.IGNORECASE)),
    (
        "shorts",
        re.compile(
            r"^(?:https?://)?(?:www\.|m\.)?youtube\.com/shorts/" + _ID_GROUP, re.IGNORECASE
        ),
    ),
    (
        "embed",
        re.compile(
            r"^(?:https?://)?(?:www\.)?youtube(?:-nocookie)?\.com/embed/" + _ID_GROUP,
            re.IGNORECASE,
        ),
    ),
)


def classify_url(raw_url: str | None) -> VideoRef:
    """
    Extract the canonical 11-character video id from a YouTube link.

    Accepts watch, youtu.be, shorts and embed links with or without scheme
    and ``www``. Patterns are tried in that order; the first match wins.
    """
    candidate = (raw_url or "").strip()
    if not candidate:
        raise InvalidUrl("URL is required")

    for shape, pattern in _URL_PATTERNS:
        match = pattern.match(candidate)
        if not match:
            continue
        video_id = match.group("id")
        if not YOUTUBE_ID_RE.match(video_id):
            break
        logger.debug("Classified url shape=%s video_id=%s", shape, video_id)
        return VideoRef(raw_url=candidate, video_id=video_id)

    logger.info("Rejected url=%r", candidate[:200])
    raise InvalidUrl()


# ----------------------------
# Format selection
# ----------------------------


def build_format_preference(tier: QualityTier) -> FormatPreference:
    height = tier.height
    return FormatPreference(
        tier=tier,
        entries=(
            f"bestvideo[height<={height}][ext=mp4]+bestaudio[ext=m4a]",
            f"bestvideo[height<={height}]+bestaudio",
            f"best[height<={height}]",
            "best",
        ),
    )


# ----------------------------
# Retry utilities
# ----------------------------

_BOT_DETECTION_MARKERS = (
    "sign in to confirm",
    "confirm you're not a bot",
    "confirm you’re not a bot",
    "try again later",
)


def is_bot_detection(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _BOT_DETECTION_MARKERS)


class RetryConfig(BaseModel):
    """Configuration for retrying transient metadata extraction failures."""

    max_retries: int = Field(
        default_factory=lambda: _env_int(os.getenv(DEFAULT_MAX_RETRIES_ENV), default=2),
        ge=0,
        description="Maximum number of retry attempts",
    )
    backoff_base: float = Field(
        default_factory=lambda: _env_float(os.getenv(DEFAULT_RETRY_BACKOFF_ENV), default=1.0),
        ge=0,
        description="Base backoff delay in seconds",
    )
    backoff_multiplier: float = Field(
        default_factory=lambda: _env_float(
            os.getenv(DEFAULT_RETRY_BACKOFF_MULTIPLIER_ENV), default=2.0
        ),
        ge=1.0,
        description="Exponential backoff multiplier",
    )
    jitter: bool = Field(
        default_factory=lambda: _env_truthy(os.getenv(DEFAULT_RETRY_JITTER_ENV), default=True),
        description="Add random jitter to backoff",
    )
    retryable_http_codes: list[int] = Field(
        default_factory=lambda: [429, 500, 502, 503, 504],
        description="HTTP status codes that trigger retry",
    )

    @classmethod
    def from_env(cls) -> "RetryConfig":
        cfg = cls()
        logger.info(
            "Retry config loaded from env max_retries=%s backoff_base=%s backoff_multiplier=%s jitter=%s",
            cfg.max_retries,
            cfg.backoff_base,
            cfg.backoff_multiplier,
            cfg.jitter,
        )
        return cfg


default_retry_config = RetryConfig.from_env()


T = TypeVar("T")


def is_retryable_error(error: Exception, retry_config: RetryConfig) -> bool:
    """Transient network/server failures are retryable; bot detection never is."""
    error_str = str(error).lower()
    if is_bot_detection(error_str):
        return False

    for code in retry_config.retryable_http_codes:
        if f"http error {code}" in error_str or f"httperror: {code}" in error_str:
            return True

    retryable_patterns = [
        "too many requests",
        "rate limit",
        "temporary failure",
        "connection reset",
        "connection refused",
        "timed out",
        "timeout",
        "server error",
    ]
    return any(pattern in error_str for pattern in retryable_patterns)


def calculate_backoff(attempt: int, retry_config: RetryConfig) -> float:
    """Exponential backoff delay with optional +/-25% jitter."""
    delay = retry_config.backoff_base * (retry_config.backoff_multiplier**attempt)
    if retry_config.jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0, delay)


def retry_with_backoff(
    func: Callable[..., T],
    retry_config: RetryConfig,
    *args: Any,
    **kwargs: Any,
) -> T:
    """Call ``func`` (blocking), retrying retryable errors with backoff."""
    for attempt in range(retry_config.max_retries + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if attempt >= retry_config.max_retries or not is_retryable_error(e, retry_config):
                logger.warning(
                    "Giving up attempt=%d/%d error=%s",
                    attempt + 1,
                    retry_config.max_retries + 1,
                    str(e)[:200],
                )
                raise

            backoff = calculate_backoff(attempt, retry_config)
            logger.info(
                "Retryable error, retrying after backoff attempt=%d/%d backoff_seconds=%.1f error=%s",
                attempt + 1,
                retry_config.max_retries + 1,
                backoff,
                str(e)[:200],
            )
            time.sleep(backoff)

    raise RuntimeError("Retry loop exited without a result")


# ----------------------------
# Async execution
# ----------------------------

# Reuse one executor rather than creating a new pool per call.
_EXECUTOR = ThreadPoolExecutor(
    max_workers=_env_int(os.getenv("MAX_WORKERS"), default=4),
    thread_name_prefix="yt-dlp-worker",
)


async def run_in_threadpool(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_EXECUTOR, lambda: func(*args, **kwargs))


# ----------------------------
# Metadata resolution
# ----------------------------


def select_stream_formats(
    formats: Sequence[dict[str, Any]] | None,
    *,
    min_height: int = 720,
    limit: int = 5,
) -> list[StreamFormat]:
    """
    Summarize yt-dlp formats for the preview.

    Keeps video streams of at least ``min_height``, ordered by height
    descending, one per height (first seen wins), capped at ``limit``.
    """
    candidates: list[StreamFormat] = []
    for f in formats or []:
        height = f.get("height")
        if f.get("vcodec") == "none" or not height or height < min_height:
            continue
        width = f.get("width")
        filesize = f.get("filesize") or f.get("filesize_approx")
        acodec = f.get("acodec")
        candidates.append(
            StreamFormat(
                format_id=f.get("format_id"),
                ext=f.get("ext"),
                resolution=f"{width}x{height}" if width else f"{height}p",
                height=int(height),
                fps=f.get("fps"),
                filesize=int(filesize) if filesize else None,
                vcodec=f.get("vcodec"),
                acodec=acodec,
                has_audio=acodec not in (None, "none"),
            )
        )

    # sort() is stable, so within a height the extractor's order is kept
    candidates.sort(key=lambda s: s.height, reverse=True)

    unique: list[StreamFormat] = []
    seen_heights: set[int] = set()
    for stream in candidates:
        if stream.height in seen_heights:
            continue
        seen_heights.add(stream.height)
        unique.append(stream)
    return unique[:limit]


def build_metadata(info: dict[str, Any] | None, video: VideoRef) -> VideoMetadata:
    if not isinstance(info, dict):
        raise MetadataUnavailable(detail="yt-dlp returned no info dict")
    return VideoMetadata(
        title=info.get("title") or video.video_id,
        channel=info.get("channel") or info.get("uploader"),
        thumbnail=info.get("thumbnail"),
        duration=info.get("duration"),
        duration_string=info.get("duration_string"),
        view_count=info.get("view_count"),
        formats=select_stream_formats(info.get("formats")),
    )


class MetadataResolver:
    """Fetch preview metadata with yt-dlp ("full") or an oEmbed endpoint ("light")."""

    def __init__(
        self,
        cfg: DownloaderConfig,
        *,
        cookie_file: str | None = None,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = cfg
        self.cookie_file = cookie_file
        self.retry_config = retry_config or default_retry_config
        self._transport = transport

    async def resolve(self, video: VideoRef) -> VideoMetadata:
        start = time.monotonic()
        if self.config.metadata_strategy == MetadataStrategy.light:
            metadata = await self._resolve_light(video)
        else:
            metadata = await self._resolve_full(video)
        logger.info(
            "Metadata resolved video_id=%s strategy=%s formats=%d elapsed_ms=%d",
            video.video_id,
            self.config.metadata_strategy.value,
            len(metadata.formats),
            int((time.monotonic() - start) * 1000),
        )
        return metadata

    def _ydl_options(self) -> dict[str, Any]:
        opts: dict[str, Any] = {
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
            "noplaylist": True,
            "socket_timeout": self.config.resolver_timeout,
            "http_headers": {
                "User-Agent": self.config.user_agent,
                "Referer": self.config.referer,
            },
        }
        if self.config.no_check_certificates:
            opts["nocheckcertificate"] = True
        if self.cookie_file:
            opts["cookiefile"] = self.cookie_file
        return opts

    def extract_info(self, url: str) -> dict[str, Any]:
        logger.debug("yt-dlp extract_info url=%s", url)
        with yt_dlp.YoutubeDL(self._ydl_options()) as ydl:
            info = ydl.extract_info(url, download=False)
            return cast("dict[str, Any]", ydl.sanitize_info(info))

    async def _resolve_full(self, video: VideoRef) -> VideoMetadata:
        try:
            info = await run_in_threadpool(
                retry_with_backoff,
                self.extract_info,
                self.retry_config,
                video.canonical_url,
            )
        except Exception as exc:
            message = str(exc)
            if is_bot_detection(message):
                logger.warning(
                    "Upstream bot detection video_id=%s error=%s", video.video_id, message[:300]
                )
                raise UpstreamBlocked(detail=message) from exc
            logger.error(
                "Metadata extraction failed video_id=%s error=%s", video.video_id, message[:300]
            )
            raise MetadataUnavailable(detail=message) from exc
        return build_metadata(info, video)

    async def _resolve_light(self, video: VideoRef) -> VideoMetadata:
        # canonical form of the user's link; oEmbed resolves it for every accepted shape
        params = {"url": video.canonical_url, "format": "json"}
        try:
            async with httpx.AsyncClient(
                timeout=self.config.resolver_timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": self.config.user_agent},
            ) as client:
                response = await client.get(self.config.oembed_endpoint, params=params)
        except httpx.HTTPError as exc:
            logger.error("oEmbed request failed video_id=%s error=%s", video.video_id, exc)
            raise MetadataUnavailable(detail=str(exc)) from exc

        if response.status_code == 429:
            raise UpstreamBlocked(detail="oEmbed HTTP 429")
        if response.status_code != 200:
            logger.warning(
                "oEmbed returned status=%d video_id=%s", response.status_code, video.video_id
            )
            raise MetadataUnavailable(detail=f"oEmbed HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise MetadataUnavailable(detail="oEmbed returned invalid JSON") from exc
        if not isinstance(data, dict) or data.get("error"):
            raise MetadataUnavailable(detail=f"oEmbed error payload: {str(data)[:200]}")

        return VideoMetadata(
            title=data.get("title") or video.video_id,
            channel=data.get("author_name"),
            thumbnail=self.config.thumbnail_url_template.format(video_id=video.video_id),
        )


metadata_resolver = MetadataResolver(
    config,
    cookie_file=cookie_config.cookies_file,
    retry_config=default_retry_config,
)


# ----------------------------
# Resolver backends
# ----------------------------


class ResolverOutcome(BaseModel):
    """Normalized resolver reply. Only the success variants carry a media URL."""

    model_config = ConfigDict(frozen=True)

    @property
    def media_url(self) -> str | None:
        return None

    @property
    def summary(self) -> str:
        return type(self).__name__


class RedirectMedia(ResolverOutcome):
    url: str

    @property
    def media_url(self) -> str | None:
        return self.url


class StreamMedia(ResolverOutcome):
    url: str

    @property
    def media_url(self) -> str | None:
        return self.url


class PickerMedia(ResolverOutcome):
    urls: tuple[str, ...]

    @property
    def media_url(self) -> str | None:
        return self.urls[0] if self.urls else None


class ResolverFailure(ResolverOutcome):
    message: str

    @property
    def summary(self) -> str:
        return self.message


class ResolvedMedia(BaseModel):
    media_url: str
    backend: BackendDescriptor


def normalize_resolver_response(
    status_code: int,
    payload: Any,
    *,
    location: str | None = None,
) -> ResolverOutcome:
    """Map one resolver HTTP reply onto a single ``ResolverOutcome`` variant."""
    if 300 <= status_code < 400 and location:
        return RedirectMedia(url=location)
    if status_code >= 400:
        return ResolverFailure(message=f"HTTP {status_code}")
    if not isinstance(payload, dict):
        return ResolverFailure(message="unrecognized response body")

    status = payload.get("status")
    url = payload.get("url")

    if status in ("error", "rate-limit"):
        err = payload.get("error") or payload.get("text")
        code = err.get("code", str(err)) if isinstance(err, dict) else err
        return ResolverFailure(message=f"resolver error: {code}")
    if status in ("redirect", "success") and url:
        return RedirectMedia(url=url)
    if status in ("stream", "tunnel") and url:
        return StreamMedia(url=url)
    if status == "picker":
        urls = tuple(
            item["url"]
            for item in payload.get("picker") or []
            if isinstance(item, dict) and item.get("url")
        )
        if urls:
            return PickerMedia(urls=urls)
        return ResolverFailure(message="picker returned no items")
    return ResolverFailure(message=f"unrecognized response status={status!r}")


class BackendFallbackDriver:
    """
    Try resolver backends strictly in priority order until one yields a media URL.

    Every backend call is bounded by ``timeout``. Failures and unrecognized
    replies are logged and skipped; only exhausting the whole list raises
    ``AllBackendsExhausted``.
    """

    def __init__(
        self,
        backends: Sequence[BackendDescriptor],
        *,
        timeout: float,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.backends = sorted(backends, key=lambda b: b.priority)
        self.timeout = timeout
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Api-Key {self.api_key}"
        return headers

    @staticmethod
    def _request_body(video: VideoRef, tier: QualityTier) -> dict[str, Any]:
        return {"url": video.canonical_url, "videoQuality": tier.value, "downloadMode": "auto"}

    async def resolve(self, video: VideoRef, tier: QualityTier) -> ResolvedMedia:
        failures: list[str] = []
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for backend in self.backends:
                start = time.monotonic()
                outcome = await self._attempt(client, backend, video, tier)
                elapsed_ms = int((time.monotonic() - start) * 1000)
                media_url = outcome.media_url
                if media_url:
                    logger.info(
                        "Resolver succeeded backend=%s kind=%s video_id=%s elapsed_ms=%d",
                        backend.name,
                        type(outcome).__name__,
                        video.video_id,
                        elapsed_ms,
                    )
                    return ResolvedMedia(media_url=media_url, backend=backend)
                logger.warning(
                    "Resolver failed backend=%s video_id=%s elapsed_ms=%d reason=%s",
                    backend.name,
                    video.video_id,
                    elapsed_ms,
                    outcome.summary,
                )
                failures.append(f"{backend.name}: {outcome.summary}")

        logger.error(
            "All resolver backends exhausted video_id=%s tried=%d", video.video_id, len(failures)
        )
        raise AllBackendsExhausted(detail="; ".join(failures) or "no backends configured")

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        backend: BackendDescriptor,
        video: VideoRef,
        tier: QualityTier,
    ) -> ResolverOutcome:
        try:
            response = await asyncio.wait_for(
                client.post(
                    backend.endpoint,
                    json=self._request_body(video, tier),
                    headers=self._headers(),
                ),
                timeout=self.timeout,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            return ResolverFailure(message=f"transport error: {type(exc).__name__}: {exc}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        return normalize_resolver_response(
            response.status_code, payload, location=response.headers.get("location")
        )


backend_driver = BackendFallbackDriver(
    config.backends(),
    timeout=config.resolver_timeout,
    api_key=config.resolver_api_key,
)


# ----------------------------
# Artifact staging
# ----------------------------

ARTIFACT_EXTENSION = ".mp4"
_ARTIFACT_NAME_RE = re.compile(r"^[0-9a-f]{32}\.mp4$")


class ArtifactStore:
    """Staging directory for finished downloads, named by opaque job ids."""

    def __init__(self, root: str | Path) -> None:
        self.root = ensure_dir(root).resolve()

    def path_for(self, artifact_id: str) -> Path:
        return self.root / f"{artifact_id}{ARTIFACT_EXTENSION}"

    def output_template(self, artifact_id: str) -> str:
        return str(self.root / f"{artifact_id}.%(ext)s")

    def resolve(self, filename: str) -> Path:
        if not _ARTIFACT_NAME_RE.match(filename):
            logger.info("Rejected artifact name filename=%r", filename[:100])
            raise ArtifactMissing()
        path = self.root / filename
        if not path.is_file():
            logger.info("Artifact not found filename=%s", filename)
            raise ArtifactMissing()
        return path

    def discard(self, path: Path) -> bool:
        """Delete one file. A file that is already gone counts as handled."""
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("Failed to delete artifact path=%s", path)
            return False
        logger.debug("Deleted artifact path=%s", path)
        return True

    def discard_partials(self, artifact_id: str, *, keep: Path | None = None) -> int:
        """Remove every file produced for ``artifact_id`` except ``keep``."""
        removed = 0
        for path in self.root.glob(f"{artifact_id}*"):
            if keep is not None and path == keep:
                continue
            if path.is_file() and self.discard(path):
                removed += 1
        if removed:
            logger.info("Removed leftover files artifact_id=%s count=%d", artifact_id, removed)
        return removed

    async def schedule_discard(self, path: Path, delay: float) -> None:
        """Delete ``path`` after ``delay`` seconds without holding up the caller."""
        if delay <= 0:
            self.discard(path)
            return
        asyncio.get_running_loop().call_later(delay, self.discard, path)
        logger.debug("Scheduled artifact deletion path=%s delay_s=%.1f", path, delay)


class Janitor:
    """Periodically deletes staged files older than the retention threshold."""

    def __init__(
        self,
        store: ArtifactStore,
        *,
        retention_seconds: float,
        interval_seconds: float,
    ) -> None:
        self.store = store
        self.retention_seconds = retention_seconds
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    def sweep(self, now: float | None = None) -> int:
        now = time.time() if now is None else now
        try:
            entries = list(self.store.root.iterdir())
        except FileNotFoundError:
            logger.warning("Staging directory missing root=%s", self.store.root)
            return 0

        removed = 0
        for path in entries:
            try:
                if path.is_dir():
                    continue
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > self.retention_seconds and self.store.discard(path):
                removed += 1

        logger.info("Janitor sweep done scanned=%d removed=%d", len(entries), removed)
        return removed

    async def run(self) -> None:
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except Exception:
                logger.exception("Janitor sweep failed root=%s", self.store.root)
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="artifact-janitor")
            logger.info(
                "Janitor started interval_s=%.0f retention_s=%.0f",
                self.interval_seconds,
                self.retention_seconds,
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None


store = ArtifactStore(config.downloads_dir)
janitor = Janitor(
    store,
    retention_seconds=config.artifact_retention_seconds,
    interval_seconds=config.janitor_interval_seconds,
)


# ----------------------------
# Download jobs
# ----------------------------

OUTPUT_TAIL_LINES = 40
_STREAM_LIMIT = 1024 * 1024
_MEDIA_CHUNK_SIZE = 64 * 1024
_PROGRESS_RE = re.compile(r"^\[download\]\s+(\d{1,3}(?:\.\d+)?)%")

ProgressCallback = Callable[[DownloadJob, float], None]


def parse_progress(line: str) -> float | None:
    """Read the percentage from a ``[download]  42.0% of ...`` line."""
    match = _PROGRESS_RE.match(line.strip())
    if not match:
        return None
    return min(float(match.group(1)), 100.0)


class DownloadCommand(BaseModel):
    """Argument list for one yt-dlp download; never joined into a shell string."""

    executable: list[str]
    url: str
    format_expression: str
    output_template: str
    container: str = "mp4"
    ffmpeg_audio_args: str = "ffmpeg:-c:a aac -b:a 192k"
    user_agent: str
    referer: str
    cookie_file: str | None = None
    no_check_certificates: bool = False

    def argv(self) -> list[str]:
        args = [
            *self.executable,
            "-f",
            self.format_expression,
            "--merge-output-format",
            self.container,
            "--remux-video",
            self.container,
            "--audio-quality",
            "0",
            "--postprocessor-args",
            self.ffmpeg_audio_args,
            "--embed-thumbnail",
            "--add-metadata",
            "--no-playlist",
            "--newline",
            "--user-agent",
            self.user_agent,
            "--referer",
            self.referer,
            "-o",
            self.output_template,
        ]
        if self.cookie_file:
            args.extend(["--cookies", self.cookie_file])
        if self.no_check_certificates:
            args.append("--no-check-certificates")
        args.extend(["--", self.url])
        return args


def build_download_command(
    video: VideoRef,
    preference: FormatPreference,
    output_template: str,
    cfg: DownloaderConfig,
    cookie_file: str | None = None,
) -> DownloadCommand:
    return DownloadCommand(
        executable=list(cfg.ytdlp_command),
        url=video.canonical_url,
        format_expression=preference.expression,
        output_template=output_template,
        user_agent=cfg.user_agent,
        referer=cfg.referer,
        cookie_file=cookie_file,
        no_check_certificates=cfg.no_check_certificates,
    )


class DownloadJobRunner:
    """
    Execute a ``DownloadJob`` with the configured execution model.

    Local: spawn yt-dlp, follow its output for progress, and confirm the
    artifact exists. Remote: ask the resolver backends for a media URL and
    either hand it back or stage it into the artifact store. Any failure
    removes whatever files the job produced.
    """

    def __init__(
        self,
        cfg: DownloaderConfig,
        artifact_store: ArtifactStore,
        driver: BackendFallbackDriver,
        *,
        cookie_file: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.config = cfg
        self.store = artifact_store
        self.driver = driver
        self.cookie_file = cookie_file
        self._transport = transport
        self._on_progress = on_progress
        self._slots = asyncio.Semaphore(cfg.max_concurrent_jobs)

    async def run(self, job: DownloadJob) -> DownloadJob:
        if job.status != JobStatus.pending:
            raise JobStateError(f"Job {job.id} already {job.status.value}, it cannot run again")
        start = time.monotonic()
        try:
            async with self._slots:
                job.mark_running()
                logger.info(
                    "Job start job_id=%s video_id=%s quality=%s mode=%s queued_ms=%d",
                    job.id,
                    job.video.video_id,
                    job.quality.value,
                    self.config.execution_mode.value,
                    int((time.monotonic() - start) * 1000),
                )
                if self.config.execution_mode == ExecutionMode.remote:
                    await self._run_remote(job)
                else:
                    await self._run_local(job)
        except asyncio.CancelledError:
            job.mark_failed("cancelled")
            self.store.discard_partials(job.id)
            logger.info("Job cancelled job_id=%s", job.id)
            raise
        except DownloaderError as exc:
            job.mark_failed(exc.detail or exc.message)
            self.store.discard_partials(job.id)
            logger.warning(
                "Job failed job_id=%s kind=%s detail=%s",
                job.id,
                type(exc).__name__,
                (exc.detail or exc.message)[:300],
            )
            raise
        except Exception as exc:
            job.mark_failed(str(exc))
            self.store.discard_partials(job.id)
            logger.exception("Job crashed job_id=%s", job.id)
            raise DownloadFailed(detail=str(exc)) from exc

        logger.info(
            "Job succeeded job_id=%s artifact=%s backend=%s elapsed_ms=%d",
            job.id,
            job.artifact_path,
            job.backend_used,
            int((time.monotonic() - start) * 1000),
        )
        return job

    def _report_progress(self, job: DownloadJob, percent: float) -> None:
        job.progress = percent
        logger.debug("Job progress job_id=%s percent=%.1f", job.id, percent)
        if self._on_progress is not None:
            self._on_progress(job, percent)

    async def _run_local(self, job: DownloadJob) -> None:
        command = build_download_command(
            job.video,
            build_format_preference(job.quality),
            self.store.output_template(job.id),
            self.config,
            cookie_file=self.cookie_file,
        )
        argv = command.argv()
        artifact = self.store.path_for(job.id)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            logger.error("Could not start download tool argv0=%s error=%s", argv[0], exc)
            raise ToolNotInstalled(detail=f"{argv[0]}: {exc}") from exc

        tail: deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        try:
            returncode = await asyncio.wait_for(
                self._follow_output(proc, job, tail), timeout=self.config.download_timeout
            )
        except asyncio.TimeoutError as exc:
            raise DownloadFailed(
                "Video download timed out",
                detail=f"no exit after {self.config.download_timeout:.0f}s",
            ) from exc
        finally:
            if proc.returncode is None:
                await self._kill(proc)

        if returncode != 0 or not artifact.is_file():
            logger.error(
                "Download tool failed job_id=%s returncode=%s artifact_present=%s output_tail=%s",
                job.id,
                returncode,
                artifact.is_file(),
                " | ".join(tail),
            )
            raise DownloadFailed(
                detail=f"yt-dlp exited with {returncode}, artifact_present={artifact.is_file()}"
            )

        self.store.discard_partials(job.id, keep=artifact)
        job.mark_succeeded(artifact_path=str(artifact))

    async def _follow_output(
        self,
        proc: asyncio.subprocess.Process,
        job: DownloadJob,
        tail: deque[str],
    ) -> int:
        assert proc.stdout is not None
        async for raw in proc.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            percent = parse_progress(line)
            if percent is not None:
                self._report_progress(job, percent)
        return await proc.wait()

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        logger.info("Killed download tool pid=%s", proc.pid)

    async def _run_remote(self, job: DownloadJob) -> None:
        resolved = await self.driver.resolve(job.video, job.quality)
        if not self.config.stage_remote_media:
            job.mark_succeeded(media_url=resolved.media_url, backend_used=resolved.backend.name)
            return

        artifact = self.store.path_for(job.id)
        try:
            await asyncio.wait_for(
                self._stage_media(resolved.media_url, artifact, job),
                timeout=self.config.download_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise DownloadFailed("Video download timed out", detail="media staging timed out") from exc
        job.mark_succeeded(
            artifact_path=str(artifact),
            media_url=resolved.media_url,
            backend_used=resolved.backend.name,
        )

    async def _stage_media(self, media_url: str, artifact: Path, job: DownloadJob) -> None:
        partial = artifact.with_name(artifact.name + ".part")
        try:
            async with httpx.AsyncClient(
                timeout=self.config.resolver_timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": self.config.user_agent},
            ) as client:
                async with client.stream("GET", media_url) as response:
                    if response.status_code not in (200, 206):
                        raise DownloadFailed(detail=f"media HTTP {response.status_code}")
                    total = int(response.headers.get("content-length") or 0)
                    received = 0
                    fh = await run_in_threadpool(open, partial, "wb")
                    try:
                        async for chunk in response.aiter_bytes(_MEDIA_CHUNK_SIZE):
                            await run_in_threadpool(fh.write, chunk)
                            received += len(chunk)
                            if total:
                                self._report_progress(job, min(received * 100.0 / total, 100.0))
                    finally:
                        await run_in_threadpool(fh.close)
        except httpx.HTTPError as exc:
            raise DownloadFailed(detail=f"media fetch failed: {exc}") from exc

        if received == 0:
            raise DownloadFailed(detail="media response was empty")
        await run_in_threadpool(partial.replace, artifact)


job_runner = DownloadJobRunner(
    config,
    store,
    backend_driver,
    cookie_file=cookie_config.cookies_file,
)


# ----------------------------
# FastAPI
# ----------------------------

DISCONNECT_POLL_SECONDS = 1.0


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    janitor.start()
    try:
        yield
    finally:
        await janitor.stop()


class RequestLoggingMiddleware:
    """
    Assign a request id, log request start/end and echo the id as X-Request-ID.

    Plain ASGI so endpoints keep the server's own ``receive`` and can notice
    a client disconnect while a download job is running.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get("x-request-id") or str(uuid.uuid4())
        token = _request_id_ctx.set(request_id)
        start = time.monotonic()
        status_code = 500

        async def send_with_request_id(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                MutableHeaders(scope=message)["X-Request-ID"] = request_id
            await send(message)

        method, path = scope.get("method", ""), scope.get("path", "")
        try:
            logger.info("Request start method=%s path=%s", method, path)
            await self.app(scope, receive, send_with_request_id)
        finally:
            logger.info(
                "Request end method=%s path=%s status=%d elapsed_ms=%d",
                method,
                path,
                status_code,
                int((time.monotonic() - start) * 1000),
            )
            _request_id_ctx.reset(token)


app = FastAPI(
    title="tubefetch",
    description="Preview YouTube videos and download them at a chosen quality",
    lifespan=lifespan,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.cors_allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


def _error_response(
    status_code: int, message: str, headers: dict[str, str] | None = None
) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


@app.exception_handler(DownloaderError)
async def downloader_error_handler(request: Request, exc: DownloaderError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        "Request failed path=%s kind=%s status=%d detail=%s",
        request.url.path,
        type(exc).__name__,
        exc.status_code,
        (exc.detail or exc.message)[:300],
    )
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected malformed request path=%s errors=%s", request.url.path, exc.errors())
    return _error_response(400, "Invalid request body")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), headers=exc.headers)


class ArtifactResponse(FileResponse):
    """Serve a staged artifact and schedule its deletion however the transfer ends."""

    def __init__(
        self,
        path: Path,
        *,
        artifact_store: ArtifactStore,
        grace_seconds: float,
        **kwargs: Any,
    ) -> None:
        super().__init__(path=str(path), **kwargs)
        self.artifact_path = path
        self.artifact_store = artifact_store
        self.grace_seconds = grace_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.artifact_store.schedule_discard(self.artifact_path, self.grace_seconds)


async def _run_until_disconnect(request: Request, work: Awaitable[T]) -> T:
    """Await ``work`` but cancel it if the client goes away first."""
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_SECONDS)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info("Client disconnected, cancelling job path=%s", request.url.path)
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                raise DownloadFailed("Client disconnected before the download finished")
    finally:
        if not task.done():
            task.cancel()


@app.get("/api/health", response_class=JSONResponse)
async def api_health():
    return {
        "status": "ok",
        "execution_mode": config.execution_mode.value,
        "metadata_strategy": config.metadata_strategy.value,
    }


@app.post("/api/info", response_class=JSONResponse)
async def api_video_info(request: InfoRequest):
    video = classify_url(request.url)
    logger.info("Info request video_id=%s", video.video_id)
    metadata = await metadata_resolver.resolve(video)
    return metadata.model_dump()


@app.post("/api/download", response_class=JSONResponse)
async def api_download_video(http_request: Request, request: DownloadRequest):
    video = classify_url(request.url)
    quality = QualityTier.parse(request.quality)
    job = DownloadJob(video=video, quality=quality)
    logger.info(
        "Download request job_id=%s video_id=%s quality=%s",
        job.id,
        video.video_id,
        quality.value,
    )

    await _run_until_disconnect(http_request, job_runner.run(job))

    if job.artifact_path:
        filename = Path(job.artifact_path).name
        return {
            "success": True,
            "filename": filename,
            "downloadUrl": f"/api/download/{filename}",
        }
    return {"success": True, "filename": None, "downloadUrl": job.media_url}


@app.get("/api/download/{filename}", response_class=FileResponse)
async def api_fetch_artifact(
    filename: str,
    title: str | None = Query(default=None, description="Video title used for the saved file"),
):
    path = store.resolve(filename)
    download_name = f"{sanitize_display_title(title)}{ARTIFACT_EXTENSION}"
    logger.info("Serving artifact filename=%s download_name=%s", filename, download_name)
    return ArtifactResponse(
        path,
        artifact_store=store,
        grace_seconds=config.artifact_grace_seconds,
        filename=download_name,
        media_type="video/mp4",
    )


def start_api() -> None:
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    logger.info("Starting uvicorn host=%s port=%s", host, port)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    logger.info("Starting tubefetch server...")
    start_api()
