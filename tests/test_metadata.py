"""
Unit tests for metadata extraction (yt-dlp mocked, oEmbed over a mock transport).
"""

from unittest.mock import patch

import httpx
import pytest

from main import (
    DownloaderConfig,
    MetadataResolver,
    MetadataStrategy,
    MetadataUnavailable,
    RetryConfig,
    UpstreamBlocked,
    VideoRef,
    build_metadata,
    select_stream_formats,
)


def _light_resolver(handler) -> MetadataResolver:
    cfg = DownloaderConfig(
        metadata_strategy=MetadataStrategy.light,
        oembed_endpoint="https://oembed.test/oembed",
    )
    return MetadataResolver(cfg, transport=httpx.MockTransport(handler))


class TestSelectStreamFormats:
    """Tests for select_stream_formats."""

    @staticmethod
    def test_filters_sorts_and_dedupes(sample_formats: list[dict]) -> None:
        streams = select_stream_formats(sample_formats)

        assert [s.height for s in streams] == [1080, 720]
        assert [s.format_id for s in streams] == ["137", "136"]
        assert streams[0].resolution == "1920x1080"
        assert streams[0].filesize == 5000
        assert streams[1].filesize == 1000
        assert streams[0].has_audio is False

    @staticmethod
    def test_limit_and_threshold() -> None:
        formats = [
            {"format_id": str(h), "height": h, "vcodec": "avc1", "acodec": "mp4a"}
            for h in (720, 1080, 1440, 2160, 4320, 2880, 480)
        ]

        streams = select_stream_formats(formats, limit=5)

        assert [s.height for s in streams] == [4320, 2880, 2160, 1440, 1080]
        assert streams[0].resolution == "4320p"
        assert streams[0].has_audio is True

    @pytest.mark.parametrize("formats", [None, [], [{"format_id": "140", "vcodec": "none"}]])
    def test_nothing_usable(self, formats) -> None:
        assert select_stream_formats(formats) == []


class TestBuildMetadata:
    """Tests for build_metadata."""

    @staticmethod
    def test_maps_info_dict(sample_video_info: dict, sample_video_ref: VideoRef) -> None:
        metadata = build_metadata(sample_video_info, sample_video_ref)

        assert metadata.title == "Sample Video"
        assert metadata.channel == "Sample Channel"
        assert metadata.thumbnail.endswith("maxresdefault.jpg")
        assert metadata.duration == 212
        assert metadata.duration_string == "3:32"
        assert metadata.view_count == 1234567
        assert len(metadata.formats) == 2

    @staticmethod
    def test_falls_back_to_uploader_and_id(sample_video_ref: VideoRef) -> None:
        metadata = build_metadata({"uploader": "Someone"}, sample_video_ref)

        assert metadata.title == "dQw4w9WgXcQ"
        assert metadata.channel == "Someone"
        assert metadata.formats == []

    @staticmethod
    def test_rejects_missing_info(sample_video_ref: VideoRef) -> None:
        with pytest.raises(MetadataUnavailable):
            build_metadata(None, sample_video_ref)


class TestFullStrategy:
    """Tests for MetadataResolver with yt-dlp extraction."""

    @pytest.mark.asyncio
    async def test_success(
        self, sample_video_info: dict, sample_video_ref: VideoRef, retry_config: RetryConfig
    ) -> None:
        resolver = MetadataResolver(DownloaderConfig(), retry_config=retry_config)

        with patch.object(resolver, "extract_info", return_value=sample_video_info) as mock_extract:
            metadata = await resolver.resolve(sample_video_ref)

        mock_extract.assert_called_once_with("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert metadata.title == "Sample Video"
        assert [f.height for f in metadata.formats] == [1080, 720]

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(
        self, sample_video_info: dict, sample_video_ref: VideoRef, retry_config: RetryConfig
    ) -> None:
        resolver = MetadataResolver(DownloaderConfig(), retry_config=retry_config)

        with patch.object(
            resolver,
            "extract_info",
            side_effect=[Exception("HTTP Error 503: Service Unavailable"), sample_video_info],
        ) as mock_extract:
            metadata = await resolver.resolve(sample_video_ref)

        assert mock_extract.call_count == 2
        assert metadata.title == "Sample Video"

    @pytest.mark.asyncio
    async def test_bot_detection_maps_to_upstream_blocked(
        self, sample_video_ref: VideoRef, retry_config: RetryConfig
    ) -> None:
        resolver = MetadataResolver(DownloaderConfig(), retry_config=retry_config)
        error = Exception("ERROR: [youtube] dQw4w9WgXcQ: Sign in to confirm you're not a bot")

        with patch.object(resolver, "extract_info", side_effect=error) as mock_extract:
            with pytest.raises(UpstreamBlocked) as excinfo:
                await resolver.resolve(sample_video_ref)

        mock_extract.assert_called_once()
        assert excinfo.value.status_code == 403
        assert "not a bot" in (excinfo.value.detail or "")

    @pytest.mark.asyncio
    async def test_other_errors_map_to_metadata_unavailable(
        self, sample_video_ref: VideoRef, retry_config: RetryConfig
    ) -> None:
        resolver = MetadataResolver(DownloaderConfig(), retry_config=retry_config)

        with patch.object(
            resolver, "extract_info", side_effect=Exception("ERROR: Video unavailable")
        ):
            with pytest.raises(MetadataUnavailable) as excinfo:
                await resolver.resolve(sample_video_ref)

        assert not isinstance(excinfo.value, UpstreamBlocked)
        assert excinfo.value.status_code == 500

    @staticmethod
    def test_ydl_options(temp_dir) -> None:
        cookies = temp_dir / "cookies.txt"
        cfg = DownloaderConfig(no_check_certificates=True, user_agent="UA/1.0")
        resolver = MetadataResolver(cfg, cookie_file=str(cookies))

        opts = resolver._ydl_options()

        assert opts["skip_download"] is True
        assert opts["noplaylist"] is True
        assert opts["nocheckcertificate"] is True
        assert opts["cookiefile"] == str(cookies)
        assert opts["http_headers"]["User-Agent"] == "UA/1.0"


class TestLightStrategy:
    """Tests for MetadataResolver with the oEmbed endpoint."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"title": "Never Gonna Give You Up", "author_name": "Rick Astley"}
            )

        resolver = _light_resolver(handler)
        video = VideoRef(raw_url="https://youtu.be/dQw4w9WgXcQ", video_id="dQw4w9WgXcQ")

        metadata = await resolver.resolve(video)

        assert metadata.title == "Never Gonna Give You Up"
        assert metadata.channel == "Rick Astley"
        assert metadata.thumbnail == "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg"
        assert metadata.formats == []
        assert metadata.duration is None
        assert seen[0].url.host == "oembed.test"
        assert seen[0].url.params["url"] == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
        assert seen[0].url.params["format"] == "json"

    @pytest.mark.asyncio
    async def test_rate_limited(self, sample_video_ref: VideoRef) -> None:
        resolver = _light_resolver(lambda request: httpx.Response(429))

        with pytest.raises(UpstreamBlocked):
            await resolver.resolve(sample_video_ref)

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(404, text="Not Found"),
            httpx.Response(401, text="Unauthorized"),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"error": "no such video"}),
            httpx.Response(200, json=["unexpected"]),
        ],
    )
    @pytest.mark.asyncio
    async def test_bad_replies(self, sample_video_ref: VideoRef, response: httpx.Response) -> None:
        resolver = _light_resolver(lambda request: response)

        with pytest.raises(MetadataUnavailable) as excinfo:
            await resolver.resolve(sample_video_ref)

        assert not isinstance(excinfo.value, UpstreamBlocked)

    @pytest.mark.asyncio
    async def test_transport_error(self, sample_video_ref: VideoRef) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("dns failure")

        resolver = _light_resolver(handler)

        with pytest.raises(MetadataUnavailable) as excinfo:
            await resolver.resolve(sample_video_ref)

        assert "dns failure" in (excinfo.value.detail or "")
