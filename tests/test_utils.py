"""
Unit tests for utility functions.
"""

from models import TrimWindow
from utils import (
    build_download_base,
    extract_playlist_id,
    extract_video_id,
    format_percent,
    is_valid_video_url,
    make_task_id,
    parse_timestamp,
    parse_trim,
)


class TestVideoUrls:
    """Test the video URL grammar."""

    def test_watch_url(self):
        assert extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ") == "dQw4w9WgXcQ"

    def test_short_link(self):
        assert extract_video_id("https://youtu.be/dQw4w9WgXcQ?t=42") == "dQw4w9WgXcQ"

    def test_shorts_and_embed(self):
        assert extract_video_id("https://youtube.com/shorts/dQw4w9WgXcQ") == "dQw4w9WgXcQ"
        assert extract_video_id("https://www.youtube.com/embed/dQw4w9WgXcQ") == "dQw4w9WgXcQ"

    def test_rejects_other_hosts(self):
        assert not is_valid_video_url("https://vimeo.com/watch?v=dQw4w9WgXcQ")

    def test_rejects_bad_scheme_and_ids(self):
        assert not is_valid_video_url("ftp://www.youtube.com/watch?v=dQw4w9WgXcQ")
        assert not is_valid_video_url("https://www.youtube.com/watch?v=short")
        assert not is_valid_video_url("")
        assert not is_valid_video_url("https://www.youtube.com/watch?v=" + "a" * 2000)


class TestPlaylistIds:
    def test_bare_id(self):
        assert extract_playlist_id("PLx0sYbCqOb8TBPRdmBHs5Iftvv9TPboYG") == "PLx0sYbCqOb8TBPRdmBHs5Iftvv9TPboYG"

    def test_list_param(self):
        url = "https://www.youtube.com/playlist?list=PLx0sYbCqOb8TBPRdmBHs5Iftvv9TPboYG"
        assert extract_playlist_id(url) == "PLx0sYbCqOb8TBPRdmBHs5Iftvv9TPboYG"

    def test_watch_url_without_list(self):
        assert extract_playlist_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ") is None

    def test_garbage(self):
        assert extract_playlist_id("not a playlist") is None
        assert extract_playlist_id("") is None


class TestTrim:
    """Test trim window parsing."""

    def test_seconds(self):
        assert parse_trim("10", "5") == TrimWindow(start=10.0, duration=5.0)

    def test_clock_format(self):
        assert parse_trim("01:30", "0:00:05.5") == TrimWindow(start=90.0, duration=5.5)

    def test_negative_duration_ignored(self):
        assert parse_trim("10", "-1") is None

    def test_zero_duration_ignored(self):
        assert parse_trim("10", "0") is None

    def test_garbage_ignored(self):
        assert parse_trim("ten", "5") is None
        assert parse_trim("10", "five") is None

    def test_missing_values(self):
        assert parse_trim(None, None) is None
        assert parse_trim("10", None) is None
        assert parse_trim(None, "5") is None

    def test_parse_timestamp(self):
        assert parse_timestamp("1:00:00") == 3600.0
        assert parse_timestamp("-2") == -2.0
        assert parse_timestamp("1:2:3:4") is None
        assert parse_timestamp("  ") is None


class TestNaming:
    def test_task_id_is_deterministic(self):
        assert make_task_id("https://example/v", "22") == "https://example/v-22"
        assert make_task_id("https://example/v", "22") == make_task_id("https://example/v", "22")

    def test_download_base(self):
        base = build_download_base("/api/v1/downloads", "video", "https://youtu.be/dQw4w9WgXcQ")
        assert base == "/api/v1/downloads/video/download?url=https%3A%2F%2Fyoutu.be%2FdQw4w9WgXcQ&itag="

    def test_format_percent(self):
        assert format_percent(None) == "?"
        assert format_percent(12.345) == "12.3%"
