"""
Unit tests for utility functions.
"""

import datetime

import pytest

from main import (
    _env_csv,
    _env_float,
    _env_int,
    _env_truthy,
    download_reference,
    format_bytes,
    format_duration,
    parse_upload_date,
    sanitize_filename,
    stored_key_for,
    title_file_stem,
)


class TestEnvTruthy:
    """Tests for _env_truthy function."""

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1", True),
            ("true", True),
            ("TRUE", True),
            ("yes", True),
            ("on", True),
            ("0", False),
            ("false", False),
            ("no", False),
            ("OFF", False),
            ("  true  ", True),
            ("invalid", False),
        ],
    )
    def test_env_truthy_values(self, value: str, expected: bool) -> None:
        """Test various truthy/falsey string values."""
        assert _env_truthy(value) == expected

    @staticmethod
    def test_env_truthy_none_with_default() -> None:
        """Test None value with custom default."""
        assert _env_truthy(None, default=True) is True
        assert _env_truthy("garbage", default=True) is True


class TestEnvNumbers:
    """Tests for _env_int and _env_float."""

    @pytest.mark.parametrize(
        ("value", "default", "expected"),
        [("42", 0, 42), ("invalid", 10, 10), (None, 5, 5), ("  25  ", 0, 25)],
    )
    def test_env_int_values(self, value: str | None, default: int, expected: int) -> None:
        """Test integer parsing from environment variables."""
        assert _env_int(value, default=default) == expected

    @pytest.mark.parametrize(
        ("value", "default", "expected"),
        [("3.14", 0.0, 3.14), ("invalid", 10.0, 10.0), (None, 5.5, 5.5)],
    )
    def test_env_float_values(self, value: str | None, default: float, expected: float) -> None:
        """Test float parsing from environment variables."""
        assert _env_float(value, default=default) == expected


class TestEnvCsv:
    """Tests for _env_csv function."""

    @staticmethod
    def test_splits_and_trims() -> None:
        """Test comma splitting with whitespace and blanks dropped."""
        assert _env_csv(" Premium , Admin,, ") == ["Premium", "Admin"]

    @staticmethod
    def test_empty_values() -> None:
        """Test unset and empty values."""
        assert _env_csv(None) == []
        assert _env_csv("") == []


class TestSanitizeFilename:
    """Tests for sanitize_filename function."""

    @staticmethod
    def test_ascii_is_unchanged() -> None:
        """Test that an ASCII name passes through untouched."""
        name = "My Video [1920x1080].mp4"
        assert sanitize_filename(name) == name

    @staticmethod
    def test_non_ascii_dropped() -> None:
        """Test that every code point >= 128 is removed."""
        result = sanitize_filename("Café – Ünïcode 🎵 [192k].mp3")
        assert result == "Caf  ncode  [192k].mp3"
        assert all(ord(ch) < 128 for ch in result)

    @pytest.mark.parametrize(
        "name",
        ["", "plain.mp3", "日本語のタイトル.mp4", "naïve—dash", "\x7f\x80\xff", "emoji 😀😀"],
    )
    def test_idempotent(self, name: str) -> None:
        """Test that sanitizing twice equals sanitizing once."""
        once = sanitize_filename(name)
        assert sanitize_filename(once) == once


class TestTitleFileStem:
    """Tests for title_file_stem."""

    @pytest.mark.parametrize(
        ("title", "expected"),
        [
            ("My Video", "My Video"),
            ("A: B | C", "A\uff1a B \uff5c C"),
            ("AC/DC", "AC\u29f8DC"),
        ],
    )
    def test_matches_ytdlp_naming(self, title: str, expected: str) -> None:
        """Test that reserved characters become the lookalikes yt-dlp writes."""
        assert title_file_stem(title) == expected

    @staticmethod
    def test_key_from_rewritten_title() -> None:
        """Test that the lookalikes vanish from the stored key."""
        assert stored_key_for(title_file_stem("A: B | C") + ".mp3", "128k") == "A B  C [128k].mp3"


class TestStoredKey:
    """Tests for stored_key_for and download_reference."""

    @staticmethod
    def test_label_inserted_before_extension() -> None:
        """Test the label lands between stem and extension."""
        assert stored_key_for("My Video.mp3", "128k") == "My Video [128k].mp3"

    @staticmethod
    def test_dots_in_title_keep_last_suffix() -> None:
        """Test titles containing dots only split on the final extension."""
        assert stored_key_for("v1.2 release.mp4", "1280x720") == "v1.2 release [1280x720].mp4"

    @staticmethod
    def test_key_is_sanitized() -> None:
        """Test non-ASCII characters are stripped from the key."""
        assert stored_key_for("Ça va.mp3", "192k") == "a va [192k].mp3"

    @staticmethod
    def test_download_reference_url_encodes_key() -> None:
        """Test spaces, brackets and slashes are percent-encoded."""
        assert download_reference("media", "My Video [128k].mp3") == "media/My%20Video%20%5B128k%5D.mp3"
        assert download_reference("media", "a/b.mp3") == "media/a%2Fb.mp3"


class TestFormatting:
    """Tests for format_bytes, format_duration and parse_upload_date."""

    @pytest.mark.parametrize(
        ("size", "expected"),
        [(0, "0.00 B"), (1023, "1023.00 B"), (1024, "1.00 KB"), (5 * 1024**3, "5.00 GB")],
    )
    def test_format_bytes(self, size: int, expected: str) -> None:
        """Test human readable byte sizes."""
        assert format_bytes(size) == expected

    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(None, "-"), (0, "0:00"), (59, "0:59"), (61, "1:01"), (3725, "1:02:05")],
    )
    def test_format_duration(self, seconds: int | None, expected: str) -> None:
        """Test duration rendering."""
        assert format_duration(seconds) == expected

    @staticmethod
    def test_parse_upload_date() -> None:
        """Test YYYYMMDD parsing and rejection of other shapes."""
        assert parse_upload_date("20240131") == datetime.date(2024, 1, 31)
        assert parse_upload_date("20241301") is None
        assert parse_upload_date("2024-01-31") is None
        assert parse_upload_date(20240131) is None
        assert parse_upload_date(None) is None
