"""Tests for the streaming download proxy helpers."""

from unittest.mock import MagicMock

from app.services import download_proxy


class TestDecodeUntilStable:
    """Tests for repeated percent-decoding."""

    def test_double_encoded(self) -> None:
        """Test that a double-encoded URL is fully decoded."""
        url = "https%253A%252F%252Fcdn.test%252Fa.glb"
        assert download_proxy.decode_until_stable(url) == "https://cdn.test/a.glb"

    def test_plain_url_unchanged(self) -> None:
        """Test that an unencoded URL is returned as is."""
        assert download_proxy.decode_until_stable("https://cdn.test/a.glb") == "https://cdn.test/a.glb"

    def test_depth_is_capped(self) -> None:
        """Test that decoding stops after the maximum number of passes."""
        url = "https://cdn.test/a%2525252525252541.glb"
        decoded = download_proxy.decode_until_stable(url, max_attempts=2)
        assert decoded == "https://cdn.test/a%252525252541.glb"

    def test_invalid_utf8_stops(self) -> None:
        """Test that undecodable bytes leave the last good value."""
        assert download_proxy.decode_until_stable("https://cdn.test/%ff.glb") == (
            "https://cdn.test/%ff.glb"
        )


class TestValidation:
    """Tests for URL validation and filenames."""

    def test_valid_urls(self) -> None:
        """Test that only absolute http(s) URLs are accepted."""
        assert download_proxy.is_valid_download_url("https://cdn.test/a.glb")
        assert download_proxy.is_valid_download_url("HTTP://cdn.test/a.glb")
        assert not download_proxy.is_valid_download_url("ftp://cdn.test/a.glb")
        assert not download_proxy.is_valid_download_url("https://")
        assert not download_proxy.is_valid_download_url("not a url")

    def test_filename_from_url(self) -> None:
        """Test that the last path segment is used when it has an extension."""
        assert download_proxy.filename_from_url("https://cdn.test/x/chair%20v2.glb?sig=1") == (
            "chair v2.glb"
        )

    def test_filename_default(self) -> None:
        """Test that extensionless paths fall back to model.glb."""
        assert download_proxy.filename_from_url("https://cdn.test/download/123") == "model.glb"


class TestDownloadStream:
    """Tests for DownloadStream."""

    def test_headers_force_attachment(self) -> None:
        """Test that the response is always offered as a download."""
        response = MagicMock()
        response.headers = {"Content-Length": "42", "Content-Type": "model/gltf-binary"}
        stream = download_proxy.DownloadStream(response, "a.glb")

        headers = stream.headers()

        assert headers["Content-Type"] == "application/octet-stream"
        assert headers["Content-Disposition"] == 'attachment; filename="a.glb"'
        assert headers["Cache-Control"] == "no-cache"
        assert headers["Content-Length"] == "42"

    def test_iter_content_closes_response(self) -> None:
        """Test that the upstream response is closed after streaming."""
        response = MagicMock()
        response.iter_content.return_value = iter([b"ab", b"cd"])
        stream = download_proxy.DownloadStream(response, "a.glb")

        assert b"".join(stream.iter_content()) == b"abcd"
        response.close.assert_called_once()
