"""Streaming proxy for upstream download links.

Upstream download URLs are time-limited and carry signatures, so the browser only ever
sees ``/api/proxy-download?url=...`` and this module fetches the file server-side.
"""

import logging
import re
from collections.abc import Generator
from typing import Any
from urllib.parse import unquote, urlparse

import requests

logger = logging.getLogger(__name__)

MAX_DECODE_ATTEMPTS = 5
DEFAULT_FILENAME = "model.glb"
CHUNK_SIZE = 64 * 1024

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


def decode_until_stable(url: str, max_attempts: int = MAX_DECODE_ATTEMPTS) -> str:
    """Percent-decode repeatedly until the value stops changing.

    Links are sometimes double-encoded before they reach the browser; the number of
    passes is capped so pathological input cannot loop forever.
    """
    decoded = url
    for _ in range(max_attempts):
        previous = decoded
        if "%" not in previous:
            break
        try:
            decoded = unquote(previous, errors="strict")
        except UnicodeDecodeError:
            return previous
        if decoded == previous:
            break
    return decoded


def is_valid_download_url(url: str) -> bool:
    """Whether url is a well-formed absolute HTTP(S) URL."""
    if not _HTTP_URL.match(url):
        return False
    parsed = urlparse(url)
    return bool(parsed.netloc)


def filename_from_url(url: str, default: str = DEFAULT_FILENAME) -> str:
    """Attachment filename taken from the last path segment when it has an extension."""
    try:
        last = urlparse(url).path.rsplit("/", 1)[-1]
    except ValueError:
        return default
    if last and "." in last:
        name = unquote(last).replace('"', "").replace("\r", "").replace("\n", "")
        return name or default
    return default


class DownloadStream:
    """An open upstream download, ready to be streamed to the client."""

    def __init__(self, response: requests.Response, filename: str) -> None:
        self.response = response
        self.filename = filename

    @property
    def content_length(self) -> str | None:
        """Upstream Content-Length header, if present."""
        return self.response.headers.get("Content-Length")

    def headers(self) -> dict[str, str]:
        """Response headers that force a download in the browser."""
        headers = {
            "Content-Type": "application/octet-stream",
            "Content-Disposition": f'attachment; filename="{self.filename}"',
            "Cache-Control": "no-cache",
        }
        if self.content_length:
            headers["Content-Length"] = self.content_length
        return headers

    def iter_content(self) -> Generator[bytes, None, None]:
        """Yield the body in chunks and close the upstream response afterwards."""
        try:
            yield from self.response.iter_content(chunk_size=CHUNK_SIZE)
        finally:
            self.response.close()


def open_download(
    url: str, session: requests.Session | Any | None = None, timeout: float = 60.0
) -> requests.Response:
    """Start a streaming GET of an upstream download URL (no auth headers attached)."""
    http = session or requests
    logger.info("Proxy downloading %s", url)
    return http.get(url, stream=True, timeout=timeout)
