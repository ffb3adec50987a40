"""HTTP client for the proxy's browser-facing API and the direct file transfer."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, BinaryIO
from urllib.parse import quote

import requests

from app.services.errors import TransportError, UpstreamError

logger = logging.getLogger(__name__)

DEFAULT_PROXY_URL = "http://127.0.0.1:8787"
CHUNK_SIZE = 1024 * 1024


class _ProgressReader:
    """File wrapper that reports bytes read, so requests can stream it with a length."""

    def __init__(
        self, fh: BinaryIO, total_size: int, callback: Callable[[int, int], None] | None
    ) -> None:
        self._fh = fh
        self.total_size = total_size
        self.sent = 0
        self.callback = callback

    def __len__(self) -> int:
        return self.total_size

    def read(self, size: int = -1) -> bytes:
        chunk = self._fh.read(size)
        self.sent += len(chunk)
        if self.callback and chunk:
            self.callback(self.sent, self.total_size)
        return chunk


class ProxyClient:
    """Calls the proxy endpoints; raises UpstreamError on non-2xx answers."""

    def __init__(
        self,
        base_url: str = DEFAULT_PROXY_URL,
        session: requests.Session | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, body: Any = None) -> Any:
        try:
            resp = self.session.request(
                method, self.base_url + path, json=body, timeout=self.timeout
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} -> {e}") from e
        if not resp.ok:
            raise UpstreamError(
                resp.status_code, f"{method} {path} -> {resp.status_code} {resp.text}", resp.text
            )
        if "application/json" in resp.headers.get("Content-Type", ""):
            return resp.json()
        return resp.text

    def find_by_hash(self, content_hash: str) -> dict[str, Any]:
        """Look up an earlier upload of the same content."""
        return self._request("GET", f"/api/find-by-hash?hash={quote(content_hash, safe='')}")

    def start_upload(
        self, model_name: str, filename: str, content_hash: str | None = None
    ) -> dict[str, Any]:
        """Reuse an asset or get a signed transfer URL for a new one."""
        return self._request(
            "POST",
            "/api/start-upload",
            {"modelName": model_name, "filename": filename, "contentHash": content_hash},
        )

    def complete_upload(self, asset_id: Any) -> Any:
        """Acknowledge a finished transfer."""
        return self._request("POST", f"/api/complete-upload/{asset_id}")

    def add_tags(self, asset_id: Any, tags: list[str]) -> Any:
        """Merge tags into an asset."""
        return self._request("POST", f"/api/rawmodel/{asset_id}/tags", {"tags": tags})

    def get_rawmodel(self, asset_id: Any) -> Any:
        """Read an asset record."""
        return self._request("GET", f"/api/rawmodel/{asset_id}")

    def optimize(
        self, asset_id: Any, preset_id: int | None = None, preset_key: str | None = None
    ) -> Any:
        """Start an optimization job; the proxy picks the preset when none is given."""
        body: dict[str, Any] = {"rawmodelId": asset_id}
        if preset_id is not None:
            body["presetId"] = preset_id
        if preset_key:
            body["presetKey"] = preset_key
        return self._request("POST", "/api/optimize", body)

    def status(self, asset_id: Any) -> dict[str, Any]:
        """Normalized status of an asset's latest job."""
        return self._request("GET", f"/api/status/{asset_id}")

    def add_formats(self, asset_id: Any) -> Any:
        """Request GLB output for an asset."""
        return self._request("POST", f"/api/rawmodel/{asset_id}/add-formats")

    def asset_downloads(self, asset_id: Any) -> Any:
        """Asset-level download map."""
        return self._request("GET", f"/api/rawmodel/{asset_id}/downloads")

    def upload_file(
        self,
        signed_url: str,
        path: str | Path,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> None:
        """PUT a file straight to the pre-authorized transfer URL.

        Raises:
            UpstreamError: If the transfer target rejects the upload
            TransportError: On network failure
        """
        file_path = Path(path)
        size = file_path.stat().st_size
        with open(file_path, "rb") as fh:
            reader = _ProgressReader(fh, size, on_progress)
            try:
                resp = self.session.put(signed_url, data=reader, timeout=None)
            except requests.RequestException as e:
                raise TransportError(f"Upload failed: network error ({e})") from e
        if not 200 <= resp.status_code < 300:
            raise UpstreamError(resp.status_code, f"Upload failed: {resp.status_code}", resp.text)

    def download(
        self,
        url: str,
        dest: str | Path,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> Path:
        """Fetch a result file through the proxy and write it to dest."""
        dest_path = Path(dest)
        proxied = f"{self.base_url}/api/proxy-download?url={quote(url, safe='')}"
        try:
            resp = self.session.get(proxied, stream=True, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransportError(f"Download failed: {e}") from e
        if not resp.ok:
            raise UpstreamError(resp.status_code, "Download failed", resp.text)

        total = int(resp.headers.get("Content-Length") or 0)
        received = 0
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        with resp, open(dest_path, "wb") as out:
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                out.write(chunk)
                received += len(chunk)
                if on_progress:
                    on_progress(received, total)
        logger.info("Downloaded %s (%d bytes)", dest_path, received)
        return dest_path
