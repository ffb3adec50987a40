"""Authenticated JSON client for the upstream mesh optimization API."""

import logging
from dataclasses import dataclass
from typing import Any

import requests

from app.config import get_settings
from app.services.errors import TransportError, UpstreamError
from app.services.log_service import get_log_service

logger = logging.getLogger(__name__)


@dataclass
class UpstreamFailure:
    """Tagged result returned by safe_call instead of raising."""

    message: str
    status_code: int | None = None
    error: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error": self.message, "status_code": self.status_code}


def is_failure(result: Any) -> bool:
    """Check whether a safe_call result is a failure marker."""
    return isinstance(result, UpstreamFailure)


def payload_data(result: Any) -> Any:
    """Unwrap the ``data`` envelope most upstream endpoints answer with."""
    if isinstance(result, dict) and "data" in result:
        return result["data"]
    return result


class UpstreamClient:
    """Thin request wrapper that adds auth and normalizes failures.

    Every call is made against ``api_base``; the bearer token is attached here and is
    never handed to callers.
    """

    def __init__(
        self,
        api_base: str,
        token: str,
        timeout: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, has_body: bool) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }
        if has_body:
            headers["Content-Type"] = "application/json"
        return headers

    def call(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        """Call an upstream endpoint and return its decoded body.

        Args:
            endpoint: Path relative to the API base (e.g. ``/rawmodel/12``)
            method: HTTP method
            body: Optional JSON-serializable request body

        Returns:
            Decoded JSON, the raw text for non-JSON bodies, or ``{}`` for empty bodies

        Raises:
            TransportError: If the request could not be sent or no response arrived
            UpstreamError: If the upstream answered with a non-2xx status
        """
        method = method.upper()
        url = self.api_base + endpoint
        try:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(body is not None),
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"{method} {endpoint} -> {e}") from e

        text = resp.text or ""
        if not resp.ok:
            raise UpstreamError(
                resp.status_code,
                f"{method} {endpoint} -> {resp.status_code} {resp.reason or ''} {text}".strip(),
                text,
            )

        if resp.status_code == 204 or not text:
            return {}
        try:
            return resp.json()
        except ValueError:
            return text

    def safe_call(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        """Like call(), but returns an UpstreamFailure instead of raising."""
        try:
            result = self.call(endpoint, method, body)
        except UpstreamError as e:
            logger.warning("Upstream %s %s failed: %s", method, endpoint, e.message)
            failure = UpstreamFailure(e.message, e.status_code)
        except TransportError as e:
            logger.warning("Upstream %s %s unreachable: %s", method, endpoint, e)
            failure = UpstreamFailure(str(e))
        else:
            return result

        get_log_service().warning(
            "upstream",
            "upstream_call_failed",
            f"{method.upper()} {endpoint} failed",
            {"endpoint": endpoint, "status": failure.status_code, "error": failure.message},
        )
        return failure

    def relative(self, link: str | None) -> str | None:
        """Turn a pagination link into an endpoint path, or None to stop paging.

        Links that point outside the API base are refused so the bearer token is only
        ever sent to the configured upstream.
        """
        if not link:
            return None
        if link.startswith(self.api_base):
            return link[len(self.api_base) :] or "/"
        if link.startswith("/"):
            return link
        logger.warning("Ignoring pagination link outside the API base: %s", link)
        return None


# Module-level singleton accessor
_upstream_client: UpstreamClient | None = None


def get_upstream_client() -> UpstreamClient:
    """Get the singleton UpstreamClient built from the current settings."""
    global _upstream_client
    if _upstream_client is None:
        settings = get_settings()
        _upstream_client = UpstreamClient(
            settings.api_base, settings.api_token, settings.request_timeout
        )
    return _upstream_client


def reset_upstream_client() -> None:
    """Drop the cached client so the next access picks up changed settings."""
    global _upstream_client
    _upstream_client = None
