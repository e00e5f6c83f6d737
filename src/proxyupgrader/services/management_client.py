"""Client for the running proxy's management surface (liveness and version only)."""

from typing import Optional

import requests

from proxyupgrader.constants import PROBE_TIMEOUT
from proxyupgrader.errors import ParseError
from proxyupgrader.services.http_session import build_session

LATEST_VERSION_FIELD = "latest-version"


class ManagementClient:
    """Bearer-authenticated JSON client; each call is a single request with no retries."""

    def __init__(
        self,
        base_url: str,
        auth_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = PROBE_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else build_session()
        if auth_key:
            self.session.headers["Authorization"] = f"Bearer {auth_key}"
        self.timeout = timeout

    def close(self):
        """Invalidate the transport; in-flight requests fail."""
        self.session.close()

    def _request(self, endpoint: str, method: str = "GET") -> requests.Response:
        response = self.session.request(
            method,
            f"{self.base_url}{endpoint}",
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response

    def ping(self):
        """GET /debug; raises the underlying requests exception on failure."""
        self._request("/debug")

    def check_responding(self) -> bool:
        try:
            self.ping()
        except requests.RequestException:
            return False
        return True

    def fetch_latest_version(self) -> str:
        response = self._request("/latest-version")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ParseError(f"Invalid JSON from /latest-version: {exc}") from exc

        value = payload.get(LATEST_VERSION_FIELD) if isinstance(payload, dict) else None
        if not isinstance(value, str) or not value.strip():
            raise ParseError(f"Response from /latest-version is missing '{LATEST_VERSION_FIELD}'.")
        return value.strip()
