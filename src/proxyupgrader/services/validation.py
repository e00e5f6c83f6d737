"""URL and checksum validation helpers for ProxyUpgrader."""

from typing import Optional
from urllib.parse import urlparse

from proxyupgrader.errors import ConfigError, UpgradeError
from proxyupgrader.errors_catalog import actionable_error
from proxyupgrader.models import normalize_sha256


class ValidationService:
    """Validates download locations and protocol policy."""

    def __init__(self, allow_insecure_http: bool = False):
        self.allow_insecure_http = allow_insecure_http

    def is_url(self, location: str) -> bool:
        scheme = urlparse(location).scheme.lower()
        return scheme in {"http", "https"}

    def enforce_https_policy(self, location: str, label: str, logger, console):
        if not self.is_url(location):
            raise UpgradeError(f"{label} is not an HTTP(S) URL: {location}")

        scheme = urlparse(location).scheme.lower()
        if scheme == "http" and not self.allow_insecure_http:
            raise UpgradeError(actionable_error("insecure_http", label=label))

        if scheme == "http" and self.allow_insecure_http:
            logger.warning("Insecure HTTP enabled for %s: %s", label, location)
            console.print(
                f"[yellow]Warning:[/yellow] Using insecure HTTP for {label}. "
                "Prefer HTTPS whenever possible."
            )

    def require_sha256(self, value: Optional[str], option_name: str) -> str:
        checksum = normalize_sha256(value)
        if checksum is None:
            raise ConfigError(
                f"{option_name} must be a valid SHA-256 hash (64 hexadecimal characters)."
            )
        return checksum
