"""Shared domain models for ProxyUpgrader."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from proxyupgrader.errors import ParseError, RollbackFailed, UpgradeError

_SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
_SHA256_ALGORITHMS = ("sha256", "sha-256")

# Wire name -> attribute name, applied only when parsing feed payloads.
RELEASE_FIELDS: Dict[str, str] = {
    "tag_name": "tag",
    "name": "name",
    "body": "notes",
    "prerelease": "prerelease",
    "published_at": "published_at",
}
ASSET_FIELDS: Dict[str, str] = {
    "name": "name",
    "browser_download_url": "download_url",
    "size": "size",
    "digest": "digest",
    "content_type": "content_type",
}


def normalize_sha256(value: Optional[str]) -> Optional[str]:
    """Return the lowercase hex digest, or None when `value` is not a SHA-256 hex string."""
    if value is None:
        return None
    clean_value = value.strip().lower()
    if not _SHA256_HEX.match(clean_value):
        return None
    return clean_value


def strip_version_prefix(tag: str) -> str:
    tag = tag.strip()
    if tag[:1] in ("v", "V") and tag[1:2].isdigit():
        return tag[1:]
    return tag


def _map_fields(payload: Dict[str, Any], mapping: Dict[str, str]) -> Dict[str, Any]:
    return {attr: payload[wire] for wire, attr in mapping.items() if wire in payload}


@dataclass(frozen=True)
class AssetDescriptor:
    name: str
    download_url: str
    size: int = 0
    digest: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def sha256_checksum(self) -> Optional[str]:
        """Hex digest from a well-formed ``sha256:<hex>`` digest field."""
        if not self.digest or ":" not in self.digest:
            return None
        algorithm, _, value = self.digest.partition(":")
        if algorithm.strip().lower() not in _SHA256_ALGORITHMS:
            return None
        return normalize_sha256(value)

    @classmethod
    def from_payload(cls, payload: Any) -> "AssetDescriptor":
        if not isinstance(payload, dict):
            raise ParseError("Release asset must be a JSON object.")

        values = _map_fields(payload, ASSET_FIELDS)
        name = values.get("name")
        download_url = values.get("download_url")
        if not isinstance(name, str) or not name:
            raise ParseError("Release asset is missing 'name'.")
        if not isinstance(download_url, str) or not download_url:
            raise ParseError(f"Release asset '{name}' is missing 'browser_download_url'.")

        size = values.get("size") or 0
        if isinstance(size, bool) or not isinstance(size, int):
            raise ParseError(f"Release asset '{name}' has invalid 'size'.")

        digest = values.get("digest")
        if digest is not None and not isinstance(digest, str):
            raise ParseError(f"Release asset '{name}' has invalid 'digest'.")

        return cls(
            name=name,
            download_url=download_url,
            size=size,
            digest=digest,
            content_type=values.get("content_type"),
        )


@dataclass(frozen=True)
class ReleaseDescriptor:
    tag: str
    assets: Tuple[AssetDescriptor, ...] = ()
    prerelease: bool = False
    notes: Optional[str] = None
    name: Optional[str] = None
    published_at: Optional[str] = None

    @property
    def version(self) -> str:
        return strip_version_prefix(self.tag)

    @classmethod
    def from_payload(cls, payload: Any) -> "ReleaseDescriptor":
        if not isinstance(payload, dict):
            raise ParseError("Release entry must be a JSON object.")

        values = _map_fields(payload, RELEASE_FIELDS)
        tag = values.get("tag")
        if not isinstance(tag, str) or not tag.strip():
            raise ParseError("Release entry is missing 'tag_name'.")

        raw_assets = payload.get("assets", [])
        if not isinstance(raw_assets, list):
            raise ParseError(f"Release '{tag}' has invalid 'assets'.")

        return cls(
            tag=tag,
            assets=tuple(AssetDescriptor.from_payload(item) for item in raw_assets),
            prerelease=bool(values.get("prerelease", False)),
            notes=values.get("notes"),
            name=values.get("name"),
            published_at=values.get("published_at"),
        )


@dataclass(frozen=True)
class CandidateVersion:
    """A release asset resolved into something installable, always with a checksum."""

    version: str
    sha256: str
    download_url: str
    size: Optional[int] = None
    notes: Optional[str] = None

    def __post_init__(self):
        checksum = normalize_sha256(self.sha256)
        if checksum is None:
            raise ValueError(f"Candidate {self.version} requires a SHA-256 checksum.")
        object.__setattr__(self, "sha256", checksum)

    @classmethod
    def from_release(
        cls,
        release: ReleaseDescriptor,
        asset: AssetDescriptor,
    ) -> Optional["CandidateVersion"]:
        checksum = asset.sha256_checksum
        if checksum is None:
            return None
        return cls(
            version=release.version,
            sha256=checksum,
            download_url=asset.download_url,
            size=asset.size or None,
            notes=release.notes,
        )


@dataclass(frozen=True)
class InstalledVersion:
    version: str
    path: str
    installed_at: datetime
    is_current: bool = False


class OrchestratorState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    TESTING = "testing"
    ROLLING_BACK = "rollingBack"
    PROMOTING = "promoting"


class CompatibilityStatus(str, Enum):
    COMPATIBLE = "compatible"
    PROXY_NOT_RESPONDING = "proxyNotResponding"
    PROXY_NOT_RUNNING = "proxyNotRunning"
    CONNECTION_ERROR = "connectionError"


@dataclass(frozen=True)
class CompatibilityCheckResult:
    kind: CompatibilityStatus
    detail: Optional[str] = None

    @classmethod
    def compatible(cls) -> "CompatibilityCheckResult":
        return cls(CompatibilityStatus.COMPATIBLE)

    @classmethod
    def not_responding(cls) -> "CompatibilityCheckResult":
        return cls(CompatibilityStatus.PROXY_NOT_RESPONDING)

    @classmethod
    def not_running(cls) -> "CompatibilityCheckResult":
        return cls(CompatibilityStatus.PROXY_NOT_RUNNING)

    @classmethod
    def connection_error(cls, detail: str) -> "CompatibilityCheckResult":
        return cls(CompatibilityStatus.CONNECTION_ERROR, detail)

    @property
    def is_compatible(self) -> bool:
        return self.kind is CompatibilityStatus.COMPATIBLE

    @property
    def description(self) -> str:
        if self.kind is CompatibilityStatus.COMPATIBLE:
            return "Proxy is compatible"
        if self.kind is CompatibilityStatus.PROXY_NOT_RESPONDING:
            return "Proxy is not responding to API requests"
        if self.kind is CompatibilityStatus.PROXY_NOT_RUNNING:
            return "Proxy is not running"
        return f"Connection error: {self.detail}"


@dataclass(frozen=True)
class UpgradeResult:
    """Outcome of an orchestrator operation."""

    succeeded: bool
    state: OrchestratorState
    version: Optional[str] = None
    error: Optional[UpgradeError] = field(default=None, compare=False)

    @property
    def fatal(self) -> bool:
        return isinstance(self.error, RollbackFailed)
