"""On-disk registry of installed proxy versions."""

import json
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Union

from proxyupgrader.constants import (
    BINARY_MODE,
    CURRENT_MARKER_FILE,
    DEFAULT_BINARY_NAME,
    INDEX_FILE,
    MAX_INSTALLED_VERSIONS,
    VERSIONS_DIR,
)
from proxyupgrader.errors import (
    CannotDeleteCurrentVersion,
    InstallationFailed,
    VersionAlreadyInstalled,
    VersionNotInstalled,
)
from proxyupgrader.models import InstalledVersion


class VersionStore:
    """Owns the installed versions under a managed root and the current-version pointer.

    Layout::

        <root>/versions/<version>/<binary_name>
        <root>/versions.json    install order, timestamps and current pointer
        <root>/current          marker naming the current version

    Every read and write of the index happens under one lock and the index is
    replaced atomically, so readers always observe exactly one current entry
    once any version has been marked current.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root_dir: str, logger, filesystem_service, binary_name: str = DEFAULT_BINARY_NAME):
        self.root_dir = Path(root_dir)
        self.versions_dir = self.root_dir / VERSIONS_DIR
        self.index_file = self.root_dir / INDEX_FILE
        self.marker_file = self.root_dir / CURRENT_MARKER_FILE
        self.binary_name = binary_name
        self.logger = logger
        self.filesystem_service = filesystem_service
        self._lock = threading.RLock()

    def install(self, version: str, data: Union[bytes, BinaryIO]) -> InstalledVersion:
        with self._lock:
            index = self._load()
            if self._find(index, version) is not None:
                raise VersionAlreadyInstalled(version)

            version_dir = self._version_dir(version)
            binary_path = version_dir / self.binary_name
            if version_dir.exists():
                self.logger.warning("Removing stale directory for untracked version %s", version)
                self.filesystem_service.cleanup_dir(str(version_dir))
            try:
                version_dir.mkdir(parents=True)
                fd, temp_path = tempfile.mkstemp(prefix=".install-", dir=version_dir)
                with os.fdopen(fd, "wb") as file_obj:
                    if isinstance(data, (bytes, bytearray, memoryview)):
                        file_obj.write(data)
                    else:
                        shutil.copyfileobj(data, file_obj)
                os.replace(temp_path, binary_path)
            except OSError as exc:
                self.filesystem_service.cleanup_dir(str(version_dir))
                raise InstallationFailed(f"Failed to install proxy {version}: {exc}") from exc

            self.filesystem_service.set_permissions(str(binary_path), BINARY_MODE)

            entry = {
                "version": version,
                "path": str(binary_path),
                "installed_at": self._now(),
            }
            index["versions"].append(entry)
            self._save(index)
            self.logger.info("Installed proxy %s at %s", version, binary_path)
            return self._to_model(entry, index.get("current"))

    def list(self) -> List[InstalledVersion]:
        """Installed versions ordered by install time, most recent last."""
        with self._lock:
            index = self._load()
            current = index.get("current")
            entries = sorted(
                enumerate(index["versions"]),
                key=lambda item: (item[1]["installed_at"], item[0]),
            )
            return [self._to_model(entry, current) for _, entry in entries]

    def get(self, version: str) -> Optional[InstalledVersion]:
        with self._lock:
            index = self._load()
            entry = self._find(index, version)
            if entry is None:
                return None
            return self._to_model(entry, index.get("current"))

    def current_version(self) -> Optional[str]:
        with self._lock:
            return self._load().get("current")

    def current(self) -> Optional[InstalledVersion]:
        with self._lock:
            version = self.current_version()
            return self.get(version) if version else None

    def mark_current(self, version: str) -> InstalledVersion:
        with self._lock:
            index = self._load()
            entry = self._find(index, version)
            if entry is None:
                raise VersionNotInstalled(version)

            previous = index.get("current")
            index["current"] = version
            self._save(index)
            self._write_marker(version)
            self.logger.info("Current proxy version: %s (was %s)", version, previous or "<none>")
            return self._to_model(entry, version)

    def delete(self, version: str):
        with self._lock:
            index = self._load()
            if index.get("current") == version:
                raise CannotDeleteCurrentVersion(version)

            entry = self._find(index, version)
            if entry is None:
                raise VersionNotInstalled(version)

            index["versions"].remove(entry)
            self._save(index)
            self.filesystem_service.cleanup_dir(str(self._version_dir(version)))
            self.logger.info("Deleted proxy %s", version)

    def enforce_retention(self, max_kept: int = MAX_INSTALLED_VERSIONS) -> List[str]:
        """Delete the oldest non-current versions beyond `max_kept`; returns the evicted versions."""
        if max_kept < 1:
            raise ValueError("max_kept must be at least 1")

        with self._lock:
            installed = self.list()
            excess = len(installed) - max_kept
            evicted: List[str] = []
            for item in installed:
                if excess <= 0:
                    break
                if item.is_current:
                    continue
                self.delete(item.version)
                evicted.append(item.version)
                excess -= 1

        if evicted:
            self.logger.info("Retention removed proxy version(s): %s", ", ".join(evicted))
        return evicted

    def _version_dir(self, version: str) -> Path:
        if not version or version in (".", "..") or "/" in version or "\\" in version:
            raise InstallationFailed(f"Invalid version string for installation: {version!r}")
        return self.versions_dir / version

    def _find(self, index: Dict[str, Any], version: str) -> Optional[Dict[str, Any]]:
        for entry in index["versions"]:
            if entry["version"] == version:
                return entry
        return None

    def _load(self) -> Dict[str, Any]:
        if not self.index_file.exists():
            return {"schema_version": self.SCHEMA_VERSION, "current": None, "versions": []}

        try:
            data = json.loads(self.index_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InstallationFailed(f"Could not read version index '{self.index_file}': {exc}") from exc

        if not isinstance(data, dict) or not isinstance(data.get("versions"), list):
            raise InstallationFailed(f"Version index '{self.index_file}' has invalid format.")
        return data

    def _save(self, index: Dict[str, Any]):
        index["schema_version"] = self.SCHEMA_VERSION
        self._atomic_write(self.index_file, json.dumps(index, indent=2, sort_keys=True) + "\n")

    def _write_marker(self, version: str):
        self._atomic_write(self.marker_file, f"{version}\n")

    def _atomic_write(self, path: Path, content: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}-", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            os.replace(temp_path, path)
        except OSError as exc:
            raise InstallationFailed(f"Could not write '{path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

    @staticmethod
    def _to_model(entry: Dict[str, Any], current: Optional[str]) -> InstalledVersion:
        return InstalledVersion(
            version=entry["version"],
            path=entry["path"],
            installed_at=datetime.fromisoformat(entry["installed_at"]),
            is_current=entry["version"] == current,
        )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
