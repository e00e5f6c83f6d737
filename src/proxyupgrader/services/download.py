"""Download service with progress reporting and checksum validation."""

import os
import tempfile
import threading
from pathlib import Path
from typing import Optional

import requests
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)

from proxyupgrader.constants import DOWNLOAD_CHUNK_SIZE, DOWNLOAD_TIMEOUT
from proxyupgrader.errors import ChecksumMismatch, DownloadFailed, UpgradeCancelled
from proxyupgrader.models import CandidateVersion
from proxyupgrader.services.checksum import ChecksumVerifier


class DownloadService:
    """Streams candidate binaries to a staging file and verifies them."""

    def __init__(
        self,
        validation_service,
        logger,
        console,
        session: requests.Session,
        timeout: float = DOWNLOAD_TIMEOUT,
    ):
        self.validation_service = validation_service
        self.logger = logger
        self.console = console
        self.session = session
        self.timeout = timeout
        self._cancelled = threading.Event()
        self._response_lock = threading.Lock()
        self._response = None

    def cancel(self):
        """Abort the in-flight download by closing its response."""
        self._cancelled.set()
        with self._response_lock:
            response = self._response
        if response is not None:
            self.logger.info("Cancelling in-flight download.")
            response.close()

    def download_verified(self, candidate: CandidateVersion, staging_dir: str) -> Path:
        """Download `candidate` into `staging_dir`; the file is removed unless its checksum matches."""
        self._cancelled.clear()
        description = f"Downloading proxy {candidate.version}"
        try:
            dest_path = self._staging_path(staging_dir, candidate.version)
        except OSError as exc:
            raise DownloadFailed(f"Could not create a staging file in {staging_dir}: {exc}") from exc

        try:
            self.download_file(candidate.download_url, str(dest_path), description, candidate.size)
            try:
                ChecksumVerifier.verify_file_or_fail(dest_path, candidate.sha256)
            except OSError as exc:
                raise DownloadFailed(f"Could not read {dest_path}: {exc}") from exc
        except ChecksumMismatch as exc:
            self.logger.error(
                "Checksum mismatch for %s: expected %s, got %s",
                candidate.version,
                exc.expected,
                exc.actual,
            )
            self._discard(dest_path)
            raise
        except BaseException:
            self._discard(dest_path)
            raise

        self.logger.info("Verified SHA-256 for proxy %s.", candidate.version)
        return dest_path

    def download_file(
        self,
        url: str,
        dest_path: str,
        description: str = "Downloading...",
        expected_size: Optional[int] = None,
    ):
        self.logger.info("Downloading %s to %s", url, dest_path)
        self.validation_service.enforce_https_policy(url, description, self.logger, self.console)

        try:
            with self.session.get(url, stream=True, timeout=self.timeout) as response:
                with self._response_lock:
                    self._response = response
                response.raise_for_status()
                total_size = self._content_length(response, expected_size)

                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    DownloadColumn(),
                    TimeElapsedColumn(),
                    console=self.console,
                    transient=True,
                ) as progress:
                    task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                    with open(dest_path, "wb") as file_obj:
                        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                            if self._cancelled.is_set():
                                raise UpgradeCancelled(f"{description} was cancelled.")
                            if not chunk:
                                continue
                            file_obj.write(chunk)
                            progress.update(task, advance=len(chunk))
        except UpgradeCancelled:
            raise
        except Exception as exc:
            # Closing the response from cancel() surfaces as an arbitrary read error.
            if self._cancelled.is_set():
                raise UpgradeCancelled(f"{description} was cancelled.") from exc
            if isinstance(exc, OSError) and not isinstance(exc, requests.RequestException):
                raise DownloadFailed(f"Could not write {dest_path}: {exc}") from exc
            raise DownloadFailed(f"Download failed for {description}: {exc}") from exc
        finally:
            with self._response_lock:
                self._response = None

        if self._cancelled.is_set():
            raise UpgradeCancelled(f"{description} was cancelled.")

    @staticmethod
    def _content_length(response, expected_size: Optional[int]) -> int:
        try:
            return int(response.headers.get("Content-Length") or 0) or expected_size or 0
        except (TypeError, ValueError):
            return expected_size or 0

    def _staging_path(self, staging_dir: str, version: str) -> Path:
        os.makedirs(staging_dir, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=f"proxy-{version}-", suffix=".part", dir=staging_dir)
        os.close(fd)
        return Path(temp_path)

    def _discard(self, path: Path):
        try:
            os.remove(path)
        except OSError:
            pass
