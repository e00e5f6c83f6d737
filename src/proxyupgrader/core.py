import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, List, Optional

import requests
from packaging import version
from rich.console import Console

from .constants import (
    DEFAULT_DRY_RUN_PORT,
    DEFAULT_PROXY_PORT,
    MAX_INSTALLED_VERSIONS,
    STAGING_DIR,
    STARTUP_ATTEMPTS,
    STARTUP_INTERVAL,
)
from .errors import (
    CompatibilityCheckFailed,
    DryRunFailed,
    InstallationFailed,
    InvalidStateTransition,
    NoVersionAvailable,
    RollbackFailed,
    UpgradeCancelled,
    UpgradeError,
    UpgradeInProgress,
)
from .errors_catalog import actionable_error
from .models import (
    CandidateVersion,
    CompatibilityCheckResult,
    InstalledVersion,
    OrchestratorState,
    UpgradeResult,
)

console = Console()
logger = logging.getLogger("proxyupgrader")

_TRANSITIONS = {
    OrchestratorState.IDLE: {OrchestratorState.ACTIVE},
    OrchestratorState.ACTIVE: {OrchestratorState.TESTING, OrchestratorState.IDLE},
    OrchestratorState.TESTING: {OrchestratorState.PROMOTING, OrchestratorState.ROLLING_BACK},
    OrchestratorState.PROMOTING: {OrchestratorState.ACTIVE, OrchestratorState.ROLLING_BACK},
    OrchestratorState.ROLLING_BACK: {OrchestratorState.ACTIVE, OrchestratorState.IDLE},
}


def parse_version(ver_str: str) -> version.Version:
    try:
        return version.parse(ver_str.strip())
    except version.InvalidVersion:
        return version.parse("0.0")


def is_newer(candidate: str, current: Optional[str]) -> bool:
    if not current:
        return True
    return parse_version(candidate) > parse_version(current)


class UpgradeOrchestrator:
    """Drives download, verification, dry run, promotion and rollback of the managed proxy.

    One instance manages one proxy. Attempts are serialised: any operation
    started while another is in flight is rejected with ``UpgradeInProgress``.
    Failures inside an attempt are resolved into a state transition and
    reported through the returned ``UpgradeResult``; only ``RollbackFailed``
    leaves the orchestrator without a confirmed running proxy.
    """

    def __init__(
        self,
        version_store,
        release_catalog,
        download_service,
        supervisor,
        probe,
        dry_run_probe,
        journal,
        proxy_port: int = DEFAULT_PROXY_PORT,
        dry_run_port: int = DEFAULT_DRY_RUN_PORT,
        max_installed_versions: int = MAX_INSTALLED_VERSIONS,
        startup_attempts: int = STARTUP_ATTEMPTS,
        startup_interval: float = STARTUP_INTERVAL,
        platform_matcher: Optional[Callable[[str], bool]] = None,
        include_prereleases: bool = True,
        staging_dir: Optional[str] = None,
    ):
        self.version_store = version_store
        self.release_catalog = release_catalog
        self.download_service = download_service
        self.supervisor = supervisor
        self.probe = probe
        self.dry_run_probe = dry_run_probe
        self.journal = journal
        self.proxy_port = proxy_port
        self.dry_run_port = dry_run_port
        self.max_installed_versions = max_installed_versions
        self.startup_attempts = max(1, startup_attempts)
        self.startup_interval = startup_interval
        self.platform_matcher = platform_matcher
        self.include_prereleases = include_prereleases
        self.staging_dir = staging_dir or str(Path(version_store.root_dir) / STAGING_DIR)

        self._state = OrchestratorState.IDLE
        self._state_lock = threading.RLock()
        self._attempt_lock = threading.Lock()
        self._cancel_event = threading.Event()

    @property
    def state(self) -> OrchestratorState:
        with self._state_lock:
            return self._state

    def start(self) -> UpgradeResult:
        """Bring the current installed version up, moving from idle to active."""
        with self._exclusive():
            current = self.version_store.current()
            if self.state is OrchestratorState.ACTIVE:
                return UpgradeResult(True, self.state, current.version if current else None)
            if current is None:
                return UpgradeResult(
                    False,
                    self.state,
                    None,
                    NoVersionAvailable("No proxy version is installed yet."),
                )

            if not self.probe.is_responding():
                console.print(f"[blue]Starting proxy {current.version}...[/blue]")
                try:
                    self._start_instance(current.path, self.proxy_port)
                    result = self._await_compatible(self.probe)
                except UpgradeError as exc:
                    logger.error("Could not start proxy %s: %s", current.version, exc)
                    return UpgradeResult(False, self.state, current.version, exc)
                if not result.is_compatible:
                    return UpgradeResult(
                        False, self.state, current.version, CompatibilityCheckFailed(result)
                    )

            self._transition(OrchestratorState.ACTIVE)
            return UpgradeResult(True, self.state, current.version)

    def stop(self) -> UpgradeResult:
        with self._exclusive():
            self._require_state(OrchestratorState.ACTIVE, "stop")
            self._stop_instance(self.proxy_port)
            self._transition(OrchestratorState.IDLE)
            return UpgradeResult(True, self.state, self.version_store.current_version())

    def install(self, candidate: CandidateVersion) -> UpgradeResult:
        """First install: download, verify, install, mark current and start."""
        with self._exclusive():
            self._require_state(OrchestratorState.IDLE, "install")
            self.journal.start_attempt("install", candidate.version, self.version_store.current_version())
            console.print(f"[blue]Installing proxy {candidate.version}...[/blue]")

            try:
                installed = self._stage(candidate)
                self._run_step("mark_current", self.version_store.mark_current, installed.version)
                self._run_step("start", self._start_and_confirm, installed)
            except UpgradeError as exc:
                return self._finish(False, candidate.version, exc)

            self._transition(OrchestratorState.ACTIVE)
            self._run_retention()
            console.print(f"[green]Proxy {candidate.version} is active.[/green]")
            return self._finish(True, candidate.version)

    def begin_upgrade(self, candidate: CandidateVersion) -> UpgradeResult:
        """Upgrade the active proxy to `candidate`, rolling back on any failure after install."""
        with self._exclusive():
            self._require_state(OrchestratorState.ACTIVE, "begin_upgrade")
            previous = self.version_store.current_version()
            self.journal.start_attempt("upgrade", candidate.version, previous)
            logger.info("Upgrading proxy from %s to %s", previous, candidate.version)

            try:
                installed = self._stage(candidate)
            except UpgradeError as exc:
                return self._finish(False, candidate.version, exc)

            try:
                self._transition(OrchestratorState.TESTING)
                console.print(f"[blue]Testing proxy {installed.version} in dry-run mode...[/blue]")
                self._run_step("dry_run", self._dry_run, installed)

                self._transition(OrchestratorState.PROMOTING)
                console.print(f"[blue]Promoting proxy {installed.version}...[/blue]")
                self._run_step("promote", self._promote, installed)
            except Exception as exc:
                return self._roll_back(previous, candidate.version, self._as_upgrade_error(exc))

            self._transition(OrchestratorState.ACTIVE)
            self._run_retention()
            console.print(f"[green]Proxy {installed.version} is now active.[/green]")
            return self._finish(True, candidate.version)

    def check_for_update(self) -> Optional[CandidateVersion]:
        """Newest qualifying release if it is newer than the current version."""
        candidate = self.release_catalog.latest_candidate(
            self.platform_matcher,
            include_prereleases=self.include_prereleases,
        )
        current = self.version_store.current_version()
        if not is_newer(candidate.version, current):
            logger.info("Proxy %s is up to date (latest release %s).", current, candidate.version)
            return None
        return candidate

    def upgrade_to_latest(self) -> UpgradeResult:
        try:
            candidate = self.check_for_update()
        except UpgradeError as exc:
            logger.error(str(exc))
            return UpgradeResult(False, self.state, None, exc)

        if candidate is None:
            return UpgradeResult(True, self.state, self.version_store.current_version())
        if self.state is OrchestratorState.IDLE:
            return self.install(candidate)
        return self.begin_upgrade(candidate)

    def cancel(self):
        """Cancel the in-flight attempt; steps after the download are routed through rollback."""
        logger.info("Cancellation requested.")
        self._cancel_event.set()
        self.download_service.cancel()

    def installed_versions(self) -> List[InstalledVersion]:
        return self.version_store.list()

    def delete_version(self, ver: str):
        with self._exclusive():
            self.version_store.delete(ver)

    def prune(self) -> List[str]:
        with self._exclusive():
            return self.version_store.enforce_retention(self.max_installed_versions)

    @contextmanager
    def _exclusive(self):
        if not self._attempt_lock.acquire(blocking=False):
            raise UpgradeInProgress("Another proxy operation is already in progress.")
        try:
            self._cancel_event.clear()
            yield
        finally:
            self._attempt_lock.release()

    def _require_state(self, expected: OrchestratorState, operation: str):
        with self._state_lock:
            if self._state is not expected:
                raise InvalidStateTransition(
                    f"{operation} requires state '{expected.value}', "
                    f"current state is '{self._state.value}'."
                )

    def _transition(self, new_state: OrchestratorState):
        with self._state_lock:
            previous = self._state
            if new_state not in _TRANSITIONS[previous]:
                raise InvalidStateTransition(
                    f"Illegal transition from '{previous.value}' to '{new_state.value}'."
                )
            self._state = new_state
        logger.info("Orchestrator state: %s -> %s", previous.value, new_state.value)
        self.journal.record_state(new_state.value)

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.journal.step_started(name)
        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.journal.step_finished(name, "failed", error=str(exc))
            raise
        self.journal.step_finished(name, "success")
        return result

    def _check_cancelled(self):
        if self._cancel_event.is_set():
            raise UpgradeCancelled("Upgrade attempt was cancelled.")

    def _stage(self, candidate: CandidateVersion) -> InstalledVersion:
        staged = self._run_step(
            "download",
            self.download_service.download_verified,
            candidate,
            self.staging_dir,
        )
        try:
            self._check_cancelled()
            return self._run_step("install", self._install_staged, candidate.version, staged)
        finally:
            try:
                os.remove(staged)
            except OSError:
                pass

    def _install_staged(self, ver: str, staged_path) -> InstalledVersion:
        try:
            with open(staged_path, "rb") as file_obj:
                return self.version_store.install(ver, file_obj)
        except OSError as exc:
            raise InstallationFailed(f"Could not read staged binary for {ver}: {exc}") from exc

    def _dry_run(self, installed: InstalledVersion):
        self._check_cancelled()
        try:
            self._start_instance(installed.path, self.dry_run_port)
        except UpgradeError as exc:
            raise DryRunFailed(f"Could not start proxy {installed.version} in dry-run mode: {exc}") from exc

        try:
            result = self._await_compatible(self.dry_run_probe)
        finally:
            self._stop_quietly(self.dry_run_port)

        if not result.is_compatible:
            raise CompatibilityCheckFailed(result)
        logger.info("Dry run of proxy %s succeeded.", installed.version)

    def _promote(self, installed: InstalledVersion):
        self._check_cancelled()
        try:
            self._stop_instance(self.proxy_port)
            self._start_instance(installed.path, self.proxy_port)
        except UpgradeError as exc:
            raise InstallationFailed(f"Could not switch to proxy {installed.version}: {exc}") from exc

        self.version_store.mark_current(installed.version)
        result = self._await_compatible(self.probe)
        if not result.is_compatible:
            raise InstallationFailed(
                f"Promoted proxy {installed.version} failed liveness: {result.description}"
            )
        self._confirm_reported_version(installed.version)

    def _start_and_confirm(self, installed: InstalledVersion):
        try:
            self._start_instance(installed.path, self.proxy_port)
        except UpgradeError as exc:
            raise InstallationFailed(f"Could not start proxy {installed.version}: {exc}") from exc

        result = self._await_compatible(self.probe)
        if not result.is_compatible:
            raise CompatibilityCheckFailed(result)

    def _roll_back(self, previous: Optional[str], target: str, error: UpgradeError) -> UpgradeResult:
        self._transition(OrchestratorState.ROLLING_BACK)
        logger.warning("Rolling back to proxy %s after: %s", previous, error)
        console.print(f"[yellow]Rolling back to proxy {previous}...[/yellow]")

        try:
            self._run_step("rollback", self._restore, previous)
        except Exception as exc:
            rollback_error = RollbackFailed(
                actionable_error("rollback_failed", version=previous or "<none>", detail=str(exc))
            )
            self._transition(OrchestratorState.IDLE)
            logger.critical(str(rollback_error))
            console.print(f"[bold red]Rollback failed:[/bold red] {rollback_error}")
            return self._finish(False, target, rollback_error, status="rollback_failed")

        self._transition(OrchestratorState.ACTIVE)
        console.print(f"[yellow]Proxy {previous} restored.[/yellow]")
        return self._finish(False, target, error, status="rolled_back")

    def _restore(self, previous: Optional[str]):
        if previous is None:
            raise RollbackFailed("No previous proxy version is recorded.")

        installed = self.version_store.get(previous)
        if installed is None:
            raise RollbackFailed(f"Previous proxy version {previous} is no longer installed.")

        self._stop_quietly(self.dry_run_port)
        self._stop_instance(self.proxy_port)
        if self.version_store.current_version() != previous:
            self.version_store.mark_current(previous)
        self._start_instance(installed.path, self.proxy_port)

        result = self._await_compatible(self.probe, check_cancel=False)
        if not result.is_compatible:
            raise RollbackFailed(f"Proxy {previous} did not come back: {result.description}")

    def _await_compatible(self, probe, check_cancel: bool = True) -> CompatibilityCheckResult:
        result = CompatibilityCheckResult.not_running()
        for attempt in range(1, self.startup_attempts + 1):
            if check_cancel:
                self._check_cancelled()
            result = probe.check_compatibility()
            if result.is_compatible:
                logger.debug("Proxy compatible after %s attempt(s).", attempt)
                return result
            if attempt < self.startup_attempts:
                time.sleep(self.startup_interval)

        logger.warning(
            "Proxy not compatible after %s attempt(s): %s",
            self.startup_attempts,
            result.description,
        )
        return result

    def _confirm_reported_version(self, expected: str):
        try:
            reported = self.probe.reported_version()
        except (UpgradeError, requests.RequestException) as exc:
            logger.debug("Could not read the reported proxy version: %s", exc)
            return
        if reported != expected:
            logger.warning("Proxy reports version %s after promoting %s.", reported, expected)

    def _start_instance(self, path: str, port: int):
        try:
            self.supervisor.start(path, port)
        except UpgradeError:
            raise
        except Exception as exc:
            raise UpgradeError(f"Failed to start proxy on port {port}: {exc}") from exc

    def _stop_instance(self, port: int):
        try:
            self.supervisor.stop(port)
        except UpgradeError:
            raise
        except Exception as exc:
            raise UpgradeError(f"Failed to stop proxy on port {port}: {exc}") from exc

    def _stop_quietly(self, port: int):
        try:
            self._stop_instance(port)
        except UpgradeError as exc:
            logger.warning("Could not stop proxy on port %s: %s", port, exc)

    def _run_retention(self):
        try:
            self.version_store.enforce_retention(self.max_installed_versions)
        except UpgradeError as exc:
            logger.warning("Retention could not complete: %s", exc)

    def _as_upgrade_error(self, exc: Exception) -> UpgradeError:
        if isinstance(exc, UpgradeError):
            return exc
        logger.exception("Unexpected error during %s", self.state.value)
        if self.state is OrchestratorState.TESTING:
            return DryRunFailed(str(exc))
        return InstallationFailed(str(exc))

    def _finish(
        self,
        succeeded: bool,
        target: str,
        error: Optional[UpgradeError] = None,
        status: Optional[str] = None,
    ) -> UpgradeResult:
        status = status or ("success" if succeeded else "failed")
        self.journal.finalize(status, error=str(error) if error else None)
        if error is not None and not isinstance(error, RollbackFailed):
            logger.error("Proxy %s: %s", target, error)
        return UpgradeResult(succeeded, self.state, target, error)
