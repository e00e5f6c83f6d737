"""Default process supervisor: runs proxy binaries as child processes keyed by port."""

import os
import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from proxyupgrader.constants import DEFAULT_PROXY_ARGS, STOP_TIMEOUT
from proxyupgrader.errors import UpgradeError


class ProcessSupervisor:
    """Starts and stops proxy processes.

    The PID of every started proxy is written to ``<run_dir>/proxy-<port>.pid``
    so a later invocation can stop an instance it did not start itself.
    """

    def __init__(
        self,
        logger,
        run_dir: str,
        proxy_args: Optional[Sequence[str]] = None,
        subprocess_module=subprocess,
        stop_timeout: float = STOP_TIMEOUT,
    ):
        self.logger = logger
        self.run_dir = Path(run_dir)
        self.proxy_args = list(proxy_args or DEFAULT_PROXY_ARGS)
        self.subprocess = subprocess_module
        self.stop_timeout = stop_timeout
        self._processes: Dict[int, "subprocess.Popen"] = {}
        self._lock = threading.Lock()

    def build_command(self, binary_path: str, port: int) -> List[str]:
        return [binary_path] + [arg.format(port=port) for arg in self.proxy_args]

    def start(self, binary_path: str, port: int):
        self.stop(port)
        cmd = self.build_command(binary_path, port)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        log_path = self.run_dir / f"proxy-{port}.log"
        self.logger.debug("Executing: %s", " ".join(cmd))

        try:
            with open(log_path, "ab") as log_file:
                process = self.subprocess.Popen(
                    cmd,
                    cwd=str(Path(binary_path).parent),
                    stdout=log_file,
                    stderr=self.subprocess.STDOUT,
                )
        except OSError as exc:
            raise UpgradeError(f"Failed to start proxy {binary_path} on port {port}: {exc}") from exc

        with self._lock:
            self._processes[port] = process
        self._pid_file(port).write_text(f"{process.pid}\n", encoding="utf-8")
        self.logger.info("Started proxy PID=%s on port %s (log: %s)", process.pid, port, log_path)

    def stop(self, port: int):
        with self._lock:
            process = self._processes.pop(port, None)

        if process is not None:
            self._stop_child(process, port)
        else:
            pid = self._read_pid(port)
            if pid is not None and self._pid_alive(pid):
                self._stop_pid(pid, port)

        self._remove_pid_file(port)

    def is_running(self, port: int) -> bool:
        with self._lock:
            process = self._processes.get(port)
        if process is not None:
            return process.poll() is None

        pid = self._read_pid(port)
        return pid is not None and self._pid_alive(pid)

    def _stop_child(self, process, port: int):
        if process.poll() is not None:
            return

        self.logger.info("Stopping proxy PID=%s on port %s", process.pid, port)
        process.terminate()
        try:
            process.wait(timeout=self.stop_timeout)
        except self.subprocess.TimeoutExpired:
            self.logger.warning(
                "Proxy PID=%s did not exit in %.1fs; killing it.", process.pid, self.stop_timeout
            )
            process.kill()
            process.wait()

    def _stop_pid(self, pid: int, port: int):
        self.logger.info("Stopping proxy PID=%s on port %s", pid, port)
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as exc:
            self.logger.warning("Could not signal proxy PID=%s: %s", pid, exc)
            return

        deadline = time.monotonic() + self.stop_timeout
        while time.monotonic() < deadline:
            if not self._pid_alive(pid):
                return
            time.sleep(0.2)

        if sys.platform != "win32":
            self.logger.warning("Proxy PID=%s did not exit in %.1fs; killing it.", pid, self.stop_timeout)
            try:
                os.kill(pid, signal.SIGKILL)
            except OSError:
                pass

    def _pid_file(self, port: int) -> Path:
        return self.run_dir / f"proxy-{port}.pid"

    def _read_pid(self, port: int) -> Optional[int]:
        try:
            return int(self._pid_file(port).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _remove_pid_file(self, port: int):
        try:
            os.remove(self._pid_file(port))
        except OSError:
            pass

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        if sys.platform == "win32":
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True
