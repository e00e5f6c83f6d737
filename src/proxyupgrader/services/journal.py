"""Upgrade attempt journal."""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class UpgradeJournal:
    """Records the steps and outcome of the latest upgrade attempt as JSON."""

    def __init__(self, journal_file: str, logger):
        self.journal_file = journal_file
        self.logger = logger
        self.entry: Dict[str, Any] = {}

    def start_attempt(self, operation: str, target_version: str, from_version: Optional[str]):
        self.entry = {
            "operation": operation,
            "status": "running",
            "started_at": self._now(),
            "finished_at": None,
            "duration_seconds": None,
            "versions": {
                "from": from_version,
                "target": target_version,
            },
            "states": [],
            "steps": [],
            "error": None,
        }
        self.write()

    def record_state(self, state: str):
        if not self.entry:
            return
        self.entry["states"].append({"state": state, "at": self._now()})
        self.write()

    def step_started(self, step_name: str):
        if not self.entry:
            return
        self.entry["steps"].append(
            {
                "name": step_name,
                "status": "running",
                "started_at": self._now(),
                "finished_at": None,
                "duration_seconds": None,
                "error": None,
            }
        )
        self.write()

    def step_finished(self, step_name: str, status: str, error: Optional[str] = None):
        if not self.entry:
            return
        for step in reversed(self.entry["steps"]):
            if step["name"] == step_name and step["status"] == "running":
                step["status"] = status
                step["finished_at"] = self._now()
                step["error"] = error
                step["duration_seconds"] = self._elapsed(step["started_at"], step["finished_at"])
                break
        self.write()

    def finalize(self, status: str, error: Optional[str] = None):
        if not self.entry:
            return
        self.entry["status"] = status
        self.entry["finished_at"] = self._now()
        self.entry["duration_seconds"] = self._elapsed(
            self.entry["started_at"], self.entry["finished_at"]
        )
        self.entry["error"] = error
        self.write()

    def write(self):
        os.makedirs(os.path.dirname(self.journal_file) or ".", exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            prefix="last-upgrade-",
            suffix=".json",
            dir=os.path.dirname(self.journal_file) or ".",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                json.dump(self.entry, file_obj, indent=2, sort_keys=True)
                file_obj.write("\n")
            os.replace(temp_path, self.journal_file)
        except OSError as exc:
            self.logger.warning("Could not write upgrade journal '%s': %s", self.journal_file, exc)
            try:
                os.remove(temp_path)
            except OSError:
                pass

    @staticmethod
    def _elapsed(started_at: str, finished_at: str) -> float:
        return (datetime.fromisoformat(finished_at) - datetime.fromisoformat(started_at)).total_seconds()

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()
