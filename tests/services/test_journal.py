import json

from proxyupgrader.services.journal import UpgradeJournal


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


def test_journal_records_attempt_steps_and_states(tmp_path):
    journal_file = tmp_path / "last-upgrade.json"
    journal = UpgradeJournal(str(journal_file), logger=DummyLogger())

    journal.start_attempt("upgrade", "6.6.70", "6.6.69")
    journal.record_state("testing")
    journal.step_started("dry_run")
    journal.step_finished("dry_run", "failed", error="Proxy is not responding to API requests")
    journal.record_state("rollingBack")
    journal.finalize("rolled_back", error="Compatibility check failed")

    data = json.loads(journal_file.read_text(encoding="utf-8"))

    assert data["operation"] == "upgrade"
    assert data["status"] == "rolled_back"
    assert data["versions"] == {"from": "6.6.69", "target": "6.6.70"}
    assert [item["state"] for item in data["states"]] == ["testing", "rollingBack"]
    assert data["steps"][0]["name"] == "dry_run"
    assert data["steps"][0]["status"] == "failed"
    assert data["steps"][0]["error"] == "Proxy is not responding to API requests"
    assert data["duration_seconds"] >= 0


def test_journal_ignores_events_before_an_attempt(tmp_path):
    journal_file = tmp_path / "last-upgrade.json"
    journal = UpgradeJournal(str(journal_file), logger=DummyLogger())

    journal.record_state("active")
    journal.step_started("download")
    journal.finalize("success")

    assert not journal_file.exists()
