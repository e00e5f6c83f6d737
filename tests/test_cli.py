from datetime import datetime, timezone

from click.testing import CliRunner

import proxyupgrader.cli as cli_module
from proxyupgrader.errors import CannotDeleteCurrentVersion, CompatibilityCheckFailed, RollbackFailed
from proxyupgrader.models import (
    CompatibilityCheckResult,
    InstalledVersion,
    OrchestratorState,
    UpgradeResult,
)


class FakeStore:
    def __init__(self, current=None):
        self.current = current

    def current_version(self):
        return self.current


class FakeOrchestrator:
    def __init__(self, settings, result=None, installed=(), start_result=None):
        self.settings = settings
        self.result = result or UpgradeResult(True, OrchestratorState.ACTIVE, "2.0.0")
        self.installed = list(installed)
        self.version_store = FakeStore(current="2.0.0")
        self.state = OrchestratorState.ACTIVE
        self.deleted = []
        self.candidate = None
        self.start_result = start_result
        self.upgrade_calls = 0

    def start(self):
        return self.start_result or UpgradeResult(True, self.state, self.version_store.current)

    def upgrade_to_latest(self):
        self.upgrade_calls += 1
        return self.result

    def begin_upgrade(self, candidate):
        self.candidate = candidate
        return self.result

    def installed_versions(self):
        return self.installed

    def prune(self):
        return []

    def delete_version(self, version):
        if version == self.version_store.current:
            raise CannotDeleteCurrentVersion(version)
        self.deleted.append(version)


def _patch(monkeypatch, captured, **kwargs):
    def fake_build(settings):
        captured.update(settings)
        captured["orchestrator"] = FakeOrchestrator(settings, **kwargs)
        return captured["orchestrator"]

    monkeypatch.setattr(cli_module, "build_orchestrator", fake_build)


def test_cli_uses_config_and_allows_cli_override(tmp_path, monkeypatch):
    config_file = tmp_path / ".proxyupgrader.yml"
    config_file.write_text(
        "root_dir: config-root\n" "proxy_port: 18080\n" "startup_attempts: 4\n" "download_timeout: 45\n",
        encoding="utf-8",
    )
    captured = {}
    _patch(monkeypatch, captured)

    runner = CliRunner()
    result = runner.invoke(
        cli_module.main,
        ["--config", str(config_file), "--root-dir", str(tmp_path / "cli-root"), "list"],
    )

    assert result.exit_code == 0
    assert captured["root_dir"] == str(tmp_path / "cli-root")
    assert captured["proxy_port"] == 18080
    assert captured["management_url"] == "http://127.0.0.1:18080/v0/management"
    assert captured["startup_attempts"] == 4
    assert captured["download_timeout"] == 45.0
    assert captured["dry_run_port"] == 17081
    assert "No proxy versions installed." in result.output


def test_cli_uses_default_config_file_when_present(tmp_path, monkeypatch):
    (tmp_path / ".proxyupgrader.yml").write_text(
        "management_url: http://127.0.0.1:9000/v0/management\n" "include_prereleases: false\n",
        encoding="utf-8",
    )
    captured = {}
    _patch(monkeypatch, captured)
    monkeypatch.chdir(tmp_path)

    result = CliRunner().invoke(cli_module.main, ["prune"])

    assert result.exit_code == 0
    assert captured["management_url"] == "http://127.0.0.1:9000/v0/management"
    assert captured["include_prereleases"] is False


def test_cli_rejects_invalid_config(tmp_path, monkeypatch):
    config_file = tmp_path / "bad.yml"
    config_file.write_text("bogus: 1\n", encoding="utf-8")
    _patch(monkeypatch, {})

    result = CliRunner().invoke(cli_module.main, ["--config", str(config_file), "list"])

    assert result.exit_code == 1
    assert "Unknown configuration keys: bogus" in result.output


def test_list_shows_current_marker(monkeypatch):
    installed = [
        InstalledVersion("1.0.0", "/p/1.0.0/proxy", datetime(2025, 1, 1, tzinfo=timezone.utc)),
        InstalledVersion("2.0.0", "/p/2.0.0/proxy", datetime(2025, 2, 1, tzinfo=timezone.utc), True),
    ]
    _patch(monkeypatch, {}, installed=installed)

    result = CliRunner().invoke(cli_module.main, ["list"])

    assert result.exit_code == 0
    assert "1.0.0" in result.output
    assert "2.0.0" in result.output


def test_upgrade_exits_with_fatal_code_after_failed_rollback(monkeypatch):
    failed = UpgradeResult(
        False,
        OrchestratorState.IDLE,
        "3.0.0",
        RollbackFailed("Rollback to version 2.0.0 failed"),
    )
    _patch(monkeypatch, {}, result=failed)

    result = CliRunner().invoke(cli_module.main, ["upgrade"])

    assert result.exit_code == 2
    assert "Fatal" in result.output


def test_upgrade_stops_when_installed_version_fails_to_start(monkeypatch):
    captured = {}
    not_started = UpgradeResult(
        False,
        OrchestratorState.IDLE,
        "2.0.0",
        CompatibilityCheckFailed(CompatibilityCheckResult.not_running()),
    )
    _patch(monkeypatch, captured, start_result=not_started)

    result = CliRunner().invoke(cli_module.main, ["upgrade"])

    assert result.exit_code == 1
    assert "Proxy is not running" in result.output
    assert "up to date" not in result.output
    assert captured["orchestrator"].upgrade_calls == 0


def test_upgrade_with_direct_url_builds_verified_candidate(monkeypatch):
    captured = {}
    _patch(monkeypatch, captured)

    result = CliRunner().invoke(
        cli_module.main,
        [
            "upgrade",
            "--version",
            "3.0.0",
            "--url",
            "https://example.com/proxy",
            "--sha256",
            "AB" * 32,
        ],
    )

    assert result.exit_code == 0
    candidate = captured["orchestrator"].candidate
    assert candidate.version == "3.0.0"
    assert candidate.sha256 == "ab" * 32


def test_upgrade_with_url_requires_checksum(monkeypatch):
    _patch(monkeypatch, {})

    result = CliRunner().invoke(
        cli_module.main,
        ["upgrade", "--version", "3.0.0", "--url", "https://example.com/proxy"],
    )

    assert result.exit_code == 1
    assert "--url requires both --version and --sha256" in result.output


def test_delete_current_version_shows_suggested_action(monkeypatch):
    _patch(monkeypatch, {})

    result = CliRunner().invoke(cli_module.main, ["delete", "2.0.0"])

    assert result.exit_code == 1
    assert "Suggested action" in result.output


def test_delete_other_version(monkeypatch):
    captured = {}
    _patch(monkeypatch, captured)

    result = CliRunner().invoke(cli_module.main, ["delete", "1.0.0"])

    assert result.exit_code == 0
    assert captured["orchestrator"].deleted == ["1.0.0"]
