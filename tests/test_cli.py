"""Tests for the hostwatch command line."""

import json

import pytest
from click.testing import CliRunner

from hostwatch.__main__ import cli
from hostwatch.engine import InventoryEngine


@pytest.fixture
def runner(monkeypatch, make_prober):
    monkeypatch.setenv("HOSTWATCH_STORAGE__BACKEND", "memory")
    monkeypatch.setenv("HOSTWATCH_STORAGE__SETTINGS_BACKEND", "memory")

    def build_engine(app_config):
        return InventoryEngine(
            app_config=app_config,
            prober=make_prober({"192.168.1.1": 4}),
            local_addresses=lambda: set(),
            range_detector=lambda: "192.168.1.0/30",
            configure_logging=False,
        )

    monkeypatch.setattr("hostwatch.__main__.InventoryEngine", build_engine)
    return CliRunner()


def test_version(runner):
    result = runner.invoke(cli, ["version"])
    assert result.exit_code == 0
    assert "hostwatch v0.1.0" in result.output


def test_config_show(runner):
    result = runner.invoke(cli, ["-l", "debug", "config-show"])
    assert result.exit_code == 0
    assert '"backend": "memory"' in result.output
    assert '"level": "DEBUG"' in result.output


def test_config_file(runner, tmp_path):
    config_file = tmp_path / "hostwatch.json"
    config_file.write_text(json.dumps({"scan": {"worker_pool_size": 3}}))
    result = runner.invoke(cli, ["-c", str(config_file), "config-show"])
    assert result.exit_code == 0
    assert '"worker_pool_size": 3' in result.output


def test_resolve(runner):
    result = runner.invoke(cli, ["resolve", "192.168.1.0/30"])
    assert result.exit_code == 0
    assert "192.168.1.1\n192.168.1.2" in result.output


def test_resolve_rejects_oversized_range(runner):
    result = runner.invoke(cli, ["resolve", "10.0.0.0/16"])
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert "10.0.0.0/24" in result.output


def test_scan_prints_result(runner):
    result = runner.invoke(cli, ["scan", "--range", "192.168.1.0/30", "--mode", "quick"])
    assert result.exit_code == 0
    assert '"found": 1' in result.output
    assert '"online": 1' in result.output


def test_unknown_host(runner):
    result = runner.invoke(cli, ["host", "192.168.1.77"])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_blacklist_add(runner):
    result = runner.invoke(cli, ["blacklist", "add", "192.168.1.9"])
    assert result.exit_code == 0
    assert "192.168.1.9 blacklisted" in result.output

    invalid = runner.invoke(cli, ["blacklist", "add", "bogus"])
    assert invalid.exit_code == 1
    assert "Invalid IPv4 address" in invalid.output


def test_purge_requires_confirmation(runner):
    aborted = runner.invoke(cli, ["purge", "--category", "history"], input="n\n")
    assert aborted.exit_code == 1

    result = runner.invoke(cli, ["purge", "--category", "history", "--days", "0", "--yes"])
    assert result.exit_code == 0
    assert '"historyDeleted": 0' in result.output
    assert '"totalDeleted": 0' in result.output


def test_retention_updates(runner):
    result = runner.invoke(cli, ["retention", "--set", "historyRetentionDays=14"])
    assert result.exit_code == 0
    assert '"historyRetentionDays": 14' in result.output

    invalid = runner.invoke(cli, ["retention", "--set", "historyRetentionDays=-1"])
    assert invalid.exit_code == 1

    malformed = runner.invoke(cli, ["retention", "--set", "historyRetentionDays"])
    assert malformed.exit_code == 2


def test_schedule_file(runner, tmp_path):
    schedule_file = tmp_path / "schedule.json"
    schedule_file.write_text(json.dumps({"enabled": True, "refresh": {"enabled": True, "intervalMinutes": 5}}))

    result = runner.invoke(cli, ["schedule", "--file", str(schedule_file)])
    assert result.exit_code == 0
    assert '"intervalMinutes": 5' in result.output
    assert '"lastAutoRun": null' in result.output
    assert "paused" not in result.output


def test_schedule_has_no_pause_flag(runner):
    result = runner.invoke(cli, ["schedule", "--pause"])
    assert result.exit_code == 2
