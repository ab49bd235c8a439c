"""Unit tests for the click command-line interface."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from candyclash import __version__
from candyclash.main import cli
from candyclash.settlement.types import LeaderboardEntry
from candyclash.state.database import create_db_engine, get_session_factory
from candyclash.state.repository import SqlLedger


@pytest.fixture(autouse=True)
def _reset_root_logger() -> None:
    yield
    logging.getLogger().handlers.clear()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    config = tmp_path / "config"
    config.mkdir()
    (config / "base.yaml").write_text(
        yaml.dump(
            {
                "database": {"url": f"sqlite:///{tmp_path / 'test.db'}"},
                "logging": {"level": "WARNING", "log_dir": str(tmp_path / "logs")},
            }
        )
    )
    return config


def _ledger(config_dir: Path) -> SqlLedger:
    url = yaml.safe_load((config_dir / "base.yaml").read_text())["database"]["url"]
    return SqlLedger(get_session_factory(create_db_engine(url)))


class TestBasics:
    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_templates(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["templates"])
        assert result.exit_code == 0
        assert "standard (default): Standard Distribution" in result.output
        assert "#4-999 split: 30%" in result.output

    def test_validate_config(self, runner: CliRunner, config_dir: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "--config-dir", str(config_dir)])
        assert result.exit_code == 0
        assert "Configuration is valid." in result.output

    def test_validate_config_bad_distribution(self, runner: CliRunner, config_dir: Path) -> None:
        distributions = config_dir / "distributions"
        distributions.mkdir()
        (distributions / "broken.yaml").write_text(yaml.dump({"type": "percentage", "rules": []}))
        result = runner.invoke(cli, ["validate-config", "--config-dir", str(config_dir)])
        assert result.exit_code == 1


class TestCheckDistribution:
    def test_valid_yaml(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "dist.yaml"
        path.write_text(
            yaml.dump({"type": "percentage", "rules": [{"position": 1, "amount": 60, "type": "percentage"}]})
        )
        result = runner.invoke(cli, ["check-distribution", str(path)])
        assert result.exit_code == 0
        assert "#1: 60%" in result.output

    def test_json_legacy(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "dist.json"
        path.write_text(json.dumps({"1st": 50, "2nd": 30}))
        result = runner.invoke(cli, ["check-distribution", str(path), "--rake-bps", "500"])
        assert result.exit_code == 0
        assert "Rake: 5.0" in result.output

    def test_reports_every_error(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "dist.yaml"
        path.write_text(
            yaml.dump(
                {
                    "type": "percentage",
                    "rules": [
                        {"position": 1, "amount": 90, "type": "percentage"},
                        {"position": 1, "amount": 20, "type": "percentage"},
                    ],
                }
            )
        )
        result = runner.invoke(cli, ["check-distribution", str(path)])
        assert result.exit_code == 1
        assert "2 error(s)" in result.output
        assert "Duplicate position: 1" in result.output


class TestPreview:
    def test_default_template(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["preview", "--players", "10", "--pot", "100"])
        assert result.exit_code == 0
        assert "Payout: 38 gold" in result.output
        assert "Total paid: 75 gold" in result.output

    def test_refund_preview(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["preview", "--template", "participation", "--players", "4"])
        assert result.exit_code == 0
        assert "Outcome: refund" in result.output
        assert "Total paid: 40 gold" in result.output

    def test_unknown_template(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["preview", "--template", "nope"])
        assert result.exit_code == 1


class TestPeriodCommands:
    def test_init_create_settle(self, runner: CliRunner, config_dir: Path) -> None:
        assert runner.invoke(cli, ["init-db", "--config-dir", str(config_dir)]).exit_code == 0
        result = runner.invoke(cli, ["create-period", "day-1", "--config-dir", str(config_dir)])
        assert result.exit_code == 0, result.output
        assert "Created period day-1 (active)" in result.output

        ledger = _ledger(config_dir)
        for i in range(1, 11):
            ledger.create_user(f"u{i}", f"Player {i}", balance=10)
            ledger.record_entry("day-1", f"u{i}", f"a{i}")
            ledger.record_result("day-1", LeaderboardEntry(f"a{i}", f"u{i}", f"Player {i}", time_ms=i * 1000))

        result = runner.invoke(cli, ["settle", "day-1", "--config-dir", str(config_dir)])
        assert result.exit_code == 0, result.output
        assert "Period day-1 settled." in result.output
        assert ledger.get_user_balance("u1") == 38

        result = runner.invoke(cli, ["settle", "day-1", "--config-dir", str(config_dir)])
        assert "already closed" in result.output
        assert ledger.get_user_balance("u1") == 38

    def test_settle_unknown_period(self, runner: CliRunner, config_dir: Path) -> None:
        runner.invoke(cli, ["init-db", "--config-dir", str(config_dir)])
        result = runner.invoke(cli, ["settle", "missing", "--config-dir", str(config_dir)])
        assert result.exit_code == 1

    def test_sweep_nothing_expired(self, runner: CliRunner, config_dir: Path) -> None:
        runner.invoke(cli, ["init-db", "--config-dir", str(config_dir)])
        runner.invoke(cli, ["create-period", "day-1", "--config-dir", str(config_dir)])
        result = runner.invoke(cli, ["sweep", "--config-dir", str(config_dir)])
        assert result.exit_code == 0
        assert "No expired periods." in result.output

    def test_sweep_expired(self, runner: CliRunner, config_dir: Path) -> None:
        runner.invoke(cli, ["init-db", "--config-dir", str(config_dir)])
        runner.invoke(cli, ["create-period", "day-1", "--hours", "0", "--config-dir", str(config_dir)])
        result = runner.invoke(cli, ["sweep", "--config-dir", str(config_dir)])
        assert result.exit_code == 0
        assert "day-1: settled, 0 payouts, 0 gold" in result.output

    def test_create_draft_with_template(self, runner: CliRunner, config_dir: Path) -> None:
        runner.invoke(cli, ["init-db", "--config-dir", str(config_dir)])
        result = runner.invoke(
            cli,
            ["create-period", "day-2", "--draft", "--distribution", "top_heavy", "--config-dir", str(config_dir)],
        )
        assert result.exit_code == 0
        period = _ledger(config_dir).get_period("day-2")
        assert period.status.value == "draft"
        assert period.prize_distribution["rake"] == 10
