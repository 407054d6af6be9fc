"""Tests for the click CLI."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from notetriage.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_config(temp_config_dir: Path, data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Config file pointing at a temporary database and an unreachable server."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(
        "ollama:\n"
        '  base_url: "http://127.0.0.1:9"\n'
        "  health_timeout_seconds: 0.5\n"
        "database:\n"
        f'  path: "{data_dir / "cli.db"}"\n'
    )
    monkeypatch.setenv("NOTETRIAGE_CONFIG_PATH", str(config_path))
    return config_path


class TestValidateConfig:
    def test_valid(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(config_file)])
        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing(self, runner: CliRunner, temp_config_dir: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(temp_config_dir / "nope.yaml")])
        assert result.exit_code == 1
        assert "Load error" in result.output


class TestClassify:
    def test_decision(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["classify", "We decided to adopt SQLite because it is simpler than Postgres."]
        )
        assert result.exit_code == 0
        assert "decision" in result.output
        assert "structural=" in result.output

    def test_empty_text(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["classify", ""])
        assert result.exit_code == 0
        assert "scratch" in result.output


class TestReviewCommands:
    def test_pending_empty(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["pending"])
        assert result.exit_code == 0
        assert "nothing to review" in result.output

    def test_approve_unknown_result(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["approve", "42"])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_override_rejects_unknown_type(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["override", "1", "idea"])
        assert result.exit_code == 2

    def test_health_unavailable(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["health"])
        assert result.exit_code == 1

    def test_config_error(
        self, runner: CliRunner, temp_config_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        bad = temp_config_dir / "bad.yaml"
        bad.write_text("thresholds:\n  auto_apply_high: 0.5\n  auto_apply_mid: 0.9\n")
        monkeypatch.setenv("NOTETRIAGE_CONFIG_PATH", str(bad))

        result = runner.invoke(cli, ["pending"])

        assert result.exit_code == 1
        assert "Config error" in result.output

    def test_scan_promotions_empty(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["scan-promotions"])
        assert result.exit_code == 0
        assert "0 new suggestion(s)" in result.output

    def test_stale_rejects_watch(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["reclassify", "--stale", "--watch"])
        assert result.exit_code == 2
        assert "--stale" in result.output
