"""Tests for the command line interface."""

import json
import logging
import os
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner
from rule_fixtures import rule_record, write_environment
from sentinel_mock import SUBSCRIPTION_ID, MockSentinelService, arm_rule, workspace_map

import ruledrift.main as main_module
from ruledrift import __version__
from ruledrift.cli import cli
from ruledrift.config import Config
from ruledrift.remote_client import RemoteClient


@pytest.fixture(autouse=True)
def isolated_logging() -> Iterator[None]:
    """Drop the handler bound to CliRunner's stderr after each test."""
    yield
    if main_module._handler is not None:
        logging.getLogger().removeHandler(main_module._handler)
        main_module._handler = None


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def service() -> MockSentinelService:
    service = MockSentinelService()
    service.add_workspace("ws-contoso-dev")
    return service


@pytest.fixture
def patched_remote(config: Config, service: MockSentinelService) -> Iterator[None]:
    remote = RemoteClient(config, workspace_map(), client=service)
    env = {"RULEDRIFT_RETRY_BACKOFF_BASE": "0"}
    with patch.dict(os.environ, env, clear=True):
        with patch("ruledrift.main.build_remote_client", return_value=remote):
            yield


class TestReconcileCommand:
    """Tests for `ruledrift reconcile`."""

    def test_import_in_sync(
        self,
        runner: CliRunner,
        rules_root: Path,
        service: MockSentinelService,
        patched_remote: None,
    ) -> None:
        """Test that an in-sync environment exits 0."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r1")])
        service.add_rule("ws-contoso-dev", arm_rule("r1"))

        result = runner.invoke(
            cli, ["reconcile", "--org", "contoso", "--env", "dev", "--rules-root", str(rules_root)]
        )

        assert result.exit_code == 0
        assert "Rule drift report: mode=import org=contoso env=dev" in result.output
        assert service.closed

    def test_import_writes_jsonl(
        self,
        runner: CliRunner,
        rules_root: Path,
        tmp_path: Path,
        service: MockSentinelService,
        patched_remote: None,
    ) -> None:
        """Test that import writes rules and the JSON lines report."""
        write_environment(rules_root, "contoso", "dev", [])
        service.add_rule("ws-contoso-dev", arm_rule("r2", severity="High"))
        jsonl_path = tmp_path / "report.jsonl"

        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--jsonl",
                str(jsonl_path),
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 0
        assert (rules_root / "contoso" / "dev" / "queries" / "r2.kql").is_file()
        records = [json.loads(line) for line in jsonl_path.read_text().splitlines()]
        assert records[0]["type"] == "summary"
        assert records[0]["rulesWritten"] == 1
        assert [r["ruleName"] for r in records if r["type"] == "action"] == ["r2"]

    def test_dry_run(
        self,
        runner: CliRunner,
        rules_root: Path,
        service: MockSentinelService,
        patched_remote: None,
    ) -> None:
        """Test that --dry-run leaves the store untouched."""
        write_environment(rules_root, "contoso", "dev", [])
        service.add_rule("ws-contoso-dev", arm_rule("r2"))

        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--dry-run",
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 0
        assert "(dry run)" in result.output
        assert not (rules_root / "contoso" / "dev" / "queries" / "r2.kql").exists()

    def test_partial_failure_exit_code(
        self,
        runner: CliRunner,
        rules_root: Path,
        service: MockSentinelService,
        patched_remote: None,
    ) -> None:
        """Test that rule-level failures exit 2."""
        write_environment(
            rules_root, "contoso", "dev", [rule_record("r1"), rule_record("r2", severity="Severe")]
        )
        service.add_rule("ws-contoso-dev", arm_rule("r1"))

        result = runner.invoke(
            cli, ["reconcile", "--org", "contoso", "--env", "dev", "--rules-root", str(rules_root)]
        )

        assert result.exit_code == 2
        assert "[ParseError] r2 (desired)" in result.output

    def test_unknown_environment_is_fatal(
        self,
        runner: CliRunner,
        rules_root: Path,
        tmp_path: Path,
        patched_remote: None,
    ) -> None:
        """Test that a nonexistent environment exits 1 without a report."""
        jsonl_path = tmp_path / "report.jsonl"

        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "orgX",
                "--env",
                "staging",
                "--jsonl",
                str(jsonl_path),
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "Rule drift report" not in result.output
        assert not jsonl_path.exists()

    def test_promotion_check_gap(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that promotion gaps exit 1 and are listed."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r1"), rule_record("r2")])
        write_environment(rules_root, "contoso", "prod", [rule_record("r1")])

        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--mode",
                "promotion-check",
                "--target-env",
                "prod",
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 1
        assert "[MissingInTarget] r2" in result.output

    def test_promotion_check_clean(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that matching environments exit 0."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r1")])
        write_environment(rules_root, "contoso", "prod", [rule_record("r1", severity="High")])

        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--mode",
                "promotion-check",
                "--target-env",
                "prod",
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 0

    def test_promotion_check_requires_target(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that promotion-check without --target-env is a usage error."""
        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--mode",
                "promotion-check",
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 2
        assert "--target-env is required" in result.output

    def test_promotion_check_same_env(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that comparing an environment with itself is a usage error."""
        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--mode",
                "promotion-check",
                "--target-env",
                "dev",
                "--rules-root",
                str(rules_root),
            ],
        )

        assert result.exit_code == 2

    def test_missing_rules_root(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that an invalid configuration exits 1 with a message."""
        result = runner.invoke(
            cli,
            [
                "reconcile",
                "--org",
                "contoso",
                "--env",
                "dev",
                "--rules-root",
                str(tmp_path / "missing"),
            ],
        )

        assert result.exit_code == 1
        assert "Rules root does not exist" in result.output

    def test_secret_in_environment_blocks_import(
        self, runner: CliRunner, rules_root: Path
    ) -> None:
        """Test that a client secret in the environment stops import before any request."""
        write_environment(rules_root, "contoso", "dev", [])
        (rules_root / "workspaces.yaml").write_text(
            yaml.safe_dump(
                {
                    "organizations": {
                        "contoso": {
                            "dev": {
                                "subscriptionId": SUBSCRIPTION_ID,
                                "resourceGroup": "rg-sentinel",
                                "workspaceName": "ws-contoso-dev",
                            }
                        }
                    }
                }
            ),
            encoding="utf-8",
        )

        with patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "hunter2"}, clear=True):
            result = runner.invoke(
                cli,
                ["reconcile", "--org", "contoso", "--env", "dev", "--rules-root", str(rules_root)],
            )

        assert result.exit_code == 1
        assert "AZURE_CLIENT_SECRET is set" in result.output
        assert "hunter2" not in result.output


class TestPromoteCommand:
    """Tests for `ruledrift promote`."""

    def promote_args(self, rules_root: Path, *extra: str) -> list[str]:
        return [
            "promote",
            "--org",
            "contoso",
            "--source-env",
            "dev",
            "--target-env",
            "prod",
            "--rule",
            "r2",
            "--rules-root",
            str(rules_root),
            *extra,
        ]

    def test_promote(self, runner: CliRunner, rules_root: Path) -> None:
        """Test copying a rule with --yes, then re-running as a no-op."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r2")])
        write_environment(rules_root, "contoso", "prod", [])

        result = runner.invoke(cli, self.promote_args(rules_root, "--yes"))

        assert result.exit_code == 0
        assert "Created 'r2' in 'prod'" in result.output
        assert (rules_root / "contoso" / "prod" / "queries" / "r2.kql").is_file()

        again = runner.invoke(cli, self.promote_args(rules_root, "--yes"))
        assert "already up to date" in again.output

    def test_confirmation_declined(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that declining the prompt aborts without writing."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r2")])
        write_environment(rules_root, "contoso", "prod", [])

        result = runner.invoke(cli, self.promote_args(rules_root), input="n\n")

        assert result.exit_code == 1
        assert not (rules_root / "contoso" / "prod" / "queries" / "r2.kql").exists()

    def test_dry_run(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that --dry-run validates without prompting or writing."""
        write_environment(rules_root, "contoso", "dev", [rule_record("r2")])
        write_environment(rules_root, "contoso", "prod", [])

        result = runner.invoke(cli, self.promote_args(rules_root, "--dry-run"))

        assert result.exit_code == 0
        assert "Dry run" in result.output
        assert not (rules_root / "contoso" / "prod" / "queries" / "r2.kql").exists()

    def test_unknown_rule(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that promoting an absent rule exits 1."""
        write_environment(rules_root, "contoso", "dev", [])

        result = runner.invoke(cli, self.promote_args(rules_root, "--yes"))

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestEnvironmentsCommand:
    """Tests for `ruledrift environments`."""

    def test_list(self, runner: CliRunner, rules_root: Path) -> None:
        """Test listing environments one per line."""
        write_environment(rules_root, "contoso", "prod", [])
        write_environment(rules_root, "contoso", "dev", [])

        result = runner.invoke(
            cli, ["environments", "--org", "contoso", "--rules-root", str(rules_root)]
        )

        assert result.exit_code == 0
        assert "dev\nprod\n" in result.output

    def test_unknown_org(self, runner: CliRunner, rules_root: Path) -> None:
        """Test that an unknown organization exits 1."""
        result = runner.invoke(
            cli, ["environments", "--org", "nobody", "--rules-root", str(rules_root)]
        )

        assert result.exit_code == 1


def test_version(runner: CliRunner) -> None:
    """Test the --version flag."""
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
