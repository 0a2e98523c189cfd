"""
Test suite for CLI interface

Tests CLI commands, argument parsing, and integration with the engine.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from selfheal import config as config_module
from selfheal.cli import cli, config, detectors, executors, run_actions
from selfheal.config import SelfHealConfig

ACTIONS = {
    "actions": [
        {
            "id": "action-esc",
            "name": "Escalate stuck workflow",
            "action_type": "escalation",
            "action_config": {
                "escalation_chain": [
                    {"level": 1, "target_type": "person", "target_id": "mgr-1"}
                ]
            },
            "trigger_config": {"type": "pattern", "pattern_type": "stuck_workflow"},
        },
        {
            "id": "action-gated",
            "action_type": "escalation",
            "requires_approval": True,
            "action_config": {
                "escalation_chain": [
                    {"level": 1, "target_type": "person", "target_id": "mgr-1"}
                ]
            },
            "trigger_config": {"type": "pattern", "pattern_type": "stuck_workflow"},
        },
    ],
    "persons": [{"id": "mgr-1", "name": "Max Manager", "role": "manager"}],
}

PATTERNS = [
    {
        "id": "pattern-1",
        "type": "stuck_workflow",
        "description": "Invoice approval stuck for 3 days",
        "severity": "high",
    }
]


@pytest.fixture(autouse=True)
def default_config():
    saved = config_module._config
    config_module.set_config(SelfHealConfig())
    yield
    config_module._config = saved


class TestCLICommands:
    """Test CLI command functionality"""

    def setup_method(self):
        """Setup test fixtures"""
        self.runner = CliRunner()

    def test_cli_group_help(self):
        """Test CLI group help command"""
        result = self.runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "selfheal - pattern-driven self-healing automation" in result.output
        assert "run-actions" in result.output
        assert "detectors" in result.output
        assert "config" in result.output

    def test_cli_version(self):
        """Test CLI version display"""
        result = self.runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_log_level_option(self):
        """Test logging is configured before subcommands run"""
        with patch("selfheal.cli.configure_logging") as configure:
            result = self.runner.invoke(cli, ["--log-level", "debug", "detectors"])

        assert result.exit_code == 0
        assert configure.call_args.args[1] == "debug"

    def test_log_level_from_config(self):
        config_module.set_config(SelfHealConfig(log_level="WARNING"))
        with patch("selfheal.cli.configure_logging") as configure:
            self.runner.invoke(cli, ["detectors"])

        assert configure.call_args.args[1] == "WARNING"


class TestRunActionsCommand:
    """Test run-actions CLI command"""

    def setup_method(self):
        self.runner = CliRunner()

    def _write_inputs(self):
        Path("actions.yml").write_text(yaml.dump(ACTIONS))
        Path("patterns.json").write_text(json.dumps(PATTERNS))

    def test_help(self):
        result = self.runner.invoke(run_actions, ["--help"])

        assert result.exit_code == 0
        assert "--actions-file" in result.output
        assert "--dry-run" in result.output

    def test_missing_files(self):
        result = self.runner.invoke(run_actions, ["--organization", "org-1"])
        assert result.exit_code != 0

    def test_runs_matched_actions(self):
        with self.runner.isolated_filesystem():
            self._write_inputs()
            result = self.runner.invoke(
                run_actions,
                ["--actions-file", "actions.yml", "--patterns-file", "patterns.json", "--organization", "org-1"],
            )

        assert result.exit_code == 0
        lines = [line for line in result.output.splitlines() if "action=" in line]
        assert len(lines) == 2
        assert any("action=action-esc status=completed" in line for line in lines)
        assert any("action=action-gated status=pending_approval" in line for line in lines)

    def test_bypass_approval(self):
        with self.runner.isolated_filesystem():
            self._write_inputs()
            result = self.runner.invoke(
                run_actions,
                [
                    "--actions-file", "actions.yml",
                    "--patterns-file", "patterns.json",
                    "--organization", "org-1",
                    "--bypass-approval",
                ],
            )

        assert result.exit_code == 0
        assert "action=action-gated status=completed" in result.output

    def test_no_matches(self):
        with self.runner.isolated_filesystem():
            Path("actions.yml").write_text(yaml.dump([]))
            Path("patterns.json").write_text(json.dumps(PATTERNS))
            result = self.runner.invoke(
                run_actions,
                ["--actions-file", "actions.yml", "--patterns-file", "patterns.json", "--organization", "org-1"],
            )

        assert result.exit_code == 0
        assert "No actions matched" in result.output

    def test_invalid_patterns(self):
        with self.runner.isolated_filesystem():
            Path("actions.yml").write_text(yaml.dump(ACTIONS))
            Path("patterns.json").write_text(json.dumps([{"id": "broken"}]))
            result = self.runner.invoke(
                run_actions,
                ["--actions-file", "actions.yml", "--patterns-file", "patterns.json", "--organization", "org-1"],
            )

        assert "Running actions failed" in result.output


class TestRegistryCommands:
    """Test plugin listing commands"""

    def setup_method(self):
        self.runner = CliRunner()

    def test_executors(self):
        result = self.runner.invoke(executors)

        assert result.exit_code == 0
        assert "escalation (rollback)" in result.output

    def test_detectors(self):
        result = self.runner.invoke(detectors)

        assert result.exit_code == 0


class TestConfigCommand:
    """Test config CLI command"""

    def setup_method(self):
        self.runner = CliRunner()

    def test_config_without_show_lists_sections(self):
        result = self.runner.invoke(config, [])

        assert result.exit_code == 0
        assert "selfheal configuration sections" in result.output
        assert "safety     Guard rails checked before a pattern-triggered action runs" in result.output
        assert "(SELFHEAL_ROLLBACK__*)" in result.output
        assert "log_level  INFO" in result.output
        assert "Use --show [--section NAME] to print values" in result.output

    def test_config_show_yaml(self):
        result = self.runner.invoke(config, ["--show"])

        assert result.exit_code == 0
        assert "Current selfheal Configuration" in result.output
        assert "default_timeout_seconds: 60.0" in result.output

    def test_config_show_json(self):
        result = self.runner.invoke(config, ["--show", "--format", "json"])

        assert result.exit_code == 0
        body = result.output.split("=" * 40, 1)[1]
        data = json.loads(body)
        assert data["rollback"]["max_rollback_window_hours"] == 24.0
        assert list(data)[:5] == ["detection", "executor", "rollback", "escalation", "safety"]

    def test_config_single_section(self):
        result = self.runner.invoke(config, ["--show", "--section", "safety", "--format", "json"])

        assert result.exit_code == 0
        assert "selfheal safety settings" in result.output
        data = json.loads(result.output.split("=" * 40, 1)[1])
        assert list(data) == ["safety"]
        assert data["safety"]["max_actions_per_hour"] == 100

    def test_config_unknown_section(self):
        result = self.runner.invoke(config, ["--show", "--section", "llm"])

        assert result.exit_code == 2
        assert "Invalid value for '--section'" in result.output

    def test_config_masks_storage_password(self):
        config_module.set_config(SelfHealConfig(storage={"backend": "redis", "password": "s3cret"}))

        result = self.runner.invoke(config, ["--show", "--section", "storage"])

        assert "s3cret" not in result.output
        assert "password: '***'" in result.output
