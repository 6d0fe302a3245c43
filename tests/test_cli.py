"""Tests for the widgetctl command line interface."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner, Result

from widgetctl import main
from widgetctl.cli import cli


@pytest.fixture(autouse=True)
def detach_log_handler() -> Iterator[None]:
    """Remove the handler bound to the runner's stderr after each test."""
    yield
    if main._handler is not None:
        logging.getLogger().removeHandler(main._handler)
        main._handler = None


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def invoke(runner: CliRunner, *args: str | Path) -> Result:
    return runner.invoke(
        cli, ["--log-level", "WARNING", *[str(a) for a in args]], catch_exceptions=False
    )


class TestValidateCommand:
    """Tests for widgetctl validate."""

    def test_valid_registry(self, runner: CliRunner, registry_file: Path) -> None:
        """Test that a clean registry passes."""
        result = invoke(runner, "validate", registry_file)

        assert result.exit_code == 0
        assert "Validation passed." in result.stdout

    def test_collision_exits_2(self, runner: CliRunner, registry_file: Path) -> None:
        """Test that a routing collision is a validation failure."""
        registry_file.write_text(
            registry_file.read_text().replace(
                "    environment: production\n", "    environment: production\n    priority: 100\n"
            )
        )

        result = invoke(runner, "validate", registry_file)

        assert result.exit_code == 2
        assert "share listener priority 100" in result.stderr

    def test_live_needs_provisioner(self, runner: CliRunner, registry_file: Path) -> None:
        """Test that live verification requires a provisioner."""
        result = invoke(runner, "validate", registry_file, "--live")

        assert result.exit_code == 1

    def test_live_after_simulated_apply(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test verification against simulated live state."""
        invoke(runner, "apply", registry_file, "--state", state_path, "--simulate")

        result = invoke(
            runner, "validate", registry_file, "--state", state_path, "--live", "--simulate"
        )

        assert result.exit_code == 0


class TestPlanCommand:
    """Tests for widgetctl plan."""

    def test_text_plan(self, runner: CliRunner, registry_file: Path, state_path: Path) -> None:
        """Test the human-readable plan."""
        result = invoke(runner, "plan", registry_file, "--state", state_path)

        assert result.exit_code == 0
        assert "Plan: 18 to create, 0 to update, 0 to replace, 0 to destroy" in result.stdout
        assert "ecr_repository.widget-clubhouse" in result.stdout

    def test_json_plan(self, runner: CliRunner, registry_file: Path, state_path: Path) -> None:
        """Test that --json prints only the plan document on stdout."""
        result = invoke(runner, "plan", registry_file, "--state", state_path, "--json")

        document = json.loads(result.stdout)
        assert document["counts"]["Create"] == 18
        assert document["operations"][0]["kind"] == "Create"

    def test_missing_registry(self, runner: CliRunner, tmp_path: Path) -> None:
        """Test that load errors exit 1 with the message."""
        result = invoke(runner, "plan", tmp_path / "missing.yaml")

        assert result.exit_code == 1
        assert "Registry file not found" in result.stderr

    def test_corrupt_state(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test that corrupt state exits 1."""
        state_path.parent.mkdir(parents=True, exist_ok=True)
        state_path.write_text("{}")

        result = invoke(runner, "plan", registry_file, "--state", state_path)

        assert result.exit_code == 1
        assert "Unsupported state version" in result.stderr

    def test_tag_and_routing_failures_reported_together(
        self, runner: CliRunner, registry_file: Path
    ) -> None:
        """Test that plan lists both kinds of violation and exits 2."""
        text = registry_file.read_text().replace(
            "    environment: production\n", "    environment: production\n    priority: 100\n"
        )
        registry_file.write_text(
            text.replace(
                "    memorySize: 512\n", "    memorySize: 512\n    tags:\n      Project: other\n"
            )
        )

        result = invoke(runner, "plan", registry_file)

        assert result.exit_code == 2
        assert "Validation failed:" in result.stderr
        assert "tag policy: " in result.stderr
        assert "share listener priority 100" in result.stderr
        assert result.stdout == ""


class TestApplyCommand:
    """Tests for widgetctl apply."""

    def test_simulated_apply_then_noop_plan(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test a full simulated apply followed by an empty plan."""
        result = invoke(runner, "apply", registry_file, "--state", state_path, "--simulate")

        assert result.exit_code == 0
        assert "Completed operations (18):" in result.stdout
        assert state_path.exists()

        replan = invoke(runner, "plan", registry_file, "--state", state_path)
        assert "0 to create, 0 to update, 0 to replace, 0 to destroy, 18 unchanged." in (
            replan.stdout
        )

    def test_concurrent_simulated_apply(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test the opt-in worker pool."""
        result = invoke(
            runner,
            "apply",
            registry_file,
            "--state",
            state_path,
            "--simulate",
            "--max-workers",
            "4",
        )

        assert result.exit_code == 0

    def test_invalid_worker_count(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test that an out-of-range worker count is a configuration error."""
        result = invoke(
            runner, "apply", registry_file, "--state", state_path, "--simulate", "--max-workers", "0"
        )

        assert result.exit_code == 1
        assert "WIDGETCTL_MAX_WORKERS" in result.stderr

    def test_requires_provisioner(self, runner: CliRunner, registry_file: Path) -> None:
        """Test that apply needs an explicit provisioner choice."""
        result = invoke(runner, "apply", registry_file)

        assert result.exit_code == 1
        assert "--simulate or --provisioner" in result.stderr

    def test_partial_failure_exits_1(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test the completed-operations report on partial failure."""
        result = invoke(
            runner,
            "apply",
            registry_file,
            "--state",
            state_path,
            "--provisioner",
            "provisioner_mock:failing_lambda_provisioner",
        )

        assert result.exit_code == 1
        assert "Completed operations (6):" in result.stdout
        assert "[AccessDenied]" in result.stdout

    def test_unknown_provisioner(self, runner: CliRunner, registry_file: Path) -> None:
        """Test that a bad factory path is reported."""
        result = invoke(
            runner, "apply", registry_file, "--provisioner", "provisioner_mock:nothing_here"
        )

        assert result.exit_code == 1
        assert "Cannot load provisioner" in result.stderr

    def test_validation_failure_exits_2(
        self, runner: CliRunner, registry_file: Path, state_path: Path
    ) -> None:
        """Test that nothing runs when validation fails."""
        registry_file.write_text(
            registry_file.read_text().replace(
                "    memorySize: 512\n", "    memorySize: 512\n    tags:\n      Project: other\n"
            )
        )

        result = invoke(runner, "apply", registry_file, "--state", state_path, "--simulate")

        assert result.exit_code == 2
        assert "tag policy" in result.stderr
        assert not state_path.exists()
