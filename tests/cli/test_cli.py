"""End-to-end tests of the command line with the simulated provider."""

import json

import pytest
from click.testing import CliRunner

from fleetform import __version__
from fleetform.cli.main import cli
from fleetform.state.manager import FileStateStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, config_file):
    """Run a command against the scenario config with the memory provider."""
    def run(*args, input=None):
        return runner.invoke(
            cli, ["--config", str(config_file), "--provider", "memory", *args], input=input
        )
    return run


def state_of(config_file):
    return FileStateStore(str(config_file.parent / "state.json"))


class TestPlanAndApply:
    """Test plan, apply and destroy."""

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_plan_shows_creates_without_state(self, invoke, config_file):
        result = invoke("plan")

        assert result.exit_code == 0
        assert "7 to create" in result.output
        assert state_of(config_file).list() == {}

    def test_plan_json(self, invoke):
        result = invoke("plan", "--json")

        assert result.exit_code == 0
        entries = json.loads(result.output)
        assert len(entries) == 7
        assert {entry["action"] for entry in entries} == {"create"}

    def test_apply_then_plan_has_no_changes(self, invoke, config_file):
        result = invoke("apply", "--yes")

        assert result.exit_code == 0, result.output
        assert "Apply complete" in result.output
        assert len(state_of(config_file).list()) == 7

        result = invoke("plan")
        assert result.exit_code == 0
        assert "No changes." in result.output

    def test_apply_declined(self, invoke, config_file):
        result = invoke("apply", input="n\n")

        assert result.exit_code == 0
        assert "Apply cancelled" in result.output
        assert state_of(config_file).list() == {}

    def test_destroy(self, invoke, config_file):
        invoke("apply", "--yes")

        result = invoke("destroy", "--yes")

        assert result.exit_code == 0, result.output
        assert "Destroy complete" in result.output
        assert state_of(config_file).list() == {}

    def test_destroy_with_nothing_recorded(self, invoke):
        result = invoke("destroy", "--yes")

        assert result.exit_code == 0
        assert "nothing to destroy" in result.output

    def test_plan_destroy(self, invoke):
        invoke("apply", "--yes")

        result = invoke("plan", "--destroy", "--json")

        assert {entry["action"] for entry in json.loads(result.output)} == {"destroy"}

    def test_busy_lock_fails_apply(self, invoke, config_file):
        config_file.write_text(config_file.read_text().replace("  retry:", "  lock:\n    timeout: 0\n  retry:"))
        state_of(config_file).lock("default", owner="another-run")

        result = invoke("apply", "--yes")

        assert result.exit_code == 1
        assert "Apply failed" in result.output

    def test_busy_lock_blocks_before_planning(self, invoke, config_file):
        config_file.write_text(config_file.read_text().replace("  retry:", "  lock:\n    timeout: 0\n  retry:"))
        state_of(config_file).lock("default", owner="another-run")

        apply_result = invoke("apply", input="y\n")
        plan_result = invoke("plan")

        assert apply_result.exit_code == 1
        assert "Apply these changes?" not in apply_result.output
        assert "another-run" in apply_result.output
        assert plan_result.exit_code == 1
        assert "Plan failed" in plan_result.output
        assert state_of(config_file).list() == {}

    def test_lock_released_after_apply(self, invoke, config_file):
        invoke("apply", "--yes")
        invoke("apply", input="n\n")

        lock = state_of(config_file).lock("default", timeout=0, owner="next-run")
        assert lock.owner == "next-run"


class TestInspection:
    """Test graph and state commands."""

    def test_graph_waves(self, invoke):
        result = invoke("graph", "--format", "waves")

        assert result.exit_code == 0
        assert "Wave 3:" in result.output
        assert "Wave 4:" not in result.output

    def test_graph_dot(self, invoke):
        result = invoke("graph", "--format", "dot")

        assert result.exit_code == 0
        assert result.output.startswith("digraph fleetform {")
        assert '"listener.http" -> "load-balancer.example";' in result.output

    def test_state_list_json(self, invoke):
        invoke("apply", "--yes")

        result = invoke("state", "list", "--json")

        assert result.exit_code == 0
        records = json.loads(result.output)
        assert records["launch-template.example"]["identifier"] == "lt-0001"
        assert records["autoscaling-group.example"]["dependencies"] == [
            "launch-template.example", "target-group.asg"
        ]

    def test_state_list_empty(self, invoke):
        result = invoke("state", "list")

        assert result.exit_code == 0
        assert "No resources recorded" in result.output

    def test_reconcile_once_without_groups(self, invoke):
        result = invoke("reconcile", "--once")

        assert result.exit_code == 0
        assert "Fleet is in sync" in result.output


class TestConfigErrors:
    """Test configuration failures on the command line."""

    def test_missing_config(self, runner, tmp_path):
        result = runner.invoke(cli, ["--config", str(tmp_path / "missing.yaml"), "--provider", "memory", "plan"])

        assert result.exit_code == 1
        assert "Configuration file not found" in result.output

    def test_invalid_config(self, runner, tmp_path):
        path = tmp_path / "fleetform.yaml"
        path.write_text("resources:\n  bucket:\n    logs: {}\n")

        result = runner.invoke(cli, ["--config", str(path), "--provider", "memory", "plan"])

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.output
        assert "resources -> bucket" in result.output

    def test_cycle_is_reported(self, runner, tmp_path):
        path = tmp_path / "fleetform.yaml"
        path.write_text(
            "settings:\n  log_dir: null\n"
            "resources:\n"
            "  security-group:\n"
            "    a:\n      peer: {ref: security-group.b.id}\n"
            "    b:\n      peer: {ref: security-group.a.id}\n"
        )

        result = runner.invoke(cli, ["--config", str(path), "--provider", "memory", "plan"])

        assert result.exit_code == 1
        assert "Circular dependency" in result.output
