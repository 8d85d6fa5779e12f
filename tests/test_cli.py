"""Tests for the ec2-runner command line entry point."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from fakes import LABEL, FakeCompute, FakeRegistration, make_config, online
from ec2runner.cli import EXIT_CONFIG, EXIT_RUNTIME, main
from ec2runner.errors import (
    AgentNotFound,
    ComputeError,
    ReadinessError,
    TeardownError,
)
from ec2runner.lifecycle import RunnerLifecycle
from ec2runner.models import StartResult, TeardownReport
from ec2runner.policy import LaunchStrategy

BASE_ARGS = [
    "--github-token", "ghp_test",
    "--repository", "octo/widgets",
    "--ec2-image-id", "ami-123",
    "--ec2-instance-type", "t3.large",
    "--subnet-id", "subnet-1",
    "--security-group-id", "sg-1",
    "--spot-region", "us-east-1",
]


@pytest.fixture(autouse=True)
def _quiet_logging():
    with patch("ec2runner.cli.setup_logging"):
        yield


@pytest.fixture()
def runner():
    return CliRunner()


@pytest.fixture()
def lifecycle():
    mock = MagicMock()
    mock.instance_id = None
    mock.start.return_value = StartResult(
        label=LABEL, instance_id="i-abc", strategy=LaunchStrategy.ON_DEMAND,
    )
    mock.stop.return_value = TeardownReport(instance_id="i-abc", label=LABEL, runner_id=42)
    with patch("ec2runner.cli.build_lifecycle", return_value=mock) as factory:
        mock.factory = factory
        yield mock


class TestStart:
    def test_writes_outputs(self, runner, lifecycle, tmp_path, monkeypatch):
        outputs = tmp_path / "github_output"
        monkeypatch.setenv("GITHUB_OUTPUT", str(outputs))
        result = runner.invoke(main, ["--mode", "start", *BASE_ARGS])
        assert result.exit_code == 0, result.output
        assert outputs.read_text() == f"label={LABEL}\nec2-instance-id=i-abc\n"
        lifecycle.start.assert_called_once()

    def test_legacy_set_output(self, runner, lifecycle, monkeypatch):
        monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
        result = runner.invoke(main, ["--mode", "start", *BASE_ARGS])
        assert result.exit_code == 0
        assert f"::set-output name=label::{LABEL}" in result.output
        assert "::set-output name=ec2-instance-id::i-abc" in result.output

    def test_config_built_from_options(self, runner, lifecycle, monkeypatch):
        monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
        runner.invoke(main, [
            "--mode", "start", *BASE_ARGS,
            "--spot-provisioning-mode", "BestEffort",
            "--github-org-runner", "true",
            "--aws-resource-tags", '[{"Key": "Team", "Value": "ci"}]',
        ])
        config = lifecycle.factory.call_args[0][0]
        assert config.spot.provisioning_mode.value == "BestEffort"
        assert config.github.org_runner is True
        assert config.ec2.resource_tags[0].key == "Team"

    def test_reads_action_inputs_from_environment(self, runner, lifecycle, monkeypatch):
        monkeypatch.delenv("GITHUB_OUTPUT", raising=False)
        monkeypatch.delenv("GITHUB_REPOSITORY", raising=False)
        env = {
            "INPUT_MODE": "start",
            "INPUT_GITHUB-TOKEN": "ghp_env",
            "INPUT_REPOSITORY": "octo/gadgets",
            "INPUT_EC2-IMAGE-ID": "ami-env",
            "INPUT_EC2-INSTANCE-TYPE": "c6i.large",
            "INPUT_SUBNET-ID": "subnet-env",
            "INPUT_SECURITY-GROUP-ID": "sg-env",
        }
        result = runner.invoke(main, [], env=env)
        assert result.exit_code == 0, result.output
        config = lifecycle.factory.call_args[0][0]
        assert config.github.repository == "octo/gadgets"
        assert config.ec2.image_id == "ami-env"
        assert config.ec2.instance_type == "c6i.large"

    def test_readiness_failure_exits_runtime(self, runner, lifecycle):
        lifecycle.instance_id = "i-abc"
        lifecycle.start.side_effect = ReadinessError(
            "registration", "i-abc", LABEL, RuntimeError("boom"),
        )
        result = runner.invoke(main, ["--mode", "start", *BASE_ARGS])
        assert result.exit_code == EXIT_RUNTIME


class TestStop:
    def test_stop_passes_label_and_instance(self, runner, lifecycle):
        result = runner.invoke(main, [
            "--mode", "stop", *BASE_ARGS, "--label", LABEL, "--ec2-instance-id", "i-abc",
        ])
        assert result.exit_code == 0, result.output
        config = lifecycle.factory.call_args[0][0]
        assert config.mode == "stop"
        assert config.runner_label == LABEL
        assert config.instance_id == "i-abc"
        lifecycle.stop.assert_called_once()
        lifecycle.start.assert_not_called()

    def test_teardown_failure_exits_runtime(self, runner, lifecycle):
        lifecycle.stop.side_effect = TeardownError({"agent": AgentNotFound(LABEL)}, "i-abc", LABEL)
        result = runner.invoke(main, [
            "--mode", "stop", *BASE_ARGS, "--label", LABEL, "--ec2-instance-id", "i-abc",
        ])
        assert result.exit_code == EXIT_RUNTIME

    def _stop_with(self, runner, compute, registration):
        config = make_config(mode="stop", runner_label=LABEL, instance_id="i-abc")
        real = RunnerLifecycle(config, compute, registration)
        with patch("ec2runner.cli.build_lifecycle", return_value=real):
            return runner.invoke(main, [
                "--mode", "stop", *BASE_ARGS, "--label", LABEL, "--ec2-instance-id", "i-abc",
            ])

    def test_missing_agent_does_not_warn_about_instance(self, runner):
        compute = FakeCompute()
        result = self._stop_with(runner, compute, FakeRegistration(runners=[[]]))
        assert result.exit_code == EXIT_RUNTIME
        assert compute.terminated == ["i-abc"]
        assert "may still be running" not in result.output

    def test_failed_termination_warns_about_instance(self, runner):
        compute = FakeCompute(
            terminate_error=ComputeError("TerminateInstances", "i-abc", "UnauthorizedOperation"),
        )
        result = self._stop_with(runner, compute, FakeRegistration(runners=[[online()]]))
        assert result.exit_code == EXIT_RUNTIME
        assert "Instance i-abc may still be running" in result.output

class TestConfigurationErrors:
    def test_unknown_mode(self, runner, lifecycle):
        result = runner.invoke(main, ["--mode", "restart", *BASE_ARGS])
        assert result.exit_code == EXIT_CONFIG
        lifecycle.factory.assert_not_called()

    def test_unknown_provisioning_mode(self, runner, lifecycle):
        result = runner.invoke(main, [
            "--mode", "start", *BASE_ARGS, "--spot-provisioning-mode", "Cheapest",
        ])
        assert result.exit_code == EXIT_CONFIG
        lifecycle.factory.assert_not_called()

    def test_bad_tags(self, runner, lifecycle):
        result = runner.invoke(main, [
            "--mode", "start", *BASE_ARGS, "--aws-resource-tags", "not json",
        ])
        assert result.exit_code == EXIT_CONFIG

    def test_missing_mode(self, runner, lifecycle, monkeypatch):
        monkeypatch.delenv("INPUT_MODE", raising=False)
        result = runner.invoke(main, BASE_ARGS)
        assert result.exit_code != 0
        lifecycle.factory.assert_not_called()
