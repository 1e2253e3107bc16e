"""Unit tests for the CDKTF executor with a mocked terraform runner."""

import subprocess
from unittest.mock import MagicMock

import pytest

from envstack.engine.executor import CDKTFExecutor
from envstack.engine.terraform import ChangeSummary, TerraformRun
from envstack.exceptions import (
    ConfigurationError,
    ErrorCategory,
    StateLockError,
    ToolNotFoundError,
)
from envstack.models.config import Stage


def _terraform_run(returncode=0, diagnostics=None, changes=None, stderr=""):
    return TerraformRun(
        returncode=returncode,
        stdout="",
        stderr=stderr,
        diagnostics=diagnostics or [],
        change_summary=changes,
    )


@pytest.fixture
def runner():
    return MagicMock()


@pytest.fixture
def executor(tmp_path, runner):
    executor = CDKTFExecutor(tmp_path / "dev", runner=runner)
    # Already synthesized and initialized
    executor._synthesized = True
    for stage in (Stage.NETWORK, Stage.CLUSTER):
        (executor.stack_dir(stage) / ".terraform").mkdir(parents=True)
    return executor


class TestApply:
    def test_success_collects_outputs(self, executor, runner, infra):
        runner.apply.return_value = _terraform_run()
        runner.outputs.return_value = {"vpc_id": "vpc-123"}

        result = executor.apply(infra, Stage.NETWORK)

        assert result.success
        assert result.outputs == {"vpc_id": "vpc-123"}
        runner.apply.assert_called_once_with(executor.stack_dir(Stage.NETWORK))
        runner.init.assert_not_called()

    def test_configuration_failure(self, executor, runner, infra):
        runner.apply.return_value = _terraform_run(
            returncode=1,
            diagnostics=[
                {
                    "severity": "error",
                    "summary": "creating EC2 Subnet",
                    "detail": "InvalidSubnet.Conflict: conflicts with another subnet",
                }
            ],
        )

        result = executor.apply(infra, Stage.NETWORK)

        assert not result.success
        assert result.error_category == ErrorCategory.CONFIGURATION
        assert "InvalidSubnet.Conflict" in result.error
        with pytest.raises(ConfigurationError):
            result.raise_for_error()

    def test_state_lock_failure(self, executor, runner, infra):
        runner.apply.return_value = _terraform_run(
            returncode=1, stderr="Error: Error acquiring the state lock"
        )

        result = executor.apply(infra, Stage.CLUSTER)

        with pytest.raises(StateLockError):
            result.raise_for_error()

    def test_missing_terraform(self, executor, runner, infra):
        runner.apply.side_effect = ToolNotFoundError("terraform")

        result = executor.apply(infra, Stage.NETWORK)

        assert not result.success
        assert "terraform command not found" in result.error

    def test_initializes_missing_stage(self, tmp_path, runner, infra):
        executor = CDKTFExecutor(tmp_path / "fresh", runner=runner)
        executor._synthesized = True
        runner.apply.return_value = _terraform_run()
        runner.outputs.return_value = {}

        executor.apply(infra, Stage.NETWORK)

        runner.init.assert_called_once_with(executor.stack_dir(Stage.NETWORK))

    def test_init_failure_is_classified(self, tmp_path, runner, infra):
        executor = CDKTFExecutor(tmp_path / "fresh", runner=runner)
        executor._synthesized = True
        runner.init.side_effect = subprocess.CalledProcessError(
            1, ["terraform", "init"], output="", stderr="Error: No valid credential sources found"
        )

        result = executor.apply(infra, Stage.NETWORK)

        assert not result.success
        assert result.error_category == ErrorCategory.CONFIGURATION
        runner.apply.assert_not_called()


class TestPlan:
    def test_converged(self, executor, runner, infra):
        runner.plan.return_value = _terraform_run(returncode=0, changes=ChangeSummary())

        result = executor.plan(infra, Stage.NETWORK)

        assert result.success
        assert result.converged

    def test_changes_pending(self, executor, runner, infra):
        runner.plan.return_value = _terraform_run(returncode=2, changes=ChangeSummary(add=12))

        result = executor.plan(infra, Stage.CLUSTER)

        assert result.success
        assert not result.converged
        assert result.changes.add == 12

    def test_error(self, executor, runner, infra):
        runner.plan.return_value = _terraform_run(returncode=1, stderr="Error: Throttling")

        result = executor.plan(infra, Stage.CLUSTER)

        assert not result.success
        assert result.error_category == ErrorCategory.TRANSIENT


class TestDestroy:
    def test_success(self, executor, runner, infra):
        runner.destroy.return_value = _terraform_run()

        assert executor.destroy(infra, Stage.CLUSTER).success

    def test_failure(self, executor, runner, infra):
        runner.destroy.return_value = _terraform_run(returncode=1, stderr="Error: timeout")

        result = executor.destroy(infra, Stage.NETWORK)

        assert not result.success
        assert result.error == "Error: timeout"

    def test_cleanup(self, executor):
        executor.cleanup()

        assert not executor.workdir.exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
