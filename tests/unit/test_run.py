"""Unit tests for the run state machine and ledger."""

import pytest

from envstack.exceptions import InvalidTransitionError
from envstack.models.database import Database
from envstack.models.run import PipelineRun, RunStatus, check_transition


def _run(**kwargs) -> PipelineRun:
    defaults = dict(
        id="run_0123456789ab",
        environment="dev",
        cluster_name="my-test-cluster",
        region="eu-west-2",
        k8s_version="1.28",
        trigger="cli",
        operation="apply",
        rollback_policy="manual",
        status=RunStatus.QUEUED,
        completed_stages=[],
    )
    defaults.update(kwargs)
    return PipelineRun(**defaults)


class TestTransitions:
    """Test allowed and rejected status changes."""

    def test_full_run(self):
        run = _run()

        for status in (RunStatus.PROVISIONING, RunStatus.CONFIGURING_ACCESS, RunStatus.DONE):
            run.transition(status)

        assert run.status == RunStatus.DONE

    def test_provisioning_to_done(self):
        check_transition(RunStatus.PROVISIONING, RunStatus.DONE)

    @pytest.mark.parametrize(
        "current",
        [RunStatus.QUEUED, RunStatus.PROVISIONING, RunStatus.CONFIGURING_ACCESS],
    )
    def test_failed_reachable_from_non_terminal(self, current):
        check_transition(current, RunStatus.FAILED)

    @pytest.mark.parametrize(
        "current,target",
        [
            (RunStatus.QUEUED, RunStatus.DONE),
            (RunStatus.QUEUED, RunStatus.CONFIGURING_ACCESS),
            (RunStatus.CONFIGURING_ACCESS, RunStatus.PROVISIONING),
            (RunStatus.DONE, RunStatus.FAILED),
            (RunStatus.FAILED, RunStatus.QUEUED),
            (RunStatus.DONE, RunStatus.PROVISIONING),
        ],
    )
    def test_invalid(self, current, target):
        with pytest.raises(InvalidTransitionError):
            check_transition(current, target)


class TestLedger:
    """Test persisting runs."""

    def test_roundtrip(self, tmp_path):
        db = Database(f"sqlite:///{tmp_path / 'ledger' / 'runs.db'}")
        db.create_tables()

        with db.session() as session:
            session.add(_run(outputs={"cluster_endpoint": "https://example.eks.amazonaws.com"}))

        with db.session() as session:
            run = session.get(PipelineRun, "run_0123456789ab")
            data = run.to_dict()

        assert data["status"] == "queued"
        assert data["outputs"]["cluster_endpoint"] == "https://example.eks.amazonaws.com"
        assert data["created_at"] is not None

    def test_session_rolls_back_on_error(self, tmp_path):
        db = Database(f"sqlite:///{tmp_path / 'runs.db'}")
        db.create_tables()

        with pytest.raises(RuntimeError):
            with db.session() as session:
                session.add(_run())
                session.flush()
                raise RuntimeError("boom")

        with db.session() as session:
            assert session.get(PipelineRun, "run_0123456789ab") is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
