"""Pipeline run entity for the run ledger."""

from enum import Enum
from typing import Any, Dict

from sqlalchemy import Column, DateTime, JSON, String, Text, Enum as SQLEnum
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

from ..exceptions import InvalidTransitionError

Base = declarative_base()


class RunStatus(str, Enum):
    """Pipeline run lifecycle status."""

    QUEUED = "queued"
    PROVISIONING = "provisioning"
    CONFIGURING_ACCESS = "configuring_access"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = {RunStatus.DONE, RunStatus.FAILED}

_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.PROVISIONING, RunStatus.FAILED},
    RunStatus.PROVISIONING: {RunStatus.CONFIGURING_ACCESS, RunStatus.DONE, RunStatus.FAILED},
    RunStatus.CONFIGURING_ACCESS: {RunStatus.DONE, RunStatus.FAILED},
    RunStatus.DONE: set(),
    RunStatus.FAILED: set(),
}


def check_transition(current: RunStatus, target: RunStatus) -> None:
    """
    Validate a status change.

    ``provisioning -> done`` is allowed for runs that do not refresh
    cluster access (single-stage applies and teardowns).

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if target not in _TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


class PipelineRun(Base):
    """
    One provisioning or teardown run of an environment.

    Holds parameters and outputs only; credentials are never stored.
    """

    __tablename__ = "pipeline_runs"

    # Format: run_<hex>
    id = Column(String(64), primary_key=True)

    # Identity
    environment = Column(String(64), nullable=False, index=True)
    cluster_name = Column(String(100), nullable=False)
    region = Column(String(32), nullable=False)
    k8s_version = Column(String(16), nullable=False)

    # cli, pipeline
    trigger = Column(String(16), nullable=False, default="cli")
    # apply, destroy
    operation = Column(String(16), nullable=False, default="apply")
    rollback_policy = Column(String(16), nullable=False, default="manual")

    status = Column(
        SQLEnum(RunStatus),
        nullable=False,
        default=RunStatus.QUEUED,
        index=True,
    )
    stage = Column(String(16), nullable=True)
    completed_stages = Column(JSON, nullable=False, default=list)

    outputs = Column(JSON, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
    finished_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<PipelineRun(id={self.id}, environment={self.environment}, status={self.status})>"

    def transition(self, target: RunStatus) -> None:
        check_transition(self.status, target)
        self.status = target

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for CLI output."""
        return {
            "run_id": self.id,
            "environment": self.environment,
            "cluster_name": self.cluster_name,
            "region": self.region,
            "k8s_version": self.k8s_version,
            "trigger": self.trigger,
            "operation": self.operation,
            "rollback_policy": self.rollback_policy,
            "status": self.status.value,
            "stage": self.stage,
            "completed_stages": self.completed_stages or [],
            "outputs": self.outputs or {},
            "error_message": self.error_message,
            "error_details": self.error_details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
