"""CDKTF executor for synthesizing and applying the per-stage stacks."""

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import structlog

from ..exceptions import ErrorCategory, EnvstackError, error_for_category
from ..models.config import TERRAFORM_STAGES, InfraModel, Stage
from .terraform import ChangeSummary, TerraformRun, TerraformRunner

logger = structlog.get_logger()


@dataclass
class ApplyResult:
    """Result of infrastructure apply operation."""

    success: bool
    outputs: Dict[str, Any]
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    error_category: Optional[ErrorCategory] = None

    def raise_for_error(self) -> None:
        if not self.success:
            raise error_for_category(self.error_category, self.error or "apply failed")


@dataclass
class DestroyResult:
    """Result of infrastructure destroy operation."""

    success: bool
    error: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    error_category: Optional[ErrorCategory] = None

    def raise_for_error(self) -> None:
        if not self.success:
            raise error_for_category(self.error_category, self.error or "destroy failed")


@dataclass
class PlanResult:
    """Result of a plan; ``converged`` means re-applying would change nothing."""

    success: bool
    changes: ChangeSummary = field(default_factory=ChangeSummary)
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None

    @property
    def converged(self) -> bool:
        return self.success and self.changes.converged


def _error_details(run: TerraformRun) -> Dict[str, Any]:
    return {
        "returncode": run.returncode,
        "diagnostics": run.errors,
        "stderr": run.stderr[-4000:] if run.stderr else None,
    }


class CDKTFExecutor:
    """Executor for CDKTF operations on one environment."""

    def __init__(self, workdir: Path, runner: Optional[TerraformRunner] = None):
        """
        Initialize CDKTF executor.

        Args:
            workdir: Working directory for this environment's CDKTF output
            runner: Terraform runner
        """
        self.workdir = workdir
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.runner = runner or TerraformRunner()
        self._synthesized = False

    def stack_dir(self, stage: Stage) -> Path:
        return self.workdir / "cdktf.out" / "stacks" / stage.value

    def synth(self, infra: InfraModel) -> None:
        """
        Synthesize the network and cluster stacks to Terraform JSON.

        Args:
            infra: Infrastructure model
        """
        # cdktf starts a node runtime on import
        from cdktf import App

        from .cluster_stack import ClusterStack
        from .network_stack import NetworkStack

        app = App(outdir=str(self.workdir / "cdktf.out"))

        NetworkStack(app, Stage.NETWORK.value, infra)
        ClusterStack(app, Stage.CLUSTER.value, infra)

        app.synth()
        self._synthesized = True

        logger.info("Synthesized stacks", outdir=str(self.workdir / "cdktf.out"))

    def init(self, infra: InfraModel) -> None:
        """
        Synthesize and run ``terraform init`` for every Terraform stage.

        Raises:
            EnvstackError: If init fails
        """
        self.synth(infra)
        for stage in TERRAFORM_STAGES:
            self._init_stage(stage)

    def _init_stage(self, stage: Stage) -> None:
        try:
            self.runner.init(self.stack_dir(stage))
        except subprocess.CalledProcessError as e:
            raise error_for_category(
                TerraformRun(e.returncode, e.output or "", e.stderr or "").category,
                f"terraform init failed for {stage.value}: {(e.stderr or '').strip()}",
            ) from e

    def _prepare(self, infra: InfraModel, stage: Stage) -> Path:
        if not self._synthesized:
            self.synth(infra)
        stack_dir = self.stack_dir(stage)
        if not (stack_dir / ".terraform").exists():
            self._init_stage(stage)
        return stack_dir

    def plan(self, infra: InfraModel, stage: Stage) -> PlanResult:
        """
        Compute the pending change set of one stage.

        Returns:
            PlanResult; converged when nothing would change
        """
        try:
            stack_dir = self._prepare(infra, stage)
            run = self.runner.plan(stack_dir)
        except EnvstackError as e:
            return PlanResult(success=False, error=str(e), error_category=e.category)

        if run.returncode == 1:
            return PlanResult(
                success=False,
                error=run.error_message or "terraform plan failed",
                error_category=run.category,
            )

        return PlanResult(success=True, changes=run.change_summary or ChangeSummary())

    def apply(self, infra: InfraModel, stage: Stage) -> ApplyResult:
        """
        Apply one stage and collect its outputs.

        Returns:
            ApplyResult with outputs or error
        """
        try:
            stack_dir = self._prepare(infra, stage)
            run = self.runner.apply(stack_dir)

            if run.returncode != 0:
                return ApplyResult(
                    success=False,
                    outputs={},
                    error=run.error_message or "terraform apply failed",
                    error_details=_error_details(run),
                    error_category=run.category,
                )

            return ApplyResult(success=True, outputs=self.runner.outputs(stack_dir))

        except EnvstackError as e:
            return ApplyResult(
                success=False,
                outputs={},
                error=str(e),
                error_details={"type": type(e).__name__},
                error_category=e.category,
            )
        except subprocess.CalledProcessError as e:
            return ApplyResult(
                success=False,
                outputs={},
                error=f"Terraform command failed: {e.cmd}",
                error_details={"returncode": e.returncode, "stderr": e.stderr},
            )

    def outputs(self, infra: InfraModel, stage: Stage) -> Dict[str, Any]:
        """Read the current outputs of an applied stage."""
        return self.runner.outputs(self._prepare(infra, stage))

    def destroy(self, infra: InfraModel, stage: Stage) -> DestroyResult:
        """
        Destroy one stage.

        Returns:
            DestroyResult with error if failed
        """
        try:
            stack_dir = self._prepare(infra, stage)
            run = self.runner.destroy(stack_dir)
        except EnvstackError as e:
            return DestroyResult(
                success=False,
                error=str(e),
                error_details={"type": type(e).__name__},
                error_category=e.category,
            )

        if run.returncode != 0:
            return DestroyResult(
                success=False,
                error=run.error_message or "terraform destroy failed",
                error_details=_error_details(run),
                error_category=run.category,
            )

        return DestroyResult(success=True)

    def cleanup(self) -> None:
        """Remove working directory."""
        if self.workdir.exists():
            shutil.rmtree(self.workdir)
            logger.info("Cleaned up working directory", workdir=str(self.workdir))
