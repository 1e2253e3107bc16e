"""Provisioning workflow: network, cluster, database, then cluster access."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog

from ..config import Settings
from ..engine.executor import CDKTFExecutor, PlanResult
from ..engine.state import WorkflowLease, default_owner, ensure_state_backend
from ..exceptions import ConfigurationError, EnvstackError, ProvisioningError, StageError
from ..models.config import TERRAFORM_STAGES, InfraModel, Stage
from ..models.database import Database
from ..models.run import TERMINAL_STATUSES, PipelineRun, RunStatus
from .bootstrap import (
    add_chart_repository,
    deploy_database,
    generate_kubeconfig,
    kube_client,
    uninstall_database,
    update_local_kubeconfig,
    wait_for_database_ready,
    wait_for_nodes_ready,
)


logger = structlog.get_logger()

ALL_STAGES = (Stage.NETWORK, Stage.CLUSTER, Stage.DATABASE)

# Outputs safe to record in the run ledger and print
PUBLIC_OUTPUTS = (
    "vpc_id",
    "private_subnet_ids",
    "public_subnet_ids",
    "cluster_name",
    "cluster_endpoint",
    "fargate_profile_name",
    "database_endpoint",
    "database_ready_replicas",
    "database_bound_volumes",
)


class RollbackPolicy(str, Enum):
    """What to do with already-created resources when a run fails."""

    MANUAL = "manual"
    DESTROY = "destroy"


@dataclass
class WorkflowResult:
    run_id: str
    status: RunStatus
    outputs: Dict[str, Any] = field(default_factory=dict)
    completed_stages: List[str] = field(default_factory=list)
    error: Optional[EnvstackError] = None
    rollback: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == RunStatus.DONE


def check_region(infra: InfraModel, settings: Settings) -> None:
    if settings.allowed_regions and infra.region not in settings.allowed_regions:
        raise ConfigurationError(
            f"Region {infra.region} not allowed. Allowed regions: {settings.allowed_regions}"
        )


def publish_output(name: str, value: str) -> None:
    """
    Expose a value to later pipeline steps.

    Appends to ``$GITHUB_OUTPUT`` when running in GitHub Actions, otherwise
    prints ``NAME=value`` on stdout for the orchestrator to capture.
    """
    output_file = os.getenv("GITHUB_OUTPUT")
    if output_file:
        with open(output_file, "a") as f:
            f.write(f"{name}={value}\n")
    else:
        print(f"{name.upper()}={value}")


class ProvisioningWorkflow:
    """Runs the stages of one environment in order, under its lease."""

    def __init__(
        self,
        infra: InfraModel,
        settings: Settings,
        db: Optional[Database] = None,
        executor: Optional[CDKTFExecutor] = None,
        lease: Optional[WorkflowLease] = None,
        trigger: str = "cli",
    ):
        check_region(infra, settings)

        self.infra = infra
        self.settings = settings
        self.db = db
        self.executor = executor or CDKTFExecutor(Path(settings.workdir_base) / infra.env_prefix)
        self.lease = lease
        self.trigger = trigger
        self.log = logger.bind(environment=infra.env_prefix, cluster_name=infra.cluster_name)

    # Run ledger

    def _start_run(self, operation: str, rollback: RollbackPolicy) -> PipelineRun:
        run = PipelineRun(
            id=f"run_{uuid.uuid4().hex[:12]}",
            environment=self.infra.env_prefix,
            cluster_name=self.infra.cluster_name,
            region=self.infra.region,
            k8s_version=self.infra.k8s_version,
            trigger=self.trigger,
            operation=operation,
            rollback_policy=rollback.value,
            status=RunStatus.QUEUED,
            completed_stages=[],
            outputs={},
        )
        self._save(run)
        return run

    def _save(self, run: PipelineRun) -> None:
        if self.db is None:
            return
        with self.db.session() as session:
            session.merge(run)

    def _transition(self, run: PipelineRun, target: RunStatus) -> None:
        run.transition(target)
        if target in TERMINAL_STATUSES:
            run.finished_at = datetime.now(timezone.utc)
        self._save(run)
        self.log.info("Run status changed", run_id=run.id, status=target.value)

    def _fail(self, run: PipelineRun, error: EnvstackError, rollback: Optional[dict]) -> None:
        run.error_message = str(error)
        run.error_details = {
            "type": type(error).__name__,
            "category": error.category.value,
            "stage": getattr(error, "stage", run.stage),
        }
        if rollback is not None:
            run.error_details.update(rollback)
        self._transition(run, RunStatus.FAILED)

    def _lease_for(self, run: PipelineRun) -> WorkflowLease:
        if self.lease is not None:
            return self.lease
        return WorkflowLease.for_environment(
            self.infra,
            owner=f"{default_owner()}/{run.id}",
            ttl_seconds=self.settings.lease_ttl_seconds,
        )

    # Operations

    def init(self) -> None:
        """
        Create the state backend if configured, synthesize, ``terraform init``
        every stage and register the database chart repository.
        """
        if self.infra.create_state_backend:
            ensure_state_backend(self.infra)
        self.executor.init(self.infra)
        add_chart_repository(self.infra.database)

    def plan(self) -> Dict[Stage, PlanResult]:
        """Pending changes per Terraform stage; all converged means a re-run is a no-op."""
        return {stage: self.executor.plan(self.infra, stage) for stage in TERRAFORM_STAGES}

    def apply(
        self,
        stages: Optional[Sequence[Stage]] = None,
        rollback: RollbackPolicy = RollbackPolicy.MANUAL,
        configure_access: bool = True,
    ) -> WorkflowResult:
        """
        Converge the environment.

        Runs the requested stages in order (all by default) while holding the
        environment lease, then merges cluster access into the local
        kubeconfig. A failed stage halts the run; with ``RollbackPolicy.DESTROY``
        the stages touched so far are torn down in reverse order.

        Returns:
            WorkflowResult; ``error`` is set when the run failed
        """
        stages = [s for s in ALL_STAGES if s in (stages or ALL_STAGES)]
        configure_access = configure_access and stages[-1] == Stage.DATABASE

        run = self._start_run("apply", rollback)
        log = self.log.bind(run_id=run.id)
        outputs: Dict[str, Any] = {}
        touched: List[Stage] = []
        rollback_report = None

        try:
            with self._lease_for(run):
                self._transition(run, RunStatus.PROVISIONING)

                try:
                    for stage in stages:
                        run.stage = stage.value
                        self._save(run)
                        touched.append(stage)

                        log.info("Stage started", stage=stage.value)
                        try:
                            outputs.update(self._run_stage(stage, outputs))
                        except Exception as e:
                            raise StageError(stage.value, e) from e
                        log.info("Stage finished", stage=stage.value)

                        run.completed_stages = [*run.completed_stages, stage.value]
                        run.outputs = _public(outputs)
                        self._save(run)

                    if configure_access:
                        self._transition(run, RunStatus.CONFIGURING_ACCESS)
                        update_local_kubeconfig(outputs["cluster_name"], self.infra.region)

                except StageError as e:
                    log.error("Stage failed", stage=e.stage, error=str(e.cause))
                    if rollback == RollbackPolicy.DESTROY:
                        rollback_report = self._rollback(touched, log)
                    raise

        except EnvstackError as e:
            self._fail(run, e, rollback_report)
            if rollback == RollbackPolicy.MANUAL and touched:
                log.warning(
                    "Resources from completed stages were left in place",
                    completed_stages=run.completed_stages,
                )
            return WorkflowResult(
                run_id=run.id,
                status=run.status,
                outputs=_public(outputs),
                completed_stages=list(run.completed_stages),
                error=e,
                rollback=rollback_report,
            )
        except KeyboardInterrupt:
            self._fail(run, ProvisioningError("interrupted"), rollback_report)
            raise
        except Exception as e:
            log.exception("Run failed unexpectedly")
            self._fail(run, ProvisioningError(f"{type(e).__name__}: {e}"), rollback_report)
            raise

        self._transition(run, RunStatus.DONE)
        log.info("Environment ready", outputs=_public(outputs))

        return WorkflowResult(
            run_id=run.id,
            status=run.status,
            outputs=_public(outputs),
            completed_stages=list(run.completed_stages),
        )

    def destroy(self) -> WorkflowResult:
        """
        Tear the environment down: database, then cluster, then network.

        Sibling environments are untouched; every stage addresses only this
        environment's state keys.
        """
        run = self._start_run("destroy", RollbackPolicy.MANUAL)
        log = self.log.bind(run_id=run.id)

        try:
            with self._lease_for(run):
                self._transition(run, RunStatus.PROVISIONING)

                for stage in reversed(ALL_STAGES):
                    run.stage = stage.value
                    self._save(run)
                    try:
                        self._teardown_stage(stage, log)
                    except Exception as e:
                        raise StageError(stage.value, e) from e
                    run.completed_stages = [*run.completed_stages, stage.value]
                    self._save(run)

        except EnvstackError as e:
            log.error("Destruction failed", error=str(e))
            self._fail(run, e, None)
            return WorkflowResult(
                run_id=run.id,
                status=run.status,
                completed_stages=list(run.completed_stages),
                error=e,
            )
        except KeyboardInterrupt:
            self._fail(run, ProvisioningError("interrupted"), None)
            raise
        except Exception as e:
            log.exception("Destruction failed unexpectedly")
            self._fail(run, ProvisioningError(f"{type(e).__name__}: {e}"), None)
            raise

        run.outputs = {}
        self._transition(run, RunStatus.DONE)
        self.executor.cleanup()
        log.info("Environment destroyed")

        return WorkflowResult(
            run_id=run.id, status=run.status, completed_stages=list(run.completed_stages)
        )

    # Stages

    def _run_stage(self, stage: Stage, outputs: Dict[str, Any]) -> Dict[str, Any]:
        if stage == Stage.NETWORK:
            return self._apply_network()
        if stage == Stage.CLUSTER:
            return self._apply_cluster(outputs)
        return self._apply_database(outputs)

    def _apply_network(self) -> Dict[str, Any]:
        result = self.executor.apply(self.infra, Stage.NETWORK)
        result.raise_for_error()

        expected = len(self.infra.network.availability_zones)
        private = result.outputs.get("private_subnet_ids") or []
        if len(private) != expected:
            raise ProvisioningError(
                f"expected {expected} private subnets, network stage reported {len(private)}"
            )

        return {
            "vpc_id": result.outputs["vpc_id"],
            "private_subnet_ids": private,
            "public_subnet_ids": result.outputs.get("public_subnet_ids") or [],
        }

    def _apply_cluster(self, outputs: Dict[str, Any]) -> Dict[str, Any]:
        vpc_id = outputs.get("vpc_id") or self.executor.outputs(self.infra, Stage.NETWORK).get(
            "vpc_id"
        )
        if not vpc_id:
            raise ConfigurationError(
                f"network stage of {self.infra.env_prefix} has not been applied"
            )

        result = self.executor.apply(self.infra, Stage.CLUSTER)
        result.raise_for_error()

        discovered = result.outputs.get("vpc_id")
        if discovered != vpc_id:
            raise ConfigurationError(
                f"cluster stage discovered VPC {discovered} but the network stage "
                f"created {vpc_id}; parameters differ between stages"
            )

        return {
            "cluster_name": result.outputs["cluster_name"],
            "cluster_endpoint": result.outputs["cluster_endpoint"],
            "fargate_profile_name": result.outputs.get("fargate_profile_name"),
        }

    def _cluster_name(self, outputs: Dict[str, Any]) -> Optional[str]:
        if outputs.get("cluster_name"):
            return outputs["cluster_name"]
        return self.executor.outputs(self.infra, Stage.CLUSTER).get("cluster_name")

    def _apply_database(self, outputs: Dict[str, Any]) -> Dict[str, Any]:
        cluster_name = self._cluster_name(outputs)
        if not cluster_name:
            raise ConfigurationError(
                f"cluster stage of {self.infra.env_prefix} has not been applied"
            )

        kubeconfig = generate_kubeconfig(self.infra, cluster_name)
        try:
            api_client = kube_client(kubeconfig)

            wait_for_nodes_ready(
                api_client,
                self.infra.worker_count,
                timeout=self.settings.node_ready_timeout,
                poll_interval=self.settings.poll_interval,
            )

            deploy_database(self.infra, kubeconfig, helm_timeout=self.settings.helm_timeout)

            status = wait_for_database_ready(
                api_client,
                self.infra.database,
                timeout=self.settings.replica_ready_timeout,
                poll_interval=self.settings.poll_interval,
            )
        finally:
            kubeconfig.unlink(missing_ok=True)

        result = {
            "database_endpoint": self.infra.database.service_endpoint,
            "database_ready_replicas": status.ready,
            "database_bound_volumes": status.bound,
        }
        if not outputs.get("cluster_endpoint"):
            result["cluster_name"] = cluster_name
            result["cluster_endpoint"] = self.executor.outputs(self.infra, Stage.CLUSTER).get(
                "cluster_endpoint"
            )
        return result

    def _teardown_stage(self, stage: Stage, log: Any) -> None:
        log.info("Tearing down stage", stage=stage.value)

        if stage == Stage.DATABASE:
            cluster_name = self._cluster_name({})
            if not cluster_name:
                log.info("No cluster recorded, skipping database teardown")
                return
            kubeconfig = generate_kubeconfig(self.infra, cluster_name)
            try:
                uninstall_database(
                    self.infra,
                    kubeconfig,
                    kube_client(kubeconfig),
                    timeout=self.settings.replica_ready_timeout,
                    poll_interval=self.settings.poll_interval,
                )
            finally:
                kubeconfig.unlink(missing_ok=True)
            return

        self.executor.destroy(self.infra, stage).raise_for_error()

    def _rollback(self, touched: List[Stage], log: Any) -> Dict[str, Any]:
        """Destroy touched stages in reverse order; stop at the first failure."""
        log.warning("Rolling back", stages=[s.value for s in reversed(touched)])

        rolled_back = []
        for stage in reversed(touched):
            try:
                self._teardown_stage(stage, log)
            except Exception as e:
                log.error("Rollback failed", stage=stage.value, error=str(e))
                return {
                    "rolled_back": rolled_back,
                    "rollback_error": f"{stage.value}: {e}",
                }
            rolled_back.append(stage.value)

        return {"rolled_back": rolled_back}


def _public(outputs: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in outputs.items() if k in PUBLIC_OUTPUTS}
