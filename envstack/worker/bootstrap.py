"""Cluster access, database release and readiness gates."""

import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

import structlog
import yaml
from kubernetes import client, config as k8s_config

from ..engine.terraform import classify_error
from ..exceptions import (
    ConfigurationError,
    EnvstackError,
    ProvisioningError,
    ReadinessError,
    ToolNotFoundError,
    error_for_category,
)
from ..models.config import DatabaseReleaseSpec, InfraModel


logger = structlog.get_logger()

INSTANCE_LABEL = "app.kubernetes.io/instance"


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    """
    Run an external CLI (aws, helm).

    Raises:
        ToolNotFoundError: If the binary is missing
        EnvstackError: Classified from stderr if the command fails
    """
    if not shutil.which(cmd[0]):
        raise ToolNotFoundError(cmd[0])

    result = subprocess.run(cmd, capture_output=True, text=True, check=False)

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise error_for_category(
            classify_error(stderr), f"{' '.join(cmd[:3])} failed: {stderr}"
        )

    return result


def generate_kubeconfig(infra: InfraModel, cluster_name: str, path: Optional[Path] = None) -> Path:
    """
    Write a kubeconfig for the cluster to a private file.

    Uses the AWS CLI so that IAM authentication is handled by ``aws eks get-token``.

    Returns:
        Path to kubeconfig file
    """
    kubeconfig_path = path or (
        Path(tempfile.gettempdir()) / f"kubeconfig-{infra.env_prefix}-{cluster_name}"
    )

    logger.info("Generating EKS kubeconfig", cluster_name=cluster_name, path=str(kubeconfig_path))

    _run(
        [
            "aws",
            "eks",
            "update-kubeconfig",
            "--name",
            cluster_name,
            "--region",
            infra.region,
            "--kubeconfig",
            str(kubeconfig_path),
        ]
    )

    return kubeconfig_path


def update_local_kubeconfig(cluster_name: str, region: str, alias: Optional[str] = None) -> str:
    """
    Merge cluster access into the operator's kubeconfig (``$KUBECONFIG`` or ~/.kube/config).

    Returns:
        The AWS CLI's confirmation message
    """
    cmd = ["aws", "eks", "update-kubeconfig", "--name", cluster_name, "--region", region]
    if alias:
        cmd.extend(["--alias", alias])

    result = _run(cmd)
    logger.info("Updated local kubeconfig", cluster_name=cluster_name, region=region)
    return result.stdout.strip()


def kube_client(kubeconfig: Path) -> client.ApiClient:
    """API client bound to one kubeconfig file, leaving global config untouched."""
    return k8s_config.new_client_from_config(config_file=str(kubeconfig))


def _is_ready(conditions: Any) -> bool:
    return any(c.type == "Ready" and c.status == "True" for c in conditions or [])


def wait_for_nodes_ready(
    api_client: client.ApiClient,
    expected: int,
    timeout: int = 900,
    poll_interval: float = 10,
) -> int:
    """
    Wait until ``expected`` worker nodes report Ready.

    Fargate nodes are not counted.

    Raises:
        ReadinessError: If the nodes are not ready within timeout
    """
    logger.info("Waiting for worker nodes", expected=expected)

    v1 = client.CoreV1Api(api_client)
    ready_nodes = 0

    deadline = time.monotonic() + timeout
    while True:
        try:
            nodes = v1.list_node(label_selector="eks.amazonaws.com/compute-type!=fargate")
            ready_nodes = sum(1 for node in nodes.items if _is_ready(node.status.conditions))

            logger.info("Cluster status", total_nodes=len(nodes.items), ready_nodes=ready_nodes)

            if ready_nodes >= expected:
                return ready_nodes

        except client.ApiException as e:
            logger.debug("Cluster API not reachable yet", status=e.status, reason=e.reason)

        if time.monotonic() >= deadline:
            raise ReadinessError("worker nodes", expected, ready_nodes)

        time.sleep(poll_interval)


def database_values(spec: DatabaseReleaseSpec) -> Dict[str, Any]:
    """Build Helm values for the MySQL chart: one primary plus ``replicas - 1`` secondaries."""
    persistence = {
        "enabled": True,
        "size": spec.volume_size,
        "storageClass": spec.storage_class,
    }

    values: Dict[str, Any] = {
        "architecture": "replication" if spec.replicas > 1 else "standalone",
        "auth": {"database": spec.database_name},
        "primary": {"persistence": persistence},
    }

    if spec.replicas > 1:
        values["secondary"] = {
            "replicaCount": spec.replicas - 1,
            "persistence": persistence,
        }

    return values


def add_chart_repository(spec: DatabaseReleaseSpec) -> str:
    """Register and refresh the chart's Helm repository. Returns the repository name."""
    repo_name = spec.chart.split("/")[0]
    _run(["helm", "repo", "add", repo_name, spec.repo_url, "--force-update"])
    _run(["helm", "repo", "update", repo_name])
    logger.info("Helm repository ready", repo=repo_name, url=spec.repo_url)
    return repo_name


def deploy_database(infra: InfraModel, kubeconfig: Path, helm_timeout: str = "10m") -> None:
    """
    Install or upgrade the MySQL release.

    ``helm upgrade --install`` converges, so re-runs are safe. Success here
    means the chart was accepted; readiness is checked separately.
    """
    spec = infra.database

    add_chart_repository(spec)

    with tempfile.NamedTemporaryFile(
        "w", prefix=f"helm-values-{spec.release_name}-", suffix=".yaml", delete=False
    ) as f:
        yaml.safe_dump(database_values(spec), f)
        values_file = Path(f.name)

    cmd = [
        "helm",
        "upgrade",
        "--install",
        spec.release_name,
        spec.chart,
        "--version",
        spec.chart_version,
        "--namespace",
        spec.namespace,
        "--create-namespace",
        "--kubeconfig",
        str(kubeconfig),
        "--values",
        str(values_file),
        "--timeout",
        helm_timeout,
    ]

    logger.info(
        "Installing Helm chart",
        release=spec.release_name,
        chart=spec.chart,
        version=spec.chart_version,
        namespace=spec.namespace,
    )

    try:
        _run(cmd)
    finally:
        values_file.unlink(missing_ok=True)

    logger.info("Helm chart installed", release=spec.release_name)


@dataclass
class ReplicaStatus:
    expected: int
    ready: int
    bound: int
    pending_claims: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.ready >= self.expected and self.bound >= self.expected


def replica_status(api_client: client.ApiClient, spec: DatabaseReleaseSpec) -> ReplicaStatus:
    """Count ready pods and bound volumes of the release from the Kubernetes API."""
    v1 = client.CoreV1Api(api_client)
    selector = f"{INSTANCE_LABEL}={spec.release_name}"

    pods = v1.list_namespaced_pod(spec.namespace, label_selector=selector)
    ready = sum(
        1
        for pod in pods.items
        if pod.metadata.deletion_timestamp is None and _is_ready(pod.status.conditions)
    )

    claims = v1.list_namespaced_persistent_volume_claim(spec.namespace, label_selector=selector)
    bound = sum(1 for claim in claims.items if claim.status.phase == "Bound")
    pending = [claim.metadata.name for claim in claims.items if claim.status.phase == "Pending"]

    return ReplicaStatus(
        expected=spec.replicas, ready=ready, bound=bound, pending_claims=pending
    )


def _failed_claims(
    api_client: client.ApiClient, spec: DatabaseReleaseSpec, pending: List[str]
) -> Dict[str, str]:
    """ProvisioningFailed messages for the given Pending claims of the release, by claim name."""
    if not pending:
        return {}

    v1 = client.CoreV1Api(api_client)
    events = v1.list_namespaced_event(
        spec.namespace,
        field_selector="involvedObject.kind=PersistentVolumeClaim,reason=ProvisioningFailed",
    )
    return {
        event.involved_object.name: event.message
        for event in events.items
        if event.involved_object.name in pending
    }


def wait_for_database_ready(
    api_client: client.ApiClient,
    spec: DatabaseReleaseSpec,
    timeout: int = 900,
    poll_interval: float = 10,
) -> ReplicaStatus:
    """
    Readiness gate for the database release.

    Returns only when every replica is Ready with a Bound volume. A claim of
    the release counts as unprovisionable when it has a ProvisioningFailed
    event and is still Pending on the following poll.

    Raises:
        ReadinessError: With the true counts, if replicas are missing at timeout
        ConfigurationError: If volumes cannot be provisioned at all
    """
    deadline = time.monotonic() + timeout
    failing: Dict[str, str] = {}

    while True:
        status = replica_status(api_client, spec)

        logger.info(
            "Database replica status",
            release=spec.release_name,
            expected=status.expected,
            ready=status.ready,
            bound=status.bound,
        )

        if status.complete:
            return status

        current = _failed_claims(api_client, spec, status.pending_claims)
        stuck = sorted(set(current) & set(failing))
        if stuck:
            raise ConfigurationError(
                f"storage class {spec.storage_class} cannot provision volume "
                f"{stuck[0]}: {current[stuck[0]]}"
            )
        failing = current

        if time.monotonic() >= deadline:
            raise ReadinessError(
                f"database release {spec.release_name}", status.expected, status.ready, status.bound
            )

        time.sleep(poll_interval)


def _wait_for_volumes_released(
    v1: client.CoreV1Api,
    namespace: str,
    claims: Set[str],
    timeout: int,
    poll_interval: float,
) -> None:
    """
    Wait until the persistent volumes bound to ``claims`` are deleted.

    Only volumes with the ``Delete`` reclaim policy are waited for; retained
    volumes outlive their claims.

    Raises:
        ProvisioningError: If volumes remain at timeout
    """
    deadline = time.monotonic() + timeout

    while True:
        remaining = [
            pv.metadata.name
            for pv in v1.list_persistent_volume().items
            if pv.spec.claim_ref is not None
            and pv.spec.claim_ref.namespace == namespace
            and pv.spec.claim_ref.name in claims
            and pv.spec.persistent_volume_reclaim_policy == "Delete"
        ]
        if not remaining:
            return

        logger.info("Waiting for database volumes to be deleted", volumes=remaining)

        if time.monotonic() >= deadline:
            raise ProvisioningError(
                f"volumes {', '.join(sorted(remaining))} still exist after {timeout}s"
            )

        time.sleep(poll_interval)


def uninstall_database(
    infra: InfraModel,
    kubeconfig: Path,
    api_client: Optional[client.ApiClient] = None,
    timeout: int = 600,
    poll_interval: float = 10,
) -> None:
    """
    Remove the release and its volume claims. A missing release is not an error.

    With an API client, returns only after the backing volumes are gone, so
    the EBS CSI driver is still running while they are deleted.
    """
    spec = infra.database

    try:
        _run(
            [
                "helm",
                "uninstall",
                spec.release_name,
                "--namespace",
                spec.namespace,
                "--kubeconfig",
                str(kubeconfig),
                "--wait",
            ]
        )
        logger.info("Helm release removed", release=spec.release_name)
    except EnvstackError as e:
        if "not found" not in str(e):
            raise
        logger.info("Helm release already absent", release=spec.release_name)

    # StatefulSet volume claims outlive the release
    if api_client is not None:
        v1 = client.CoreV1Api(api_client)
        selector = f"{INSTANCE_LABEL}={spec.release_name}"

        claims = v1.list_namespaced_persistent_volume_claim(spec.namespace, label_selector=selector)
        names = {claim.metadata.name for claim in claims.items}

        v1.delete_collection_namespaced_persistent_volume_claim(
            spec.namespace, label_selector=selector
        )
        logger.info("Deleted database volume claims", release=spec.release_name, claims=len(names))

        if names:
            _wait_for_volumes_released(v1, spec.namespace, names, timeout, poll_interval)
