"""Unit tests for cluster access, the database release and readiness gates."""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import yaml
from kubernetes import client

from envstack.exceptions import (
    ConfigurationError,
    ProvisioningError,
    ReadinessError,
    ToolNotFoundError,
    TransientCloudError,
)
from envstack.worker import bootstrap
from envstack.worker.bootstrap import (
    database_values,
    deploy_database,
    generate_kubeconfig,
    replica_status,
    uninstall_database,
    wait_for_database_ready,
    wait_for_nodes_ready,
)


def _condition(ready: bool):
    return SimpleNamespace(type="Ready", status="True" if ready else "False")


def _node(ready: bool):
    return SimpleNamespace(status=SimpleNamespace(conditions=[_condition(ready)]))


def _pod(ready: bool, deleting: bool = False):
    return SimpleNamespace(
        metadata=SimpleNamespace(deletion_timestamp="2024-01-01T00:00:00Z" if deleting else None),
        status=SimpleNamespace(conditions=[_condition(ready)]),
    )


def _claim(phase: str, name: str = "data-mysql-primary-0"):
    return SimpleNamespace(metadata=SimpleNamespace(name=name), status=SimpleNamespace(phase=phase))


def _event(claim: str, message: str):
    return SimpleNamespace(involved_object=SimpleNamespace(name=claim), message=message)


def _volume(name: str, claim: str, namespace: str = "database", policy: str = "Delete"):
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(
            claim_ref=SimpleNamespace(name=claim, namespace=namespace),
            persistent_volume_reclaim_policy=policy,
        ),
    )


def _items(*items):
    return SimpleNamespace(items=list(items))


def _completed(returncode=0, stdout="", stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def core_v1():
    api = MagicMock()
    with patch.object(bootstrap.client, "CoreV1Api", return_value=api):
        yield api


@pytest.fixture
def clock():
    """Fake time: every sleep advances the monotonic clock."""
    now = [0.0]

    def sleep(seconds):
        now[0] += max(seconds, 1)

    with patch.object(bootstrap.time, "monotonic", side_effect=lambda: now[0]), patch.object(
        bootstrap.time, "sleep", side_effect=sleep
    ):
        yield now


class TestRunCommand:
    @patch("envstack.worker.bootstrap.shutil.which", return_value=None)
    def test_missing_tool(self, _which):
        with pytest.raises(ToolNotFoundError) as exc_info:
            bootstrap._run(["helm", "version"])

        assert exc_info.value.tool == "helm"

    @patch("envstack.worker.bootstrap.shutil.which", return_value="/usr/bin/aws")
    @patch("envstack.worker.bootstrap.subprocess.run")
    def test_failure_is_classified(self, mock_run, _which):
        mock_run.return_value = _completed(
            returncode=254, stderr="An error occurred (ThrottlingException): Rate exceeded"
        )

        with pytest.raises(TransientCloudError):
            bootstrap._run(["aws", "eks", "describe-cluster"])


class TestKubeconfig:
    @patch("envstack.worker.bootstrap._run")
    def test_generate_kubeconfig(self, mock_run, infra, tmp_path):
        path = generate_kubeconfig(infra, "my-test-cluster", path=tmp_path / "kubeconfig")

        cmd = mock_run.call_args[0][0]
        assert cmd[:3] == ["aws", "eks", "update-kubeconfig"]
        assert cmd[cmd.index("--name") + 1] == "my-test-cluster"
        assert cmd[cmd.index("--region") + 1] == "eu-west-2"
        assert cmd[cmd.index("--kubeconfig") + 1] == str(path)


class TestWaitForNodes:
    def test_ready(self, core_v1, clock):
        core_v1.list_node.return_value = _items(_node(True), _node(True), _node(True))

        assert wait_for_nodes_ready(MagicMock(), expected=3, timeout=60) == 3

    def test_becomes_ready(self, core_v1, clock):
        core_v1.list_node.side_effect = [
            client.ApiException(status=503, reason="Service Unavailable"),
            _items(_node(True), _node(False), _node(False)),
            _items(_node(True), _node(True), _node(True)),
        ]

        assert wait_for_nodes_ready(MagicMock(), expected=3, timeout=60, poll_interval=5) == 3
        assert core_v1.list_node.call_count == 3

    def test_timeout(self, core_v1, clock):
        core_v1.list_node.return_value = _items(_node(True), _node(False))

        with pytest.raises(ReadinessError) as exc_info:
            wait_for_nodes_ready(MagicMock(), expected=3, timeout=30, poll_interval=10)

        assert exc_info.value.ready == 1
        assert exc_info.value.expected == 3


class TestDatabaseValues:
    def test_replication(self, infra):
        values = database_values(infra.database)

        assert values["architecture"] == "replication"
        assert values["secondary"]["replicaCount"] == 2
        assert values["primary"]["persistence"]["size"] == "8Gi"
        assert values["primary"]["persistence"]["storageClass"] == "gp2"

    def test_standalone(self, infra):
        infra.database.replicas = 1

        values = database_values(infra.database)

        assert values["architecture"] == "standalone"
        assert "secondary" not in values


class TestDeployDatabase:
    @patch("envstack.worker.bootstrap._run")
    def test_upgrade_install(self, mock_run, infra, tmp_path):
        captured = {}

        def run(cmd):
            if cmd[:2] == ["helm", "upgrade"]:
                values_file = Path(cmd[cmd.index("--values") + 1])
                captured["values"] = yaml.safe_load(values_file.read_text())
                captured["values_file"] = values_file
                captured["cmd"] = cmd
            return _completed()

        mock_run.side_effect = run

        deploy_database(infra, tmp_path / "kubeconfig", helm_timeout="5m")

        commands = [c[0][0][:3] for c in mock_run.call_args_list]
        assert commands[0] == ["helm", "repo", "add"]
        assert commands[1] == ["helm", "repo", "update"]

        cmd = captured["cmd"]
        assert cmd[2:5] == ["--install", "mysql", "bitnami/mysql"]
        assert cmd[cmd.index("--namespace") + 1] == "database"
        assert cmd[cmd.index("--version") + 1] == "9.14.4"
        assert cmd[cmd.index("--timeout") + 1] == "5m"
        assert captured["values"]["secondary"]["replicaCount"] == 2
        assert not captured["values_file"].exists()


class TestDatabaseReadiness:
    def test_status_counts(self, core_v1, infra):
        core_v1.list_namespaced_pod.return_value = _items(
            _pod(True), _pod(True), _pod(False), _pod(True, deleting=True)
        )
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound"), _claim("Bound"), _claim("Pending")
        )

        status = replica_status(MagicMock(), infra.database)

        assert (status.expected, status.ready, status.bound) == (3, 2, 2)
        assert not status.complete
        core_v1.list_namespaced_pod.assert_called_once_with(
            "database", label_selector="app.kubernetes.io/instance=mysql"
        )

    def test_all_replicas_ready(self, core_v1, clock, infra):
        core_v1.list_namespaced_pod.return_value = _items(_pod(True), _pod(True), _pod(True))
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound"), _claim("Bound"), _claim("Bound")
        )

        status = wait_for_database_ready(MagicMock(), infra.database, timeout=60)

        assert status.complete

    def test_partial_replicas_fail(self, core_v1, clock, infra):
        core_v1.list_namespaced_pod.return_value = _items(_pod(True), _pod(False), _pod(False))
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound"), _claim("Bound"), _claim("Bound")
        )

        with pytest.raises(ReadinessError) as exc_info:
            wait_for_database_ready(MagicMock(), infra.database, timeout=30, poll_interval=10)

        assert "1/3 ready" in str(exc_info.value)
        assert "3/3 volumes bound" in str(exc_info.value)

    def test_volume_provisioning_failure(self, core_v1, clock, infra):
        core_v1.list_namespaced_pod.return_value = _items(_pod(True))
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound", "data-mysql-primary-0"),
            _claim("Pending", "data-mysql-secondary-0"),
            _claim("Pending", "data-mysql-secondary-1"),
        )
        core_v1.list_namespaced_event.return_value = _items(
            _event("data-mysql-secondary-0", 'storageclass.storage.k8s.io "gp2" not found')
        )

        with pytest.raises(ConfigurationError) as exc_info:
            wait_for_database_ready(MagicMock(), infra.database, timeout=60)

        assert "cannot provision volume data-mysql-secondary-0" in str(exc_info.value)
        assert core_v1.list_namespaced_persistent_volume_claim.call_count == 2

    def test_other_release_event_ignored(self, core_v1, clock, infra):
        core_v1.list_namespaced_pod.return_value = _items(_pod(True), _pod(True), _pod(True))
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound", "data-mysql-primary-0"),
            _claim("Bound", "data-mysql-secondary-0"),
            _claim("Pending", "data-mysql-secondary-1"),
        )
        core_v1.list_namespaced_event.return_value = _items(
            _event("data-mysql-analytics-primary-0", "other release failed")
        )

        with pytest.raises(ReadinessError) as exc_info:
            wait_for_database_ready(MagicMock(), infra.database, timeout=30, poll_interval=10)

        assert "2/3 volumes bound" in str(exc_info.value)

    def test_transient_provisioning_failure_recovers(self, core_v1, clock, infra):
        core_v1.list_namespaced_pod.return_value = _items(_pod(True), _pod(True), _pod(True))
        core_v1.list_namespaced_persistent_volume_claim.side_effect = [
            _items(
                _claim("Bound", "data-mysql-primary-0"),
                _claim("Bound", "data-mysql-secondary-0"),
                _claim("Pending", "data-mysql-secondary-1"),
            ),
            _items(
                _claim("Bound", "data-mysql-primary-0"),
                _claim("Bound", "data-mysql-secondary-0"),
                _claim("Bound", "data-mysql-secondary-1"),
            ),
        ]
        core_v1.list_namespaced_event.return_value = _items(
            _event("data-mysql-secondary-1", "rpc error: code = Internal, retrying")
        )

        status = wait_for_database_ready(MagicMock(), infra.database, timeout=60)

        assert status.complete


class TestUninstallDatabase:
    @patch("envstack.worker.bootstrap._run")
    def test_removes_release_and_claims(self, mock_run, core_v1, clock, infra, tmp_path):
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound", "data-mysql-primary-0")
        )
        core_v1.list_persistent_volume.return_value = _items()

        uninstall_database(infra, tmp_path / "kubeconfig", api_client=MagicMock())

        assert mock_run.call_args[0][0][:3] == ["helm", "uninstall", "mysql"]
        core_v1.delete_collection_namespaced_persistent_volume_claim.assert_called_once_with(
            "database", label_selector="app.kubernetes.io/instance=mysql"
        )

    @patch("envstack.worker.bootstrap._run")
    def test_waits_for_volumes_deleted(self, mock_run, core_v1, clock, infra, tmp_path):
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound", "data-mysql-primary-0"), _claim("Bound", "data-mysql-secondary-0")
        )
        core_v1.list_persistent_volume.side_effect = [
            _items(
                _volume("pvc-1", "data-mysql-primary-0"),
                _volume("pvc-2", "data-mysql-secondary-0"),
                _volume("pvc-9", "data-mysql-primary-0", namespace="analytics"),
            ),
            _items(_volume("pvc-2", "data-mysql-secondary-0")),
            _items(_volume("pvc-9", "data-mysql-primary-0", namespace="analytics")),
        ]

        uninstall_database(
            infra, tmp_path / "kubeconfig", api_client=MagicMock(), timeout=60, poll_interval=5
        )

        assert core_v1.list_persistent_volume.call_count == 3

    @patch("envstack.worker.bootstrap._run")
    def test_volumes_not_deleted(self, mock_run, core_v1, clock, infra, tmp_path):
        core_v1.list_namespaced_persistent_volume_claim.return_value = _items(
            _claim("Bound", "data-mysql-primary-0")
        )
        core_v1.list_persistent_volume.return_value = _items(
            _volume("pvc-1", "data-mysql-primary-0"),
            _volume("pvc-retained", "data-mysql-primary-0", policy="Retain"),
        )

        with pytest.raises(ProvisioningError) as exc_info:
            uninstall_database(
                infra, tmp_path / "kubeconfig", api_client=MagicMock(), timeout=30, poll_interval=10
            )

        assert "pvc-1" in str(exc_info.value)
        assert "pvc-retained" not in str(exc_info.value)

    @patch("envstack.worker.bootstrap._run")
    def test_missing_release(self, mock_run, infra, tmp_path):
        mock_run.side_effect = ProvisioningError(
            "Error: uninstall: Release not loaded: mysql: release: not found"
        )

        uninstall_database(infra, tmp_path / "kubeconfig")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
