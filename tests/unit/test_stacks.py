"""Synthesis tests for the network and cluster stacks."""

import json
import shutil

import pytest

from envstack.models.config import MetaConfig, from_meta_config

# cdktf runs its constructs in a node process
pytestmark = pytest.mark.skipif(
    shutil.which("node") is None,
    reason="node runtime not available for cdktf synthesis",
)


def _synth(stack_class, infra):
    from cdktf import Testing

    app = Testing.app()
    stack = stack_class(app, "test", infra)
    return json.loads(Testing.synth(stack))


def _resources(synthesized, resource_type):
    return list(synthesized.get("resource", {}).get(resource_type, {}).values())


@pytest.fixture
def network(infra):
    from envstack.engine.network_stack import NetworkStack

    return _synth(NetworkStack, infra)


@pytest.fixture
def cluster(infra):
    from envstack.engine.cluster_stack import ClusterStack

    return _synth(ClusterStack, infra)


class TestNetworkStack:
    def test_vpc(self, network):
        (vpc,) = _resources(network, "aws_vpc")

        assert vpc["cidr_block"] == "10.0.0.0/16"
        assert vpc["tags"]["kubernetes.io/cluster/my-test-cluster"] == "shared"

    def test_subnets_per_zone(self, network):
        subnets = _resources(network, "aws_subnet")

        private = [s for s in subnets if "kubernetes.io/role/internal-elb" in s["tags"]]
        public = [s for s in subnets if "kubernetes.io/role/elb" in s["tags"]]
        assert sorted(s["cidr_block"] for s in private) == [
            "10.0.1.0/24",
            "10.0.2.0/24",
            "10.0.3.0/24",
        ]
        assert len(public) == 3
        assert {s["availability_zone"] for s in private} == {
            "eu-west-2a",
            "eu-west-2b",
            "eu-west-2c",
        }

    def test_single_nat_gateway(self, network):
        assert len(_resources(network, "aws_nat_gateway")) == 1
        assert len(_resources(network, "aws_route_table")) == 4

    def test_nat_gateway_per_zone(self, raw_config):
        from envstack.engine.network_stack import NetworkStack

        raw_config["network"] = {"single_nat_gateway": False}
        synthesized = _synth(NetworkStack, from_meta_config(MetaConfig(**raw_config)))

        assert len(_resources(synthesized, "aws_nat_gateway")) == 3

    def test_backend_key(self, network):
        backend = network["terraform"]["backend"]["s3"]

        assert backend["bucket"] == "acme-envstack-state"
        assert backend["key"] == "envstack/dev/network/terraform.tfstate"
        assert backend["dynamodb_table"] == "acme-envstack-state-lock"

    def test_outputs(self, network):
        assert {"vpc_id", "private_subnet_ids", "public_subnet_ids"} <= set(network["output"])


class TestClusterStack:
    def test_cluster_version(self, cluster):
        (eks,) = _resources(cluster, "aws_eks_cluster")

        assert eks["name"] == "my-test-cluster"
        assert eks["version"] == "1.28"

    def test_fixed_size_node_group(self, cluster):
        (group,) = _resources(cluster, "aws_eks_node_group")

        assert group["scaling_config"] == {"desired_size": 3, "max_size": 3, "min_size": 3}

    def test_fargate_profile_scoped_to_namespace(self, cluster):
        (profile,) = _resources(cluster, "aws_eks_fargate_profile")

        assert profile["fargate_profile_name"] == "app"
        assert [s["namespace"] for s in profile["selector"]] == ["app"]

    def test_ebs_csi_driver(self, cluster):
        (addon,) = _resources(cluster, "aws_eks_addon")

        assert addon["addon_name"] == "aws-ebs-csi-driver"

    def test_backend_key(self, cluster):
        assert (
            cluster["terraform"]["backend"]["s3"]["key"] == "envstack/dev/cluster/terraform.tfstate"
        )

    def test_ca_data_is_sensitive(self, cluster):
        assert cluster["output"]["cluster_certificate_authority_data"]["sensitive"] is True


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
