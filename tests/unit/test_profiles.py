"""Unit tests for Fargate profile inspection."""

import boto3
import pytest
from moto import mock_aws

from envstack.worker.profiles import FargateSelector, list_fargate_profiles, selector_matches

ROLE_ARN = "arn:aws:iam::123456789012:role/envstack-test"


@pytest.fixture
def eks():
    with mock_aws():
        client = boto3.client("eks", region_name="eu-west-2")
        client.create_cluster(
            name="my-test-cluster",
            version="1.28",
            roleArn=ROLE_ARN,
            resourcesVpcConfig={"subnetIds": ["subnet-1", "subnet-2"]},
        )
        yield client


class TestSelectorMatching:
    """EKS selector semantics: equal namespace, selector labels a subset of pod labels."""

    @pytest.fixture
    def selectors(self):
        return [FargateSelector(namespace="app", labels={"tier": "web"})]

    def test_match(self, selectors):
        assert selector_matches(selectors, "app", {"tier": "web", "version": "2"})

    def test_missing_label(self, selectors):
        assert not selector_matches(selectors, "app", {"version": "2"})

    def test_different_value(self, selectors):
        assert not selector_matches(selectors, "app", {"tier": "worker"})

    def test_other_namespace(self, selectors):
        assert not selector_matches(selectors, "database", {"tier": "web"})

    def test_unlabeled_selector_takes_whole_namespace(self):
        selectors = [FargateSelector(namespace="app")]

        assert selector_matches(selectors, "app")
        assert not selector_matches(selectors, "default")


class TestListFargateProfiles:
    def test_lists_profiles(self, eks):
        eks.create_fargate_profile(
            fargateProfileName="app",
            clusterName="my-test-cluster",
            podExecutionRoleArn=ROLE_ARN,
            subnets=["subnet-1"],
            selectors=[{"namespace": "app", "labels": {"tier": "web"}}],
        )

        profiles = list_fargate_profiles("my-test-cluster", "eu-west-2", eks=eks)

        assert len(profiles) == 1
        profile = profiles[0]
        assert profile.name == "app"
        assert profile.selectors == [FargateSelector(namespace="app", labels={"tier": "web"})]
        assert profile.to_dict()["pod_execution_role_arn"] == ROLE_ARN

    def test_no_profiles(self, eks):
        assert list_fargate_profiles("my-test-cluster", "eu-west-2", eks=eks) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
