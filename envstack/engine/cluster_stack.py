"""Cluster stack: EKS control plane, worker group and Fargate profile."""

import json

from cdktf import S3Backend, TerraformOutput, TerraformStack
from constructs import Construct

from cdktf_cdktf_provider_aws.provider import AwsProvider
from cdktf_cdktf_provider_aws.data_aws_vpc import DataAwsVpc, DataAwsVpcFilter
from cdktf_cdktf_provider_aws.data_aws_subnets import DataAwsSubnets, DataAwsSubnetsFilter
from cdktf_cdktf_provider_aws.eks_cluster import EksCluster, EksClusterVpcConfig
from cdktf_cdktf_provider_aws.eks_node_group import EksNodeGroup, EksNodeGroupScalingConfig
from cdktf_cdktf_provider_aws.eks_fargate_profile import (
    EksFargateProfile,
    EksFargateProfileSelector,
)
from cdktf_cdktf_provider_aws.eks_addon import EksAddon
from cdktf_cdktf_provider_aws.iam_role import IamRole
from cdktf_cdktf_provider_aws.iam_role_policy_attachment import IamRolePolicyAttachment

from ..models.config import InfraModel, Stage
from .state import configure_backend


def _assume_role_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


class ClusterStack(TerraformStack):
    """
    EKS cluster for one environment.

    The VPC and private subnets are discovered through the ownership tag
    written by the network stack, never passed in by id.

    Creates:
    - EKS cluster and its IAM role
    - One fixed-size managed node group
    - The EBS CSI driver add-on (persistent volumes)
    - One Fargate profile restricted to a single workload selector
    """

    def __init__(self, scope: Construct, id: str, infra: InfraModel):
        super().__init__(scope, id)

        self.infra = infra

        AwsProvider(
            self,
            "aws",
            region=infra.region,
            default_tags=[{"tags": infra.tags}],
        )

        S3Backend(self, **configure_backend(infra.state_location(Stage.CLUSTER)))

        self.vpc = self._lookup_vpc()
        self.private_subnets = self._lookup_private_subnets()

        self.cluster_role = self._create_cluster_role()
        self.eks_cluster = self._create_eks_cluster()

        self.node_role = self._create_node_role()
        self.node_groups = self._create_node_groups()
        self._create_ebs_csi_addon()

        self.fargate_role = self._create_fargate_role()
        self.fargate_profile = self._create_fargate_profile()

        self._create_outputs()

    def _lookup_vpc(self) -> DataAwsVpc:
        return DataAwsVpc(
            self,
            "vpc",
            filter=[
                DataAwsVpcFilter(name=f"tag:{self.infra.ownership_tag}", values=["shared"]),
                DataAwsVpcFilter(name="tag:Environment", values=[self.infra.env_prefix]),
            ],
        )

    def _lookup_private_subnets(self) -> DataAwsSubnets:
        return DataAwsSubnets(
            self,
            "private_subnets",
            filter=[
                DataAwsSubnetsFilter(name="vpc-id", values=[self.vpc.id]),
                DataAwsSubnetsFilter(name=f"tag:{self.infra.ownership_tag}", values=["shared"]),
                DataAwsSubnetsFilter(name="tag:kubernetes.io/role/internal-elb", values=["1"]),
            ],
        )

    def _create_cluster_role(self) -> IamRole:
        role = IamRole(
            self,
            "cluster_role",
            name=f"{self.infra.cluster_name}-cluster-role",
            assume_role_policy=_assume_role_policy("eks.amazonaws.com"),
        )

        self.cluster_policies = [
            IamRolePolicyAttachment(
                self,
                f"cluster_{policy.lower()}",
                role=role.name,
                policy_arn=f"arn:aws:iam::aws:policy/{policy}",
            )
            for policy in ["AmazonEKSClusterPolicy", "AmazonEKSVPCResourceController"]
        ]

        return role

    def _create_eks_cluster(self) -> EksCluster:
        return EksCluster(
            self,
            "eks_cluster",
            name=self.infra.cluster_name,
            version=self.infra.k8s_version,
            role_arn=self.cluster_role.arn,
            vpc_config=EksClusterVpcConfig(
                subnet_ids=self.private_subnets.ids,
                endpoint_private_access=True,
                endpoint_public_access=self.infra.endpoint_public_access,
            ),
            depends_on=self.cluster_policies,
        )

    def _create_node_role(self) -> IamRole:
        role = IamRole(
            self,
            "node_role",
            name=f"{self.infra.cluster_name}-node-role",
            assume_role_policy=_assume_role_policy("ec2.amazonaws.com"),
        )

        # AmazonEBSCSIDriverPolicy lets the CSI driver provision database volumes
        self.node_policies = [
            IamRolePolicyAttachment(
                self,
                f"node_{policy.split('/')[-1].lower()}",
                role=role.name,
                policy_arn=f"arn:aws:iam::aws:policy/{policy}",
            )
            for policy in [
                "AmazonEKSWorkerNodePolicy",
                "AmazonEKS_CNI_Policy",
                "AmazonEC2ContainerRegistryReadOnly",
                "service-role/AmazonEBSCSIDriverPolicy",
            ]
        ]

        return role

    def _create_node_groups(self) -> list[EksNodeGroup]:
        node_groups = []

        for ng_spec in self.infra.node_groups:
            node_groups.append(
                EksNodeGroup(
                    self,
                    f"node_group_{ng_spec.name}",
                    cluster_name=self.eks_cluster.name,
                    node_group_name=f"{self.infra.cluster_name}-{ng_spec.name}",
                    node_role_arn=self.node_role.arn,
                    subnet_ids=self.private_subnets.ids,
                    scaling_config=EksNodeGroupScalingConfig(
                        min_size=ng_spec.min_size,
                        max_size=ng_spec.max_size,
                        desired_size=ng_spec.desired_size,
                    ),
                    instance_types=[ng_spec.instance_type],
                    capacity_type=ng_spec.capacity_type,
                    disk_size=ng_spec.disk_size_gb,
                    labels=ng_spec.labels,
                    depends_on=self.node_policies,
                )
            )

        return node_groups

    def _create_ebs_csi_addon(self) -> EksAddon:
        return EksAddon(
            self,
            "ebs_csi_driver",
            cluster_name=self.eks_cluster.name,
            addon_name="aws-ebs-csi-driver",
            resolve_conflicts_on_create="OVERWRITE",
            depends_on=self.node_groups,
        )

    def _create_fargate_role(self) -> IamRole:
        role = IamRole(
            self,
            "fargate_role",
            name=f"{self.infra.cluster_name}-fargate-role",
            assume_role_policy=_assume_role_policy("eks-fargate-pods.amazonaws.com"),
        )

        IamRolePolicyAttachment(
            self,
            "fargate_pod_execution",
            role=role.name,
            policy_arn="arn:aws:iam::aws:policy/AmazonEKSFargatePodExecutionRolePolicy",
        )

        return role

    def _create_fargate_profile(self) -> EksFargateProfile:
        profile = self.infra.fargate_profile

        return EksFargateProfile(
            self,
            "fargate_profile",
            cluster_name=self.eks_cluster.name,
            fargate_profile_name=profile.name,
            pod_execution_role_arn=self.fargate_role.arn,
            subnet_ids=self.private_subnets.ids,
            selector=[
                EksFargateProfileSelector(
                    namespace=selector.namespace,
                    labels=selector.labels or None,
                )
                for selector in profile.selectors
            ],
        )

    def _create_outputs(self) -> None:
        TerraformOutput(
            self,
            "vpc_id",
            value=self.vpc.id,
            description="VPC ID the cluster discovered by ownership tag",
        )

        TerraformOutput(
            self,
            "cluster_name",
            value=self.eks_cluster.name,
            description="EKS cluster name",
        )

        TerraformOutput(
            self,
            "cluster_endpoint",
            value=self.eks_cluster.endpoint,
            description="EKS cluster endpoint",
        )

        TerraformOutput(
            self,
            "cluster_certificate_authority_data",
            value=self.eks_cluster.certificate_authority.get(0).data,
            description="EKS cluster CA data",
            sensitive=True,
        )

        TerraformOutput(
            self,
            "fargate_profile_name",
            value=self.fargate_profile.fargate_profile_name,
            description="Fargate profile name",
        )
