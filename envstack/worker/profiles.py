"""Fargate profile inspection."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import boto3
import structlog

logger = structlog.get_logger()


@dataclass
class FargateSelector:
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)

    def matches(self, namespace: str, labels: Dict[str, str]) -> bool:
        """EKS rule: same namespace, and every selector label present on the pod."""
        if namespace != self.namespace:
            return False
        return all(labels.get(key) == value for key, value in self.labels.items())


@dataclass
class FargateProfile:
    name: str
    status: str
    selectors: List[FargateSelector]
    subnets: List[str] = field(default_factory=list)
    pod_execution_role_arn: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "selectors": [{"namespace": s.namespace, "labels": s.labels} for s in self.selectors],
            "subnets": self.subnets,
            "pod_execution_role_arn": self.pod_execution_role_arn,
        }


def selector_matches(
    selectors: List[FargateSelector], namespace: str, labels: Optional[Dict[str, str]] = None
) -> bool:
    """Whether a pod with this namespace and labels would be scheduled on the profile."""
    return any(s.matches(namespace, labels or {}) for s in selectors)


def list_fargate_profiles(cluster_name: str, region: str, eks: Any = None) -> List[FargateProfile]:
    """
    Describe every Fargate profile of a cluster.

    Args:
        cluster_name: EKS cluster name
        region: AWS region
        eks: Optional boto3 EKS client
    """
    eks = eks or boto3.client("eks", region_name=region)

    names: List[str] = []
    paginator = eks.get_paginator("list_fargate_profiles")
    for page in paginator.paginate(clusterName=cluster_name):
        names.extend(page.get("fargateProfileNames", []))

    profiles = []
    for name in names:
        described = eks.describe_fargate_profile(clusterName=cluster_name, fargateProfileName=name)
        profile = described["fargateProfile"]
        profiles.append(
            FargateProfile(
                name=profile["fargateProfileName"],
                status=profile.get("status", "UNKNOWN"),
                selectors=[
                    FargateSelector(namespace=s["namespace"], labels=s.get("labels") or {})
                    for s in profile.get("selectors", [])
                ],
                subnets=profile.get("subnets", []),
                pod_execution_role_arn=profile.get("podExecutionRoleArn"),
            )
        )

    logger.info("Listed Fargate profiles", cluster_name=cluster_name, count=len(profiles))
    return profiles
