"""Workflow orchestration and in-cluster steps."""

from .pipeline import ProvisioningWorkflow, RollbackPolicy, WorkflowResult, publish_output
from .profiles import FargateProfile, FargateSelector, list_fargate_profiles, selector_matches

__all__ = [
    "ProvisioningWorkflow",
    "RollbackPolicy",
    "WorkflowResult",
    "publish_output",
    "FargateProfile",
    "FargateSelector",
    "list_fargate_profiles",
    "selector_matches",
]
