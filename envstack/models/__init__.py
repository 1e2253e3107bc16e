"""Domain models for environment provisioning."""

from .config import (
    ClusterConfig,
    DatabaseConfig,
    EnvironmentParameters,
    FargateProfileConfig,
    InfraModel,
    MetaConfig,
    NetworkConfig,
    Stage,
    StateBackendConfig,
    from_meta_config,
    load_meta_config,
)
from .run import PipelineRun, RunStatus

__all__ = [
    "ClusterConfig",
    "DatabaseConfig",
    "EnvironmentParameters",
    "FargateProfileConfig",
    "InfraModel",
    "MetaConfig",
    "NetworkConfig",
    "Stage",
    "StateBackendConfig",
    "from_meta_config",
    "load_meta_config",
    "PipelineRun",
    "RunStatus",
]
