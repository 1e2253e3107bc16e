"""Process configuration."""

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

_HOME = Path.home() / ".envstack"


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="ENVSTACK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Working directory for CDKTF operations
    workdir_base: str = str(_HOME / "work")

    # Run ledger
    database_url: str = f"sqlite:///{_HOME / 'runs.db'}"

    # Workflow lease
    lease_ttl_seconds: int = 7200

    # Readiness gates
    node_ready_timeout: int = 900
    replica_ready_timeout: int = 900
    poll_interval: float = 10.0
    helm_timeout: str = "10m"

    # Empty means every region is allowed
    allowed_regions: list[str] = []

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"


class PipelineInputs(BaseSettings):
    """
    Inputs injected by the CI orchestrator for one pipeline run.

    Credentials are validated here but consumed from the process environment
    by boto3 and the aws CLI. They are never persisted or logged.
    """

    model_config = SettingsConfigDict(extra="ignore")

    env_prefix: str = Field(..., validation_alias="ENV_PREFIX")
    k8s_version: str = Field(..., validation_alias="K8S_VERSION")
    cluster_name: str = Field(..., validation_alias="CLUSTER_NAME")
    region: str = Field(..., validation_alias="REGION")
    state_bucket: Optional[str] = Field(None, validation_alias="STATE_BUCKET")

    aws_access_key_id: SecretStr = Field(..., validation_alias="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: SecretStr = Field(..., validation_alias="AWS_SECRET_ACCESS_KEY")

    def parameters(self) -> dict:
        return {
            "env_prefix": self.env_prefix,
            "k8s_version": self.k8s_version,
            "cluster_name": self.cluster_name,
            "region": self.region,
        }


# Global settings instance
settings = Settings()
