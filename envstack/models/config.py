"""Parameter-file schema and infrastructure model."""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from ..exceptions import ConfigurationError


class Stage(str, Enum):
    """Workflow stages, in execution order."""

    NETWORK = "network"
    CLUSTER = "cluster"
    DATABASE = "database"


# Terraform-managed stages; the database stage is driven by helm
TERRAFORM_STAGES = (Stage.NETWORK, Stage.CLUSTER)

RESERVED_NAMESPACES = {"default", "kube-system", "kube-public", "kube-node-lease"}

_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,38}[a-z0-9]$"


# Pydantic models for parameter-file validation
class EnvironmentParameters(BaseModel):
    """Per-environment parameters shared by the network and cluster stages."""

    env_prefix: str = Field(..., pattern=_NAME_PATTERN, description="dev, test, staging, prod")
    k8s_version: str = Field(..., pattern=r"^1\.\d{1,2}$")
    cluster_name: str = Field(..., pattern=_NAME_PATTERN)
    region: str = Field(..., pattern=r"^[a-z]{2}(-[a-z]+)+-\d$")


class StateBackendConfig(BaseModel):
    """Remote state location."""

    bucket: str = Field(..., min_length=3, max_length=63)
    key_prefix: str = "envstack"
    region: Optional[str] = None  # Defaults to the environment region
    create: bool = True

    @field_validator("key_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/")


class NetworkConfig(BaseModel):
    """VPC layout."""

    vpc_cidr: str = "10.0.0.0/16"
    private_subnets: list[str] = Field(
        default_factory=lambda: ["10.0.1.0/24", "10.0.2.0/24", "10.0.3.0/24"]
    )
    public_subnets: list[str] = Field(
        default_factory=lambda: ["10.0.101.0/24", "10.0.102.0/24", "10.0.103.0/24"]
    )
    availability_zones: list[str] = Field(default_factory=list)  # <region>a|b|c if empty
    single_nat_gateway: bool = True

    @model_validator(mode="after")
    def validate_layout(self) -> "NetworkConfig":
        """Reject subnets outside the VPC block or overlapping each other."""
        try:
            vpc = ipaddress.ip_network(self.vpc_cidr)
            subnets = [ipaddress.ip_network(c) for c in self.private_subnets + self.public_subnets]
        except ValueError as e:
            raise ValueError(f"invalid CIDR block: {e}") from e

        for subnet in subnets:
            if not subnet.subnet_of(vpc):
                raise ValueError(f"subnet {subnet} is outside VPC block {vpc}")

        for i, a in enumerate(subnets):
            for b in subnets[i + 1 :]:
                if a.overlaps(b):
                    raise ValueError(f"subnets {a} and {b} overlap")

        if len(self.private_subnets) != len(self.public_subnets):
            raise ValueError("private and public subnet counts differ")

        if self.availability_zones and len(self.availability_zones) != len(self.private_subnets):
            raise ValueError(
                f"{len(self.private_subnets)} subnets per tier but "
                f"{len(self.availability_zones)} availability zones"
            )

        return self


class FargateProfileConfig(BaseModel):
    """Fargate profile reserved for one workload."""

    name: str = "app"
    namespace: str = "app"
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: str) -> str:
        """A profile must never catch system or unscoped workloads."""
        if "*" in v or "?" in v:
            raise ValueError("wildcard namespaces are not allowed in the Fargate selector")
        if v in RESERVED_NAMESPACES:
            raise ValueError(f"Fargate selector may not target the {v} namespace")
        return v

    @field_validator("labels")
    @classmethod
    def validate_labels(cls, v: Dict[str, str]) -> Dict[str, str]:
        for key, value in v.items():
            if "*" in key or "*" in value:
                raise ValueError("wildcard labels are not allowed in the Fargate selector")
        return v


class ClusterConfig(BaseModel):
    """EKS cluster configuration."""

    worker_count: int = Field(3, ge=1, le=100)
    instance_type: str = "t3.medium"
    capacity_type: str = Field("ON_DEMAND", pattern=r"^(ON_DEMAND|SPOT)$")
    disk_size_gb: int = Field(20, ge=20)
    endpoint_public_access: bool = True
    fargate_profile: FargateProfileConfig = Field(default_factory=FargateProfileConfig)


class DatabaseConfig(BaseModel):
    """MySQL Helm release configuration."""

    release_name: str = Field("mysql", pattern=_NAME_PATTERN)
    namespace: str = "database"
    chart: str = "bitnami/mysql"
    repo_url: str = "https://charts.bitnami.com/bitnami"
    chart_version: str = "9.14.4"
    replicas: int = Field(3, ge=1, le=9)
    volume_size: str = Field("8Gi", pattern=r"^\d+(Mi|Gi|Ti)$")
    storage_class: str = "gp2"
    database_name: str = "app"


class MetaConfig(BaseModel):
    """Top-level parameter file for one environment."""

    parameters: EnvironmentParameters
    state: StateBackendConfig
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    tags: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_database_placement(self) -> "MetaConfig":
        """Fargate pods cannot mount EBS volumes, so the database stays on EC2 nodes."""
        profile = self.cluster.fargate_profile
        if profile.namespace == self.database.namespace and not profile.labels:
            raise ValueError(
                f"database namespace {self.database.namespace} would be scheduled on "
                f"Fargate profile {profile.name}; scope the profile with labels or "
                "use another namespace"
            )
        return self


# Internal infrastructure model (converted from MetaConfig)
@dataclass
class StateLocation:
    """Where one stage's Terraform state lives."""

    bucket: str
    key: str
    region: str

    @property
    def lock_table(self) -> str:
        return f"{self.bucket}-lock"


@dataclass
class NetworkSpec:
    """Network specification."""

    vpc_cidr: str
    availability_zones: list[str]
    public_subnets: list[str]
    private_subnets: list[str]
    single_nat_gateway: bool = True


@dataclass
class NodeGroupSpec:
    """Managed node group specification."""

    name: str
    instance_type: str
    min_size: int
    max_size: int
    desired_size: int
    capacity_type: str = "ON_DEMAND"
    disk_size_gb: int = 20
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class FargateSelectorSpec:
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class FargateProfileSpec:
    name: str
    selectors: list[FargateSelectorSpec]


@dataclass
class DatabaseReleaseSpec:
    """Helm release specification."""

    release_name: str
    namespace: str
    chart: str
    repo_url: str
    chart_version: str
    replicas: int
    volume_size: str
    storage_class: str
    database_name: str

    @property
    def service_endpoint(self) -> str:
        return f"{self.release_name}-primary.{self.namespace}.svc.cluster.local:3306"


@dataclass
class InfraModel:
    """
    Internal infrastructure model.

    This is the normalized model that the CDKTF stacks and the workflow
    consume. Converted from the user's MetaConfig.
    """

    # Identity
    env_prefix: str
    cluster_name: str
    region: str
    k8s_version: str

    network: NetworkSpec
    node_groups: list[NodeGroupSpec]
    fargate_profile: FargateProfileSpec
    database: DatabaseReleaseSpec

    # State backend
    state_bucket: str
    state_key_prefix: str
    state_region: str
    create_state_backend: bool = True

    endpoint_public_access: bool = True

    # Tags
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def worker_count(self) -> int:
        return sum(ng.desired_size for ng in self.node_groups)

    @property
    def ownership_tag(self) -> str:
        return f"kubernetes.io/cluster/{self.cluster_name}"

    @property
    def lock_table(self) -> str:
        return f"{self.state_bucket}-lock"

    @property
    def lease_id(self) -> str:
        return f"{self.state_bucket}/{self.state_key_prefix}/{self.env_prefix}/workflow"

    def state_location(self, stage: Stage) -> StateLocation:
        """Remote state location of one stage; unique per environment and stage."""
        return StateLocation(
            bucket=self.state_bucket,
            key=f"{self.state_key_prefix}/{self.env_prefix}/{stage.value}/terraform.tfstate",
            region=self.state_region,
        )


def from_meta_config(meta: MetaConfig) -> InfraModel:
    """
    Convert user's meta-config into internal InfraModel.

    Args:
        meta: User's meta-configuration

    Returns:
        InfraModel ready for the CDKTF stacks
    """
    params = meta.parameters

    azs = meta.network.availability_zones or [
        f"{params.region}{suffix}" for suffix in "abc"[: len(meta.network.private_subnets)]
    ]
    if len(azs) != len(meta.network.private_subnets):
        raise ConfigurationError(
            f"cannot place {len(meta.network.private_subnets)} subnets per tier in "
            f"{len(azs)} availability zones"
        )
    for az in azs:
        if not az.startswith(params.region):
            raise ConfigurationError(f"availability zone {az} is not in region {params.region}")

    network = NetworkSpec(
        vpc_cidr=meta.network.vpc_cidr,
        availability_zones=azs,
        public_subnets=list(meta.network.public_subnets),
        private_subnets=list(meta.network.private_subnets),
        single_nat_gateway=meta.network.single_nat_gateway,
    )

    count = meta.cluster.worker_count
    node_groups = [
        NodeGroupSpec(
            name="workers",
            instance_type=meta.cluster.instance_type,
            min_size=count,
            max_size=count,
            desired_size=count,
            capacity_type=meta.cluster.capacity_type,
            disk_size_gb=meta.cluster.disk_size_gb,
            labels={"envstack.io/node-group": "workers"},
        )
    ]

    profile = meta.cluster.fargate_profile
    fargate_profile = FargateProfileSpec(
        name=profile.name,
        selectors=[FargateSelectorSpec(namespace=profile.namespace, labels=dict(profile.labels))],
    )

    db = meta.database
    database = DatabaseReleaseSpec(
        release_name=db.release_name,
        namespace=db.namespace,
        chart=db.chart,
        repo_url=db.repo_url,
        chart_version=db.chart_version,
        replicas=db.replicas,
        volume_size=db.volume_size,
        storage_class=db.storage_class,
        database_name=db.database_name,
    )

    tags = {
        **meta.tags,
        "Environment": params.env_prefix,
        "Cluster": params.cluster_name,
        "ManagedBy": "envstack",
    }

    return InfraModel(
        env_prefix=params.env_prefix,
        cluster_name=params.cluster_name,
        region=params.region,
        k8s_version=params.k8s_version,
        network=network,
        node_groups=node_groups,
        fargate_profile=fargate_profile,
        database=database,
        state_bucket=meta.state.bucket,
        state_key_prefix=meta.state.key_prefix,
        state_region=meta.state.region or params.region,
        create_state_backend=meta.state.create,
        endpoint_public_access=meta.cluster.endpoint_public_access,
        tags=tags,
    )


def ensure_distinct_state_keys(models: Iterable[InfraModel]) -> None:
    """
    Reject environments whose remote state or lease would collide.

    Raises:
        ConfigurationError: If two environments share a state key
    """
    seen: Dict[str, str] = {}
    for infra in models:
        keys = [infra.lease_id] + [
            f"{loc.bucket}/{loc.key}" for loc in (infra.state_location(s) for s in TERRAFORM_STAGES)
        ]
        for key in keys:
            owner = seen.get(key)
            if owner is not None and owner != infra.env_prefix:
                raise ConfigurationError(
                    f"environments {owner} and {infra.env_prefix} share state key {key}"
                )
            if owner == infra.env_prefix:
                raise ConfigurationError(f"environment {infra.env_prefix} is declared twice")
            seen[key] = infra.env_prefix


_TFVARS_LINE = re.compile(r'^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*"?([^"#]*?)"?\s*(#.*)?$')


def parse_tfvars(text: str) -> Dict[str, str]:
    """Parse the flat ``key = "value"`` subset of a tfvars file."""
    values = {}
    for lineno, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith(("#", "//")):
            continue
        match = _TFVARS_LINE.match(line)
        if not match:
            raise ConfigurationError(f"line {lineno}: expected key = \"value\"")
        values[match.group(1)] = match.group(2).strip()
    return values


def load_meta_config(path: Path, overrides: Optional[Dict[str, Any]] = None) -> MetaConfig:
    """
    Load a parameter file.

    YAML files carry the full MetaConfig. A ``.tfvars`` file carries only the
    four environment parameters plus ``state_bucket``.

    Args:
        path: Parameter file
        overrides: Environment parameters that replace the file's values

    Raises:
        ConfigurationError: If the file is missing or invalid
    """
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"cannot read parameter file {path}: {e}") from e

    if path.suffix == ".tfvars":
        values = parse_tfvars(text)
        raw: Dict[str, Any] = {
            "parameters": {
                k: values[k] for k in ("env_prefix", "k8s_version", "cluster_name", "region")
                if k in values
            },
            "state": {"bucket": values.get("state_bucket", "")},
        }
    else:
        try:
            raw = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{path} must contain a mapping")

    return build_meta_config(raw, overrides)


def build_meta_config(raw: Dict[str, Any], overrides: Optional[Dict[str, Any]] = None) -> MetaConfig:
    """Validate a raw mapping, applying parameter overrides first."""
    raw = dict(raw)
    if overrides:
        raw["parameters"] = {**raw.get("parameters", {}), **overrides}
    try:
        return MetaConfig(**raw)
    except ValueError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
