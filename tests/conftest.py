"""Shared fixtures."""

import pytest

from envstack.config import Settings
from envstack.models.config import MetaConfig, from_meta_config


@pytest.fixture
def raw_config():
    return {
        "parameters": {
            "env_prefix": "dev",
            "k8s_version": "1.28",
            "cluster_name": "my-test-cluster",
            "region": "eu-west-2",
        },
        "state": {"bucket": "acme-envstack-state"},
    }


@pytest.fixture
def meta_config(raw_config):
    return MetaConfig(**raw_config)


@pytest.fixture
def infra(meta_config):
    return from_meta_config(meta_config)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        workdir_base=str(tmp_path / "work"),
        database_url=f"sqlite:///{tmp_path / 'runs.db'}",
        node_ready_timeout=5,
        replica_ready_timeout=5,
        poll_interval=0,
    )
