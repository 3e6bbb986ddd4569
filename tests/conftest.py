"""Shared fixtures for the cicd-workflow tests."""

import json

import pytest

from cicd_workflow.config import CiCdConfig, Config, reset_config
from cicd_workflow.models import (
    BlobStorageS3Config,
    Cluster,
    CommonWorkflowRequest,
    ConfigSecretMap,
    Environment,
    Pipeline,
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the CLI configuration at a temporary file and clear overriding env vars."""
    monkeypatch.setattr(Config, "DEFAULT_CONFIG_PATH", tmp_path / "config.yaml")
    for env_var in Config.ENV_VARS.values():
        monkeypatch.delenv(env_var, raising=False)
    reset_config()
    yield tmp_path / "config.yaml"
    reset_config()


@pytest.fixture
def ci_cd_config():
    return CiCdConfig()


@pytest.fixture
def pipeline():
    return Pipeline(
        id=11,
        name="Backend-Build",
        app_id=3,
        environment_id=5,
        pre_stage_config_map_secret_names=json.dumps({"configMaps": ["app-cm"], "secrets": ["app-secret"]}),
        post_stage_config_map_secret_names=json.dumps({"configMaps": [], "secrets": ["db-secret"]}),
    )


@pytest.fixture
def environment():
    return Environment(
        id=0,
        name="devtron-default",
        namespace="devtron-ci",
        cluster_id=1,
        cluster=Cluster(
            id=1,
            cluster_name="target",
            server_url="https://target.example.com:6443",
            config={"bearer_token": "token-123"},
        ),
    )


@pytest.fixture
def make_request():
    """Factory of CI/CD workflow requests with realistic defaults."""
    def _make(**overrides):
        values = dict(
            workflow_name_prefix="42-ci-11-backend",
            pipeline_name="Backend-Build",
            pipeline_id=11,
            namespace="devtron-ci",
            workflow_id=42,
            workflow_runner_id=9,
            app_id=3,
            environment_id=5,
            ci_image="quay.io/devtron/ci-runner:latest",
            cd_image="quay.io/devtron/cd-runner:latest",
            active_deadline_seconds=3600,
            workflow_prefix_for_log="42-ci-11-backend",
            workflow_executor="AWF",
            cloud_provider="S3",
        )
        values.update(overrides)
        return CommonWorkflowRequest(**values)
    return _make


@pytest.fixture
def s3_storage():
    return BlobStorageS3Config(
        access_key="AKIA",
        passkey="secret",
        endpoint_url="https://minio.devtroncd:9000",
        ci_log_bucket_name="ci-logs",
        ci_log_region="us-east-1",
    )


@pytest.fixture
def app_config_maps():
    return [
        ConfigSecretMap(name="app-cm", type="environment", data={"LOG_LEVEL": "debug"}),
        ConfigSecretMap(name="settings", type="volume", mount_path="/etc/settings", data={"app.yaml": "a: 1"}),
        ConfigSecretMap(name="shared-cm", type="environment", external=True),
    ]


@pytest.fixture
def app_secrets():
    return [
        ConfigSecretMap(name="app-secret", type="environment", data={"TOKEN": "dG9rZW4="}),
        ConfigSecretMap(name="db-secret", type="volume", mount_path="/etc/db", sub_path=True,
                        data={"user": "YQ==", "password": "Yg=="}, file_permission="0400"),
    ]
