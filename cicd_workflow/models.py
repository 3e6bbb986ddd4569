"""Data models for workflow requests, the trigger-event wire contract and assembled templates."""

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from kubernetes import client

# Go's zero time.Time, emitted by in-container agents for an unset trigger time
ZERO_TIME = "0001-01-01T00:00:00Z"

_FRACTION = re.compile(r"\.(\d+)")


class WorkflowExecutorType(str, Enum):
    """Backends a workflow template can be executed on."""
    ARGO_WORKFLOW = "AWF"
    SYSTEM = "SYSTEM"


class PipelineType(str, Enum):
    CI = "CI"
    CD = "CD"


class StageType(str, Enum):
    PRE = "PRE"
    POST = "POST"


class BlobStorageType(str, Enum):
    S3 = "S3"
    MINIO = "MINIO"
    AZURE = "AZURE"
    GCP = "GCP"


class ConfigUsageType(str, Enum):
    """How a configmap/secret is consumed by the workflow container."""
    ENVIRONMENT = "environment"
    VOLUME = "volume"


class GlobalConfigType(str, Enum):
    CONFIGMAP = "CONFIGMAP"
    SECRET = "SECRET"


def enum_value(value: Any) -> Any:
    """Plain value of an enum member; other values are returned unchanged."""
    return value.value if isinstance(value, Enum) else value


def wire(json_name: str, default: Any = None, **metadata) -> Any:
    """Declare a dataclass field with its JSON wire name.

    Args:
        json_name: Key used in the serialized payload
        default: Zero value of the field (must be immutable)
        **metadata: ``model`` for nested wire models, ``many`` for lists of them,
            ``time`` for timestamps, ``omitempty`` to drop zero values

    Returns:
        A dataclass field
    """
    metadata["json"] = json_name
    return field(default=default, metadata=metadata)


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return ZERO_TIME
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # RFC 3339 with the fraction trimmed of trailing zeros, as Go marshals time.Time
    formatted = value.astimezone(timezone.utc).replace(tzinfo=None).isoformat()
    seconds, _, fraction = formatted.partition(".")
    fraction = fraction.rstrip("0")
    return f"{seconds}.{fraction}Z" if fraction else f"{seconds}Z"


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if value == ZERO_TIME or value == "":
        return None
    text = str(value).replace("Z", "+00:00")
    # fromisoformat needs exactly six fraction digits before Python 3.11
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    return datetime.fromisoformat(text)


def _encode(value: Any) -> Any:
    if isinstance(value, WireModel):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _format_time(value)
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value


class WireModel:
    """Mixin giving dataclasses a camelCase JSON representation."""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a dict keyed by wire names, in declaration order."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.metadata.get("omitempty") and not value:
                continue
            if f.metadata.get("time"):
                data[f.metadata["json"]] = _format_time(value)
            else:
                data[f.metadata.get("json", f.name)] = _encode(value)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        """Build an instance from a dict keyed by wire names; unknown keys are ignored."""
        if data is None:
            return None
        kwargs = {}
        for f in fields(cls):
            key = f.metadata.get("json", f.name)
            if key not in data:
                continue
            value = data[key]
            model = f.metadata.get("model")
            if model is not None and value is not None:
                if f.metadata.get("many"):
                    value = [model.from_dict(item) for item in value]
                else:
                    value = model.from_dict(value)
            elif f.metadata.get("time"):
                value = _parse_time(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class BlobStorageS3Config(WireModel):
    access_key: str = wire("accessKey", "")
    passkey: str = wire("passkey", "")
    endpoint_url: str = wire("endpointUrl", "")
    is_in_secure: bool = wire("isInSecure", False)
    ci_log_bucket_name: str = wire("ciLogBucketName", "")
    ci_log_region: str = wire("ciLogRegion", "")
    ci_log_bucket_versioning: bool = wire("ciLogBucketVersioning", False)
    ci_cache_bucket_name: str = wire("ciCacheBucketName", "")
    ci_cache_region: str = wire("ciCacheRegion", "")
    ci_cache_bucket_versioning: bool = wire("ciCacheBucketVersioning", False)
    ci_artifact_bucket_name: str = wire("ciArtifactBucketName", "")
    ci_artifact_region: str = wire("ciArtifactRegion", "")
    ci_artifact_bucket_versioning: bool = wire("ciArtifactBucketVersioning", False)


@dataclass
class AzureBlobConfig(WireModel):
    enabled: bool = wire("enabled", False)
    account_name: str = wire("accountName", "")
    blob_container_ci_log: str = wire("blobContainerCiLog", "")
    blob_container_ci_cache: str = wire("blobContainerCiCache", "")
    blob_container_artifact: str = wire("blobStorageArtifact", "")
    account_key: str = wire("accountKey", "")


@dataclass
class GcpBlobConfig(WireModel):
    credential_file_json_data: str = wire("credentialFileData", "")
    cache_bucket_name: str = wire("ciCacheBucketName", "")
    log_bucket_name: str = wire("logBucketName", "")
    artifact_bucket_name: str = wire("artifactBucketName", "")


@dataclass
class ContainerResources(WireModel):
    min_cpu: str = wire("minCpu", "")
    max_cpu: str = wire("maxCpu", "")
    min_storage: str = wire("minStorage", "")
    max_storage: str = wire("maxStorage", "")
    min_ets: str = wire("minEts", "")
    max_ets: str = wire("maxEts", "")


@dataclass
class CiArtifactDTO(WireModel):
    id: int = wire("id", 0)
    pipeline_id: int = wire("pipelineId", 0)
    image: str = wire("image", "")
    image_digest: str = wire("imageDigest", "")
    material_info: str = wire("materialInfo", "")
    data_source: str = wire("dataSource", "")
    workflow_id: Optional[int] = wire("workflowId")


@dataclass
class CommonWorkflowRequest(WireModel):
    """Union of CI and CD submission parameters.

    The JSON form of this model is consumed by the agent running inside the
    workflow container, so wire names and their order must not change.
    Opaque nested payloads (project details, scripts, plugin steps, build
    config) are carried as plain JSON values.
    """
    workflow_name_prefix: str = wire("workflowNamePrefix", "")
    pipeline_name: str = wire("pipelineName", "")
    pipeline_id: int = wire("pipelineId", 0)
    docker_image_tag: str = wire("dockerImageTag", "")
    docker_registry_id: str = wire("dockerRegistryId", "")
    docker_registry_type: str = wire("dockerRegistryType", "")
    docker_registry_url: str = wire("dockerRegistryURL", "")
    docker_connection: str = wire("dockerConnection", "")
    docker_cert: str = wire("dockerCert", "")
    docker_repository: str = wire("dockerRepository", "")
    checkout_path: str = wire("checkoutPath", "")
    docker_username: str = wire("dockerUsername", "")
    docker_password: str = wire("dockerPassword", "")
    aws_region: str = wire("awsRegion", "")
    access_key: str = wire("accessKey", "")
    secret_key: str = wire("secretKey", "")
    ci_cache_location: str = wire("ciCacheLocation", "")
    ci_cache_region: str = wire("ciCacheRegion", "")
    ci_cache_file_name: str = wire("ciCacheFileName", "")
    ci_project_details: Optional[List[Any]] = wire("ciProjectDetails")
    container_resources: ContainerResources = field(
        default_factory=ContainerResources,
        metadata={"json": "containerResources", "model": ContainerResources},
    )
    active_deadline_seconds: int = wire("activeDeadlineSeconds", 0)
    ci_image: str = wire("ciImage", "")
    namespace: str = wire("namespace", "")
    workflow_id: int = wire("workflowId", 0)
    triggered_by: int = wire("triggeredBy", 0)
    cache_limit: int = wire("cacheLimit", 0)
    before_docker_build_scripts: Optional[List[Any]] = wire("beforeDockerBuildScripts")
    after_docker_build_scripts: Optional[List[Any]] = wire("afterDockerBuildScripts")
    ci_artifact_location: str = wire("ciArtifactLocation", "")
    ci_artifact_bucket: str = wire("ciArtifactBucket", "")
    ci_artifact_file_name: str = wire("ciArtifactFileName", "")
    ci_artifact_region: str = wire("ciArtifactRegion", "")
    scan_enabled: bool = wire("scanEnabled", False)
    cloud_provider: str = wire("cloudProvider", "")
    blob_storage_configured: bool = wire("blobStorageConfigured", False)
    blob_storage_s3_config: Optional[BlobStorageS3Config] = wire("blobStorageS3Config", model=BlobStorageS3Config)
    azure_blob_config: Optional[AzureBlobConfig] = wire("azureBlobConfig", model=AzureBlobConfig)
    gcp_blob_config: Optional[GcpBlobConfig] = wire("gcpBlobConfig", model=GcpBlobConfig)
    blob_storage_logs_key: str = wire("blobStorageLogsKey", "")
    in_app_logging_enabled: bool = wire("inAppLoggingEnabled", False)
    default_address_pool_base_cidr: str = wire("defaultAddressPoolBaseCidr", "")
    default_address_pool_size: int = wire("defaultAddressPoolSize", 0)
    pre_ci_steps: Optional[List[Any]] = wire("preCiSteps")
    post_ci_steps: Optional[List[Any]] = wire("postCiSteps")
    ref_plugins: Optional[List[Any]] = wire("refPlugins")
    app_name: str = wire("appName", "")
    trigger_by_author: str = wire("triggerByAuthor", "")
    ci_build_config: Optional[Dict[str, Any]] = wire("ciBuildConfig")
    ci_build_docker_mtu_value: int = wire("ciBuildDockerMtuValue", 0)
    ignore_docker_cache_push: bool = wire("ignoreDockerCachePush", False)
    ignore_docker_cache_pull: bool = wire("ignoreDockerCachePull", False)
    cache_invalidate: bool = wire("cacheInvalidate", False)
    is_pvc_mounted: bool = wire("IsPvcMounted", False)
    extra_environment_variables: Optional[Dict[str, str]] = wire("extraEnvironmentVariables")
    enable_build_context: bool = wire("enableBuildContext", False)
    app_id: int = wire("appId", 0)
    environment_id: int = wire("environmentId", 0)
    orchestrator_host: str = wire("orchestratorHost", "")
    orchestrator_token: str = wire("orchestratorToken", "")
    is_ext_run: bool = wire("isExtRun", False)
    image_retry_count: int = wire("imageRetryCount", 0)
    image_retry_interval: int = wire("imageRetryInterval", 0)
    # CD only
    workflow_runner_id: int = wire("workflowRunnerId", 0)
    cd_pipeline_id: int = wire("cdPipelineId", 0)
    stage_yaml: str = wire("stageYaml", "")
    artifact_location: str = wire("artifactLocation", "")
    ci_artifact_dto: CiArtifactDTO = field(
        default_factory=CiArtifactDTO,
        metadata={"json": "ciArtifactDTO", "model": CiArtifactDTO},
    )
    cd_image: str = wire("cdImage", "")
    stage_type: str = wire("stageType", "")
    cd_cache_location: str = wire("cdCacheLocation", "")
    cd_cache_region: str = wire("cdCacheRegion", "")
    workflow_prefix_for_log: str = wire("workflowPrefixForLog", "")
    deployment_triggered_by: str = wire("deploymentTriggeredBy", "", omitempty=True)
    deployment_trigger_time: Optional[datetime] = wire("deploymentTriggerTime", time=True)
    deployment_release_counter: int = wire("deploymentReleaseCounter", 0, omitempty=True)
    workflow_executor: str = wire("workflowExecutor", "")
    pre_post_deploy_steps: Optional[List[Any]] = wire("prePostDeploySteps")

    def validate_blob_storage(self) -> None:
        """Check that exactly one storage variant backs a configured blob store.

        Raises:
            BlobStorageConfigError: If no variant, several variants, or a variant
                not matching ``cloud_provider`` is populated
        """
        from cicd_workflow.exceptions import BlobStorageConfigError

        if not self.blob_storage_configured:
            return

        populated = [
            provider
            for provider, variant in (
                (BlobStorageType.S3, self.blob_storage_s3_config),
                (BlobStorageType.AZURE, self.azure_blob_config),
                (BlobStorageType.GCP, self.gcp_blob_config),
            )
            if variant is not None
        ]
        if len(populated) != 1:
            raise BlobStorageConfigError(
                f"Blob storage is configured but {len(populated)} storage variants are populated"
            )

        # MinIO speaks the S3 protocol and shares its config variant
        expected = {
            BlobStorageType.S3.value: BlobStorageType.S3,
            BlobStorageType.MINIO.value: BlobStorageType.S3,
            BlobStorageType.AZURE.value: BlobStorageType.AZURE,
            BlobStorageType.GCP.value: BlobStorageType.GCP,
        }.get(enum_value(self.cloud_provider))
        if expected is not None and expected != populated[0]:
            raise BlobStorageConfigError(
                f"Cloud provider '{self.cloud_provider}' does not match the populated {populated[0].value} config"
            )


@dataclass
class CiCdTriggerEvent(WireModel):
    """Payload handed to the workflow container through ``CI_CD_EVENT``."""
    type: str = wire("type", "")
    ci_request: Optional[Dict[str, Any]] = wire("ciRequest")
    cd_request: Optional[Dict[str, Any]] = wire("cdRequest")
    common_workflow_request: Optional[CommonWorkflowRequest] = wire(
        "commonWorkflowRequest", model=CommonWorkflowRequest
    )


@dataclass
class ConfigSecretMap(WireModel):
    """A configmap or secret mounted into, or exported to, the workflow container.

    Secret ``data`` values are base64 encoded, as in a Kubernetes Secret.
    """
    name: str = wire("name", "")
    type: str = wire("type", "")
    external: bool = wire("external", False)
    mount_path: str = wire("mountPath", "")
    data: Optional[Dict[str, str]] = wire("data")
    external_type: str = wire("externalType", "")
    sub_path: bool = wire("subPath", False)
    file_permission: str = wire("filePermission", "")


@dataclass
class GlobalCmCsConfig(WireModel):
    """A platform-wide configmap/secret injected into every CI or CD workflow."""
    name: str = wire("name", "")
    config_type: str = wire("configType", "")
    type: str = wire("type", "")
    data: Optional[Dict[str, str]] = wire("data")
    mount_path: str = wire("mountPath", "")


@dataclass
class ConfigMapSecretNames(WireModel):
    """Stage-scoped allow-list of configmap and secret names."""
    config_maps: Optional[List[str]] = wire("configMaps")
    secrets: Optional[List[str]] = wire("secrets")


@dataclass
class Cluster(WireModel):
    id: int = wire("id", 0)
    cluster_name: str = wire("clusterName", "")
    server_url: str = wire("serverUrl", "")
    config: Optional[Dict[str, str]] = wire("config")


@dataclass
class Environment(WireModel):
    id: int = wire("id", 0)
    name: str = wire("name", "")
    namespace: str = wire("namespace", "")
    cluster_id: int = wire("clusterId", 0)
    cluster: Optional[Cluster] = wire("cluster", model=Cluster)


@dataclass
class Pipeline(WireModel):
    id: int = wire("id", 0)
    name: str = wire("name", "")
    app_id: int = wire("appId", 0)
    environment_id: int = wire("environmentId", 0)
    run_pre_stage_in_env: bool = wire("runPreStageInEnv", False)
    run_post_stage_in_env: bool = wire("runPostStageInEnv", False)
    pre_stage_config_map_secret_names: str = wire("preStageConfigMapSecretNames", "")
    post_stage_config_map_secret_names: str = wire("postStageConfigMapSecretNames", "")


@dataclass(frozen=True)
class ClusterConfig:
    """Connection details of a cluster a workflow can be executed on."""
    cluster_name: str
    host: str
    bearer_token: str
    insecure_skip_tls_verify: bool = False


@dataclass(frozen=True)
class ResourceSettings:
    """Cpu/memory limit and request strings for the main container."""
    limit_cpu: str
    limit_mem: str
    req_cpu: str
    req_mem: str

    def to_requirements(self) -> client.V1ResourceRequirements:
        return client.V1ResourceRequirements(
            limits={"cpu": self.limit_cpu, "memory": self.limit_mem},
            requests={"cpu": self.req_cpu, "memory": self.req_mem},
        )


@dataclass(frozen=True)
class WorkflowTemplate:
    """Everything an executor needs to run one CI/CD workflow.

    Built once per submission and never mutated afterwards.
    """
    workflow_id: int
    namespace: str
    workflow_type: str
    workflow_name_prefix: str
    containers: Tuple[client.V1Container, ...]
    service_account_name: str
    node_selector: Dict[str, str]
    tolerations: Tuple[client.V1Toleration, ...]
    volumes: Tuple[client.V1Volume, ...]
    config_maps: Tuple[ConfigSecretMap, ...]
    secrets: Tuple[ConfigSecretMap, ...]
    ttl_value: int
    active_deadline_seconds: int
    archive_logs: bool
    restart_policy: str
    workflow_request_json: str
    cluster_config: Optional[client.Configuration]
    is_ext_run: bool = False
    workflow_runner_id: int = 0
    wf_controller_instance_id: str = ""
    pre_post_deploy_steps: Optional[Tuple[Any, ...]] = None
    ref_plugins: Optional[Tuple[Any, ...]] = None
    blob_storage_configured: bool = False
    blob_storage_s3_config: Optional[BlobStorageS3Config] = None
    azure_blob_config: Optional[AzureBlobConfig] = None
    gcp_blob_config: Optional[GcpBlobConfig] = None
    cloud_storage_key: str = ""
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def is_ci(self) -> bool:
        return self.workflow_type == PipelineType.CI


@dataclass
class WorkflowNode:
    """Represents a single node (step) in a workflow execution."""
    name: str
    display_name: str
    type: str  # Pod, Container, Steps, DAG
    phase: str  # Pending, Running, Succeeded, Failed, Error
    message: str
    started_at: Optional[datetime]
    finished_at: Optional[datetime] = None


@dataclass
class WorkflowStatus:
    """Status information for a workflow execution."""
    name: str
    namespace: str
    phase: str  # Running, Succeeded, Failed, Error
    started_at: Optional[datetime]
    finished_at: Optional[datetime]
    progress: str  # e.g., "2/5"
    message: str
    nodes: List[WorkflowNode] = field(default_factory=list)
