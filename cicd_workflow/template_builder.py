"""Assembly of immutable workflow templates from a workflow request.

Nothing here performs I/O: configmaps/secrets and the cluster connection are
resolved by the caller and passed in.
"""

import json
from dataclasses import replace
from decimal import InvalidOperation
from typing import Dict, List, Optional, Tuple

from kubernetes import client
from kubernetes.utils import parse_quantity

from cicd_workflow.cm_cs import ResolvedConfig, container_env_from_cm_cs, extract_volumes
from cicd_workflow.config import CiCdConfig
from cicd_workflow.exceptions import EventSerializationError, ResourceQuantityError
from cicd_workflow.models import (
    BlobStorageType,
    CiCdTriggerEvent,
    CommonWorkflowRequest,
    Environment,
    Pipeline,
    PipelineType,
    ResourceSettings,
    StageType,
    WorkflowExecutorType,
    WorkflowTemplate,
    enum_value,
)

CI_NODE_PVC_ALL_ENV = "devtron.ai/ci-pvc-all"
CI_NODE_PVC_PIPELINE_PREFIX = "devtron.ai/ci-pvc"
WORKFLOW_PURPOSE_LABEL = "devtron.ai/workflow-purpose"

MAIN_CONTAINER_NAME = "main"
CI_CD_EVENT_ENV = "CI_CD_EVENT"
IN_APP_LOGGING_ENV = "IN_APP_LOGGING"
IMAGE_SCANNER_ENDPOINT_ENV = "IMAGE_SCANNER_ENDPOINT"
RESTART_POLICY_NEVER = "Never"

# HTML-safe escaping expected by the in-container agents
_JSON_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)


def is_external_run(
    request: CommonWorkflowRequest,
    pipeline: Optional[Pipeline],
    env: Optional[Environment],
    is_ci: bool,
) -> bool:
    """Whether the workflow runs on the environment's cluster instead of the control cluster."""
    if request.is_ext_run:
        return True
    if pipeline is not None:
        if request.stage_type == StageType.PRE and pipeline.run_pre_stage_in_env:
            return True
        if request.stage_type == StageType.POST and pipeline.run_post_stage_in_env:
            return True
    return is_ci and env is not None and env.id != 0


def pvc_label(app_labels: Optional[Dict[str, str]], pipeline_name: str) -> str:
    """PVC claimed for the pipeline, falling back to the all-environments label."""
    labels = app_labels or {}
    pvc = labels.get(f"{CI_NODE_PVC_PIPELINE_PREFIX}-{pipeline_name}".lower(), "")
    if not pvc:
        pvc = labels.get(CI_NODE_PVC_ALL_ENV, "")
    return pvc


def prepare_request(
    request: CommonWorkflowRequest,
    pipeline: Optional[Pipeline],
    env: Optional[Environment],
    app_labels: Optional[Dict[str, str]],
    is_ci: bool,
    config: CiCdConfig,
) -> CommonWorkflowRequest:
    """Return a copy of the request with every derived field decided.

    Decides the external-run flag, PVC mounting (which disables build cache
    push and pull), the blob storage logs key and in-app logging. The input
    request is left untouched.
    """
    changes = {"is_ext_run": is_external_run(request, pipeline, env, is_ci)}

    if pvc_label(app_labels, request.pipeline_name):
        changes.update(is_pvc_mounted=True, ignore_docker_cache_push=True, ignore_docker_cache_pull=True)

    prefix = config.ci_default_build_logs_key_prefix if is_ci else config.cd_default_build_logs_key_prefix
    changes["blob_storage_logs_key"] = f"{prefix}/{request.workflow_prefix_for_log}"
    changes["in_app_logging_enabled"] = (
        config.in_app_logging_enabled or request.workflow_executor == WorkflowExecutorType.SYSTEM
    )
    return replace(request, **changes)


def build_trigger_event(request: CommonWorkflowRequest, is_ci: bool) -> CiCdTriggerEvent:
    return CiCdTriggerEvent(
        type=PipelineType.CI.value if is_ci else PipelineType.CD.value,
        common_workflow_request=request,
    )


def serialize_trigger_event(event: CiCdTriggerEvent) -> str:
    """Compact JSON of the trigger event.

    Raises:
        EventSerializationError: If the event holds values JSON cannot represent
    """
    try:
        payload = json.dumps(event.to_dict(), separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise EventSerializationError(f"Failed to marshal trigger event: {str(e)}") from e
    for raw, escaped in _JSON_ESCAPES:
        payload = payload.replace(raw, escaped)
    return payload


def resolve_resources(config: CiCdConfig, is_ci: bool) -> ResourceSettings:
    """Select the CI or CD limits and requests, validating every quantity.

    Raises:
        ResourceQuantityError: If a quantity is not valid Kubernetes notation
    """
    prefix = "ci" if is_ci else "cd"
    settings = {}
    for name in ("limit_cpu", "limit_mem", "req_cpu", "req_mem"):
        setting = f"{prefix}_{name}"
        quantity = getattr(config, setting)
        try:
            parse_quantity(quantity)
        except (TypeError, ValueError, InvalidOperation) as e:
            raise ResourceQuantityError(str(quantity), setting) from e
        settings[name] = quantity
    return ResourceSettings(**settings)


def container_env(config: CiCdConfig, request: CommonWorkflowRequest, event_json: str, is_ci: bool) -> List[client.V1EnvVar]:
    env = []
    if is_ci:
        env.append(client.V1EnvVar(name=IMAGE_SCANNER_ENDPOINT_ENV, value=config.image_scanner_endpoint))
    if enum_value(config.cloud_provider) == BlobStorageType.S3.value and config.blob_storage_s3_access_key:
        env.append(client.V1EnvVar(name="AWS_ACCESS_KEY_ID", value=config.blob_storage_s3_access_key))
        env.append(client.V1EnvVar(name="AWS_SECRET_ACCESS_KEY", value=config.blob_storage_s3_secret_key))
    env.append(client.V1EnvVar(name=CI_CD_EVENT_ENV, value=event_json))
    env.append(client.V1EnvVar(name=IN_APP_LOGGING_ENV, value=str(request.in_app_logging_enabled).lower()))
    return env


def _placement(
    config: CiCdConfig, request: CommonWorkflowRequest, is_job: bool, is_ci: bool
) -> Tuple[str, Dict[str, str], List[client.V1Toleration]]:
    if is_ci:
        service_account = config.ci_workflow_service_account
        taint_key, taint_value = config.ci_taint_key, config.ci_taint_value
        node_selector = {}
        # jobs on external clusters cannot rely on the platform's node labels
        if config.node_label and not (is_job and request.is_ext_run):
            node_selector = dict(config.node_label)
    else:
        service_account = config.cd_workflow_service_account
        taint_key, taint_value = config.cd_taint_key, config.cd_taint_value
        node_selector = {taint_key: taint_value} if (taint_key or taint_value) else {}
        if config.node_label:
            node_selector = dict(config.node_label)

    tolerations = []
    if taint_key or taint_value:
        tolerations.append(client.V1Toleration(
            key=taint_key, value=taint_value, operator="Equal", effect="NoSchedule",
        ))
    return service_account, node_selector, tolerations


def build_template(
    request: CommonWorkflowRequest,
    resolved: ResolvedConfig,
    cluster_config: Optional[client.Configuration],
    is_job: bool,
    is_ci: bool,
    config: CiCdConfig,
) -> WorkflowTemplate:
    """Assemble the workflow template of a prepared request.

    Args:
        request: Request returned by ``prepare_request``
        resolved: Configmaps and secrets the workflow carries
        cluster_config: Connection of the cluster the workflow runs on
        is_job: Whether the app is a job
        is_ci: CI (True) or CD (False) workflow
        config: Platform settings

    Returns:
        The immutable WorkflowTemplate

    Raises:
        BlobStorageConfigError: If the blob storage variants are inconsistent
        EventSerializationError: If the trigger event cannot be marshalled
        ResourceQuantityError: If a configured quantity is malformed
        ConfigMapSecretParseError: If a volume entry is unusable
    """
    request.validate_blob_storage()
    event_json = serialize_trigger_event(build_trigger_event(request, is_ci))
    resources = resolve_resources(config, is_ci)
    env_from, volume_mounts = container_env_from_cm_cs(resolved.config_maps, resolved.secrets)

    main_container = client.V1Container(
        name=MAIN_CONTAINER_NAME,
        image=(request.ci_image or request.cd_image) if is_ci else (request.cd_image or request.ci_image),
        env=container_env(config, request, event_json, is_ci),
        env_from=env_from or None,
        volume_mounts=volume_mounts or None,
        security_context=client.V1SecurityContext(privileged=True),
        resources=resources.to_requirements(),
    )

    service_account, node_selector, tolerations = _placement(config, request, is_job, is_ci)
    storage_configured = request.blob_storage_configured
    workflow_type = PipelineType.CI.value if is_ci else PipelineType.CD.value

    return WorkflowTemplate(
        workflow_id=request.workflow_id,
        namespace=request.namespace,
        workflow_type=workflow_type,
        workflow_name_prefix=request.workflow_name_prefix,
        containers=(main_container,),
        service_account_name=service_account,
        node_selector=node_selector,
        tolerations=tuple(tolerations),
        volumes=tuple(extract_volumes(resolved.config_maps, resolved.secrets)),
        config_maps=resolved.config_maps,
        secrets=resolved.secrets,
        ttl_value=config.build_log_ttl_value,
        active_deadline_seconds=request.active_deadline_seconds,
        # log archival and in-app logging are mutually exclusive delivery paths
        archive_logs=storage_configured and not request.in_app_logging_enabled,
        restart_policy=RESTART_POLICY_NEVER,
        workflow_request_json=event_json,
        cluster_config=cluster_config,
        is_ext_run=request.is_ext_run,
        workflow_runner_id=0 if is_ci else request.workflow_runner_id,
        wf_controller_instance_id="" if is_ci else config.wf_controller_instance_id,
        pre_post_deploy_steps=None if is_ci or request.pre_post_deploy_steps is None else tuple(request.pre_post_deploy_steps),
        ref_plugins=None if request.ref_plugins is None else tuple(request.ref_plugins),
        blob_storage_configured=storage_configured and (config.use_blob_storage_config_in_cd_workflow or not request.is_ext_run),
        blob_storage_s3_config=request.blob_storage_s3_config,
        azure_blob_config=request.azure_blob_config,
        gcp_blob_config=request.gcp_blob_config,
        cloud_storage_key=request.blob_storage_logs_key,
        labels={WORKFLOW_PURPOSE_LABEL: workflow_type.lower()},
    )
