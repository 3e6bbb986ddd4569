"""Workflow executors and the registry dispatching templates to them."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml
from kubernetes import client
from kubernetes.client.rest import ApiException

from cicd_workflow.exceptions import (
    KubernetesAPIError,
    WorkflowNotFoundError,
    WorkflowSubmissionError,
    handle_kubernetes_api_exception,
)
from cicd_workflow.logging import get_logger
from cicd_workflow.models import ConfigSecretMap, WorkflowExecutorType, WorkflowTemplate, enum_value

logger = get_logger(__name__)

# Argo Workflows API constants
ARGO_GROUP = "argoproj.io"
ARGO_VERSION = "v1alpha1"
WORKFLOW_PLURAL = "workflows"
CONTROLLER_INSTANCE_ID_LABEL = "workflows.argoproj.io/controller-instanceid"

# Secret holding the archive credentials of S3-compatible storage
ARCHIVE_CREDENTIALS_SECRET = "workflow-minio-cred"


def serialize(obj: Any) -> Any:
    """Plain dict/list form of Kubernetes model objects, camelCase keys, ``None`` dropped."""
    return client.ApiClient().sanitize_for_serialization(obj)


def _config_map_manifest(entry: ConfigSecretMap, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": entry.name, "namespace": namespace},
        "data": dict(entry.data or {}),
    }


def _secret_manifest(entry: ConfigSecretMap, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {"name": entry.name, "namespace": namespace},
        "data": dict(entry.data or {}),
    }


def _archive_location(template: WorkflowTemplate) -> Optional[Dict[str, Any]]:
    if not template.blob_storage_configured:
        return None

    location: Dict[str, Any] = {"archiveLogs": template.archive_logs}
    if template.blob_storage_s3_config is not None:
        s3 = template.blob_storage_s3_config
        endpoint = urlparse(s3.endpoint_url).netloc if "://" in s3.endpoint_url else s3.endpoint_url
        location["s3"] = {
            "bucket": s3.ci_log_bucket_name,
            "key": template.cloud_storage_key,
            "endpoint": endpoint or "s3.amazonaws.com",
            "region": s3.ci_log_region,
            "insecure": s3.is_in_secure,
        }
        if s3.access_key:
            location["s3"]["accessKeySecret"] = {"name": ARCHIVE_CREDENTIALS_SECRET, "key": "accesskey"}
            location["s3"]["secretKeySecret"] = {"name": ARCHIVE_CREDENTIALS_SECRET, "key": "secretkey"}
        else:
            location["s3"]["useSDKCreds"] = True
    elif template.gcp_blob_config is not None:
        location["gcs"] = {
            "bucket": template.gcp_blob_config.log_bucket_name,
            "key": template.cloud_storage_key,
        }
    elif template.azure_blob_config is not None:
        azure = template.azure_blob_config
        location["azure"] = {
            "endpoint": f"https://{azure.account_name}.blob.core.windows.net",
            "container": azure.blob_container_ci_log,
            "blob": template.cloud_storage_key,
            "useSDKCreds": True,
        }
    return location


def render_argo_workflow(template: WorkflowTemplate) -> Dict[str, Any]:
    """Render an Argo ``Workflow`` object for a template.

    The entrypoint creates the workflow's configmaps and secrets (owned by the
    Workflow so they are garbage collected with it), then runs the main
    container.

    Args:
        template: Assembled workflow template

    Returns:
        Workflow body accepted by the Kubernetes custom objects API
    """
    entrypoint = template.workflow_type.lower()
    stage_name = f"{entrypoint}-stage"

    templates: List[Dict[str, Any]] = []
    create_steps: List[Dict[str, str]] = []
    for index, config_map in enumerate(template.config_maps):
        if config_map.external:
            continue
        name = f"cm-{index}"
        templates.append({
            "name": name,
            "resource": {
                "action": "create",
                "setOwnerReference": True,
                "manifest": yaml.safe_dump(_config_map_manifest(config_map, template.namespace)),
            },
        })
        create_steps.append({"name": f"create-env-cm-{index}", "template": name})
    for index, secret in enumerate(template.secrets):
        if secret.external:
            continue
        name = f"sec-{index}"
        templates.append({
            "name": name,
            "resource": {
                "action": "create",
                "setOwnerReference": True,
                "manifest": yaml.safe_dump(_secret_manifest(secret, template.namespace)),
            },
        })
        create_steps.append({"name": f"create-env-sec-{index}", "template": name})

    steps = [create_steps] if create_steps else []
    steps.append([{"name": "run-wf", "template": stage_name}])
    templates.insert(0, {"name": entrypoint, "steps": steps})

    stage: Dict[str, Any] = {
        "name": stage_name,
        "container": serialize(template.containers[0]),
        "metadata": {"labels": dict(template.labels)},
    }
    if template.active_deadline_seconds:
        stage["activeDeadlineSeconds"] = template.active_deadline_seconds
    archive_location = _archive_location(template)
    if archive_location is not None:
        stage["archiveLocation"] = archive_location
    templates.append(stage)

    labels = dict(template.labels)
    if template.wf_controller_instance_id:
        labels[CONTROLLER_INSTANCE_ID_LABEL] = template.wf_controller_instance_id

    spec: Dict[str, Any] = {
        "entrypoint": entrypoint,
        "serviceAccountName": template.service_account_name,
        "archiveLogs": template.archive_logs,
        "ttlStrategy": {"secondsAfterCompletion": template.ttl_value},
        "templates": templates,
    }
    if template.node_selector:
        spec["nodeSelector"] = dict(template.node_selector)
    if template.tolerations:
        spec["tolerations"] = serialize(list(template.tolerations))
    if template.volumes:
        spec["volumes"] = serialize(list(template.volumes))
    if template.active_deadline_seconds:
        spec["activeDeadlineSeconds"] = template.active_deadline_seconds

    return {
        "apiVersion": f"{ARGO_GROUP}/{ARGO_VERSION}",
        "kind": "Workflow",
        "metadata": {
            "generateName": f"{template.workflow_name_prefix}-",
            "namespace": template.namespace,
            "labels": labels,
        },
        "spec": spec,
    }


def render_job(template: WorkflowTemplate) -> client.V1Job:
    """Render a ``batch/v1`` Job running the template's containers."""
    pod_spec = client.V1PodSpec(
        containers=list(template.containers),
        service_account_name=template.service_account_name,
        node_selector=dict(template.node_selector) or None,
        tolerations=list(template.tolerations) or None,
        volumes=list(template.volumes) or None,
        restart_policy=template.restart_policy,
    )
    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            generate_name=f"{template.workflow_name_prefix}-",
            namespace=template.namespace,
            labels=dict(template.labels),
        ),
        spec=client.V1JobSpec(
            backoff_limit=0,
            ttl_seconds_after_finished=template.ttl_value,
            active_deadline_seconds=template.active_deadline_seconds or None,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=dict(template.labels)),
                spec=pod_spec,
            ),
        ),
    )


class WorkflowExecutor(ABC):
    """Backend turning a workflow template into running Kubernetes resources."""

    @abstractmethod
    def execute_workflow(self, template: WorkflowTemplate) -> Dict[str, Any]:
        """Submit the template.

        Returns:
            Description of the created object (at least ``name``, ``namespace`` and ``kind``)

        Raises:
            WorkflowSubmissionError: If submission fails
        """

    @abstractmethod
    def terminate_workflow(self, name: str, namespace: str, cluster_config: Optional[client.Configuration]) -> None:
        """Stop a running workflow.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist
            KubernetesAPIError: If termination fails
        """


class ArgoWorkflowExecutor(WorkflowExecutor):
    """Executes templates as Argo Workflows."""

    def _custom_api(self, cluster_config: Optional[client.Configuration]) -> client.CustomObjectsApi:
        return client.CustomObjectsApi(client.ApiClient(cluster_config))

    def execute_workflow(self, template: WorkflowTemplate) -> Dict[str, Any]:
        body = render_argo_workflow(template)
        try:
            response = self._custom_api(template.cluster_config).create_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=template.namespace,
                plural=WORKFLOW_PLURAL,
                body=body,
            )
        except ApiException as e:
            error = handle_kubernetes_api_exception(e, "submit workflow", "Workflow")
            raise WorkflowSubmissionError(
                f"Failed to submit workflow: {error.message}", template.workflow_name_prefix
            ) from e
        except Exception as e:
            raise WorkflowSubmissionError(
                f"Unexpected error submitting workflow: {str(e)}", template.workflow_name_prefix
            ) from e

        name = response["metadata"]["name"]
        logger.info("workflow_submitted", executor="argo", name=name, namespace=template.namespace)
        return {"name": name, "namespace": template.namespace, "kind": "Workflow"}

    def terminate_workflow(self, name: str, namespace: str, cluster_config: Optional[client.Configuration]) -> None:
        try:
            self._custom_api(cluster_config).patch_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=namespace,
                plural=WORKFLOW_PLURAL,
                name=name,
                body={"spec": {"shutdown": "Terminate"}},
            )
        except ApiException as e:
            if e.status == 404:
                raise WorkflowNotFoundError(name, namespace)
            error = handle_kubernetes_api_exception(e, "terminate workflow", "Workflow")
            raise KubernetesAPIError(f"Failed to terminate workflow: {error.message}", "Workflow", "patch") from e
        logger.info("workflow_terminated", executor="argo", name=name, namespace=namespace)


class SystemWorkflowExecutor(WorkflowExecutor):
    """Executes templates as plain Kubernetes Jobs, without a workflow controller."""

    def _api_client(self, cluster_config: Optional[client.Configuration]) -> client.ApiClient:
        return client.ApiClient(cluster_config)

    def execute_workflow(self, template: WorkflowTemplate) -> Dict[str, Any]:
        api_client = self._api_client(template.cluster_config)
        batch_api = client.BatchV1Api(api_client)
        core_api = client.CoreV1Api(api_client)

        try:
            job = batch_api.create_namespaced_job(namespace=template.namespace, body=render_job(template))
        except ApiException as e:
            error = handle_kubernetes_api_exception(e, "submit job", "Job")
            raise WorkflowSubmissionError(
                f"Failed to submit job: {error.message}", template.workflow_name_prefix
            ) from e
        except Exception as e:
            raise WorkflowSubmissionError(
                f"Unexpected error submitting job: {str(e)}", template.workflow_name_prefix
            ) from e

        name = job.metadata.name
        # configs are owned by the job and garbage collected with it
        owner = client.V1OwnerReference(
            api_version="batch/v1",
            kind="Job",
            name=name,
            uid=job.metadata.uid,
            block_owner_deletion=True,
        )
        try:
            for config_map in template.config_maps:
                if config_map.external:
                    continue
                core_api.create_namespaced_config_map(
                    namespace=template.namespace,
                    body=client.V1ConfigMap(
                        metadata=client.V1ObjectMeta(name=config_map.name, labels=dict(template.labels), owner_references=[owner]),
                        data=dict(config_map.data or {}),
                    ),
                )
            for secret in template.secrets:
                if secret.external:
                    continue
                core_api.create_namespaced_secret(
                    namespace=template.namespace,
                    body=client.V1Secret(
                        metadata=client.V1ObjectMeta(name=secret.name, labels=dict(template.labels), owner_references=[owner]),
                        data=dict(secret.data or {}),
                        type="Opaque",
                    ),
                )
        except ApiException as e:
            error = handle_kubernetes_api_exception(e, "create workflow configs", "ConfigMap")
            # deleting the job also collects the configs it already owns
            try:
                batch_api.delete_namespaced_job(
                    name=name,
                    namespace=template.namespace,
                    body=client.V1DeleteOptions(propagation_policy="Background"),
                )
            except ApiException as delete_error:
                logger.error("stranded_job_delete_failed", name=name, namespace=template.namespace, error=str(delete_error))
            raise WorkflowSubmissionError(f"Failed to create workflow configs: {error.message}", name) from e

        logger.info("workflow_submitted", executor="system", name=name, namespace=template.namespace)
        return {"name": name, "namespace": template.namespace, "kind": "Job"}

    def terminate_workflow(self, name: str, namespace: str, cluster_config: Optional[client.Configuration]) -> None:
        try:
            client.BatchV1Api(self._api_client(cluster_config)).delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Background"),
            )
        except ApiException as e:
            if e.status == 404:
                raise WorkflowNotFoundError(name, namespace)
            error = handle_kubernetes_api_exception(e, "terminate job", "Job")
            raise KubernetesAPIError(f"Failed to terminate job: {error.message}", "Job", "delete") from e
        logger.info("workflow_terminated", executor="system", name=name, namespace=namespace)


class WorkflowExecutorRegistry:
    """Maps executor types to executor instances."""

    def __init__(self, executors: Optional[Dict[WorkflowExecutorType, WorkflowExecutor]] = None):
        self._executors: Dict[str, WorkflowExecutor] = {}
        for executor_type, executor in (executors or {}).items():
            self.register(executor_type, executor)

    def register(self, executor_type: WorkflowExecutorType, executor: WorkflowExecutor) -> None:
        self._executors[enum_value(executor_type)] = executor

    def get_executor(self, executor_type: Any) -> Optional[WorkflowExecutor]:
        """Executor registered for ``executor_type``, or None when there is none."""
        executor = self._executors.get(enum_value(executor_type))
        if executor is None:
            logger.warning("workflow_executor_not_found", type=str(enum_value(executor_type)))
        return executor

    @property
    def registered_types(self) -> List[str]:
        return list(self._executors)


def default_registry() -> WorkflowExecutorRegistry:
    """Registry with the Argo and system executors."""
    return WorkflowExecutorRegistry({
        WorkflowExecutorType.ARGO_WORKFLOW: ArgoWorkflowExecutor(),
        WorkflowExecutorType.SYSTEM: SystemWorkflowExecutor(),
    })
