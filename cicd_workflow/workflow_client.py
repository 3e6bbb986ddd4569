"""Kubernetes client wrapper for reading and managing submitted Argo Workflows."""

from typing import Any, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from cicd_workflow.exceptions import (
    KubernetesAPIError,
    WorkflowNotFoundError,
    handle_kubernetes_api_exception,
)
from cicd_workflow.executors import ARGO_GROUP, ARGO_VERSION, WORKFLOW_PLURAL
from cicd_workflow.logging import get_logger
from cicd_workflow.models import WorkflowNode, WorkflowStatus, _parse_time

logger = get_logger(__name__)


def _timestamp(value: Any):
    try:
        return _parse_time(value)
    except (TypeError, ValueError):
        logger.warning("workflow_timestamp_unparsable", value=str(value))
        return None


def parse_workflow_status(workflow: Dict[str, Any], namespace: str) -> WorkflowStatus:
    """Build a WorkflowStatus from a raw Workflow object."""
    status = workflow.get("status") or {}
    metadata = workflow.get("metadata") or {}

    nodes = []
    for node_id, node_data in (status.get("nodes") or {}).items():
        nodes.append(WorkflowNode(
            name=node_data.get("name", node_id),
            display_name=node_data.get("displayName", node_data.get("name", node_id)),
            type=node_data.get("type", "Unknown"),
            phase=node_data.get("phase", "Unknown"),
            message=node_data.get("message", ""),
            started_at=_timestamp(node_data.get("startedAt")),
            finished_at=_timestamp(node_data.get("finishedAt")),
        ))

    return WorkflowStatus(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", namespace),
        phase=status.get("phase", "Unknown"),
        started_at=_timestamp(status.get("startedAt")),
        finished_at=_timestamp(status.get("finishedAt")),
        progress=status.get("progress", "0/0"),
        message=status.get("message", ""),
        nodes=nodes,
    )


class WorkflowClient:
    """Handles interaction with the Argo Workflows API of one cluster."""

    def __init__(self, namespace: str = "argo", cluster_config: Optional[client.Configuration] = None):
        """Initialize the workflow client.

        Args:
            namespace: Kubernetes namespace for workflows
            cluster_config: Client configuration of the target cluster
                (defaults to the globally loaded configuration)
        """
        self.namespace = namespace
        self.custom_api = client.CustomObjectsApi(client.ApiClient(cluster_config))

    def get_workflow(self, workflow_name: str) -> Dict[str, Any]:
        """Get the raw Workflow object.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            KubernetesAPIError: If workflow retrieval fails
        """
        try:
            return self.custom_api.get_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=self.namespace,
                plural=WORKFLOW_PLURAL,
                name=workflow_name,
            )
        except ApiException as e:
            if e.status == 404:
                raise WorkflowNotFoundError(workflow_name, self.namespace)
            error = handle_kubernetes_api_exception(e, "get workflow", "Workflow")
            raise KubernetesAPIError(f"Failed to get workflow: {error.message}", "Workflow", "get") from e

    def get_workflow_status(self, workflow_name: str) -> WorkflowStatus:
        """Get the status of a workflow.

        Args:
            workflow_name: Name of the workflow

        Returns:
            WorkflowStatus object with current status

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            KubernetesAPIError: If workflow retrieval fails
        """
        return parse_workflow_status(self.get_workflow(workflow_name), self.namespace)

    def list_workflows(self, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> List[Dict]:
        """List workflows in a namespace.

        Args:
            namespace: Namespace to list workflows from (defaults to client namespace)
            labels: Optional label selectors for filtering

        Returns:
            List of workflow objects

        Raises:
            KubernetesAPIError: If workflow listing fails
        """
        target_namespace = namespace or self.namespace

        label_selector = None
        if labels:
            label_selector = ",".join([f"{k}={v}" for k, v in labels.items()])

        try:
            response = self.custom_api.list_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=target_namespace,
                plural=WORKFLOW_PLURAL,
                label_selector=label_selector,
            )
        except ApiException as e:
            error = handle_kubernetes_api_exception(e, "list workflows", "Workflow")
            raise KubernetesAPIError(f"Failed to list workflows: {error.message}", "Workflow", "list") from e
        return response.get("items", [])

    def update_workflow(self, workflow: Dict[str, Any]) -> Dict[str, Any]:
        """Replace a workflow object; its ``metadata.resourceVersion`` must be current.

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            KubernetesAPIError: If the update fails or conflicts
        """
        workflow_name = (workflow.get("metadata") or {}).get("name", "")
        try:
            return self.custom_api.replace_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=self.namespace,
                plural=WORKFLOW_PLURAL,
                name=workflow_name,
                body=workflow,
            )
        except ApiException as e:
            if e.status == 404:
                raise WorkflowNotFoundError(workflow_name, self.namespace)
            error = handle_kubernetes_api_exception(e, "update workflow", "Workflow")
            raise KubernetesAPIError(f"Failed to update workflow: {error.message}", "Workflow", "update") from e

    def delete_workflow(self, workflow_name: str, delete_pods: bool = True) -> bool:
        """Delete a workflow.

        Args:
            workflow_name: Name of the workflow to delete
            delete_pods: Whether to delete associated pods (default: True)

        Returns:
            True if deletion was successful

        Raises:
            WorkflowNotFoundError: If workflow doesn't exist
            KubernetesAPIError: If workflow deletion fails
        """
        body = client.V1DeleteOptions(propagation_policy="Background" if delete_pods else "Orphan")
        try:
            self.custom_api.delete_namespaced_custom_object(
                group=ARGO_GROUP,
                version=ARGO_VERSION,
                namespace=self.namespace,
                plural=WORKFLOW_PLURAL,
                name=workflow_name,
                body=body,
            )
        except ApiException as e:
            if e.status == 404:
                raise WorkflowNotFoundError(workflow_name, self.namespace)
            error = handle_kubernetes_api_exception(e, "delete workflow", "Workflow")
            raise KubernetesAPIError(f"Failed to delete workflow: {error.message}", "Workflow", "delete") from e
        logger.info("workflow_deleted", name=workflow_name, namespace=self.namespace)
        return True
