"""Tests for the Argo Workflows client wrapper."""

from unittest.mock import Mock, patch

import pytest
from kubernetes.client.rest import ApiException

from cicd_workflow.exceptions import KubernetesAPIError, WorkflowNotFoundError
from cicd_workflow.workflow_client import WorkflowClient, parse_workflow_status

RAW_WORKFLOW = {
    "metadata": {"name": "ci-42-abcde", "namespace": "devtron-ci"},
    "status": {
        "phase": "Running",
        "progress": "1/2",
        "startedAt": "2024-03-01T12:00:00Z",
        "nodes": {
            "ci-42-abcde-1": {
                "name": "ci-42-abcde.run-wf",
                "displayName": "run-wf",
                "type": "Pod",
                "phase": "Running",
                "startedAt": "2024-03-01T12:00:05Z",
            },
        },
    },
}


class TestParseWorkflowStatus:
    """Test cases for status parsing."""

    def test_parse(self):
        """Test status and node extraction."""
        status = parse_workflow_status(RAW_WORKFLOW, "argo")

        assert status.name == "ci-42-abcde"
        assert status.namespace == "devtron-ci"
        assert status.phase == "Running"
        assert status.progress == "1/2"
        assert status.started_at.year == 2024
        assert status.finished_at is None
        assert [n.display_name for n in status.nodes] == ["run-wf"]

    def test_pending_workflow_without_status(self):
        """Test a workflow the controller has not picked up yet."""
        status = parse_workflow_status({"metadata": {"name": "wf"}}, "argo")

        assert status.phase == "Unknown"
        assert status.namespace == "argo"
        assert status.started_at is None
        assert status.nodes == []

    def test_unparsable_timestamp(self):
        """Test that bad timestamps are dropped."""
        status = parse_workflow_status({"status": {"startedAt": "yesterday"}}, "argo")

        assert status.started_at is None


class TestWorkflowClient:
    """Test cases for WorkflowClient."""

    def setup_method(self):
        """Setup test fixtures."""
        self.patcher = patch("cicd_workflow.workflow_client.client.CustomObjectsApi")
        self.custom_api = self.patcher.start().return_value
        self.client = WorkflowClient(namespace="devtron-ci")

    def teardown_method(self):
        self.patcher.stop()

    def test_get_workflow_status(self):
        """Test reading a workflow status."""
        self.custom_api.get_namespaced_custom_object.return_value = RAW_WORKFLOW

        status = self.client.get_workflow_status("ci-42-abcde")

        assert status.phase == "Running"
        kwargs = self.custom_api.get_namespaced_custom_object.call_args.kwargs
        assert kwargs["namespace"] == "devtron-ci"
        assert kwargs["name"] == "ci-42-abcde"

    def test_get_missing_workflow(self):
        """Test reading a workflow that does not exist."""
        self.custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(WorkflowNotFoundError):
            self.client.get_workflow("missing")

    def test_list_workflows_with_labels(self):
        """Test label selector construction."""
        self.custom_api.list_namespaced_custom_object.return_value = {"items": [RAW_WORKFLOW]}

        items = self.client.list_workflows(labels={"devtron.ai/workflow-purpose": "ci", "team": "a"})

        assert items == [RAW_WORKFLOW]
        kwargs = self.custom_api.list_namespaced_custom_object.call_args.kwargs
        assert kwargs["label_selector"] == "devtron.ai/workflow-purpose=ci,team=a"

    def test_list_workflows_error(self):
        """Test listing failures."""
        self.custom_api.list_namespaced_custom_object.side_effect = ApiException(status=500, reason="boom")

        with pytest.raises(KubernetesAPIError):
            self.client.list_workflows()

    def test_update_workflow(self):
        """Test replacing a workflow object."""
        self.custom_api.replace_namespaced_custom_object.return_value = RAW_WORKFLOW

        assert self.client.update_workflow(RAW_WORKFLOW) == RAW_WORKFLOW
        assert self.custom_api.replace_namespaced_custom_object.call_args.kwargs["name"] == "ci-42-abcde"

    def test_update_conflict(self):
        """Test a stale update."""
        self.custom_api.replace_namespaced_custom_object.side_effect = ApiException(status=409, reason="Conflict")

        with pytest.raises(KubernetesAPIError):
            self.client.update_workflow(RAW_WORKFLOW)

    def test_delete_workflow(self):
        """Test deletion with and without pods."""
        assert self.client.delete_workflow("wf") is True
        assert self.custom_api.delete_namespaced_custom_object.call_args.kwargs["body"].propagation_policy == "Background"

        self.client.delete_workflow("wf", delete_pods=False)
        assert self.custom_api.delete_namespaced_custom_object.call_args.kwargs["body"].propagation_policy == "Orphan"

    def test_delete_missing_workflow(self):
        """Test deleting a workflow that does not exist."""
        self.custom_api.delete_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(WorkflowNotFoundError):
            self.client.delete_workflow("wf")


def test_client_uses_given_cluster_config():
    """Test that the API client is bound to the given configuration."""
    cluster_config = Mock()
    with patch("cicd_workflow.workflow_client.client.ApiClient") as api_client_cls, \
            patch("cicd_workflow.workflow_client.client.CustomObjectsApi") as custom_api_cls:
        WorkflowClient(namespace="ns", cluster_config=cluster_config)

    api_client_cls.assert_called_once_with(cluster_config)
    custom_api_cls.assert_called_once_with(api_client_cls.return_value)
