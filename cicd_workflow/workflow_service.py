"""Submission of CI/CD workflows and management of the submitted ones."""

from typing import Any, Dict, List, Optional

from kubernetes import client

from cicd_workflow.cluster import ClusterConfigResolver, cluster_config_for_environment
from cicd_workflow.cm_cs import ConfigurationResolver
from cicd_workflow.config import CiCdConfig
from cicd_workflow.exceptions import WorkflowExecutorNotFoundError
from cicd_workflow.executors import WorkflowExecutorRegistry, default_registry
from cicd_workflow.logging import get_logger
from cicd_workflow.models import CommonWorkflowRequest, Environment, Pipeline, WorkflowTemplate
from cicd_workflow.ports import AppConfigStore, GlobalCmCsStore
from cicd_workflow.template_builder import build_template, prepare_request
from cicd_workflow.workflow_client import WorkflowClient

logger = get_logger(__name__)


class CommonWorkflowService:
    """Builds workflow templates for CI/CD stages and hands them to an executor."""

    def __init__(
        self,
        config: CiCdConfig,
        global_cm_cs_store: GlobalCmCsStore,
        app_config_store: AppConfigStore,
        cluster_resolver: Optional[ClusterConfigResolver] = None,
        executor_registry: Optional[WorkflowExecutorRegistry] = None,
        in_cluster_config: Optional[client.Configuration] = None,
    ):
        """Initialize the service.

        Args:
            config: Platform settings
            global_cm_cs_store: Source of global configmaps/secrets
            app_config_store: Source of app-level configmaps/secrets
            cluster_resolver: Builds client configurations (defaults to kubeconfig/in-cluster)
            executor_registry: Executors by type (defaults to Argo and system executors)
            in_cluster_config: Configuration of the control cluster, loaded lazily when omitted
        """
        self.config = config
        self.resolver = ConfigurationResolver(global_cm_cs_store, app_config_store)
        self.cluster_resolver = cluster_resolver or ClusterConfigResolver()
        self.executor_registry = executor_registry or default_registry()
        self._in_cluster_config = in_cluster_config

    @property
    def in_cluster_config(self) -> client.Configuration:
        if self._in_cluster_config is None:
            self._in_cluster_config = self.cluster_resolver.get_in_cluster_config()
        return self._in_cluster_config

    def _cluster_config(self, request: CommonWorkflowRequest, env: Optional[Environment]) -> client.Configuration:
        if not request.is_ext_run:
            return self.in_cluster_config
        cluster_config = cluster_config_for_environment(env)
        logger.info("external_run_cluster", cluster=cluster_config.cluster_name, host=cluster_config.host)
        return self.cluster_resolver.get_rest_config_by_cluster(cluster_config)

    def build_workflow_template(
        self,
        request: CommonWorkflowRequest,
        pipeline: Pipeline,
        env: Optional[Environment],
        app_labels: Optional[Dict[str, str]],
        is_job: bool,
        is_ci: bool,
    ) -> WorkflowTemplate:
        """Assemble the workflow template of a stage without submitting it.

        Args:
            request: Workflow request; it is not modified
            pipeline: Pipeline being run
            env: Environment the pipeline deploys to, if any
            app_labels: Labels of the app
            is_job: Whether the app is a job
            is_ci: CI (True) or CD (False) workflow

        Returns:
            The immutable WorkflowTemplate

        Raises:
            ConfigMapSecretParseError: If the stage allow-list is malformed
            ConfigLookupError: If a configuration store fails
            ClusterConfigError: If an external run has no usable cluster
            BlobStorageConfigError: If the blob storage variants are inconsistent
            EventSerializationError: If the trigger event cannot be marshalled
            ResourceQuantityError: If a configured quantity is malformed
        """
        prepared = prepare_request(request, pipeline, env, app_labels, is_ci, self.config)
        resolved = self.resolver.resolve(prepared, pipeline, is_job, is_ci)
        cluster_config = self._cluster_config(prepared, env)
        template = build_template(prepared, resolved, cluster_config, is_job, is_ci, self.config)
        logger.debug(
            "workflow_template_built",
            prefix=template.workflow_name_prefix,
            namespace=template.namespace,
            ext_run=template.is_ext_run,
            config_maps=len(template.config_maps),
            secrets=len(template.secrets),
        )
        return template

    def submit_workflow(
        self,
        request: CommonWorkflowRequest,
        pipeline: Pipeline,
        env: Optional[Environment],
        app_labels: Optional[Dict[str, str]],
        is_job: bool,
        is_ci: bool,
    ) -> Dict[str, Any]:
        """Assemble the workflow of a stage and submit it with the requested executor.

        Returns:
            Description of the created workflow, as returned by the executor

        Raises:
            WorkflowExecutorNotFoundError: If no executor is registered for the request's type
            WorkflowSubmissionError: If the executor fails to submit
        """
        template = self.build_workflow_template(request, pipeline, env, app_labels, is_job, is_ci)
        executor = self.executor_registry.get_executor(request.workflow_executor)
        if executor is None:
            raise WorkflowExecutorNotFoundError(request.workflow_executor)
        created = executor.execute_workflow(template)
        logger.info(
            "workflow_dispatched",
            executor=str(request.workflow_executor),
            name=created.get("name"),
            namespace=template.namespace,
        )
        return created

    def _client(self, namespace: str, cluster_config: Optional[client.Configuration], is_ext_run: bool) -> WorkflowClient:
        if not is_ext_run or cluster_config is None:
            cluster_config = self.in_cluster_config
        return WorkflowClient(namespace=namespace, cluster_config=cluster_config)

    def get_workflow(
        self,
        name: str,
        namespace: str,
        cluster_config: Optional[client.Configuration] = None,
        is_ext_run: bool = False,
    ) -> Dict[str, Any]:
        """Raw Workflow object; ``cluster_config`` is only used for external runs."""
        return self._client(namespace, cluster_config, is_ext_run).get_workflow(name)

    def list_all_workflows(self, namespace: str, labels: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        return self._client(namespace, None, False).list_workflows(labels=labels)

    def update_workflow(self, workflow: Dict[str, Any]) -> Dict[str, Any]:
        namespace = (workflow.get("metadata") or {}).get("namespace", "")
        return self._client(namespace, None, False).update_workflow(workflow)

    def delete_workflow(self, name: str, namespace: str) -> bool:
        return self._client(namespace, None, False).delete_workflow(name)

    def terminate_workflow(
        self,
        executor_type: Any,
        name: str,
        namespace: str,
        cluster_config: Optional[client.Configuration] = None,
        is_ext_run: bool = False,
    ) -> None:
        """Stop a running workflow through the executor that started it.

        Raises:
            WorkflowExecutorNotFoundError: If no executor is registered for ``executor_type``
            WorkflowNotFoundError: If the workflow does not exist
        """
        executor = self.executor_registry.get_executor(executor_type)
        if executor is None:
            raise WorkflowExecutorNotFoundError(executor_type)
        if not is_ext_run or cluster_config is None:
            cluster_config = self.in_cluster_config
        executor.terminate_workflow(name, namespace, cluster_config)
