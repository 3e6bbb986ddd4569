"""Custom exceptions for workflow submission with error messages and troubleshooting guidance."""


class CiCdWorkflowError(Exception):
    """Base exception for all workflow submission errors."""

    def __init__(self, message: str, troubleshooting: list = None):
        """Initialize exception with message and optional troubleshooting steps.

        Args:
            message: Error message describing what went wrong
            troubleshooting: List of troubleshooting suggestions
        """
        self.message = message
        self.troubleshooting = troubleshooting or []
        super().__init__(self.message)

    def get_troubleshooting_text(self) -> str:
        """Get formatted troubleshooting text.

        Returns:
            Formatted string with troubleshooting steps
        """
        if not self.troubleshooting:
            return ""

        lines = ["Troubleshooting:"]
        for step in self.troubleshooting:
            lines.append(f"• {step}")
        return "\n".join(lines)


class ClusterAccessError(CiCdWorkflowError):
    """Raised when the control cluster configuration cannot be loaded."""

    def __init__(self, message: str = "Cannot access Kubernetes cluster"):
        troubleshooting = [
            "Verify kubectl is configured: kubectl cluster-info",
            "Check kubeconfig file: kubectl config view",
            "When running in a pod, verify the service account token is mounted",
        ]
        super().__init__(message, troubleshooting)


class ClusterConfigError(CiCdWorkflowError):
    """Raised when the REST config of an external cluster cannot be resolved."""

    def __init__(self, message: str, cluster_name: str = None):
        self.cluster_name = cluster_name
        troubleshooting = [
            "Check that the environment is mapped to a cluster",
            "Verify the cluster server URL and bearer token are stored",
        ]
        if cluster_name:
            troubleshooting.insert(0, f"Inspect the stored config of cluster '{cluster_name}'")
        super().__init__(message, troubleshooting)


class ConfigMapSecretParseError(CiCdWorkflowError):
    """Raised when a stage configmap/secret allow-list or global config is malformed."""

    def __init__(self, message: str, pipeline_id: int = None):
        self.pipeline_id = pipeline_id
        troubleshooting = [
            'Allow-lists must be JSON objects: {"configMaps": [...], "secrets": [...]}',
            "Re-save the pipeline stage configuration to regenerate the allow-list",
        ]
        super().__init__(message, troubleshooting)


class ConfigLookupError(CiCdWorkflowError):
    """Raised when global or app-level configmaps/secrets cannot be fetched."""

    def __init__(self, message: str, source: str = None):
        self.source = source
        troubleshooting = [
            "Verify the configuration store is reachable",
            "Check that the app and environment ids of the request exist",
        ]
        super().__init__(message, troubleshooting)


class ResourceQuantityError(CiCdWorkflowError):
    """Raised when a configured cpu/memory quantity is not a valid Kubernetes quantity."""

    def __init__(self, quantity: str, setting: str = None):
        self.quantity = quantity
        self.setting = setting
        message = f"Invalid resource quantity '{quantity}'"
        if setting:
            message += f" for {setting}"
        troubleshooting = [
            "Use Kubernetes quantity notation, e.g. 500m, 0.5, 3G, 512Mi",
            "Review LIMIT_*/REQ_* settings: cicd-workflow config show",
        ]
        super().__init__(message, troubleshooting)


class BlobStorageConfigError(CiCdWorkflowError):
    """Raised when blob storage is flagged as configured without exactly one matching variant."""

    def __init__(self, message: str):
        troubleshooting = [
            "Populate exactly one of blobStorageS3Config, azureBlobConfig, gcpBlobConfig",
            "Make sure cloudProvider matches the populated variant",
        ]
        super().__init__(message, troubleshooting)


class EventSerializationError(CiCdWorkflowError):
    """Raised when the trigger event cannot be marshalled to JSON."""

    def __init__(self, message: str):
        super().__init__(message, ["Check extraEnvironmentVariables and step payloads are JSON-serialisable"])


class WorkflowExecutorNotFoundError(CiCdWorkflowError):
    """Raised when no executor is registered for the requested executor type."""

    def __init__(self, executor_type: str = None):
        self.executor_type = executor_type
        troubleshooting = [
            "Set workflowExecutor to AWF (Argo Workflows) or SYSTEM",
            "Verify the executor is registered with the WorkflowExecutorRegistry",
        ]
        super().__init__("workflow executor not found", troubleshooting)


class ValidationError(CiCdWorkflowError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        troubleshooting = [
            "Review the command help: cicd-workflow <command> --help",
            "Check the submission file against the documented layout",
        ]
        super().__init__(message, troubleshooting)


class WorkflowSubmissionError(CiCdWorkflowError):
    """Raised when an executor fails to submit a workflow."""

    def __init__(self, message: str, workflow_name: str = None):
        self.workflow_name = workflow_name
        troubleshooting = [
            "Verify Argo Workflows is running: kubectl get pods -n argo",
            "Verify RBAC permissions: kubectl auth can-i create workflows.argoproj.io",
            "Check the workflow controller logs: kubectl logs -n argo -l app=workflow-controller",
        ]
        if workflow_name:
            troubleshooting.insert(0, f"Look for leftovers of '{workflow_name}': kubectl get workflows,jobs -A | grep {workflow_name}")
        super().__init__(message, troubleshooting)


class WorkflowNotFoundError(CiCdWorkflowError):
    """Raised when a workflow cannot be found."""

    def __init__(self, workflow_name: str, namespace: str = "argo"):
        message = f"Workflow '{workflow_name}' not found in namespace '{namespace}'"
        troubleshooting = [
            f"List all workflows: cicd-workflow workflows list -n {namespace}",
            "Check workflow name spelling",
            f"Verify namespace: kubectl get workflows -n {namespace}",
        ]
        super().__init__(message, troubleshooting)


class KubernetesAPIError(CiCdWorkflowError):
    """Raised when Kubernetes API operations fail."""

    def __init__(self, message: str, resource_type: str = None, operation: str = None):
        self.resource_type = resource_type
        self.operation = operation

        troubleshooting = [
            "Verify cluster connectivity: kubectl cluster-info",
            "Check API server status: kubectl get --raw /healthz",
            "Check resource quotas: kubectl describe resourcequota -n <namespace>",
        ]

        if resource_type and operation:
            troubleshooting.insert(0, f"Verify permissions for {operation} on {resource_type}: kubectl auth can-i {operation} {resource_type}")

        super().__init__(message, troubleshooting)


class ConfigurationError(CiCdWorkflowError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_path: str = None):
        self.config_path = config_path
        troubleshooting = [
            "Check configuration file format (YAML)",
            "Verify configuration file permissions",
            "Use default configuration: rm ~/.cicd-workflow/config.yaml",
        ]

        if config_path:
            troubleshooting.insert(0, f"Check configuration file: cat {config_path}")

        super().__init__(message, troubleshooting)


class PermissionError(CiCdWorkflowError):
    """Raised when the caller lacks required permissions."""

    def __init__(self, operation: str, resource: str = None):
        message = f"Insufficient permissions to {operation}"
        if resource:
            message += f" {resource}"

        troubleshooting = [
            "Check your RBAC permissions: kubectl auth can-i --list",
            f"Verify specific permission: kubectl auth can-i {operation} {resource or '<resource>'}",
            "Verify the workflow service account has the necessary roles",
        ]
        super().__init__(message, troubleshooting)


def handle_kubernetes_api_exception(e: Exception, operation: str = "operation", resource_type: str = None) -> CiCdWorkflowError:
    """Convert Kubernetes API exceptions to custom exceptions with context.

    Args:
        e: The original exception
        operation: Description of the operation being performed
        resource_type: Type of Kubernetes resource involved

    Returns:
        Appropriate custom exception with troubleshooting guidance
    """
    from kubernetes.client.rest import ApiException

    if isinstance(e, ApiException):
        if e.status == 401:
            return PermissionError("authenticate", "cluster")
        elif e.status == 403:
            return PermissionError(operation, resource_type)
        elif e.status == 404:
            return KubernetesAPIError(f"Resource not found during {operation}", resource_type, operation)
        elif e.status == 409:
            return KubernetesAPIError(f"Resource conflict during {operation} - resource may already exist", resource_type, operation)
        elif e.status == 422:
            return ValidationError(f"Invalid resource specification: {e.reason}")
        elif e.status >= 500:
            return KubernetesAPIError(f"Kubernetes API server error during {operation}: {e.reason}", resource_type, operation)
        else:
            return KubernetesAPIError(f"API error during {operation}: {e.reason} (status: {e.status})", resource_type, operation)

    return KubernetesAPIError(f"Unexpected error during {operation}: {str(e)}", resource_type, operation)
