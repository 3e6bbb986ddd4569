"""cicd-workflow - Assembly and submission of CI/CD workflows on Kubernetes."""

__version__ = "0.1.0"

from cicd_workflow.models import (
    CiCdTriggerEvent,
    CommonWorkflowRequest,
    ConfigSecretMap,
    Environment,
    Pipeline,
    WorkflowExecutorType,
    WorkflowStatus,
    WorkflowTemplate,
)

__all__ = [
    "CiCdTriggerEvent",
    "CommonWorkflowRequest",
    "ConfigSecretMap",
    "Environment",
    "Pipeline",
    "WorkflowExecutorType",
    "WorkflowStatus",
    "WorkflowTemplate",
]
