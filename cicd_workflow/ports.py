"""Interfaces of the stores the workflow service reads configuration from."""

from abc import ABC, abstractmethod
from typing import List, Tuple

from cicd_workflow.models import ConfigSecretMap, GlobalCmCsConfig, PipelineType


class GlobalCmCsStore(ABC):
    """Source of platform-wide configmaps and secrets."""

    @abstractmethod
    def find_all_active_by_pipeline_type(self, pipeline_type: PipelineType) -> List[GlobalCmCsConfig]:
        """Return the active global configs injected into workflows of ``pipeline_type``."""


class AppConfigStore(ABC):
    """Source of the configmaps and secrets defined on an app/environment."""

    @abstractmethod
    def get_cm_secret(
        self, app_id: int, environment_id: int, is_job: bool
    ) -> Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]:
        """Return ``(config_maps, secrets)`` of the app in the environment, in stored order."""
