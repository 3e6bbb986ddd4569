"""File-backed submissions and in-memory configuration stores."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from cicd_workflow.exceptions import ValidationError
from cicd_workflow.models import (
    CommonWorkflowRequest,
    ConfigSecretMap,
    Environment,
    GlobalCmCsConfig,
    Pipeline,
    PipelineType,
    enum_value,
)
from cicd_workflow.ports import AppConfigStore, GlobalCmCsStore


class InMemoryGlobalCmCsStore(GlobalCmCsStore):
    """Global configs held in memory, grouped by pipeline type."""

    def __init__(self, configs: Optional[Dict[str, List[GlobalCmCsConfig]]] = None):
        self._configs = {enum_value(key): list(value) for key, value in (configs or {}).items()}

    def find_all_active_by_pipeline_type(self, pipeline_type: PipelineType) -> List[GlobalCmCsConfig]:
        return list(self._configs.get(enum_value(pipeline_type), []))


class InMemoryAppConfigStore(AppConfigStore):
    """App configs held in memory, keyed by ``(app_id, environment_id)``."""

    def __init__(self):
        self._entries: Dict[Tuple[int, int], Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]] = {}

    def add(
        self,
        app_id: int,
        environment_id: int,
        config_maps: List[ConfigSecretMap],
        secrets: List[ConfigSecretMap],
    ) -> None:
        self._entries[(app_id, environment_id)] = (list(config_maps), list(secrets))

    def get_cm_secret(
        self, app_id: int, environment_id: int, is_job: bool
    ) -> Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]:
        config_maps, secrets = self._entries.get((app_id, environment_id), ([], []))
        return list(config_maps), list(secrets)


def _models(model, items: Optional[List[Dict[str, Any]]]) -> list:
    return [model.from_dict(item) for item in (items or [])]


@dataclass
class SubmissionFile:
    """One workflow submission with everything needed to assemble it.

    The document is YAML (or JSON) with camelCase keys::

        type: CD
        isJob: false
        request: {...}
        pipeline: {...}
        environment: {...}
        appLabels: {...}
        configMaps: [...]
        secrets: [...]
        globalConfigs:
          CD: [...]
    """
    request: CommonWorkflowRequest
    pipeline: Pipeline
    is_ci: bool = True
    is_job: bool = False
    environment: Optional[Environment] = None
    app_labels: Dict[str, str] = field(default_factory=dict)
    config_maps: List[ConfigSecretMap] = field(default_factory=list)
    secrets: List[ConfigSecretMap] = field(default_factory=list)
    global_configs: Dict[str, List[GlobalCmCsConfig]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubmissionFile":
        """Build a submission from its document form.

        Raises:
            ValidationError: If the document is not a mapping, or misses the request or pipeline
        """
        if not isinstance(data, dict):
            raise ValidationError("Submission must be a mapping")
        for key in ("request", "pipeline"):
            if not isinstance(data.get(key), dict):
                raise ValidationError(f"Submission is missing '{key}'", key)

        pipeline_type = str(data.get("type", PipelineType.CI.value)).upper()
        if pipeline_type not in (PipelineType.CI.value, PipelineType.CD.value):
            raise ValidationError(f"Submission type must be CI or CD, got '{pipeline_type}'", "type")

        global_configs = data.get("globalConfigs") or {}
        if not isinstance(global_configs, dict):
            raise ValidationError("'globalConfigs' must map pipeline types to config lists", "globalConfigs")

        return cls(
            request=CommonWorkflowRequest.from_dict(data["request"]),
            pipeline=Pipeline.from_dict(data["pipeline"]),
            is_ci=pipeline_type == PipelineType.CI.value,
            is_job=bool(data.get("isJob", False)),
            environment=Environment.from_dict(data.get("environment")),
            app_labels=dict(data.get("appLabels") or {}),
            config_maps=_models(ConfigSecretMap, data.get("configMaps")),
            secrets=_models(ConfigSecretMap, data.get("secrets")),
            global_configs={
                str(key).upper(): _models(GlobalCmCsConfig, items) for key, items in global_configs.items()
            },
        )

    @classmethod
    def load(cls, path: Path) -> "SubmissionFile":
        """Read a submission from a ``.yaml``/``.yml`` or ``.json`` file.

        Raises:
            ValidationError: If the file cannot be parsed or is not a valid submission
        """
        path = Path(path)
        try:
            with open(path, "r") as f:
                if path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ValidationError(f"Failed to parse submission file {path}: {str(e)}", "file") from e
        return cls.from_dict(data)

    def global_cm_cs_store(self) -> InMemoryGlobalCmCsStore:
        return InMemoryGlobalCmCsStore(self.global_configs)

    def app_config_store(self) -> InMemoryAppConfigStore:
        store = InMemoryAppConfigStore()
        store.add(self.request.app_id, self.request.environment_id, self.config_maps, self.secrets)
        return store
