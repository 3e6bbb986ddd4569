"""Resolution of the configmaps and secrets a workflow carries.

Global (platform-wide) configs come first, then the configs defined on the
app. Every non-external entry is renamed with workflow-scoped suffixes so
that concurrent or repeated runs never share Kubernetes objects.
"""

import base64
import json
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Set, Tuple

from kubernetes import client

from cicd_workflow.exceptions import CiCdWorkflowError, ConfigLookupError, ConfigMapSecretParseError
from cicd_workflow.logging import get_logger
from cicd_workflow.models import (
    CommonWorkflowRequest,
    ConfigMapSecretNames,
    ConfigSecretMap,
    ConfigUsageType,
    GlobalCmCsConfig,
    GlobalConfigType,
    Pipeline,
    PipelineType,
    StageType,
)
from cicd_workflow.ports import AppConfigStore, GlobalCmCsStore

logger = get_logger(__name__)

CI_WORKFLOW_NAME = "ci"
CD_WORKFLOW_NAME = "cd"
VOLUME_SUFFIX = "-vol"


@dataclass(frozen=True)
class ResolvedConfig:
    """Configmaps and secrets of one workflow, with their final object names."""
    config_maps: Tuple[ConfigSecretMap, ...] = ()
    secrets: Tuple[ConfigSecretMap, ...] = ()


def global_workflow_name(name: str, request: CommonWorkflowRequest, is_ci: bool) -> str:
    """Object name of a global config inside a CI or CD workflow."""
    if is_ci:
        return f"{name.lower()}-{request.workflow_id}-{CI_WORKFLOW_NAME}"
    return f"{name.lower()}-{request.workflow_runner_id}-{CD_WORKFLOW_NAME}"


def existing_workflow_name(name: str, request: CommonWorkflowRequest, is_ci: bool) -> str:
    """Object name of an app-level config inside a CI or CD workflow."""
    if is_ci:
        return f"{name}-{request.workflow_id}-{CI_WORKFLOW_NAME}"
    return f"{name}-{request.workflow_id}-{request.workflow_runner_id}"


def parse_stage_config_names(pipeline: Pipeline, stage_type: str) -> Tuple[Set[str], Set[str]]:
    """Parse the configmap/secret allow-list of a CD stage.

    The PRE allow-list is used for stage ``PRE``, the POST one for anything else.

    Args:
        pipeline: CD pipeline holding the JSON-encoded allow-lists
        stage_type: Stage being run

    Returns:
        Tuple of (configmap names, secret names)

    Raises:
        ConfigMapSecretParseError: If the allow-list is not a valid JSON object
    """
    if stage_type == StageType.PRE:
        raw = pipeline.pre_stage_config_map_secret_names
    else:
        raw = pipeline.post_stage_config_map_secret_names

    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ConfigMapSecretParseError(
            f"Malformed {stage_type or 'POST'} stage configmap/secret names of pipeline {pipeline.id}: {e}",
            pipeline.id,
        ) from e

    if parsed is None:
        return set(), set()
    if not isinstance(parsed, dict):
        raise ConfigMapSecretParseError(
            f"Stage configmap/secret names of pipeline {pipeline.id} must be a JSON object",
            pipeline.id,
        )

    names = ConfigMapSecretNames.from_dict(parsed)
    config_maps = names.config_maps or []
    secrets = names.secrets or []
    if not all(isinstance(name, str) for name in [*config_maps, *secrets]):
        raise ConfigMapSecretParseError(
            f"Stage configmap/secret names of pipeline {pipeline.id} must be strings",
            pipeline.id,
        )
    return set(config_maps), set(secrets)


def from_global_configs(configs: Iterable[GlobalCmCsConfig]) -> Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]:
    """Convert global definitions to configmap/secret entries, keeping their order.

    Secret values are base64 encoded.

    Raises:
        ConfigMapSecretParseError: If a definition has an unknown config type
    """
    config_maps = []
    secrets = []
    for config in configs:
        data = dict(config.data or {})
        if config.config_type == GlobalConfigType.CONFIGMAP:
            config_maps.append(ConfigSecretMap(
                name=config.name, type=config.type, mount_path=config.mount_path, data=data,
            ))
        elif config.config_type == GlobalConfigType.SECRET:
            encoded = {key: base64.b64encode(value.encode("utf-8")).decode("ascii") for key, value in data.items()}
            secrets.append(ConfigSecretMap(
                name=config.name, type=config.type, mount_path=config.mount_path, data=encoded,
            ))
        else:
            raise ConfigMapSecretParseError(
                f"Unknown config type '{config.config_type}' of global config '{config.name}'"
            )
    return config_maps, secrets


class ConfigurationResolver:
    """Gathers and renames the configmaps and secrets of a workflow."""

    def __init__(self, global_cm_cs_store: GlobalCmCsStore, app_config_store: AppConfigStore):
        self.global_cm_cs_store = global_cm_cs_store
        self.app_config_store = app_config_store

    def resolve(
        self,
        request: CommonWorkflowRequest,
        pipeline: Pipeline,
        is_job: bool,
        is_ci: bool,
    ) -> ResolvedConfig:
        """Resolve the configmaps and secrets of a workflow.

        Global configs are skipped for external runs so platform secrets never
        reach a foreign cluster. CD workflows only carry the app configs named
        in the stage allow-list; CI workflows carry all of them.

        Args:
            request: Prepared workflow request (``is_ext_run`` already decided)
            pipeline: Pipeline being run
            is_job: Whether the app is a job
            is_ci: CI (True) or CD (False) workflow

        Returns:
            ResolvedConfig with global entries first, then app entries

        Raises:
            ConfigLookupError: If a store lookup fails
            ConfigMapSecretParseError: If the allow-list or a global config is malformed
        """
        config_maps: List[ConfigSecretMap] = []
        secrets: List[ConfigSecretMap] = []

        if not request.is_ext_run:
            global_config_maps, global_secrets = self._global_configs(request, is_ci)
            config_maps.extend(global_config_maps)
            secrets.extend(global_secrets)

        allowed_config_maps: Optional[Set[str]] = None
        allowed_secrets: Optional[Set[str]] = None
        if not is_ci:
            allowed_config_maps, allowed_secrets = parse_stage_config_names(pipeline, request.stage_type)

        existing_config_maps, existing_secrets = self._existing_configs(request, is_job)
        logger.debug(
            "existing_cm_cs",
            pipeline_id=pipeline.id if pipeline else None,
            config_maps=[cm.name for cm in existing_config_maps],
            secrets=[secret.name for secret in existing_secrets],
        )

        config_maps.extend(self._select(existing_config_maps, allowed_config_maps, request, is_ci))
        secrets.extend(self._select(existing_secrets, allowed_secrets, request, is_ci))
        return ResolvedConfig(config_maps=tuple(config_maps), secrets=tuple(secrets))

    def _global_configs(
        self, request: CommonWorkflowRequest, is_ci: bool
    ) -> Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]:
        pipeline_type = PipelineType.CI if is_ci else PipelineType.CD
        try:
            configs = self.global_cm_cs_store.find_all_active_by_pipeline_type(pipeline_type)
        except CiCdWorkflowError:
            raise
        except Exception as e:
            logger.error("global_cm_cs_lookup_failed", pipeline_type=pipeline_type.value, error=str(e))
            raise ConfigLookupError(f"Failed to get global configmaps/secrets: {str(e)}", "global") from e

        renamed = [replace(config, name=global_workflow_name(config.name, request, is_ci)) for config in configs]
        return from_global_configs(renamed)

    def _existing_configs(
        self, request: CommonWorkflowRequest, is_job: bool
    ) -> Tuple[List[ConfigSecretMap], List[ConfigSecretMap]]:
        try:
            return self.app_config_store.get_cm_secret(request.app_id, request.environment_id, is_job)
        except CiCdWorkflowError:
            raise
        except Exception as e:
            logger.error("app_cm_cs_lookup_failed", app_id=request.app_id, error=str(e))
            raise ConfigLookupError(f"Failed to get configmap data: {str(e)}", "app") from e

    @staticmethod
    def _select(
        entries: Iterable[ConfigSecretMap],
        allowed: Optional[Set[str]],
        request: CommonWorkflowRequest,
        is_ci: bool,
    ) -> List[ConfigSecretMap]:
        selected = []
        for entry in entries:
            if allowed is not None and entry.name not in allowed:
                continue
            if not entry.external:
                entry = replace(entry, name=existing_workflow_name(entry.name, request, is_ci))
            selected.append(entry)
        return selected


def _file_mode(entry: ConfigSecretMap) -> Optional[int]:
    if not entry.file_permission:
        return None
    try:
        return int(entry.file_permission, 8)
    except ValueError as e:
        raise ConfigMapSecretParseError(
            f"Invalid file permission '{entry.file_permission}' of '{entry.name}'"
        ) from e


def extract_volumes(
    config_maps: Iterable[ConfigSecretMap], secrets: Iterable[ConfigSecretMap]
) -> List[client.V1Volume]:
    """Volumes backing every ``volume``-type configmap and secret, configmaps first."""
    volumes = []
    for config_map in config_maps:
        if config_map.type != ConfigUsageType.VOLUME:
            continue
        volumes.append(client.V1Volume(
            name=config_map.name + VOLUME_SUFFIX,
            config_map=client.V1ConfigMapVolumeSource(name=config_map.name, default_mode=_file_mode(config_map)),
        ))
    for secret in secrets:
        if secret.type != ConfigUsageType.VOLUME:
            continue
        volumes.append(client.V1Volume(
            name=secret.name + VOLUME_SUFFIX,
            secret=client.V1SecretVolumeSource(secret_name=secret.name, default_mode=_file_mode(secret)),
        ))
    return volumes


def _volume_mounts(entry: ConfigSecretMap) -> List[client.V1VolumeMount]:
    if not entry.mount_path:
        raise ConfigMapSecretParseError(f"Volume '{entry.name}' has no mount path")
    volume_name = entry.name + VOLUME_SUFFIX
    if not entry.sub_path:
        return [client.V1VolumeMount(name=volume_name, mount_path=entry.mount_path)]
    # one file per key, leaving the rest of the directory untouched
    base = entry.mount_path.rstrip("/")
    return [
        client.V1VolumeMount(name=volume_name, mount_path=f"{base}/{key}", sub_path=key)
        for key in (entry.data or {})
    ]


def container_env_from_cm_cs(
    config_maps: Iterable[ConfigSecretMap], secrets: Iterable[ConfigSecretMap]
) -> Tuple[List[client.V1EnvFromSource], List[client.V1VolumeMount]]:
    """How the main container consumes the resolved configmaps and secrets.

    Returns:
        Tuple of (envFrom sources for ``environment`` entries, mounts for ``volume`` entries)
    """
    env_from = []
    volume_mounts = []
    for config_map in config_maps:
        if config_map.type == ConfigUsageType.ENVIRONMENT:
            env_from.append(client.V1EnvFromSource(config_map_ref=client.V1ConfigMapEnvSource(name=config_map.name)))
        elif config_map.type == ConfigUsageType.VOLUME:
            volume_mounts.extend(_volume_mounts(config_map))
    for secret in secrets:
        if secret.type == ConfigUsageType.ENVIRONMENT:
            env_from.append(client.V1EnvFromSource(secret_ref=client.V1SecretEnvSource(name=secret.name)))
        elif secret.type == ConfigUsageType.VOLUME:
            volume_mounts.extend(_volume_mounts(secret))
    return env_from, volume_mounts
