"""Configuration management for workflow submission."""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from cicd_workflow.exceptions import ConfigurationError
from cicd_workflow.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CiCdConfig:
    """Platform-wide settings injected into the workflow service.

    Attributes:
        image_scanner_endpoint: Exported to CI containers as IMAGE_SCANNER_ENDPOINT
        cloud_provider: Blob storage provider of the platform (S3, MINIO, AZURE, GCP)
        blob_storage_s3_access_key: S3 access key exported to containers when set
        blob_storage_s3_secret_key: S3 secret key paired with the access key
        ci_default_build_logs_key_prefix: Blob key prefix of CI logs
        cd_default_build_logs_key_prefix: Blob key prefix of CD logs
        in_app_logging_enabled: Logs are shipped by the in-container agent
        build_log_ttl_value: Seconds a finished workflow is kept
        ci_workflow_service_account: Service account of CI workflows
        cd_workflow_service_account: Service account of CD workflows
        ci_taint_key: Taint key tolerated by CI pods
        ci_taint_value: Taint value tolerated by CI pods
        cd_taint_key: Taint key tolerated by, and selected for, CD pods
        cd_taint_value: Taint value tolerated by, and selected for, CD pods
        node_label: Node selector applied to workflow pods
        ci_limit_cpu: CPU limit of CI containers
        ci_limit_mem: Memory limit of CI containers
        ci_req_cpu: CPU request of CI containers
        ci_req_mem: Memory request of CI containers
        cd_limit_cpu: CPU limit of CD containers
        cd_limit_mem: Memory limit of CD containers
        cd_req_cpu: CPU request of CD containers
        cd_req_mem: Memory request of CD containers
        wf_controller_instance_id: Argo controller instance handling CD workflows
        use_blob_storage_config_in_cd_workflow: Keep blob storage for external runs
    """
    image_scanner_endpoint: str = "http://image-scanner-service.devtroncd:80"
    cloud_provider: str = "S3"
    blob_storage_s3_access_key: str = ""
    blob_storage_s3_secret_key: str = ""
    ci_default_build_logs_key_prefix: str = "arsenal-v1"
    cd_default_build_logs_key_prefix: str = "arsenal-v1"
    in_app_logging_enabled: bool = False
    build_log_ttl_value: int = 3600
    ci_workflow_service_account: str = "ci-runner"
    cd_workflow_service_account: str = "cd-runner"
    ci_taint_key: str = ""
    ci_taint_value: str = ""
    cd_taint_key: str = "dedicated"
    cd_taint_value: str = "ci"
    node_label: Dict[str, str] = field(default_factory=dict)
    ci_limit_cpu: str = "0.5"
    ci_limit_mem: str = "3G"
    ci_req_cpu: str = "0.5"
    ci_req_mem: str = "3G"
    cd_limit_cpu: str = "0.5"
    cd_limit_mem: str = "3G"
    cd_req_cpu: str = "0.5"
    cd_req_mem: str = "3G"
    wf_controller_instance_id: str = "devtron-runner"
    use_blob_storage_config_in_cd_workflow: bool = True

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "CiCdConfig":
        """Build from a mapping, ignoring keys that are not settings."""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in values.items() if key in known})


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_node_label(value: str) -> Dict[str, str]:
    """Parse a ``key=value,key2=value2`` node label selector."""
    labels = {}
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        if "=" not in pair:
            raise ValueError(f"invalid node label '{pair}', expected key=value")
        key, label_value = pair.split("=", 1)
        labels[key.strip()] = label_value.strip()
    return labels


class Config:
    """Manages configuration from file and environment variables."""

    DEFAULT_CONFIG_PATH = Path.home() / ".cicd-workflow" / "config.yaml"

    DEFAULT_CONFIG = {
        "namespace": "argo",
        "cluster_context": None,
        "output_format": "yaml",
        "kubeconfig": None,
        "log_level": "INFO",
        "log_json": False,
        **{f.name: f.default for f in fields(CiCdConfig) if f.name != "node_label"},
        "node_label": {},
    }

    # Environment variables overriding file values
    ENV_VARS = {
        "namespace": "ARGO_NAMESPACE",
        "cluster_context": "KUBE_CONTEXT",
        "kubeconfig": "KUBECONFIG",
        "output_format": "CICD_WORKFLOW_OUTPUT_FORMAT",
        "log_level": "LOG_LEVEL",
        "log_json": "LOG_JSON",
        "image_scanner_endpoint": "IMAGE_SCANNER_ENDPOINT",
        "cloud_provider": "BLOB_STORAGE_PROVIDER",
        "blob_storage_s3_access_key": "BLOB_STORAGE_S3_ACCESS_KEY",
        "blob_storage_s3_secret_key": "BLOB_STORAGE_S3_SECRET_KEY",
        "ci_default_build_logs_key_prefix": "DEFAULT_BUILD_LOGS_KEY_PREFIX",
        "cd_default_build_logs_key_prefix": "DEFAULT_CD_BUILD_LOGS_KEY_PREFIX",
        "in_app_logging_enabled": "IN_APP_LOGGING_ENABLED",
        "build_log_ttl_value": "BUILD_LOG_TTL_VALUE_IN_SECS",
        "ci_workflow_service_account": "WORKFLOW_SERVICE_ACCOUNT",
        "cd_workflow_service_account": "CD_WORKFLOW_SERVICE_ACCOUNT",
        "ci_taint_key": "CI_NODE_TAINTS_KEY",
        "ci_taint_value": "CI_NODE_TAINTS_VALUE",
        "cd_taint_key": "CD_NODE_TAINTS_KEY",
        "cd_taint_value": "CD_NODE_TAINTS_VALUE",
        "node_label": "CI_NODE_LABEL_SELECTOR",
        "ci_limit_cpu": "LIMIT_CI_CPU",
        "ci_limit_mem": "LIMIT_CI_MEM",
        "ci_req_cpu": "REQ_CI_CPU",
        "ci_req_mem": "REQ_CI_MEM",
        "cd_limit_cpu": "CD_LIMIT_CI_CPU",
        "cd_limit_mem": "CD_LIMIT_CI_MEM",
        "cd_req_cpu": "CD_REQ_CI_CPU",
        "cd_req_mem": "CD_REQ_CI_MEM",
        "wf_controller_instance_id": "WF_CONTROLLER_INSTANCE_ID",
        "use_blob_storage_config_in_cd_workflow": "USE_BLOB_STORAGE_CONFIG_IN_CD_WORKFLOW",
    }

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file. Defaults to ~/.cicd-workflow/config.yaml

        Raises:
            ConfigurationError: If an environment variable holds a value of the wrong type
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from defaults, the config file and the environment.

        Returns:
            Dictionary containing configuration values
        """
        config = dict(self.DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    file_config = yaml.safe_load(f) or {}
                    config.update(file_config)
            except (OSError, yaml.YAMLError) as e:
                # An unreadable config file falls back to defaults
                logger.warning("config_file_invalid", path=str(self.config_path), error=str(e))

        for key, env_var in self.ENV_VARS.items():
            raw = os.getenv(env_var)
            if raw is None or raw == "":
                continue
            try:
                config[key] = self._coerce(key, raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {e}")

        return config

    def _coerce(self, key: str, raw: str) -> Any:
        default = self.DEFAULT_CONFIG.get(key)
        if key == "node_label":
            return parse_node_label(raw)
        if isinstance(default, bool):
            return _parse_bool(raw)
        if isinstance(default, int):
            return int(raw)
        return raw

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set configuration value, coercing strings to the setting's type.

        Args:
            key: Configuration key
            value: Configuration value

        Raises:
            ConfigurationError: If the value cannot be converted
        """
        if isinstance(value, str) and key in self.DEFAULT_CONFIG:
            try:
                value = self._coerce(key, value)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {key}: {e}", str(self.config_path))
        self.config[key] = value

    def save(self) -> None:
        """Save configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.safe_dump(self.config, f, default_flow_style=False)

    def create_default_config(self) -> None:
        """Create default configuration file if it doesn't exist."""
        if not self.config_path.exists():
            self.config = dict(self.DEFAULT_CONFIG)
            self.save()

    def ci_cd_config(self) -> CiCdConfig:
        """Get the settings consumed by the workflow service."""
        return CiCdConfig.from_mapping(self.config)

    @property
    def namespace(self) -> str:
        """Get default namespace."""
        return self.get('namespace', 'argo')

    @property
    def cluster_context(self) -> Optional[str]:
        """Get cluster context."""
        return self.get('cluster_context')

    @property
    def output_format(self) -> str:
        """Get output format."""
        return self.get('output_format', 'yaml')

    @property
    def kubeconfig(self) -> Optional[str]:
        """Get kubeconfig path."""
        return self.get('kubeconfig')


_config_instance: Optional[Config] = None


def get_config(config_path: Optional[Path] = None) -> Config:
    """Get global configuration instance.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Config instance
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = Config(config_path)

    return _config_instance


def reset_config() -> None:
    """Drop the cached configuration instance."""
    global _config_instance
    _config_instance = None
