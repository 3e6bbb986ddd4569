"""Kubernetes client configuration for the control cluster and external clusters."""

from typing import Optional

from kubernetes import client, config

from cicd_workflow.exceptions import ClusterAccessError, ClusterConfigError
from cicd_workflow.logging import get_logger
from cicd_workflow.models import ClusterConfig, Environment

logger = get_logger(__name__)

# Key of the bearer token in a stored cluster config
BEARER_TOKEN_KEY = "bearer_token"


def cluster_config_for_environment(env: Optional[Environment]) -> ClusterConfig:
    """Connection details of the cluster an environment is mapped to.

    TLS verification is skipped for these connections: the bearer token stored
    for the cluster is the only trust anchor.

    Args:
        env: Environment the workflow runs in

    Returns:
        ClusterConfig for the environment's cluster

    Raises:
        ClusterConfigError: If the environment has no cluster, server URL or token
    """
    if env is None or env.cluster is None:
        raise ClusterConfigError("External run requested but no cluster is mapped to the environment")

    cluster = env.cluster
    if not cluster.server_url:
        raise ClusterConfigError(f"Cluster '{cluster.cluster_name}' has no server URL", cluster.cluster_name)

    bearer_token = (cluster.config or {}).get(BEARER_TOKEN_KEY, "")
    if not bearer_token:
        raise ClusterConfigError(f"Cluster '{cluster.cluster_name}' has no bearer token", cluster.cluster_name)

    return ClusterConfig(
        cluster_name=cluster.cluster_name,
        host=cluster.server_url,
        bearer_token=bearer_token,
        insecure_skip_tls_verify=True,
    )


class ClusterConfigResolver:
    """Builds ``kubernetes.client.Configuration`` objects for workflow execution."""

    def __init__(self, kubeconfig: Optional[str] = None, context: Optional[str] = None):
        """Initialize the resolver.

        Args:
            kubeconfig: Path of the kubeconfig file (defaults to $KUBECONFIG or ~/.kube/config)
            context: Kubernetes context to use (defaults to current context)
        """
        self.kubeconfig = kubeconfig
        self.context = context

    def get_in_cluster_config(self) -> client.Configuration:
        """Load the configuration of the control cluster.

        Returns:
            Client configuration for the control cluster

        Raises:
            ClusterAccessError: If neither a kubeconfig nor in-cluster credentials are available
        """
        configuration = client.Configuration()
        try:
            config.load_kube_config(
                config_file=self.kubeconfig,
                context=self.context,
                client_configuration=configuration,
            )
        except config.ConfigException:
            try:
                # Fall back to in-cluster config if kubeconfig is not available
                config.load_incluster_config(client_configuration=configuration)
            except config.ConfigException as e:
                raise ClusterAccessError(f"Failed to load Kubernetes configuration: {str(e)}")
        except OSError as e:
            raise ClusterAccessError(f"Failed to read kubeconfig: {str(e)}")
        return configuration

    def get_rest_config_by_cluster(self, cluster_config: ClusterConfig) -> client.Configuration:
        """Build a bearer-token client configuration for a cluster.

        Args:
            cluster_config: Connection details of the cluster

        Returns:
            Client configuration for the cluster

        Raises:
            ClusterConfigError: If the cluster has no host
        """
        if not cluster_config.host:
            raise ClusterConfigError("Cluster host is empty", cluster_config.cluster_name)

        configuration = client.Configuration()
        configuration.host = cluster_config.host
        configuration.api_key = {"authorization": cluster_config.bearer_token}
        configuration.api_key_prefix = {"authorization": "Bearer"}
        configuration.verify_ssl = not cluster_config.insecure_skip_tls_verify
        if cluster_config.insecure_skip_tls_verify:
            logger.debug("tls_verification_skipped", cluster=cluster_config.cluster_name)
        return configuration
