"""
Kubernetes API access for the Job runner.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
import logging

from controller.src.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

MANAGED_BY = {"app.kubernetes.io/managed-by": "relayci"}

_batch_v1 = None
_core_v1 = None

def init_k8s_client() -> bool:
    """Load cluster credentials and check that the API server answers."""
    global _batch_v1, _core_v1

    try:
        if settings.k8s_in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config()
        api_client = client.ApiClient()
        _batch_v1 = client.BatchV1Api(api_client)
        _core_v1 = client.CoreV1Api(api_client)
        _core_v1.list_namespace(limit=1)
    except (ApiException, config.ConfigException, OSError) as e:
        logger.error(f"Kubernetes API unavailable: {e}")
        return False

    source = "in-cluster" if settings.k8s_in_cluster else "kubeconfig"
    logger.info(f"Kubernetes client ready ({source} credentials)")
    return True

def get_batch_api() -> client.BatchV1Api:
    if _batch_v1 is None:
        init_k8s_client()
    return _batch_v1

def get_core_api() -> client.CoreV1Api:
    if _core_v1 is None:
        init_k8s_client()
    return _core_v1

def ensure_namespace():
    """Create the step namespace if missing and check the workspace claim."""
    core_v1 = get_core_api()
    namespace = settings.k8s_namespace

    try:
        core_v1.read_namespace(name=namespace)
    except ApiException as e:
        if e.status != 404:
            raise
        core_v1.create_namespace(body=client.V1Namespace(
            metadata=client.V1ObjectMeta(name=namespace, labels=MANAGED_BY)
        ))
        logger.info(f"Created namespace '{namespace}'")

    # Step pods mount the stage workspace from this claim
    try:
        core_v1.read_namespaced_persistent_volume_claim(
            name=settings.k8s_workspace_claim,
            namespace=namespace,
        )
    except ApiException as e:
        if e.status == 404:
            raise RuntimeError(
                f"Workspace claim '{settings.k8s_workspace_claim}' not found in namespace '{namespace}'"
            ) from e
        raise
