import logging
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException

from rollout.config import ClusterSettings
from rollout.errors import ApplyError
from rollout.models import WorkloadStatus

logger = logging.getLogger(__name__)


def describe_api_error(exc: Exception) -> str:
    # body and headers may carry tokens, only status and reason are safe to log
    status = getattr(exc, "status", None)
    reason = getattr(exc, "reason", None)
    if status is not None and reason is not None:
        return f"{reason} (HTTP {status})"
    if reason is not None:
        return str(reason)
    return type(exc).__name__


class ClusterClient:
    def __init__(self, settings: ClusterSettings | None = None, api_client: client.ApiClient | None = None):
        self.settings: ClusterSettings = settings or ClusterSettings()
        self.api_client: client.ApiClient = api_client or self._build_api_client()
        self.apps: client.AppsV1Api = client.AppsV1Api(self.api_client)
        self.core: client.CoreV1Api = client.CoreV1Api(self.api_client)

    def _build_api_client(self) -> client.ApiClient:
        if self.settings.in_cluster:
            configuration = client.Configuration()
            config.load_incluster_config(client_configuration=configuration)
            return client.ApiClient(configuration)
        return config.new_client_from_config(
            config_file=self.settings.kubeconfig, context=self.settings.context
        )

    def apply(self, manifest: dict[str, Any]) -> None:
        kind = manifest.get("kind")
        metadata = manifest.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace", "default")
        match kind:
            case "Deployment":
                patch, create = self.apps.patch_namespaced_deployment, self.apps.create_namespaced_deployment
            case "Service":
                patch, create = self.core.patch_namespaced_service, self.core.create_namespaced_service
            case _:
                raise ApplyError(f"Unsupported manifest kind: {kind}")
        if not name:
            raise ApplyError(f"{kind} manifest has no metadata.name")

        try:
            try:
                patch(name, namespace, manifest)
                logger.info(f"Patched {kind} {namespace}/{name}")
            except ApiException as e:
                if e.status != 404:
                    raise
                create(namespace, manifest)
                logger.info(f"Created {kind} {namespace}/{name}")
        except ApiException as e:
            raise ApplyError(f"Cluster rejected {kind} {namespace}/{name}: {describe_api_error(e)}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyError(f"Cluster unreachable while applying {kind} {namespace}/{name}: {e}") from e

    def get_status(self, name: str, namespace: str) -> WorkloadStatus:
        try:
            deployment = self.apps.read_namespaced_deployment_status(name, namespace)
        except ApiException as e:
            raise ApplyError(f"Cannot read status of {namespace}/{name}: {describe_api_error(e)}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ApplyError(f"Cluster unreachable while reading {namespace}/{name}: {e}") from e
        status = deployment.status
        return WorkloadStatus(
            desired_replicas=deployment.spec.replicas or 0,
            ready_replicas=status.ready_replicas or 0,
            updated_replicas=status.updated_replicas or 0,
            generation=deployment.metadata.generation or 0,
            observed_generation=status.observed_generation or 0,
        )
