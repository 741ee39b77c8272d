import logging
import threading
import time

from rollout.clients.cluster_client import ClusterClient
from rollout.config import ReconcileSettings
from rollout.errors import ApplyError, ReconcileTimeout, RolloutAborted
from rollout.models import DeploymentSpec, WorkloadStatus
from rollout.services.spec_resolver import SpecResolver
from rollout.utils.logging import setup_logger


class ClusterReconciler:
    """Applies a resolved spec to the cluster and waits for its replicas to become ready.

    The readiness wait is bounded twice: by ``max_polls`` unsuccessful polls
    and by ``timeout_seconds`` of wall time. Whichever is hit first raises
    ReconcileTimeout. Setting the abort event interrupts the wait at once.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        settings: ReconcileSettings | None = None,
        resolver: SpecResolver | None = None,
    ):
        self.cluster: ClusterClient = cluster
        self.settings: ReconcileSettings = settings or ReconcileSettings()
        self.resolver: SpecResolver = resolver or SpecResolver()
        self.logger: logging.Logger = setup_logger("ClusterReconciler")

    def apply(self, spec: DeploymentSpec) -> None:
        for manifest in self.resolver.render(spec):
            self.cluster.apply(manifest)
        self.logger.info(f"Applied {spec.namespace}/{spec.name} version {spec.version} ({spec.image})")

    def wait_until_ready(self, spec: DeploymentSpec, abort: threading.Event | None = None) -> WorkloadStatus:
        abort = abort or threading.Event()
        deadline = time.monotonic() + self.settings.timeout_seconds
        status: WorkloadStatus | None = None

        for poll in range(1, self.settings.max_polls + 1):
            if abort.is_set():
                raise RolloutAborted(f"Readiness wait for {spec.name} aborted")
            try:
                status = self.cluster.get_status(spec.name, spec.namespace)
            except ApplyError as e:
                self.logger.warning(f"Poll {poll}/{self.settings.max_polls} for {spec.name} failed: {e}")
            else:
                if status.is_ready and status.desired_replicas == spec.replicas:
                    self.logger.info(f"{spec.name} is ready: {status}")
                    return status
                self.logger.info(f"Poll {poll}/{self.settings.max_polls} for {spec.name}: {status}")

            remaining = deadline - time.monotonic()
            if poll == self.settings.max_polls or remaining <= 0:
                break
            if abort.wait(min(self.settings.poll_interval_seconds, remaining)):
                raise RolloutAborted(f"Readiness wait for {spec.name} aborted")

        observed = str(status) if status else "no status"
        raise ReconcileTimeout(
            f"{spec.name} not ready after {poll} polls "
            f"(limit {self.settings.max_polls} polls / {self.settings.timeout_seconds:g}s): {observed}"
        )

    def reconcile(self, spec: DeploymentSpec, abort: threading.Event | None = None) -> WorkloadStatus:
        self.apply(spec)
        return self.wait_until_ready(spec, abort)
