import threading
from unittest.mock import MagicMock

import pytest
from rollout.config import ReconcileSettings
from rollout.errors import ApplyError, ReconcileTimeout, RolloutAborted
from rollout.models import DeploymentSpec, WorkloadStatus
from rollout.services.cluster_reconciler import ClusterReconciler

FAST = ReconcileSettings(poll_interval_seconds=0.01, max_polls=3, timeout_seconds=5)


def ready(replicas):
    return WorkloadStatus(desired_replicas=replicas, ready_replicas=replicas, updated_replicas=replicas,
                          generation=2, observed_generation=2)

def not_ready(replicas, ready_count=0):
    return WorkloadStatus(desired_replicas=replicas, ready_replicas=ready_count, updated_replicas=replicas,
                          generation=2, observed_generation=2)

@pytest.fixture
def spec():
    return DeploymentSpec(name="gkeapp", image="gcr.io/p/gkeapp@sha256:abc", port=8080, replicas=2, version=4)

@pytest.fixture
def cluster():
    return MagicMock()

@pytest.fixture
def reconciler(cluster):
    svc = ClusterReconciler(cluster, FAST)
    svc.logger = MagicMock()
    return svc

def test_apply_renders_all_manifests(reconciler, cluster, spec):
    reconciler.apply(spec)
    kinds = [c.args[0]["kind"] for c in cluster.apply.call_args_list]
    assert kinds == ["Deployment", "Service"]

def test_apply_error_propagates(reconciler, cluster, spec):
    cluster.apply.side_effect = ApplyError("Forbidden")
    with pytest.raises(ApplyError):
        reconciler.apply(spec)
    assert cluster.apply.call_count == 1

def test_wait_until_ready(reconciler, cluster, spec):
    cluster.get_status.side_effect = [not_ready(2, 1), ready(2)]
    status = reconciler.wait_until_ready(spec)
    assert str(status) == "2/2 ready"
    assert cluster.get_status.call_count == 2
    cluster.get_status.assert_called_with("gkeapp", "default")

def test_wait_times_out_after_max_polls(reconciler, cluster, spec):
    cluster.get_status.return_value = not_ready(2, 1)
    with pytest.raises(ReconcileTimeout, match="not ready after 3 polls.*1/2 ready"):
        reconciler.wait_until_ready(spec)
    assert cluster.get_status.call_count == 3

def test_wait_times_out_on_deadline(cluster, spec):
    reconciler = ClusterReconciler(cluster, ReconcileSettings(poll_interval_seconds=0.05, max_polls=1000, timeout_seconds=0.1))
    cluster.get_status.return_value = not_ready(2)
    with pytest.raises(ReconcileTimeout):
        reconciler.wait_until_ready(spec)
    assert cluster.get_status.call_count < 1000

def test_stale_generation_is_not_ready(reconciler, cluster, spec):
    stale = WorkloadStatus(desired_replicas=2, ready_replicas=2, updated_replicas=2, generation=3, observed_generation=2)
    cluster.get_status.side_effect = [stale, ready(2)]
    reconciler.wait_until_ready(spec)
    assert cluster.get_status.call_count == 2

def test_status_errors_count_as_failed_polls(reconciler, cluster, spec):
    cluster.get_status.side_effect = [ApplyError("Not Found"), ready(2)]
    reconciler.wait_until_ready(spec)
    assert reconciler.logger.warning.called

def test_status_errors_until_timeout(reconciler, cluster, spec):
    cluster.get_status.side_effect = ApplyError("Not Found")
    with pytest.raises(ReconcileTimeout, match="no status"):
        reconciler.wait_until_ready(spec)

def test_abort_before_first_poll(reconciler, cluster, spec):
    abort = threading.Event()
    abort.set()
    with pytest.raises(RolloutAborted):
        reconciler.wait_until_ready(spec, abort)
    cluster.get_status.assert_not_called()

def test_abort_interrupts_sleep(cluster, spec):
    reconciler = ClusterReconciler(cluster, ReconcileSettings(poll_interval_seconds=30, max_polls=10, timeout_seconds=300))
    abort = threading.Event()
    def status(name, namespace):
        abort.set()
        return not_ready(2)
    cluster.get_status.side_effect = status
    with pytest.raises(RolloutAborted):
        reconciler.wait_until_ready(spec, abort)
    assert cluster.get_status.call_count == 1

def test_reconcile_applies_then_waits(reconciler, cluster, spec):
    cluster.get_status.return_value = ready(2)
    reconciler.reconcile(spec)
    assert cluster.apply.call_count == 2
    assert cluster.get_status.call_count == 1
