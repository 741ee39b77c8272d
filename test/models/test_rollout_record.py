from datetime import datetime, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError
from rollout.models import ArtifactRef, DeploymentSpec, RolloutRecord, RolloutState, RolloutStatus, WorkloadStatus


@pytest.fixture
def record():
    return RolloutRecord(id="gkeapp-1", workload="gkeapp", started_at=datetime.now(timezone.utc))

def test_new_record_is_pending(record):
    assert record.state == RolloutState.PENDING
    assert record.status == RolloutStatus.PENDING
    assert record.spec_version is None
    assert not record.is_terminal

def test_transition_returns_new_record(record):
    resolving = record.transition(RolloutState.RESOLVING)
    assert resolving.status == RolloutStatus.IN_PROGRESS
    assert record.state == RolloutState.PENDING

def test_terminal_transition_sets_finished_at(record):
    failed = record.transition(RolloutState.FAILED, cause="Validation failed")
    assert failed.finished_at is not None
    assert failed.is_terminal
    assert failed.cause == "Validation failed"

@pytest.mark.parametrize("path", [
    [RolloutState.APPLYING],
    [RolloutState.RESOLVING, RolloutState.SUCCEEDED],
    [RolloutState.RESOLVING, RolloutState.PUBLISHING, RolloutState.ROLLING_BACK],
    [RolloutState.FAILED, RolloutState.RESOLVING],
])
def test_illegal_transitions(record, path):
    with pytest.raises(ValueError, match="cannot move from"):
        for state in path:
            record = record.transition(state)

def test_rolling_back_is_in_progress():
    assert RolloutState.ROLLING_BACK.status == RolloutStatus.IN_PROGRESS
    assert RolloutState.ROLLED_BACK.status == RolloutStatus.ROLLED_BACK
    assert RolloutState.ROLLED_BACK.is_terminal

def test_artifact_ref_parse():
    ref = ArtifactRef.parse("gcr.io/proj/gkeapp@sha256:abc")
    assert ref.repository == "gcr.io/proj/gkeapp"
    assert ref.digest == "sha256:abc"
    assert ref.image == "gcr.io/proj/gkeapp@sha256:abc"

def test_artifact_ref_requires_digest():
    with pytest.raises(ValueError, match="not pinned to a digest"):
        ArtifactRef.parse("gcr.io/proj/gkeapp:latest")
    with pytest.raises(PydanticValidationError):
        ArtifactRef(repository="gcr.io/proj/gkeapp", digest="latest")

def test_pin_replaces_tag_with_digest():
    spec = DeploymentSpec(name="gkeapp", image="gcr.io/proj/gkeapp:build-123", port=8080, version=2)
    pinned = spec.pin(ArtifactRef(repository="gcr.io/proj/gkeapp", digest="sha256:abc"))
    assert pinned.image == "gcr.io/proj/gkeapp@sha256:abc"
    assert pinned.version == 2
    assert spec.image == "gcr.io/proj/gkeapp:build-123"

def test_workload_status_readiness():
    assert WorkloadStatus(desired_replicas=2, ready_replicas=2, updated_replicas=2).is_ready
    assert not WorkloadStatus(desired_replicas=2, ready_replicas=2, updated_replicas=1).is_ready
    assert WorkloadStatus(desired_replicas=0).is_ready
