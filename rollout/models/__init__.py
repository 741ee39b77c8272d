from .artifact_ref import ArtifactRef
from .build_source import BuildSource
from .deployment_spec import DeploymentSpec, Exposure
from .rollout_record import RolloutRecord, RolloutState, RolloutStatus
from .workload_lease import WorkloadLease
from .workload_status import WorkloadStatus
from .wrappers import RolloutLogFile

__all__ = [
    "ArtifactRef",
    "BuildSource",
    "DeploymentSpec",
    "Exposure",
    "RolloutRecord",
    "RolloutState",
    "RolloutStatus",
    "WorkloadLease",
    "WorkloadStatus",
    "RolloutLogFile",
]
