from dataclasses import field

from pydantic.dataclasses import dataclass

from rollout.models.rollout_record import RolloutRecord
from rollout.models.workload_lease import WorkloadLease

@dataclass(frozen=True)
class RolloutLogFile:
    records: list[RolloutRecord] = field(default_factory=list)
    leases: list[WorkloadLease] = field(default_factory=list)
