from datetime import datetime, timezone

from pydantic.dataclasses import dataclass


@dataclass(frozen=True)
class WorkloadLease:
    """Claim of one rollout on its workload, shared by every orchestrator using the same log.

    The owning orchestrator keeps pushing ``expires_at`` forward while the
    rollout runs. A lease past ``expires_at`` was left by an orchestrator
    that stopped.
    """
    workload: str
    rollout_id: str
    owner: str
    expires_at: datetime

    def is_live(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) < self.expires_at
