from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum

from pydantic.dataclasses import dataclass

from .artifact_ref import ArtifactRef
from .deployment_spec import DeploymentSpec


class RolloutStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled-back"


class RolloutState(str, Enum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    PUBLISHING = "Publishing"
    APPLYING = "Applying"
    VERIFYING = "Verifying"
    SUCCEEDED = "Succeeded"
    ROLLING_BACK = "RollingBack"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    @property
    def status(self) -> RolloutStatus:
        match self:
            case RolloutState.PENDING:
                return RolloutStatus.PENDING
            case RolloutState.SUCCEEDED:
                return RolloutStatus.SUCCEEDED
            case RolloutState.FAILED:
                return RolloutStatus.FAILED
            case RolloutState.ROLLED_BACK:
                return RolloutStatus.ROLLED_BACK
            case _:
                return RolloutStatus.IN_PROGRESS


TERMINAL_STATES = frozenset({RolloutState.SUCCEEDED, RolloutState.ROLLED_BACK, RolloutState.FAILED})

# Failed is reachable from every non-terminal state: validation, publish and
# cancel failures end there without touching the cluster.
TRANSITIONS: dict[RolloutState, frozenset[RolloutState]] = {
    RolloutState.PENDING: frozenset({RolloutState.RESOLVING, RolloutState.FAILED}),
    RolloutState.RESOLVING: frozenset({RolloutState.PUBLISHING, RolloutState.FAILED}),
    RolloutState.PUBLISHING: frozenset({RolloutState.APPLYING, RolloutState.FAILED}),
    RolloutState.APPLYING: frozenset({RolloutState.VERIFYING, RolloutState.ROLLING_BACK, RolloutState.FAILED}),
    RolloutState.VERIFYING: frozenset({RolloutState.SUCCEEDED, RolloutState.ROLLING_BACK, RolloutState.FAILED}),
    RolloutState.ROLLING_BACK: frozenset({RolloutState.ROLLED_BACK, RolloutState.FAILED}),
    RolloutState.SUCCEEDED: frozenset(),
    RolloutState.ROLLED_BACK: frozenset(),
    RolloutState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class RolloutRecord:
    id: str
    workload: str
    started_at: datetime
    state: RolloutState = RolloutState.PENDING
    spec: DeploymentSpec | None = None
    previous_spec: DeploymentSpec | None = None
    artifact: ArtifactRef | None = None
    finished_at: datetime | None = None
    cause: str | None = None
    rollback_cause: str | None = None

    @property
    def status(self) -> RolloutStatus:
        return self.state.status

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def spec_version(self) -> int | None:
        return self.spec.version if self.spec else None

    def transition(self, state: RolloutState, **changes) -> "RolloutRecord":
        if state not in TRANSITIONS[self.state]:
            raise ValueError(f"Rollout {self.id} cannot move from {self.state.value} to {state.value}")
        if state.is_terminal:
            changes.setdefault("finished_at", datetime.now(timezone.utc))
        return replace(self, state=state, **changes)
