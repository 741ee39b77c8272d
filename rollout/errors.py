class RolloutError(Exception):
    """Base class for every failure the orchestrator reports."""


class ValidationError(RolloutError):
    """Template or overrides cannot be resolved into a deployment spec. Never retried."""


class BuildError(RolloutError):
    """The container builder failed to build the image."""


class PublishError(RolloutError):
    """The registry rejected a push or could not confirm an artifact."""


class ApplyError(RolloutError):
    """The cluster rejected a manifest (malformed, forbidden, conflict)."""


class ReconcileTimeout(RolloutError):
    """Replicas did not become ready within the polling bound."""


class RolloutAborted(RolloutError):
    """An operator cancelled the rollout while it was in flight."""


class ConcurrentRolloutError(RolloutError):
    """Another rollout holds the lock for the same workload."""


class NotCancellableError(RolloutError):
    pass


class RolloutNotFoundError(RolloutError):
    pass
