import logging
import os
import socket
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from rollout.clients.builder_client import BuilderClient
from rollout.clients.cluster_client import ClusterClient
from rollout.clients.image_registry_client import ImageRegistryClient
from rollout.config import Settings
from rollout.errors import (
    ApplyError,
    BuildError,
    ConcurrentRolloutError,
    NotCancellableError,
    PublishError,
    ReconcileTimeout,
    RolloutAborted,
    RolloutNotFoundError,
    ValidationError,
)
from rollout.models import ArtifactRef, BuildSource, DeploymentSpec, RolloutRecord, RolloutState
from rollout.repositories import RolloutLogRepository, TemplateRepository
from rollout.services.artifact_publisher import ArtifactPublisher, content_tag
from rollout.services.cluster_reconciler import ClusterReconciler
from rollout.services.spec_resolver import SpecResolver, flatten
from rollout.utils.logging import setup_logger


@dataclass
class ActiveRollout:
    record: RolloutRecord
    source: ArtifactRef | BuildSource
    overrides: dict[str, Any]
    abort: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    future: Future | None = None


class RolloutController:
    """Drives one rollout per workload through resolve, publish, apply and verify.

    State machine:
        Pending -> Resolving -> Publishing -> Applying -> Verifying -> Succeeded
        Applying | Verifying -> RollingBack -> RolledBack | Failed

    Validation, build and publish failures end in Failed without touching
    the cluster. Apply failures, readiness timeouts and operator cancels
    during Applying/Verifying roll back to the last succeeded spec of the
    workload. Every transition is appended to the rollout log.
    """

    def __init__(
        self,
        resolver: SpecResolver,
        publisher: ArtifactPublisher,
        reconciler: ClusterReconciler,
        rollout_log: RolloutLogRepository,
        templates: TemplateRepository,
        max_workers: int = 4,
        id_factory: Callable[[str], str] | None = None,
        lease_seconds: float = 30.0,
    ):
        self.resolver: SpecResolver = resolver
        self.publisher: ArtifactPublisher = publisher
        self.reconciler: ClusterReconciler = reconciler
        self.rollout_log: RolloutLogRepository = rollout_log
        self.templates: TemplateRepository = templates
        self.id_factory: Callable[[str], str] = id_factory or (lambda workload: f"{workload}-{uuid.uuid4().hex[:8]}")
        self.executor: ThreadPoolExecutor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rollout")
        self.logger: logging.Logger = setup_logger("RolloutController")
        self._lock: threading.Lock = threading.Lock()
        self._workload_locks: dict[str, str] = {}
        self._active: dict[str, ActiveRollout] = {}
        self.lease_seconds: float = lease_seconds
        self.owner: str = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:6]}"
        self._stopping: threading.Event = threading.Event()
        self._heartbeat: threading.Thread | None = None

    def __enter__(self) -> "RolloutController":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
        self._stopping.set()
        if self._heartbeat and wait:
            self._heartbeat.join()

    def start_rollout(
        self,
        workload: str,
        artifact: ArtifactRef | BuildSource,
        overrides: dict[str, Any] | None = None,
    ) -> str:
        with self._lock:
            holder = self._workload_locks.get(workload)
            if holder:
                raise ConcurrentRolloutError(f"Rollout {holder} of {workload} is still in progress")
            rollout_id = self.id_factory(workload)
            record = RolloutRecord(
                id=rollout_id,
                workload=workload,
                started_at=datetime.now(timezone.utc),
                artifact=artifact if isinstance(artifact, ArtifactRef) else None,
            )
            active = ActiveRollout(record=record, source=artifact, overrides=dict(overrides or {}))
            self._workload_locks[workload] = rollout_id
            self._active[rollout_id] = active

        try:
            self.rollout_log.claim(record, self.owner, self.lease_seconds)
        except Exception:
            self._forget(active)
            raise
        try:
            self._start_heartbeat()
            active.future = self.executor.submit(self._run, active)
        except Exception:
            self._release(active)
            raise
        self.logger.info(f"Started rollout {rollout_id} of {workload}")
        return rollout_id

    def get_rollout_status(self, rollout_id: str) -> RolloutRecord:
        with self._lock:
            active = self._active.get(rollout_id)
            if active:
                return active.record
        record = self.rollout_log.find_by_id(rollout_id)
        if record is None:
            raise RolloutNotFoundError(f"Unknown rollout {rollout_id}")
        return record

    def cancel_rollout(self, rollout_id: str) -> RolloutRecord:
        with self._lock:
            active = self._active.get(rollout_id)
            if active is None:
                raise NotCancellableError(f"Rollout {rollout_id} is not in progress")
            state = active.record.state
            if state.is_terminal or state == RolloutState.ROLLING_BACK:
                raise NotCancellableError(f"Rollout {rollout_id} cannot be cancelled while {state.value}")
            active.abort.set()
            self.logger.warning(f"Cancel requested for rollout {rollout_id} during {state.value}")
            return active.record

    def wait(self, rollout_id: str, timeout: float | None = None) -> RolloutRecord:
        with self._lock:
            active = self._active.get(rollout_id)
        if active:
            active.done.wait(timeout)
        return self.get_rollout_status(rollout_id)

    def history(self, workload: str) -> list[RolloutRecord]:
        return self.rollout_log.find_by_workload(workload)

    def recover_interrupted(self) -> list[RolloutRecord]:
        """Finalize as Failed the unfinished rollouts whose orchestrator stopped.

        Rollouts still covered by a live lease belong to a running
        orchestrator, possibly in another process, and are left alone.
        """
        def interrupted(record: RolloutRecord) -> RolloutRecord | None:
            with self._lock:
                if record.id in self._active:
                    return None
            return record.transition(
                RolloutState.FAILED, cause=f"Interrupted: orchestrator stopped during {record.state.value}"
            )

        recovered = self.rollout_log.finalize_orphans(interrupted)
        for record in recovered:
            self.logger.warning(f"Marked interrupted rollout {record.id} of {record.workload} as Failed")
        return recovered

    def _run(self, active: ActiveRollout) -> None:
        try:
            self._drive(active)
        except Exception as e:
            self.logger.exception(f"Rollout {active.record.id} crashed")
            if active.record.state == RolloutState.ROLLING_BACK:
                self._advance(active, RolloutState.FAILED, rollback_cause=f"Unexpected error: {e}")
            elif not active.record.is_terminal:
                self._advance(active, RolloutState.FAILED, cause=f"Unexpected error: {e}")
        finally:
            self._release(active)

    def _drive(self, active: ActiveRollout) -> None:
        workload = active.record.workload

        self._advance(active, RolloutState.RESOLVING)
        if self._stop_if_cancelled(active):
            return
        previous = self.rollout_log.find_last_succeeded(workload)
        try:
            spec = self._resolve(active)
        except ValidationError as e:
            self._advance(active, RolloutState.FAILED, cause=f"Validation failed: {e}")
            return
        except BuildError as e:
            self._advance(active, RolloutState.FAILED, cause=f"BuildError: {e}")
            return

        self._advance(
            active,
            RolloutState.PUBLISHING,
            spec=spec,
            previous_spec=previous.spec if previous else None,
        )
        if self._stop_if_cancelled(active):
            return
        try:
            if isinstance(active.source, ArtifactRef):
                artifact = self.publisher.verify(active.source)
            else:
                artifact = self.publisher.publish(active.source)
        except (BuildError, PublishError) as e:
            self._advance(active, RolloutState.FAILED, cause=f"{type(e).__name__}: {e}")
            return

        spec = spec.pin(artifact)
        if not self._advance_unless_cancelled(active, RolloutState.APPLYING, spec=spec, artifact=artifact):
            return
        try:
            if active.abort.is_set():
                raise RolloutAborted("Cancelled by operator")
            self.reconciler.apply(spec)
            self._advance(active, RolloutState.VERIFYING)
            self.reconciler.wait_until_ready(spec, active.abort)
        except (ApplyError, ReconcileTimeout, RolloutAborted) as e:
            self._roll_back(active, f"{type(e).__name__}: {e}")
            return

        self._advance(active, RolloutState.SUCCEEDED)

    def _resolve(self, active: ActiveRollout) -> DeploymentSpec:
        return resolve_rollout_spec(
            self.resolver,
            self.templates,
            self.rollout_log,
            active.record.workload,
            active.source,
            active.overrides,
        )

    def _roll_back(self, active: ActiveRollout, cause: str) -> None:
        self._advance(active, RolloutState.ROLLING_BACK, cause=cause)
        previous = active.record.previous_spec
        if previous is None:
            self._advance(active, RolloutState.FAILED, rollback_cause="No previous successful rollout to restore")
            return
        try:
            # rollback ignores the abort signal, it must run to completion
            self.reconciler.reconcile(previous)
        except (ApplyError, ReconcileTimeout) as e:
            self._advance(
                active,
                RolloutState.FAILED,
                rollback_cause=f"Rollback to version {previous.version} failed: {type(e).__name__}: {e}",
            )
            return
        self._advance(active, RolloutState.ROLLED_BACK)

    def _stop_if_cancelled(self, active: ActiveRollout) -> bool:
        if not active.abort.is_set():
            return False
        self._advance(
            active,
            RolloutState.FAILED,
            cause=f"Cancelled by operator during {active.record.state.value}",
        )
        return True

    def _advance_unless_cancelled(self, active: ActiveRollout, state: RolloutState, **changes) -> bool:
        """Move to ``state``, or to Failed when a cancel was acknowledged first."""
        with self._lock:
            cancelled = active.abort.is_set()
            if cancelled:
                changes = {"cause": f"Cancelled by operator during {active.record.state.value}"}
                state = RolloutState.FAILED
            active.record = active.record.transition(state, **changes)
            record = active.record
        self._log_transition(record)
        return not cancelled

    def _advance(self, active: ActiveRollout, state: RolloutState, **changes) -> None:
        with self._lock:
            active.record = active.record.transition(state, **changes)
            record = active.record
        self._log_transition(record)

    def _log_transition(self, record: RolloutRecord) -> None:
        state = record.state
        self.rollout_log.append(record)
        message = f"Rollout {record.id} of {record.workload}: {state.value}"
        if state == RolloutState.FAILED:
            details = "; ".join(c for c in (record.cause, record.rollback_cause) if c)
            self.logger.error(f"{message} ({details})")
        elif state in (RolloutState.ROLLING_BACK, RolloutState.ROLLED_BACK):
            self.logger.warning(f"{message} ({record.cause})")
        else:
            self.logger.info(message)

    def _release(self, active: ActiveRollout) -> None:
        try:
            self.rollout_log.release(active.record.id)
        except Exception:
            self.logger.exception(f"Cannot release lease of rollout {active.record.id}, it expires on its own")
        finally:
            self._forget(active)

    def _forget(self, active: ActiveRollout) -> None:
        with self._lock:
            if self._workload_locks.get(active.record.workload) == active.record.id:
                del self._workload_locks[active.record.workload]
            self._active.pop(active.record.id, None)
        active.done.set()

    def _start_heartbeat(self) -> None:
        with self._lock:
            if self._heartbeat is None:
                self._heartbeat = threading.Thread(
                    target=self._renew_leases, name="rollout-heartbeat", daemon=True
                )
                self._heartbeat.start()

    def _renew_leases(self) -> None:
        while not self._stopping.wait(self.lease_seconds / 3):
            with self._lock:
                rollout_ids = list(self._active)
            for rollout_id in rollout_ids:
                try:
                    renewed = self.rollout_log.renew(rollout_id, self.lease_seconds)
                    if not renewed and rollout_id in self._active:
                        self.logger.warning(f"Lease of rollout {rollout_id} is gone")
                except Exception:
                    self.logger.exception(f"Cannot renew lease of rollout {rollout_id}")


def resolve_rollout_spec(
    resolver: SpecResolver,
    templates: TemplateRepository,
    rollout_log: RolloutLogRepository,
    workload: str,
    source: ArtifactRef | BuildSource,
    overrides: dict[str, Any],
) -> DeploymentSpec:
    """Resolve the spec a rollout of ``workload`` would apply, before publishing.

    The template name is forced to the workload and the artifact fills in the
    image. Overrides may not touch ``image.*``, the artifact alone decides it.
    For a build source the image carries the content tag until the publisher
    pins the digest.
    """
    flat_overrides = flatten(overrides)
    if flat_overrides.get("name", workload) != workload:
        raise ValidationError(f"Override name={flat_overrides['name']} does not match workload {workload}")
    image_keys = sorted(k for k in flat_overrides if k.startswith("image."))
    if image_keys:
        raise ValidationError(
            f"Override(s) {', '.join(image_keys)} conflict with the rollout artifact, pass the image as the artifact"
        )

    try:
        base = flatten(templates.load())
    except ValueError as e:
        raise ValidationError(str(e)) from e
    base["name"] = workload
    if isinstance(source, ArtifactRef):
        base.update({"image.repository": source.repository, "image.digest": source.digest})
        base.pop("image.tag", None)
    else:
        base.update({"image.repository": source.repository, "image.tag": content_tag(source)})
        base.pop("image.digest", None)

    versions = [r.spec_version for r in rollout_log.find_by_workload(workload) if r.spec_version]
    return resolver.resolve(base, flat_overrides, version=max(versions, default=0) + 1)


def build_controller(settings: Settings) -> RolloutController:
    resolver = SpecResolver()
    publisher = ArtifactPublisher(BuilderClient(), ImageRegistryClient(settings.registry), settings.retry)
    reconciler = ClusterReconciler(ClusterClient(settings.cluster), settings.reconcile, resolver)
    return RolloutController(
        resolver=resolver,
        publisher=publisher,
        reconciler=reconciler,
        rollout_log=RolloutLogRepository(settings.records_file),
        templates=TemplateRepository(settings.template_file),
        max_workers=settings.max_workers,
        lease_seconds=settings.lease_seconds,
    )
