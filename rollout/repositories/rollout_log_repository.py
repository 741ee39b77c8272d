import fcntl
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator

from pydantic import TypeAdapter
from ruamel.yaml import YAML

from rollout.errors import ConcurrentRolloutError
from rollout.models import RolloutRecord, RolloutState, WorkloadLease
from rollout.models.wrappers import RolloutLogFile
from rollout.utils.yaml_loader import get_yaml_instance


class RolloutLogRepository:
    """Append-only log of rollout record revisions, plus the workload leases.

    Every call to ``append`` adds a revision; nothing is ever rewritten in
    place. The latest revision of an id is the current state of that rollout.

    Writers hold an exclusive ``flock`` on ``<file>.lock``, so orchestrators in
    other processes sharing the file never lose each other's revisions. The
    file is replaced atomically, readers always see a complete log.
    """

    def __init__(self, file_path: str):
        self.file_path: str = file_path
        self.lock_path: str = f"{file_path}.lock"
        self.yaml: YAML = get_yaml_instance()
        self.adapter: TypeAdapter = TypeAdapter(RolloutLogFile)
        self.lock: threading.Lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Generator[None, None, None]:
        with self.lock:
            Path(self.lock_path).touch(exist_ok=True)
            lock_fd = os.open(self.lock_path, os.O_RDWR)
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX)
                yield
            finally:
                fcntl.flock(lock_fd, fcntl.LOCK_UN)
                os.close(lock_fd)

    def _read(self) -> RolloutLogFile:
        if not os.path.isfile(path=Path(self.file_path)):
            return RolloutLogFile()
        with open(self.file_path, "r") as f:
            data = self.yaml.load(f)
        if not data:
            return RolloutLogFile()
        try:
            return RolloutLogFile(**data)
        except Exception as e:
            raise ValueError(f"Invalid {os.path.basename(self.file_path)}: {e}") from e

    def find_all(self) -> list[RolloutRecord]:
        return self._read().records

    def find_leases(self) -> list[WorkloadLease]:
        return self._read().leases

    def find_by_id(self, id: str) -> RolloutRecord | None:
        return next((r for r in reversed(self.find_all()) if r.id == id), None)

    def find_latest(self) -> list[RolloutRecord]:
        """Latest revision of every rollout, newest rollout first."""
        return latest_revisions(self.find_all())

    def find_by_workload(self, workload: str) -> list[RolloutRecord]:
        return [r for r in self.find_latest() if r.workload == workload]

    def find_last_succeeded(self, workload: str) -> RolloutRecord | None:
        return next(
            (r for r in self.find_by_workload(workload) if r.state == RolloutState.SUCCEEDED),
            None,
        )

    def append(self, record: RolloutRecord) -> bool:
        with self._locked():
            log = self._read()
            return self._write(replace(log, records=[*log.records, record]))

    def claim(self, record: RolloutRecord, owner: str, lease_seconds: float) -> WorkloadLease:
        """Lease ``record.workload`` to ``record`` and append it, unless a live lease holds the workload."""
        with self._locked():
            log = self._read()
            holder = next((held for held in log.leases if held.workload == record.workload and held.is_live()), None)
            if holder:
                raise ConcurrentRolloutError(
                    f"Rollout {holder.rollout_id} of {record.workload} is still in progress on {holder.owner}"
                )
            lease = WorkloadLease(
                workload=record.workload,
                rollout_id=record.id,
                owner=owner,
                expires_at=lease_expiry(lease_seconds),
            )
            leases = [held for held in log.leases if held.workload != record.workload]
            self._write(RolloutLogFile(records=[*log.records, record], leases=[*leases, lease]))
            return lease

    def renew(self, rollout_id: str, lease_seconds: float) -> bool:
        with self._locked():
            log = self._read()
            if not any(held.rollout_id == rollout_id for held in log.leases):
                return False
            leases = [
                replace(held, expires_at=lease_expiry(lease_seconds)) if held.rollout_id == rollout_id else held
                for held in log.leases
            ]
            return self._write(replace(log, leases=leases))

    def release(self, rollout_id: str) -> bool:
        with self._locked():
            log = self._read()
            leases = [held for held in log.leases if held.rollout_id != rollout_id]
            if len(leases) == len(log.leases):
                return False
            return self._write(replace(log, leases=leases))

    def finalize_orphans(
        self, finalize: Callable[[RolloutRecord], RolloutRecord | None]
    ) -> list[RolloutRecord]:
        """Append ``finalize(record)`` for every unfinished rollout no live lease covers.

        Expired leases of those rollouts are dropped. ``finalize`` may return
        None to leave a rollout alone.
        """
        with self._locked():
            log = self._read()
            leased = {held.rollout_id for held in log.leases if held.is_live()}
            finalized = []
            for record in latest_revisions(log.records):
                if record.is_terminal or record.id in leased:
                    continue
                revision = finalize(record)
                if revision is not None:
                    finalized.append(revision)
            if finalized:
                done = {r.id for r in finalized}
                leases = [held for held in log.leases if held.rollout_id not in done]
                self._write(RolloutLogFile(records=[*log.records, *finalized], leases=leases))
            return finalized

    def _write(self, log: RolloutLogFile) -> bool:
        data = self.adapter.dump_python(log, mode="json")
        directory = os.path.dirname(os.path.abspath(self.file_path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(self.file_path)}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                self.yaml.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.file_path)
            return True
        except Exception as e:
            raise Exception(f"Error writing rollout log: {e}") from e
        finally:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)


def latest_revisions(records: list[RolloutRecord]) -> list[RolloutRecord]:
    latest: dict[str, RolloutRecord] = {}
    for record in records:
        latest[record.id] = record
    return sorted(latest.values(), key=lambda r: r.started_at, reverse=True)


def lease_expiry(lease_seconds: float) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=lease_seconds)
