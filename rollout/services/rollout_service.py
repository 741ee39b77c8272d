import logging
import sys
from typing import Any

from typing_extensions import override

from rollout.config import Settings
from rollout.errors import NotCancellableError
from rollout.models import ArtifactRef, BuildSource, RolloutState
from rollout.repositories import RolloutLogRepository, TemplateRepository
from rollout.services.rollout_controller import RolloutController, build_controller, resolve_rollout_spec
from rollout.services.service import Service
from rollout.services.spec_resolver import SpecResolver
from rollout.utils.logging import setup_logger
from rollout.utils.yaml_loader import get_yaml_instance


class RolloutService(Service):
    def __init__(
        self,
        settings: Settings,
        workload: str,
        artifact: ArtifactRef | BuildSource,
        overrides: dict[str, Any] | None = None,
        dry_run: bool = False,
        wait_interval: float = 1.0,
    ):
        self.settings: Settings = settings
        self.workload: str = workload
        self.artifact: ArtifactRef | BuildSource = artifact
        self.overrides: dict[str, Any] = overrides or {}
        self.dry_run: bool = dry_run
        self.wait_interval: float = wait_interval
        self.logger: logging.Logger = setup_logger("RolloutService")

    def create_controller(self) -> RolloutController:
        return build_controller(self.settings)

    @override
    def run(self) -> None:
        if self.dry_run:
            self.print_manifests()
            return

        with self.create_controller() as controller:
            for record in controller.recover_interrupted():
                self.logger.warning(f"Recovered interrupted rollout {record.id}")
            rollout_id = controller.start_rollout(self.workload, self.artifact, self.overrides)
            record = self.wait_for(controller, rollout_id)

        if record.state != RolloutState.SUCCEEDED:
            details = "; ".join(c for c in (record.cause, record.rollback_cause) if c)
            raise Exception(f"Rollout {rollout_id} ended {record.state.value}: {details}")
        self.logger.info(f"Rollout {rollout_id} succeeded with spec version {record.spec_version}")

    def wait_for(self, controller: RolloutController, rollout_id: str):
        cancelled = False
        while True:
            try:
                record = controller.wait(rollout_id, timeout=self.wait_interval)
                if record.is_terminal:
                    return record
            except KeyboardInterrupt:
                if cancelled:
                    raise
                self.logger.warning(f"Interrupted, cancelling rollout {rollout_id}")
                cancelled = True
                try:
                    controller.cancel_rollout(rollout_id)
                except NotCancellableError as e:
                    self.logger.warning(f"{e}, waiting for it to finish")

    def print_manifests(self) -> None:
        resolver = SpecResolver()
        spec = resolve_rollout_spec(
            resolver,
            TemplateRepository(self.settings.template_file),
            RolloutLogRepository(self.settings.records_file),
            self.workload,
            self.artifact,
            self.overrides,
        )
        self.logger.info(f"Dry run mode. {spec.name} version {spec.version} has not been applied")
        get_yaml_instance(explicit_start=True).dump_all(resolver.render(spec), sys.stdout)
