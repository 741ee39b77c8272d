import logging
import sys

from pydantic import TypeAdapter
from typing_extensions import override

from rollout.models import RolloutRecord
from rollout.repositories import RolloutLogRepository
from rollout.services.service import Service
from rollout.utils.logging import setup_logger
from rollout.utils.yaml_loader import get_yaml_instance


class HistoryService(Service):
    def __init__(self, records_file: str, workload: str, limit: int | None = None):
        self.rollout_log: RolloutLogRepository = RolloutLogRepository(records_file)
        self.workload: str = workload
        self.limit: int | None = limit
        self.logger: logging.Logger = setup_logger("HistoryService")

    @override
    def run(self) -> None:
        records = self.rollout_log.find_by_workload(self.workload)
        if not records:
            self.logger.info(f"No rollouts found for {self.workload}")
            return
        if self.limit:
            records = records[:self.limit]
        data = TypeAdapter(list[RolloutRecord]).dump_python(records, mode="json")
        for entry, record in zip(data, records):
            entry["status"] = record.status.value
        get_yaml_instance().dump(data, sys.stdout)
