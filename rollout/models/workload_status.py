from pydantic.dataclasses import dataclass

@dataclass(frozen=True)
class WorkloadStatus:
    desired_replicas: int
    ready_replicas: int = 0
    updated_replicas: int = 0
    generation: int = 0
    observed_generation: int = 0

    @property
    def is_ready(self) -> bool:
        return (
            self.observed_generation >= self.generation
            and self.updated_replicas >= self.desired_replicas
            and self.ready_replicas >= self.desired_replicas
        )

    def __str__(self) -> str:
        return f"{self.ready_replicas}/{self.desired_replicas} ready"
