from pydantic.dataclasses import dataclass

@dataclass(frozen=True)
class BuildSource:
    context: str
    repository: str
    dockerfile: str | None = None
