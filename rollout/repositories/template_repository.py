import os
from typing import Any

from ruamel.yaml import YAML

from rollout.utils.yaml_loader import get_yaml_instance


class TemplateRepository:
    def __init__(self, file_path: str):
        self.file_path: str = file_path
        self.yaml: YAML = get_yaml_instance()

    def load(self) -> dict[str, Any]:
        if not os.path.isfile(self.file_path):
            return {}
        with open(self.file_path, "r") as f:
            data = self.yaml.load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Invalid {os.path.basename(self.file_path)}: expected a mapping at top level")
        return _to_plain(data)


def _to_plain(value: Any) -> Any:
    # ruamel round-trip containers keep comments and anchors around; the
    # resolver only needs plain data
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return value
