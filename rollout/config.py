import os
from dataclasses import field, replace
from typing import Annotated

from pydantic import Field
from pydantic.dataclasses import dataclass

from rollout.utils.yaml_loader import get_yaml_instance

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


@dataclass(frozen=True)
class RegistrySettings:
    url: str | None = None  # defaults to https://<host of the image repository>
    username: str | None = None
    password: str | None = None
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class ClusterSettings:
    kubeconfig: str | None = None
    context: str | None = None
    in_cluster: bool = False


@dataclass(frozen=True)
class ReconcileSettings:
    poll_interval_seconds: Annotated[float, Field(gt=0)] = 5.0
    max_polls: Annotated[int, Field(ge=1)] = 24
    timeout_seconds: Annotated[float, Field(gt=0)] = 120.0


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: Annotated[int, Field(ge=1)] = 3
    initial_delay_seconds: Annotated[float, Field(ge=0)] = 1.0
    backoff_multiplier: Annotated[float, Field(ge=1)] = 2.0
    max_delay_seconds: Annotated[float, Field(ge=0)] = 30.0
    jitter: bool = True


@dataclass(frozen=True)
class Settings:
    registry: RegistrySettings = field(default_factory=RegistrySettings)
    cluster: ClusterSettings = field(default_factory=ClusterSettings)
    reconcile: ReconcileSettings = field(default_factory=ReconcileSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    records_file: str = f"{ROOT_DIR}/rollouts.yaml"
    template_file: str = f"{ROOT_DIR}/deployment.yaml"
    max_workers: Annotated[int, Field(ge=1)] = 4
    lease_seconds: Annotated[float, Field(gt=0)] = 30.0


def load_settings(file_path: str | None = None) -> Settings:
    file_path = file_path or os.environ.get("ROLLOUT_CONFIG_FILE", f"{ROOT_DIR}/rollout.yaml")
    data = {}
    if os.path.isfile(file_path):
        with open(file_path, "r") as f:
            data = get_yaml_instance().load(f) or {}
    try:
        settings = Settings(**data)
    except Exception as e:
        raise ValueError(f"Invalid {os.path.basename(file_path)}: {e}") from e

    username = os.environ.get("ROLLOUT_REGISTRY_USERNAME")
    password = os.environ.get("ROLLOUT_REGISTRY_PASSWORD")
    if username or password:
        registry = replace(
            settings.registry,
            username=username or settings.registry.username,
            password=password or settings.registry.password,
        )
        settings = replace(settings, registry=registry)
    return settings
