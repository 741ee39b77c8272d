import re

from pydantic import field_validator
from pydantic.dataclasses import dataclass

DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[a-fA-F0-9]+$")


@dataclass(frozen=True)
class ArtifactRef:
    repository: str
    digest: str

    @field_validator("repository")
    @classmethod
    def _check_repository(cls, value: str) -> str:
        if not value or "@" in value:
            raise ValueError(f"invalid repository {value!r}")
        return value

    @field_validator("digest")
    @classmethod
    def _check_digest(cls, value: str) -> str:
        if not DIGEST_PATTERN.match(value):
            raise ValueError(f"invalid digest {value!r}, expected <algorithm>:<hex>")
        return value

    @property
    def image(self) -> str:
        return f"{self.repository}@{self.digest}"

    @classmethod
    def parse(cls, image: str) -> "ArtifactRef":
        repository, sep, digest = image.partition("@")
        if not sep:
            raise ValueError(f"image {image!r} is not pinned to a digest")
        return cls(repository=repository, digest=digest)
