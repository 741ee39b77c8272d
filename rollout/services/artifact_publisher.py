import hashlib
import logging
import os

from rollout.clients.builder_client import BuilderClient
from rollout.clients.image_registry_client import ImageRegistryClient
from rollout.config import RetrySettings
from rollout.errors import BuildError, PublishError
from rollout.models import ArtifactRef, BuildSource
from rollout.utils.logging import setup_logger
from rollout.utils.retry import RetryPolicy

CONTENT_TAG_PREFIX = "build-"


def hash_build_context(context: str, dockerfile: str | None = None) -> str:
    """sha256 over the sorted relative paths and bytes of every file in the context.

    An explicit ``dockerfile`` is hashed as well, with its path relative to the
    context, so the same context built by another Dockerfile gets another hash
    even when that Dockerfile lives outside the context.
    """
    if not os.path.isdir(context):
        raise BuildError(f"Build context {context} is not a directory")
    digest = hashlib.sha256()
    paths = []
    for root, dirs, files in os.walk(context):
        dirs[:] = [d for d in dirs if d != ".git"]
        paths.extend(os.path.join(root, name) for name in files)
    for path in sorted(paths, key=lambda p: os.path.relpath(p, context)):
        relative = os.path.relpath(path, context).replace(os.sep, "/")
        digest.update(relative.encode())
        digest.update(b"\0")
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        digest.update(b"\0")
    if dockerfile:
        if not os.path.isfile(dockerfile):
            raise BuildError(f"Dockerfile {dockerfile} does not exist")
        relative = os.path.relpath(os.path.abspath(dockerfile), os.path.abspath(context)).replace(os.sep, "/")
        digest.update(b"dockerfile\0" + relative.encode() + b"\0")
        with open(dockerfile, "rb") as f:
            digest.update(f.read())
    return digest.hexdigest()


def content_tag(source: BuildSource) -> str:
    return f"{CONTENT_TAG_PREFIX}{hash_build_context(source.context, source.dockerfile)[:12]}"


class ArtifactPublisher:
    def __init__(
        self,
        builder: BuilderClient,
        registry: ImageRegistryClient,
        retry: RetrySettings | None = None,
    ):
        self.builder: BuilderClient = builder
        self.registry: ImageRegistryClient = registry
        self.retry_policy: RetryPolicy = RetryPolicy(retry, retryable=(BuildError, PublishError))
        self.logger: logging.Logger = setup_logger("ArtifactPublisher")

    def publish(self, source: BuildSource) -> ArtifactRef:
        tag = content_tag(source)
        image = f"{source.repository}:{tag}"
        return self.retry_policy.call(self._publish_once, source, tag, image)

    def _publish_once(self, source: BuildSource, tag: str, image: str) -> ArtifactRef:
        if self.registry.exists(source.repository, tag):
            digest = self.registry.resolve_digest(source.repository, tag)
            self.logger.info(f"{image} already published as {digest}, skipping build")
            return ArtifactRef(repository=source.repository, digest=digest)

        self.logger.info(f"Building {image} from {source.context}")
        self.builder.build(source.context, image, source.dockerfile)
        self.logger.info(f"Pushing {image}")
        self.builder.push(image)
        digest = self.registry.resolve_digest(source.repository, tag)
        self.logger.info(f"Published {image} as {digest}")
        return ArtifactRef(repository=source.repository, digest=digest)

    def verify(self, artifact: ArtifactRef) -> ArtifactRef:
        def check() -> ArtifactRef:
            if not self.registry.exists(artifact.repository, artifact.digest):
                raise PublishError(f"Artifact {artifact.image} not found in registry")
            return artifact

        result = self.retry_policy.call(check)
        self.logger.info(f"Verified {artifact.image}")
        return result
