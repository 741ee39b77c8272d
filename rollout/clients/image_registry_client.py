import re

import requests
import logging

from rollout.config import RegistrySettings
from rollout.errors import PublishError

logger = logging.getLogger(__name__)

MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])

CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_bearer_challenge(header: str) -> dict[str, str] | None:
    """Parameters of a ``WWW-Authenticate: Bearer realm=...,service=...,scope=...`` header."""
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    challenge = dict(CHALLENGE_PARAM.findall(params))
    return challenge if "realm" in challenge else None


class ImageRegistryClient:
    def __init__(self, settings: RegistrySettings | None = None):
        self.settings: RegistrySettings = settings or RegistrySettings()
        self.tokens: dict[str, str] = {}

    def locate(self, repository: str) -> tuple[str, str]:
        """Registry base URL and repository path of an image name."""
        host, _, path = repository.partition("/")
        if not path or ("." not in host and ":" not in host and host != "localhost"):
            # no registry host in the name, so it lives on Docker Hub
            host, path = "registry-1.docker.io", repository
            if "/" not in path:
                path = f"library/{path}"
        return (self.settings.url or f"https://{host}").rstrip("/"), path

    def manifest_url(self, repository: str, reference: str) -> str:
        base, path = self.locate(repository)
        return f"{base}/v2/{path}/manifests/{reference}"

    @property
    def basic_auth(self) -> tuple[str, str] | None:
        if self.settings.username and self.settings.password:
            return self.settings.username, self.settings.password
        return None

    def _request(self, method: str, repository: str, reference: str) -> requests.Response:
        url = self.manifest_url(repository, reference)
        try:
            response = self._send(method, url, repository)
            if response.status_code == 401:
                challenge = parse_bearer_challenge(response.headers.get("WWW-Authenticate", ""))
                if challenge:
                    self.tokens[repository] = self._fetch_token(challenge, repository)
                    response = self._send(method, url, repository)
            return response
        except requests.RequestException as e:
            raise PublishError(f"Registry unreachable for {repository}:{reference}: {e}") from e

    def _send(self, method: str, url: str, repository: str) -> requests.Response:
        headers = {"Accept": MANIFEST_MEDIA_TYPES}
        auth = self.basic_auth
        token = self.tokens.get(repository)
        if token:
            headers["Authorization"] = f"Bearer {token}"
            auth = None
        return requests.request(
            method,
            url,
            headers=headers,
            auth=auth,
            timeout=self.settings.timeout_seconds,
        )

    def _fetch_token(self, challenge: dict[str, str], repository: str) -> str:
        _, path = self.locate(repository)
        params = {"scope": challenge.get("scope", f"repository:{path}:pull")}
        if "service" in challenge:
            params["service"] = challenge["service"]
        response = requests.get(
            challenge["realm"],
            params=params,
            auth=self.basic_auth,
            timeout=self.settings.timeout_seconds,
        )
        if response.status_code != 200:
            raise PublishError(f"Token exchange with {challenge['realm']} failed (status code {response.status_code})")
        body = response.json()
        token = body.get("token") or body.get("access_token")
        if not token:
            raise PublishError(f"Token exchange with {challenge['realm']} returned no token")
        logger.debug(f"Obtained registry token for {repository}")
        return token

    def exists(self, repository: str, reference: str) -> bool:
        response = self._request("HEAD", repository, reference)
        if response.status_code == 200:
            return True
        if response.status_code == 404:
            return False
        if response.status_code in (401, 403):
            raise PublishError(f"Not authorized to read {repository} (status code {response.status_code})")
        raise PublishError(f"Unexpected registry response for {repository}:{reference} (status code {response.status_code})")

    def resolve_digest(self, repository: str, tag: str) -> str:
        response = self._request("GET", repository, tag)
        if response.status_code != 200:
            logger.warning(f"Failed to resolve digest: {repository}:{tag} (status code {response.status_code})")
            raise PublishError(f"Cannot resolve digest of {repository}:{tag} (status code {response.status_code})")
        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            logger.warning(f"No digest found in headers for {repository}:{tag}")
            raise PublishError(f"Registry returned no digest for {repository}:{tag}")
        return digest
