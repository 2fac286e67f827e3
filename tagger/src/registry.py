from __future__ import annotations

import logging
from dataclasses import dataclass

import requests

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"

_DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io"})
# docker.io is an alias; the v2 API is served from this host.
_REGISTRY_API_HOSTS = {"docker.io": "registry-1.docker.io"}

MANIFEST_ACCEPT_TYPES = (
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)

LOGGER = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    """Raised when an image reference cannot be resolved against its registry."""


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference.

    Exactly one of ``tag`` and ``digest`` is set.
    """

    registry: str
    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        """Parse and normalize an image reference.

        Examples:
            app                      -> docker.io/library/app:latest
            acme/app:v1              -> docker.io/acme/app:v1
            quay.io/acme/app         -> quay.io/acme/app:latest
            localhost:5000/app@sha256:... keeps the digest
        """
        image = image.strip()
        if not image:
            raise ValueError("empty image reference")

        digest = None
        if "@" in image:
            image, digest = image.split("@", 1)

        tag = None
        last_slash = image.rfind("/")
        last_colon = image.rfind(":")
        if last_colon > last_slash:
            image, tag = image[:last_colon], image[last_colon + 1 :]
        if not tag and not digest:
            tag = DEFAULT_TAG

        first, _, rest = image.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry, repository = DEFAULT_REGISTRY, image

        if registry in _DOCKER_HUB_ALIASES:
            registry = DEFAULT_REGISTRY
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = f"{DEFAULT_NAMESPACE}/{repository}"
        if not repository:
            raise ValueError(f"invalid image reference: {image!r}")

        return cls(
            registry=registry,
            repository=repository,
            tag=None if digest else tag,
            digest=digest,
        )

    @property
    def api_host(self) -> str:
        return _REGISTRY_API_HOSTS.get(self.registry, self.registry)

    def __str__(self) -> str:
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag}"


def normalize_reference(image: str) -> str:
    """Return the canonical string form of *image*, used to compare references."""
    return str(ImageReference.parse(image))


class RegistryClient:
    """Resolves tags to digest-pinned references through the registry v2 API.

    Only anonymous pulls are supported: a ``401`` is answered with the bearer
    token exchange advertised in ``WWW-Authenticate``.
    """

    def __init__(self, timeout: float = 10, session: requests.Session | None = None) -> None:
        self.timeout = timeout
        self.session = session or requests.Session()

    def resolve(self, image: str, timeout: float | None = None) -> str:
        """Return ``registry/repository@digest`` for *image*."""
        try:
            ref = ImageReference.parse(image)
        except ValueError as exc:
            raise RegistryError(str(exc)) from exc
        if ref.digest:
            return str(ref)

        timeout = self.timeout if timeout is None else min(timeout, self.timeout)
        try:
            response = self._fetch_manifest(ref, timeout)
        except requests.RequestException as exc:
            raise RegistryError(f"failed to fetch manifest for {ref}: {exc}") from exc

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(f"no digest header returned for {ref}")
        LOGGER.debug("Resolved %s to %s", ref, digest)
        return f"{ref.registry}/{ref.repository}@{digest}"

    def _fetch_manifest(self, ref: ImageReference, timeout: float) -> requests.Response:
        headers = {"Accept": ", ".join(MANIFEST_ACCEPT_TYPES)}
        url = f"https://{ref.api_host}/v2/{ref.repository}/manifests/{ref.tag}"

        response = self.session.get(url, headers=headers, timeout=timeout)
        if response.status_code == 401:
            token = self._get_bearer_token(
                response.headers.get("WWW-Authenticate"), ref.repository, timeout
            )
            if token:
                headers["Authorization"] = f"Bearer {token}"
                response = self.session.get(url, headers=headers, timeout=timeout)

        response.raise_for_status()
        return response

    def _get_bearer_token(
        self, auth_header: str | None, repository: str, timeout: float
    ) -> str | None:
        params = self._parse_auth_header(auth_header)
        realm = params.get("realm")
        if not realm:
            return None

        query = {"scope": params.get("scope", f"repository:{repository}:pull")}
        if service := params.get("service"):
            query["service"] = service

        try:
            response = self.session.get(realm, params=query, timeout=timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError):
            LOGGER.warning("Token exchange with %s failed", realm, exc_info=True)
            return None
        return data.get("token") or data.get("access_token")

    @staticmethod
    def _parse_auth_header(header: str | None) -> dict[str, str]:
        """Parse a ``Bearer realm="...",service="..."`` challenge."""
        if not header:
            return {}
        scheme, _, params_str = header.partition(" ")
        if scheme.lower() != "bearer":
            return {}

        params = {}
        for part in params_str.split(","):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            params[key.strip()] = value.strip().strip('"')
        return params
