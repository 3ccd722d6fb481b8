"""Registry access for image references and cached builds.

This module handles:
- Parsing image references (registry, repository, tag, digest)
- The Registry protocol consumed by the build orchestrator
- An HTTP client for the OCI distribution API that resolves digests and
  clones images from the global namespace into the private one

The private and global namespaces are addressed through the
``okteto.dev`` and ``okteto.global`` aliases, expanded against the
configured registry host.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from stackbuild.config import Settings

logger = logging.getLogger(__name__)

DEV_REGISTRY_PREFIX = "okteto.dev"
GLOBAL_REGISTRY_PREFIX = "okteto.global"

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"

MANIFEST_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v2+json",
)

# Repository used to check push access to the global namespace
PUSH_CHECK_REPOSITORY = "stackbuild-push-check"


class RegistryError(Exception):
    """Raised when a registry request fails."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message)
        self.code = code


class NotFoundError(RegistryError):
    """Raised when an image reference does not exist in the registry."""

    def __init__(self, image: str) -> None:
        super().__init__(f"Image not found: {image}", code="image_not_found")
        self.image = image


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference.

    Attributes:
        registry: Registry host (e.g. 'docker.io', 'okteto.dev').
        repository: Repository path inside the registry.
        tag: Tag, empty when the reference is digest-only.
        digest: Content digest ('sha256:...'), empty if unresolved.
    """

    registry: str
    repository: str
    tag: str = ""
    digest: str = ""

    @classmethod
    def parse(cls, image: str) -> ImageReference:
        """Parse a reference such as 'host:5000/ns/app:tag@sha256:abc'.

        Args:
            image: Image reference string.

        Returns:
            Parsed ImageReference.

        Raises:
            ValueError: If the reference is empty.
        """
        if not image:
            raise ValueError("image reference must not be empty")

        name, _, digest = image.partition("@")

        # A tag can only appear after the last path separator
        tag = ""
        last_slash = name.rfind("/")
        last_colon = name.rfind(":")
        if last_colon > last_slash:
            name, tag = name[:last_colon], name[last_colon + 1 :]

        first, sep, rest = name.partition("/")
        if sep and ("." in first or ":" in first or first == "localhost"):
            registry, repository = first, rest
        else:
            registry, repository = DEFAULT_REGISTRY, name
            if "/" not in repository:
                repository = f"library/{repository}"

        if not tag and not digest:
            tag = DEFAULT_TAG

        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def name(self) -> str:
        """Registry host and repository without tag or digest."""
        return f"{self.registry}/{self.repository}"

    def with_digest(self, digest: str) -> ImageReference:
        """Return a copy of this reference pinned to a digest."""
        return replace(self, digest=digest)

    def __str__(self) -> str:
        result = self.name
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result


class Registry(Protocol):
    """Registry collaborator consumed by the build orchestrator."""

    def resolve_digest(self, image: str) -> str:
        """Return the image reference pinned to its digest.

        Raises:
            NotFoundError: If the image does not exist.
            RegistryError: If the registry cannot be queried.
        """
        ...

    def is_shared_registry(self, image: str) -> bool:
        """Whether the image lives in the global namespace."""
        ...

    def is_private_registry(self, image: str) -> bool:
        """Whether the image lives in the caller's private namespace."""
        ...

    def clone_to_private(self, image: str, tag: str) -> str:
        """Copy a global image into the private namespace under a new tag."""
        ...

    def repository_and_tag(self, image: str) -> tuple[str, str]:
        """Split an image into repository name and tag (or digest)."""
        ...

    def image_reference(self, image: str) -> ImageReference:
        """Parse an image into a fully expanded ImageReference."""
        ...

    def has_global_push_access(self) -> bool:
        """Whether the caller may push to the global namespace."""
        ...


def _parse_manifest(content: bytes, reference: str) -> dict[str, Any]:
    """Decode a manifest body.

    Raises:
        RegistryError: If the body is not a JSON object.
    """
    try:
        manifest = json.loads(content)
    except ValueError as e:
        raise RegistryError(
            f"Registry returned an invalid manifest for {reference}: {e}",
            code="invalid_manifest",
        ) from e
    if not isinstance(manifest, dict):
        raise RegistryError(
            f"Registry returned an invalid manifest for {reference}: "
            f"expected an object, got {type(manifest).__name__}",
            code="invalid_manifest",
        )
    return manifest


def _entry_digest(entry: object, reference: str) -> str:
    digest = entry.get("digest") if isinstance(entry, dict) else None
    if not isinstance(digest, str) or not digest:
        raise RegistryError(
            f"Manifest {reference} references an entry without digest: {entry!r}",
            code="invalid_manifest",
        )
    return digest


def _manifest_children(
    manifest: dict[str, Any], reference: str = ""
) -> tuple[list[str], list[str]]:
    """Return (child manifest digests, blob digests) referenced by a manifest.

    Raises:
        RegistryError: If an entry has no digest.
    """
    children = [
        _entry_digest(entry, reference) for entry in manifest.get("manifests") or []
    ]
    blobs: list[str] = []
    config = manifest.get("config")
    if config is not None:
        blobs.append(_entry_digest(config, reference))
    blobs.extend(
        _entry_digest(layer, reference) for layer in manifest.get("layers") or []
    )
    return children, blobs


class HttpRegistry:
    """Registry client for the OCI distribution API.

    Args:
        settings: Application settings with registry host and namespaces.
        client: Optional preconfigured HTTPX client.
    """

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self.settings = settings
        headers: dict[str, str] = {}
        if settings.registry_token:
            headers["Authorization"] = f"Bearer {settings.registry_token}"
        self._owns_client = client is None
        self._client = client or httpx.Client(
            headers=headers,
            timeout=settings.registry_timeout,
            follow_redirects=True,
        )

    def close(self) -> None:
        """Close the underlying HTTP client if this registry created it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def _scheme(self) -> str:
        return "http" if self.settings.registry_insecure else "https"

    def _url(self, host: str, path: str) -> str:
        return f"{self._scheme}://{host}/v2/{path}"

    def expand(self, image: str) -> str:
        """Expand the namespace aliases of an image reference.

        Args:
            image: Image reference, possibly starting with an alias.

        Returns:
            Reference rooted at the configured registry host.
        """
        aliases = {
            f"{DEV_REGISTRY_PREFIX}/": f"{self.settings.registry_url}/{self.settings.namespace}/",
            f"{GLOBAL_REGISTRY_PREFIX}/": f"{self.settings.registry_url}/{self.settings.global_namespace}/",
        }
        for alias, target in aliases.items():
            if image.startswith(alias):
                return target + image[len(alias) :]
        return image

    def image_reference(self, image: str) -> ImageReference:
        return ImageReference.parse(self.expand(image))

    def repository_and_tag(self, image: str) -> tuple[str, str]:
        ref = self.image_reference(image)
        return ref.name, ref.tag or ref.digest

    def is_shared_registry(self, image: str) -> bool:
        prefix = f"{self.settings.registry_url}/{self.settings.global_namespace}/"
        return self.expand(image).startswith(prefix)

    def is_private_registry(self, image: str) -> bool:
        prefix = f"{self.settings.registry_url}/{self.settings.namespace}/"
        return self.expand(image).startswith(prefix)

    def _get_manifest(self, host: str, repository: str, reference: str) -> bytes:
        url = self._url(host, f"{repository}/manifests/{reference}")
        try:
            response = self._client.get(
                url, headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to fetch manifest {url}: {e}") from e
        if response.status_code == 404:
            raise NotFoundError(f"{host}/{repository}:{reference}")
        if response.status_code >= 400:
            raise RegistryError(
                f"Failed to fetch manifest {url}: HTTP {response.status_code}"
            )
        return response.content

    def resolve_digest(self, image: str) -> str:
        ref = self.image_reference(image)
        if ref.digest:
            return str(ref)

        url = self._url(ref.registry, f"{ref.repository}/manifests/{ref.tag}")
        logger.debug("Resolving digest for %s", ref)
        try:
            response = self._client.head(
                url, headers={"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to query {url}: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(image)
        if response.status_code >= 400:
            raise RegistryError(f"Failed to query {url}: HTTP {response.status_code}")

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            raise RegistryError(
                f"Registry did not return a digest for {ref}",
                code="missing_digest",
            )
        return str(ref.with_digest(digest))

    def _mount_blob(self, host: str, source: str, dest: str, digest: str) -> None:
        url = self._url(host, f"{dest}/blobs/uploads/")
        try:
            response = self._client.post(url, params={"mount": digest, "from": source})
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to mount blob {digest}: {e}") from e
        if response.status_code != 201:
            raise RegistryError(
                f"Registry refused to mount blob {digest} from {source} into {dest}: "
                f"HTTP {response.status_code}",
                code="blob_mount_failed",
            )

    def _put_manifest(
        self,
        host: str,
        repository: str,
        reference: str,
        content: bytes,
        media_type: str,
    ) -> None:
        url = self._url(host, f"{repository}/manifests/{reference}")
        try:
            response = self._client.put(
                url, content=content, headers={"Content-Type": media_type}
            )
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to push manifest {url}: {e}") from e
        if response.status_code >= 400:
            raise RegistryError(
                f"Failed to push manifest {url}: HTTP {response.status_code}"
            )

    def _copy_manifest(
        self, host: str, source: str, dest: str, reference: str, target: str
    ) -> bytes:
        content = self._get_manifest(host, source, reference)
        manifest = _parse_manifest(content, f"{source}:{reference}")
        children, blobs = _manifest_children(manifest, f"{source}:{reference}")
        for child in children:
            self._copy_manifest(host, source, dest, child, child)
        for blob in blobs:
            self._mount_blob(host, source, dest, blob)
        media_type = manifest.get("mediaType") or MANIFEST_MEDIA_TYPES[1]
        self._put_manifest(host, dest, target, content, str(media_type))
        return content

    def clone_to_private(self, image: str, tag: str) -> str:
        ref = self.image_reference(image)
        global_prefix = f"{self.settings.global_namespace}/"
        name = ref.repository
        if name.startswith(global_prefix):
            name = name[len(global_prefix) :]
        dest_repository = f"{self.settings.namespace}/{name}"

        logger.info("Cloning %s into %s/%s:%s", ref, ref.registry, dest_repository, tag)
        content = self._copy_manifest(
            ref.registry,
            ref.repository,
            dest_repository,
            ref.digest or ref.tag,
            tag,
        )
        digest = f"sha256:{hashlib.sha256(content).hexdigest()}"
        return str(ImageReference(ref.registry, dest_repository, tag, digest))

    def has_global_push_access(self) -> bool:
        repository = f"{self.settings.global_namespace}/{PUSH_CHECK_REPOSITORY}"
        url = self._url(self.settings.registry_url, f"{repository}/blobs/uploads/")
        try:
            response = self._client.post(url)
        except httpx.HTTPError as e:
            raise RegistryError(f"Failed to check push access: {e}") from e
        if response.status_code in (401, 403):
            return False
        if response.status_code != 202:
            raise RegistryError(
                f"Unexpected push check response: HTTP {response.status_code}"
            )
        location = response.headers.get("Location")
        if location:
            # Abandon the check upload session
            try:
                self._client.delete(httpx.URL(url).join(location))
            except httpx.HTTPError as e:
                logger.debug("Could not cancel push check upload: %s", e)
        return True


__all__ = [
    "DEFAULT_REGISTRY",
    "DEFAULT_TAG",
    "DEV_REGISTRY_PREFIX",
    "GLOBAL_REGISTRY_PREFIX",
    "HttpRegistry",
    "ImageReference",
    "NotFoundError",
    "Registry",
    "RegistryError",
]
