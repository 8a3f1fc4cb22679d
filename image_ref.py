"""Image reference parsing and normalization.

Turns the raw image string of a running container (``nginx``,
``linuxserver/sonarr:4.0.0``, ``ghcr.io/org/app@sha256:...``) into a
structured :class:`ImageReference` with registry, namespace, repository,
tag and digest filled in according to Docker's defaulting rules.
"""

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_REGISTRY = "docker.io"
DEFAULT_REGISTRY_ALIAS = "index.docker.io"
DEFAULT_REGISTRY_API = "https://registry-1.docker.io"
OFFICIAL_NAMESPACE = "library"
DEFAULT_TAG = "latest"

_DEFAULT_REGISTRIES = (DEFAULT_REGISTRY, DEFAULT_REGISTRY_ALIAS)

_REGISTRY_RE = re.compile(
    r"^(?:localhost|[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]*[a-zA-Z0-9])?)*)(?::[0-9]+)?$"
)
_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(
    r"^[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}$"
)


class ParseError(ValueError):
    """Raised when an image string is not a valid image reference."""

    def __init__(self, image: str, reason: str):
        self.image = image
        self.reason = reason
        super().__init__(f"Invalid image reference '{image}': {reason}")


@dataclass(frozen=True)
class ImageReference:
    """A normalized image reference.

    ``repository`` is the full repository path used for registry API calls
    (``library/nginx``, ``linuxserver/sonarr``), namespace included.
    """
    registry: str
    repository: str
    namespace: Optional[str] = None
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def full_name(self) -> str:
        """Canonical ``registry/repository[:tag][@digest]`` form."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name += f":{self.tag}"
        if self.digest:
            name += f"@{self.digest}"
        return name

    @property
    def is_default_registry(self) -> bool:
        return self.registry in _DEFAULT_REGISTRIES

    def is_private_registry(self) -> bool:
        """True unless the image lives on Docker Hub."""
        return not self.is_default_registry

    @property
    def registry_url(self) -> str:
        if self.is_default_registry:
            return DEFAULT_REGISTRY_API
        return f"https://{self.registry}"

    def __str__(self) -> str:
        return self.full_name


def _looks_like_registry(component: str) -> bool:
    # Registry indicators: contains '.', is localhost, or has port ':'
    return '.' in component or ':' in component or component == 'localhost'


def parse_image_reference(image: str) -> ImageReference:
    """
    Parse an image string of the form ``[registry/][namespace/]repository[:tag][@digest]``.

    Args:
        image: Raw image reference as reported by the container runtime

    Returns:
        ImageReference with defaults applied

    Raises:
        ParseError: If the string is empty or not a valid reference
    """
    if not image or not image.strip():
        raise ParseError(image, "empty image reference")
    if any(ch.isspace() for ch in image):
        raise ParseError(image, "contains whitespace")
    if '://' in image:
        raise ParseError(image, "URL schemes are not allowed")

    remaining = image
    digest = None
    if '@' in remaining:
        remaining, digest = remaining.split('@', 1)
        if not _DIGEST_RE.match(digest):
            raise ParseError(image, f"invalid digest '{digest}'")

    # Strip tag, but only when the colon is after the last slash (not a registry port)
    tag = None
    last_slash = remaining.rfind('/')
    last_colon = remaining.rfind(':')
    if last_colon > last_slash:
        remaining, tag = remaining[:last_colon], remaining[last_colon + 1:]
        if not _TAG_RE.match(tag):
            raise ParseError(image, f"invalid tag '{tag}'")

    parts = remaining.split('/')
    registry = None
    if len(parts) > 1 and _looks_like_registry(parts[0]):
        registry = parts.pop(0)
        if not _REGISTRY_RE.match(registry):
            raise ParseError(image, f"invalid registry '{registry}'")

    for part in parts:
        if not part:
            raise ParseError(image, "empty path component")
        if not _COMPONENT_RE.match(part):
            raise ParseError(image, f"invalid path component '{part}'")

    namespace = '/'.join(parts[:-1]) or None
    repository = '/'.join(parts)

    if registry is None:
        registry = DEFAULT_REGISTRY
    if tag is None and digest is None:
        tag = DEFAULT_TAG

    # Docker Hub official images: nginx -> library/nginx
    if registry in _DEFAULT_REGISTRIES and namespace is None:
        namespace = OFFICIAL_NAMESPACE
        repository = f"{OFFICIAL_NAMESPACE}/{repository}"

    return ImageReference(
        registry=registry,
        repository=repository,
        namespace=namespace,
        tag=tag,
        digest=digest,
    )
