"""Version tag classification, filtering and ordering.

Decides which registry tags count as eligible release candidates and which
of them is the newest.  Tags shaped like semantic versions are ordered
numerically; anything else falls back to plain string ordering, which is
only an approximation since such tags carry no numeric meaning.
"""

import enum
import logging
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)

LATEST_TAG = "latest"

SEMVER_PATTERN = re.compile(
    r"^v?(\d+)\.(\d+)\.(\d+)(?:-([a-zA-Z0-9\-.]+))?(?:\+([a-zA-Z0-9\-.]+))?$"
)
STABLE_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)(?:\+([a-zA-Z0-9\-.]+))?$")

PRE_RELEASE_MARKERS = ("rc", "alpha", "beta", "dev", "snapshot", "nightly", "pre")
WINDOWS_MARKERS = ("windows", "windowsservercore", "nanoserver", "ltsc", "insider")


class NoTagsError(Exception):
    """Raised when there are no tags to choose a version from."""


class Comparison(enum.Enum):
    """Result of comparing version ``a`` against version ``b``."""
    EQUAL = "equal"
    OLDER = "older"
    NEWER = "newer"
    INCOMPARABLE = "incomparable"


@dataclass(frozen=True)
class SemanticVersion:
    major: int
    minor: int
    patch: int
    pre_release: Optional[str] = None
    build: Optional[str] = None

    @property
    def is_pre_release(self) -> bool:
        return bool(self.pre_release)


@dataclass(frozen=True)
class VersionFilterConfig:
    """Which tags are eligible as update candidates."""
    exclude_pre_release: bool = True
    exclude_windows: bool = True
    only_stable: bool = True
    exclude_patterns: FrozenSet[str] = field(default_factory=frozenset)

    def exclusion_markers(self) -> List[str]:
        """Lower-cased substrings that disqualify a tag."""
        markers: List[str] = []
        if self.exclude_pre_release:
            markers.extend(PRE_RELEASE_MARKERS)
        if self.exclude_windows:
            markers.extend(WINDOWS_MARKERS)
        markers.extend(p.lower() for p in sorted(self.exclude_patterns) if p)
        return markers


def parse_semantic_version(tag: str) -> Optional[SemanticVersion]:
    """Parse ``v?MAJOR.MINOR.PATCH(-PRE)?(+BUILD)?``; None if the tag doesn't match."""
    match = SEMVER_PATTERN.match(tag)
    if not match:
        return None
    major, minor, patch, pre_release, build = match.groups()
    return SemanticVersion(
        major=int(major),
        minor=int(minor),
        patch=int(patch),
        pre_release=pre_release,
        build=build,
    )


def is_semantic_version(tag: str) -> bool:
    return SEMVER_PATTERN.match(tag) is not None


def is_stable_semantic_version(tag: str) -> bool:
    """True for ``x.y.z`` (optionally ``v``-prefixed, optional build metadata) with no pre-release."""
    clean = tag[1:] if tag.startswith('v') else tag
    return STABLE_PATTERN.match(clean) is not None


def _order(a, b) -> Comparison:
    if a < b:
        return Comparison.OLDER
    if a > b:
        return Comparison.NEWER
    return Comparison.EQUAL


def compare_versions(a: str, b: str) -> Comparison:
    """
    Compare two version tags.

    Args:
        a: Left-hand tag
        b: Right-hand tag

    Returns:
        How ``a`` relates to ``b``: OLDER means ``b`` is the newer one
    """
    if a == b:
        return Comparison.EQUAL
    if a == LATEST_TAG or b == LATEST_TAG:
        return Comparison.INCOMPARABLE

    va = parse_semantic_version(a)
    vb = parse_semantic_version(b)
    if va is None or vb is None:
        # Non-semver tags: lexicographic approximation
        return _order(a, b)

    result = _order((va.major, va.minor, va.patch), (vb.major, vb.minor, vb.patch))
    if result is not Comparison.EQUAL:
        return result

    # Release > pre-release; build metadata never participates
    if not va.is_pre_release and vb.is_pre_release:
        return Comparison.NEWER
    if va.is_pre_release and not vb.is_pre_release:
        return Comparison.OLDER
    if va.is_pre_release and vb.is_pre_release:
        return _order(va.pre_release, vb.pre_release)
    return Comparison.EQUAL


def filter_candidates(tags: Iterable[str], cfg: VersionFilterConfig) -> List[str]:
    """Keep semver-shaped tags that pass the exclusion and stability filters."""
    semver_tags = [t for t in tags if is_semantic_version(t)]
    markers = cfg.exclusion_markers()

    filtered = []
    for tag in semver_tags:
        tag_lower = tag.lower()
        marker = next((m for m in markers if m in tag_lower), None)
        if marker is not None:
            logger.debug(f"Excluding tag {tag} (matches '{marker}')")
            continue
        if cfg.only_stable and not is_stable_semantic_version(tag):
            logger.debug(f"Excluding non-stable tag {tag}")
            continue
        filtered.append(tag)

    logger.debug(f"Version filtering kept {len(filtered)} of {len(semver_tags)} semver tags")
    return filtered


def find_highest(tags: Sequence[str]) -> str:
    """
    Pick the highest tag by :func:`compare_versions`.

    Ties keep the earliest-seen tag.  The literal ``latest`` carries no
    ordering information, so it only wins when nothing else is available.

    Raises:
        NoTagsError: If ``tags`` is empty
    """
    if not tags:
        raise NoTagsError("no tags available")

    highest = tags[0]
    for tag in tags[1:]:
        if highest == LATEST_TAG and tag != LATEST_TAG:
            highest = tag
        elif compare_versions(highest, tag) is Comparison.OLDER:
            highest = tag
    return highest


def resolve_latest(available_tags: Sequence[str], current_tag: str,
                   cfg: VersionFilterConfig) -> str:
    """
    Determine the newest eligible tag for an image.

    Args:
        available_tags: Every tag the registry reported
        current_tag: Tag the container is running
        cfg: Candidate filters (ignored when tracking ``latest``)

    Returns:
        The tag to compare the running one against

    Raises:
        NoTagsError: If ``available_tags`` is empty
    """
    if not available_tags:
        raise NoTagsError("no tags available")

    # Already tracking latest: compare against the unfiltered newest build
    if current_tag == LATEST_TAG:
        return find_highest(available_tags)

    candidates = filter_candidates(available_tags, cfg)
    if not candidates:
        if LATEST_TAG in available_tags:
            return LATEST_TAG
        return available_tags[0]

    return find_highest(candidates)
