"""Concurrent update checker.

Checks one image, or a batch of images, against its registry: take a rate
limiter token, list the tags, pick the newest eligible tag and compare it
with the running one.  Batches fan out over a fixed-size thread pool.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from concurrency import CancellationError, Context, RateLimiter
from image_ref import ImageReference
from registry import RegistryClient, RegistryError
from versions import Comparison, NoTagsError, VersionFilterConfig, compare_versions, resolve_latest

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10


class AllChecksFailedError(Exception):
    """Every check in a batch failed."""

    def __init__(self, count: int, errors: Sequence[Tuple[ImageReference, Exception]] = ()):
        self.count = count
        self.errors = list(errors)
        super().__init__(f"all {count} image checks failed")


@dataclass(frozen=True)
class ImageUpdateVerdict:
    registry: str
    repository: str
    current_tag: str
    latest_tag: str
    available_tags: Tuple[str, ...]
    has_update: bool
    checked_at: datetime


@dataclass
class BatchResult:
    """Verdicts that came back from a batch plus the images whose check failed."""
    verdicts: List[ImageUpdateVerdict] = field(default_factory=list)
    failed: List[Tuple[ImageReference, Exception]] = field(default_factory=list)

    @property
    def updates(self) -> List[ImageUpdateVerdict]:
        return [v for v in self.verdicts if v.has_update]


class UpdateChecker:
    """Resolves update verdicts through a shared registry client and rate limiter."""

    def __init__(self, registry: RegistryClient, rate_limiter: RateLimiter,
                 version_filters: Optional[VersionFilterConfig] = None):
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.version_filters = version_filters or VersionFilterConfig()

    def check_one(self, ctx: Context, ref: ImageReference) -> ImageUpdateVerdict:
        """
        Check a single image for a newer eligible tag.

        Args:
            ctx: Cancellation context
            ref: Image to check

        Returns:
            Verdict for the image; an image without tags has no update

        Raises:
            RegistryError: Listing tags failed (AuthError included)
            CancellationError: *ctx* was cancelled
        """
        if not ref.tag:
            # Pinned by digest only: there is no tag to move forward from
            logger.debug(f"Skipping digest-only image {ref.full_name}")
            return ImageUpdateVerdict(
                registry=ref.registry,
                repository=ref.repository,
                current_tag='',
                latest_tag='',
                available_tags=(),
                has_update=False,
                checked_at=datetime.now(timezone.utc),
            )

        self.rate_limiter.wait(ctx)
        tags = self.registry.list_tags(ctx, ref)

        try:
            latest = resolve_latest(tags, ref.tag, self.version_filters)
        except NoTagsError:
            logger.info(f"No tags found for {ref.registry}/{ref.repository}")
            return ImageUpdateVerdict(
                registry=ref.registry,
                repository=ref.repository,
                current_tag=ref.tag,
                latest_tag=ref.tag,
                available_tags=(),
                has_update=False,
                checked_at=datetime.now(timezone.utc),
            )

        has_update = compare_versions(ref.tag, latest) is Comparison.OLDER
        if has_update:
            logger.info(f"Update available for {ref.repository}: {ref.tag} -> {latest}")
        else:
            logger.debug(f"{ref.repository}:{ref.tag} is up to date (latest {latest})")

        return ImageUpdateVerdict(
            registry=ref.registry,
            repository=ref.repository,
            current_tag=ref.tag,
            latest_tag=latest,
            available_tags=tuple(tags),
            has_update=has_update,
            checked_at=datetime.now(timezone.utc),
        )

    def check_many(self, ctx: Context, refs: Sequence[ImageReference],
                   max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> BatchResult:
        """
        Check several images with at most *max_concurrency* in flight.

        Per-image failures are logged and collected in ``BatchResult.failed``;
        the call itself only fails when nothing could be checked.

        Raises:
            AllChecksFailedError: Every image check failed
            CancellationError: *ctx* was cancelled before any check succeeded
        """
        result = BatchResult()
        if not refs:
            return result

        max_workers = max(1, min(max_concurrency, len(refs)))
        logger.info(f"Checking {len(refs)} images (max {max_workers} concurrent)")

        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="check")
        futures = {}
        try:
            for ref in refs:
                futures[executor.submit(self.check_one, ctx, ref)] = ref

            for future in as_completed(futures):
                if future.cancelled():
                    continue
                ref = futures[future]
                try:
                    result.verdicts.append(future.result())
                except (RegistryError, CancellationError) as e:
                    logger.warning(f"Failed to check {ref.full_name}: {e}")
                    result.failed.append((ref, e))
                except Exception as e:
                    logger.exception(f"Unexpected error checking {ref.full_name}")
                    result.failed.append((ref, e))
                if ctx.cancelled:
                    # Drop checks that have not started yet; running ones see the context
                    for f in futures:
                        f.cancel()
        finally:
            for f in futures:
                f.cancel()
            executor.shutdown(wait=True)

        # Checks cancelled before they started never reported back
        for future, ref in futures.items():
            if future.cancelled():
                result.failed.append((ref, CancellationError(ctx.reason or "context cancelled")))

        if not result.verdicts:
            if ctx.cancelled:
                raise CancellationError(ctx.reason or "context cancelled")
            raise AllChecksFailedError(len(result.failed), result.failed)

        logger.info(
            f"Checked {len(result.verdicts)} images, {len(result.updates)} with updates, "
            f"{len(result.failed)} failed"
        )
        return result
