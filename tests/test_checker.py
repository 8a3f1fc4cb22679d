"""Tests for single and batched update checks (checker.py)."""

import threading

import pytest

from checker import AllChecksFailedError, UpdateChecker
from concurrency import CancellationError, Context, RateLimiter
from image_ref import parse_image_reference
from registry import RegistryError
from tests.conftest import TAG_LISTS, FakeRegistry
from versions import VersionFilterConfig


def _checker(registry, rpm=6000, burst=100, filters=None):
    return UpdateChecker(registry, RateLimiter(rpm, burst), filters)


# ---------------------------------------------------------------------------
# check_one
# ---------------------------------------------------------------------------

class TestCheckOne:
    """Single-image verdicts."""

    def test_update_available(self):
        registry = FakeRegistry({"library/nginx": ["1.21.0", "1.21.1", "1.22.0-rc1"]})
        verdict = _checker(registry).check_one(Context(), parse_image_reference("nginx:1.21.0"))
        assert verdict.has_update
        assert verdict.latest_tag == "1.21.1"
        assert verdict.current_tag == "1.21.0"
        assert verdict.registry == "docker.io"
        assert verdict.repository == "library/nginx"
        assert verdict.available_tags == ("1.21.0", "1.21.1", "1.22.0-rc1")

    def test_up_to_date(self):
        registry = FakeRegistry({"crazymax/diun": TAG_LISTS["crazymax/diun"]})
        verdict = _checker(registry).check_one(Context(), parse_image_reference("crazymax/diun:4.30.0"))
        assert not verdict.has_update
        assert verdict.latest_tag == "4.30.0"

    def test_latest_never_reports_update(self):
        registry = FakeRegistry({"library/redis": ["latest", "2.0.0", "1.0.0-beta"]})
        verdict = _checker(registry).check_one(Context(), parse_image_reference("redis:latest"))
        assert verdict.latest_tag == "2.0.0"
        assert not verdict.has_update

    def test_no_tags(self):
        registry = FakeRegistry({"org/empty": []})
        verdict = _checker(registry).check_one(Context(), parse_image_reference("org/empty:1.0.0"))
        assert not verdict.has_update
        assert verdict.latest_tag == "1.0.0"
        assert verdict.available_tags == ()

    def test_digest_only_skips_registry(self):
        registry = FakeRegistry({})
        ref = parse_image_reference("ghcr.io/org/app@sha256:" + "d" * 64)
        verdict = _checker(registry).check_one(Context(), ref)
        assert not verdict.has_update
        assert verdict.current_tag == ""
        assert registry.calls == []

    def test_registry_error_propagates(self):
        registry = FakeRegistry({}, failing={"library/nginx"})
        with pytest.raises(RegistryError):
            _checker(registry).check_one(Context(), parse_image_reference("nginx:1.0.0"))

    def test_filters_applied(self):
        registry = FakeRegistry({"org/app": ["1.0.0", "1.1.0-alpine"]})
        filters = VersionFilterConfig(exclude_pre_release=False, only_stable=False,
                                      exclude_patterns=frozenset({"alpine"}))
        verdict = _checker(registry, filters=filters).check_one(
            Context(), parse_image_reference("org/app:1.0.0"))
        assert verdict.latest_tag == "1.0.0"
        assert not verdict.has_update

    def test_cancelled_context(self):
        registry = FakeRegistry({"library/nginx": ["1.0.0"]})
        ctx = Context()
        ctx.cancel()
        with pytest.raises(CancellationError):
            _checker(registry).check_one(ctx, parse_image_reference("nginx:1.0.0"))
        assert registry.calls == []


# ---------------------------------------------------------------------------
# check_many
# ---------------------------------------------------------------------------

class TestCheckMany:
    """Batched checks over the worker pool."""

    def test_empty_batch(self):
        result = _checker(FakeRegistry({})).check_many(Context(), [])
        assert result.verdicts == [] and result.failed == []

    def test_partial_failure_and_bounded_concurrency(self):
        tags = {f"org/app{i}": ["1.0.0", "1.1.0"] for i in range(10)}
        registry = FakeRegistry(tags, failing={"org/app7"}, delay=0.02)
        refs = [parse_image_reference(f"org/app{i}:1.0.0") for i in range(10)]

        result = _checker(registry).check_many(Context(), refs, max_concurrency=3)

        assert len(result.verdicts) == 9
        assert len(result.failed) == 1
        assert result.failed[0][0].repository == "org/app7"
        assert isinstance(result.failed[0][1], RegistryError)
        assert len(result.updates) == 9
        assert registry.max_in_flight <= 3

    def test_all_failed(self):
        registry = FakeRegistry({}, failing={"org/a", "org/b"})
        refs = [parse_image_reference("org/a:1.0.0"), parse_image_reference("org/b:1.0.0")]
        with pytest.raises(AllChecksFailedError) as exc:
            _checker(registry).check_many(Context(), refs)
        assert exc.value.count == 2
        assert {ref.repository for ref, _ in exc.value.errors} == {"org/a", "org/b"}

    def test_unexpected_error_recorded_per_image(self):
        class BrokenRegistry(FakeRegistry):
            def list_tags(self, ctx, ref):
                if ref.repository == "foo/bad":
                    raise TypeError("'int' object is not iterable")
                return super().list_tags(ctx, ref)

        registry = BrokenRegistry({"foo/a": ["1.0.0", "1.1.0"], "foo/b": ["2.0.0"]})
        refs = [parse_image_reference(f"foo/{name}:1.0.0") for name in ("a", "bad", "b")]

        result = _checker(registry).check_many(Context(), refs)

        assert sorted(v.repository for v in result.verdicts) == ["foo/a", "foo/b"]
        assert len(result.failed) == 1
        ref, error = result.failed[0]
        assert ref.repository == "foo/bad"
        assert isinstance(error, TypeError)

    def test_real_inventories(self):
        registry = FakeRegistry(TAG_LISTS)
        refs = [
            parse_image_reference("nginx:1.25.3"),
            parse_image_reference("crazymax/diun:4.30.0"),
            parse_image_reference("jellyfin/jellyfin:10.10.0"),
            parse_image_reference("portainer/portainer-ce:2.33.1"),
        ]
        result = _checker(registry).check_many(Context(), refs, max_concurrency=2)
        updates = {v.repository: v.latest_tag for v in result.updates}
        assert updates == {"library/nginx": "1.26.0", "jellyfin/jellyfin": "10.11.4"}

    def test_cancelled_before_start(self):
        registry = FakeRegistry({"org/a": ["1.0.0"]})
        ctx = Context()
        ctx.cancel("stop")
        with pytest.raises(CancellationError):
            _checker(registry).check_many(ctx, [parse_image_reference("org/a:1.0.0")])

    def test_cancel_mid_batch_keeps_finished_verdicts(self):
        tags = {f"org/app{i}": ["1.0.0"] for i in range(6)}
        registry = FakeRegistry(tags, delay=0.5)
        refs = [parse_image_reference(f"org/app{i}:1.0.0") for i in range(6)]
        ctx = Context()
        # First wave completes, the second is interrupted
        threading.Timer(0.75, ctx.cancel).start()

        result = _checker(registry).check_many(ctx, refs, max_concurrency=3)

        assert len(result.verdicts) == 3
        assert len(result.verdicts) + len(result.failed) == 6
        assert all(isinstance(e, CancellationError) for _, e in result.failed)
