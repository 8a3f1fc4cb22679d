"""Shared fixtures for docker-notify tests."""

import copy
import threading
import time
from typing import Dict, List

import pytest

from concurrency import CancellationError
from dnotify import DEFAULT_CONFIG
from docker_api import ContainerInfo
from notify import Channel, NotificationError
from registry import RegistryError

# ---------------------------------------------------------------------------
# Tag lists modelled on real registry inventories
# ---------------------------------------------------------------------------

TAG_LISTS = {
    "library/nginx": [
        "latest", "stable", "mainline", "1.25.3", "1.25.4", "1.26.0",
        "1.27.0-alpine", "1.27.1-rc1", "alpine",
    ],
    "crazymax/diun": [
        "latest", "edge", "4.30.0", "4.29.0", "4.28.0", "4.0.0-rc.1",
    ],
    "jellyfin/jellyfin": [
        "latest", "unstable", "10.11.4", "10.11.1", "10.10.0",
        "10.11.4-amd64", "latest-amd64",
    ],
    "n8nio/n8n": [
        "latest", "next", "2.0.3", "1.99.0", "2.0.3-beta",
    ],
    "portainer/portainer-ce": [
        "latest", "alpine", "2.33.1", "2.27.9", "2.26.0", "linux-amd64",
        "2.33.1-windowsservercore-ltsc2022",
    ],
    "homarr-labs/homarr": [
        "latest", "dev", "v1.46.0", "v1.41.0", "v1.40.0", "sha-abc1234",
    ],
}


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeRegistry:
    """Stands in for RegistryClient: serves tags from a dict, can fail per repository.

    Tracks how many ``list_tags`` calls are in flight at once.
    """

    def __init__(self, tags: Dict[str, List[str]], failing=(), delay: float = 0.0):
        self.tags = tags
        self.failing = set(failing)
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def list_tags(self, ctx, ref):
        with self._lock:
            self.calls.append(ref.repository)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay and ctx.wait(self.delay):
                raise CancellationError(ctx.reason or "context cancelled")
            if ref.repository in self.failing:
                raise RegistryError(f"{ref.repository} unavailable", status=500)
            return list(self.tags.get(ref.repository, []))
        finally:
            with self._lock:
                self.in_flight -= 1

    def health(self, ctx):
        return None


class FakeDocker:
    """Stands in for DockerClient with a fixed container list."""

    def __init__(self, containers=(), error=None):
        self.containers = list(containers)
        self.error = error

    def get_running_containers(self):
        if self.error:
            raise self.error
        return list(self.containers)

    def ping(self):
        if self.error:
            raise self.error


class RecordingChannel(Channel):
    """Notification channel that keeps what it was asked to send."""

    def __init__(self, type_name: str = "recording", fail: bool = False, enabled: bool = True):
        super().__init__(enabled)
        self.type = type_name
        self.fail = fail
        self.sent = []

    def send(self, ctx, notification):
        if self.fail:
            raise NotificationError("down", channel=self.type)
        self.sent.append(notification)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it is true or *timeout* expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def container(name: str, image: str, labels=None) -> ContainerInfo:
    return ContainerInfo(
        id=f"{name:0<64}"[:64],
        name=name,
        image=image,
        state="running",
        labels=labels or {},
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def default_config():
    """A deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


@pytest.fixture
def full_config():
    """User config exercising every section."""
    return {
        "app": {
            "check_interval": "1h",
            "max_concurrency": 4,
            "registry_timeout": "10s",
            "run_timeout": "15m",
        },
        "docker": {
            "socket_path": "unix:///var/run/docker.sock",
            "filters": {
                "include": [],
                "exclude": ["*/test-*"],
                "check_latest": True,
                "check_private": False,
                "version_filters": {
                    "exclude_prerelease": True,
                    "exclude_windows": True,
                    "only_stable": True,
                    "exclude_patterns": ["alpine"],
                },
            },
        },
        "registry": {
            "rate_limit": {"requests_per_minute": 60, "burst": 5},
            "registries": [
                {"host": "registry.example.com", "username": "bot", "password": "s3cret"},
            ],
        },
        "notifications": {
            "channels": ["ntfy", "webhook"],
            "ntfy": {"url": "https://ntfy.sh/docker-updates", "priority": "high"},
            "webhook": {"url": "https://hooks.example.com/notify", "method": "PUT"},
            "behavior": {
                "once_per_update": True,
                "cooldown_period": "12h",
                "group_updates": True,
                "max_updates_per_notification": 5,
            },
        },
        "logging": {"level": "debug", "format": "json"},
        "web": {"enabled": True, "host": "127.0.0.1", "port": 9090},
    }
