"""Read-only Docker Engine API client over a Unix socket.

Only inspects the host: pings the daemon and lists running containers
with the image reference each one was started from.  Talks HTTP to the
mounted /var/run/docker.sock with the stdlib (http.client, socket).
"""

import http.client
import json
import logging
import os
import socket
import urllib.parse
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Docker Engine API version, compatible with Docker 20.10+
API_VERSION = "v1.41"
DEFAULT_SOCKET_PATH = "/var/run/docker.sock"
DEFAULT_TIMEOUT = 30


class DockerAPIError(Exception):
    """Error from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    image: str
    state: str
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def short_id(self) -> str:
        return self.id[:12]


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: float = DEFAULT_TIMEOUT):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def default_socket_path() -> str:
    host = os.environ.get("DOCKER_HOST", "")
    if host.startswith("unix://"):
        return host[len("unix://"):]
    return DEFAULT_SOCKET_PATH


class DockerClient:
    """Client for the container-inspection endpoints of the Docker Engine API."""

    def __init__(self, socket_path: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        self.socket_path = socket_path or default_socket_path()
        self.timeout = timeout

    def _request(self, path: str, query: Optional[Dict[str, str]] = None,
                 parse_json: bool = True) -> Any:
        """GET *path* from the Engine API.

        Opens a fresh connection per call.  Socket failures are reported as
        DockerAPIError with status 0 so callers only handle one error type.
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        conn = UnixHTTPConnection(self.socket_path, timeout=self.timeout)
        try:
            conn.request("GET", url)
            response = conn.getresponse()
            raw = response.read().decode("utf-8", errors="replace")
        except (OSError, http.client.HTTPException) as e:
            raise DockerAPIError(0, f"cannot reach Docker at {self.socket_path}: {e}") from e
        finally:
            conn.close()

        if response.status >= 400:
            # Try to extract message from JSON error body
            try:
                msg = json.loads(raw).get("message", raw)
            except (json.JSONDecodeError, AttributeError):
                msg = raw
            raise DockerAPIError(response.status, msg.strip())

        if not parse_json:
            return raw
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise DockerAPIError(response.status, f"invalid JSON from {path}: {e}") from e

    def ping(self) -> None:
        """Check that the daemon answers ``/_ping`` with ``OK``."""
        body = self._request("/_ping", parse_json=False)
        if body.strip() != "OK":
            raise DockerAPIError(500, f"unexpected ping response: {body[:100]!r}")

    def list_containers(self, all: bool = False) -> List[Dict[str, Any]]:
        """List containers.

        Returns list of dicts with keys like ``Id``, ``Names`` (list with
        ``/`` prefix), ``Image``, ``State``, ``Labels``.
        """
        query = {"all": "true"} if all else None
        return self._request("/containers/json", query=query) or []

    def inspect_container(self, name: str) -> Dict[str, Any]:
        return self._request(f"/containers/{urllib.parse.quote(name)}/json")

    def get_running_containers(self) -> List[ContainerInfo]:
        containers = []
        for raw in self.list_containers():
            if raw.get("State", "running") != "running":
                continue
            names = raw.get("Names") or []
            name = names[0].lstrip("/") if names else raw.get("Id", "")[:12]
            containers.append(ContainerInfo(
                id=raw.get("Id", ""),
                name=name,
                image=raw.get("Image", ""),
                state=raw.get("State", "running"),
                labels=raw.get("Labels") or {},
            ))
        logger.debug(f"Found {len(containers)} running containers")
        return containers
