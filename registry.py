"""Registry tag resolver.

Lists the tags of an image over the Docker Registry HTTP API v2.  Docker
Hub needs an anonymous (or credentialed) bearer token first; other
registries are called directly and only fetch a token when they answer
with a ``Bearer`` challenge.  There is no retry at this layer.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter

from concurrency import CancellationError, Context
from image_ref import DEFAULT_REGISTRY, DEFAULT_REGISTRY_ALIAS, DEFAULT_REGISTRY_API, ImageReference

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
DOCKER_HUB_AUTH_URL = "https://auth.docker.io/token"
DOCKER_HUB_SERVICE = "registry.docker.io"
DEFAULT_TOKEN_TTL = 60
TOKEN_EXPIRY_MARGIN = 10
MAX_TAG_PAGES = 50
BODY_SNIPPET_LENGTH = 512
USER_AGENT = "docker-notify"

_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


class RegistryError(Exception):
    """Error reaching a registry or reading its response."""

    def __init__(self, message: str, status: Optional[int] = None,
                 body: Optional[str] = None, url: Optional[str] = None):
        self.message = message
        self.status = status
        self.body = body
        self.url = url
        super().__init__(message)


class AuthError(RegistryError):
    """Bearer token exchange with a registry failed."""


@dataclass(frozen=True)
class RegistryCredentials:
    """Per-registry credentials from the ``registry.registries`` config list."""
    host: str
    username: Optional[str] = None
    password: Optional[str] = None
    insecure: bool = False

    @property
    def basic_auth(self) -> Optional[Tuple[str, str]]:
        if self.username:
            return (self.username, self.password or '')
        return None


def _snippet(response: requests.Response) -> str:
    try:
        return response.text[:BODY_SNIPPET_LENGTH]
    except (UnicodeDecodeError, AttributeError):
        return ''


def parse_bearer_challenge(header: str) -> Optional[Dict[str, str]]:
    """Parse ``WWW-Authenticate: Bearer realm="...",service="...",scope="..."``."""
    if not header or not header.lower().startswith('bearer '):
        return None
    params = dict(_CHALLENGE_PARAM_RE.findall(header))
    if 'realm' not in params:
        return None
    return params


class RegistryClient:
    """Client for the tags-list endpoint of Docker Hub and generic v2 registries."""

    def __init__(self, timeout: float = REQUEST_TIMEOUT,
                 credentials: Optional[Iterable[RegistryCredentials]] = None,
                 session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.credentials = {c.host: c for c in (credentials or [])}
        self.session = session or self._build_session()
        self._tokens: Dict[Tuple[str, str, str], Tuple[str, float]] = {}
        self._tokens_lock = threading.Lock()

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(pool_connections=10, pool_maxsize=10)
        session.mount('https://', adapter)
        session.mount('http://', adapter)
        session.headers['User-Agent'] = USER_AGENT
        return session

    def credentials_for(self, registry: str) -> Optional[RegistryCredentials]:
        creds = self.credentials.get(registry)
        if creds is None and registry in (DEFAULT_REGISTRY, DEFAULT_REGISTRY_ALIAS):
            creds = (self.credentials.get(DEFAULT_REGISTRY)
                     or self.credentials.get(DEFAULT_REGISTRY_ALIAS))
        return creds

    def _base_url(self, ref: ImageReference) -> str:
        if ref.is_default_registry:
            return DEFAULT_REGISTRY_API
        creds = self.credentials_for(ref.registry)
        scheme = 'http' if creds and creds.insecure else 'https'
        return f"{scheme}://{ref.registry}"

    # ── HTTP plumbing ─────────────────────────────────────────────

    def _get(self, ctx: Context, url: str, headers: Optional[Dict[str, str]] = None,
             params: Optional[Dict[str, str]] = None,
             auth: Optional[Tuple[str, str]] = None) -> requests.Response:
        """GET *url*, mapping transport failures to RegistryError.

        The request timeout is clamped to whatever time *ctx* has left, and a
        cancellation that happened while the request was in flight wins over
        its result.
        """
        ctx.raise_if_cancelled()
        try:
            response = self.session.get(
                url, headers=headers, params=params, auth=auth,
                timeout=ctx.timeout_for(self.timeout),
            )
        except requests.RequestException as e:
            if ctx.cancelled:
                raise CancellationError(ctx.reason or "context cancelled") from e
            raise RegistryError(f"Request to {url} failed: {e}", url=url) from e
        ctx.raise_if_cancelled()
        logger.debug(f"GET {url} -> {response.status_code}")
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response, url: str,
                          error_cls=RegistryError) -> None:
        if 200 <= response.status_code < 300:
            return
        body = _snippet(response)
        raise error_cls(
            f"{url} returned status {response.status_code}: {body}",
            status=response.status_code, body=body, url=url,
        )

    @staticmethod
    def _json(response: requests.Response, url: str, error_cls=RegistryError) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            raise error_cls(f"Could not decode response from {url}: {e}", url=url) from e
        if not isinstance(data, dict):
            raise error_cls(f"Unexpected response from {url}: expected an object", url=url)
        return data

    # ── Tokens ────────────────────────────────────────────────────

    def _cached_token(self, key: Tuple[str, str, str]) -> Optional[str]:
        with self._tokens_lock:
            entry = self._tokens.get(key)
            if entry and entry[1] > time.monotonic():
                return entry[0]
            self._tokens.pop(key, None)
            return None

    def _fetch_token(self, ctx: Context, realm: str, service: str, scope: str,
                     creds: Optional[RegistryCredentials]) -> str:
        key = (realm, service, scope)
        token = self._cached_token(key)
        if token:
            return token

        params = {'service': service}
        if scope:
            params['scope'] = scope
        auth = creds.basic_auth if creds else None

        try:
            response = self._get(ctx, realm, params=params, auth=auth)
        except AuthError:
            raise
        except RegistryError as e:
            raise AuthError(f"Token request to {realm} failed: {e.message}", url=realm) from e

        self._raise_for_status(response, realm, error_cls=AuthError)
        data = self._json(response, realm, error_cls=AuthError)
        token = data.get('token') or data.get('access_token')
        if not token:
            raise AuthError(f"Token endpoint {realm} returned no token", url=realm)

        try:
            expires_in = int(data.get('expires_in') or DEFAULT_TOKEN_TTL)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_TTL
        expires_at = time.monotonic() + max(0, expires_in - TOKEN_EXPIRY_MARGIN)
        with self._tokens_lock:
            self._tokens[key] = (token, expires_at)
        return token

    def _docker_hub_token(self, ctx: Context, repository: str) -> str:
        """Exchange the repository pull scope for a short-lived Docker Hub token."""
        return self._fetch_token(
            ctx, DOCKER_HUB_AUTH_URL, DOCKER_HUB_SERVICE,
            f"repository:{repository}:pull", self.credentials_for(DEFAULT_REGISTRY),
        )

    def _challenge_token(self, ctx: Context, response: requests.Response,
                         ref: ImageReference) -> Optional[str]:
        challenge = parse_bearer_challenge(response.headers.get('WWW-Authenticate', ''))
        if not challenge:
            return None
        scope = challenge.get('scope') or f"repository:{ref.repository}:pull"
        service = challenge.get('service') or ref.registry
        return self._fetch_token(ctx, challenge['realm'], service, scope,
                                 self.credentials_for(ref.registry))

    # ── Public API ────────────────────────────────────────────────

    def list_tags(self, ctx: Context, ref: ImageReference) -> List[str]:
        """
        Get all available tags for an image.

        Args:
            ctx: Cancellation context for the whole listing
            ref: Normalized image reference

        Returns:
            Tags in registry order (may be empty)

        Raises:
            AuthError: Token exchange failed
            RegistryError: HTTP or transport failure
            CancellationError: *ctx* was cancelled
        """
        base = self._base_url(ref)
        url: Optional[str] = f"{base}/v2/{ref.repository}/tags/list"
        headers = {'Accept': 'application/json'}
        auth = None

        if ref.is_default_registry:
            headers['Authorization'] = f"Bearer {self._docker_hub_token(ctx, ref.repository)}"
        else:
            creds = self.credentials_for(ref.registry)
            auth = creds.basic_auth if creds else None

        tags: List[str] = []
        pages = 0
        while url and pages < MAX_TAG_PAGES:
            response = self._get(ctx, url, headers=headers, auth=auth)
            if response.status_code == 401 and 'Authorization' not in headers:
                token = self._challenge_token(ctx, response, ref)
                if token:
                    headers['Authorization'] = f"Bearer {token}"
                    auth = None
                    response = self._get(ctx, url, headers=headers)

            self._raise_for_status(response, url)
            data = self._json(response, url)
            page_tags = data.get('tags')
            if page_tags is not None and not isinstance(page_tags, list):
                raise RegistryError(f"unexpected tags payload for {ref.repository}",
                                    status=response.status_code, url=url)
            tags.extend(t for t in (page_tags or []) if isinstance(t, str))
            pages += 1

            next_link = response.links.get('next', {}).get('url')
            url = urljoin(base, next_link) if next_link else None

        if url:
            logger.warning(f"Stopped listing tags for {ref.repository} after {MAX_TAG_PAGES} pages")

        logger.debug(f"Found {len(tags)} tags for {ref.registry}/{ref.repository}")
        return tags

    def health(self, ctx: Context) -> None:
        """Check that Docker Hub's v2 endpoint is reachable (200 or 401 expected)."""
        url = f"{DEFAULT_REGISTRY_API}/v2/"
        response = self._get(ctx, url)
        if response.status_code not in (200, 401):
            raise RegistryError(
                f"Docker Hub returned unexpected status: {response.status_code}",
                status=response.status_code, url=url,
            )
