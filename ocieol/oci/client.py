from __future__ import annotations

import base64
import logging
import re
import threading
from typing import TYPE_CHECKING
from urllib.parse import urlparse, urlunparse

import httpx
from httpx_retries import Retry, RetryTransport

if TYPE_CHECKING:
    from ocieol.credentials import RegistryCredentials
    from ocieol.oci.manifest import Manifest, ReferrersIndex

logger = logging.getLogger(__name__)

DOCKER_HUB = "registry-1.docker.io"

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
    ]
)

DEFAULT_RETRY = Retry(
    total=5,
    backoff_factor=0.5,
    allowed_methods=("GET", "HEAD", "POST", "PUT"),
    status_forcelist=(429, 500, 502, 503, 504),
)

_REPOSITORY_RE = re.compile(r"^/v2/(?P<name>.+?)/(?:manifests|blobs|referrers|tags)/")


class AuthenticationError(Exception):
    """Raised when authentication fails."""


def _clean_url(registry_url: str) -> str:
    if "://" not in registry_url:
        registry_url = f"https://{registry_url}"
    parts = urlparse(registry_url)
    if parts.netloc == "docker.io":
        parts = parts._replace(netloc=DOCKER_HUB)
    return urlunparse(parts).rstrip("/")


def _parse_www_auth(www_authenticate: str) -> tuple[str, dict[str, str]]:
    """Parse the WWW-Authenticate header into its scheme and parameters"""
    scheme, _, params = www_authenticate.partition(" ")
    return scheme.lower(), dict(re.findall(r'(\w+)="([^"]*)"', params))


def _repository_scope(request: httpx.Request) -> str | None:
    match = _REPOSITORY_RE.match(request.url.path)
    if match is None:
        return None
    return f"repository:{match['name']}:pull,push"


class TokenAuth(httpx.Auth):
    """Answers registry authentication challenges.

    Bearer challenges are answered using the token api with basic
    authentication, tokens are cached per repository scope.

    ref: https://distribution.github.io/distribution/spec/auth/token/
    """

    requires_response_body = True

    def __init__(self, credentials: RegistryCredentials | None):
        self.credentials = credentials
        self._tokens: dict[str | None, str] = {}
        self._basic_only = False
        self._lock = threading.Lock()

    def _basic(self) -> str:
        raw = f"{self.credentials.username}:{self.credentials.password}"
        return "Basic " + base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def auth_flow(self, request: httpx.Request):
        scope = _repository_scope(request)
        with self._lock:
            token = self._tokens.get(scope)
        if self._basic_only:
            request.headers["Authorization"] = self._basic()
        elif token is not None:
            request.headers["Authorization"] = f"Bearer {token}"

        response = yield request
        if response.status_code != 401 or "WWW-Authenticate" not in response.headers:
            return

        if self.credentials is None or not self.credentials.password:
            raise AuthenticationError(
                f"{request.url.host} requires authentication, "
                f"provide a username and/or password."
            )

        scheme, challenge = _parse_www_auth(response.headers["WWW-Authenticate"])
        logger.debug("Authentication challenge: %s %s", scheme, challenge)
        if scheme == "basic":
            self._basic_only = True
            request.headers["Authorization"] = self._basic()
            yield request
            return

        params = {
            "service": challenge.get("service", ""),
            "client_id": self.credentials.username,
        }
        if challenge.get("scope") or scope:
            params["scope"] = challenge.get("scope") or scope
        token_response = yield httpx.Request(
            "GET",
            challenge["realm"],
            params=params,
            headers={"Authorization": self._basic()},
        )
        if token_response.status_code == 401:
            raise AuthenticationError(f"Invalid credentials for {request.url.host}")
        token_response.raise_for_status()
        body = token_response.json()
        token = body.get("token") or body["access_token"]
        with self._lock:
            self._tokens[scope] = token

        request.headers["Authorization"] = f"Bearer {token}"
        yield request


class Client:
    """Client for the OCI registry API.

    Entering the client logs in to the registry, leaving it logs out.
    Once logged in, the client can be shared between threads.
    """

    def __init__(
        self,
        registry_url: str,
        credentials: RegistryCredentials | None = None,
        retry: Retry | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self.registry_url = _clean_url(registry_url)
        self.credentials = credentials
        self.retry = retry or DEFAULT_RETRY
        self._transport = transport
        self._session = None

    def __enter__(self):
        self.login()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logout()

    @property
    def registry(self) -> str:
        return urlparse(self.registry_url).netloc

    @property
    def session(self) -> httpx.Client:
        if self._session is None:
            self._session = httpx.Client(
                auth=TokenAuth(self.credentials),
                follow_redirects=True,
                max_redirects=2,
                transport=RetryTransport(transport=self._transport, retry=self.retry),
            )
        return self._session

    def head(self, uri, **kwargs):
        return self.session.head(f"{self.registry_url}{uri}", **kwargs)

    def get(self, uri, **kwargs):
        return self.session.get(f"{self.registry_url}{uri}", **kwargs)

    def post(self, uri, **kwargs):
        return self.session.post(f"{self.registry_url}{uri}", **kwargs)

    def put(self, uri, **kwargs):
        return self.session.put(f"{self.registry_url}{uri}", **kwargs)

    def login(self):
        """Open the session and check the credentials against the registry"""
        logger.info("Logging in to %s", self.registry)
        try:
            result = self.get("/v2/")
            if result.status_code == 401:
                raise AuthenticationError(f"Unable to log in to {self.registry}")
            result.raise_for_status()
        except Exception:
            self.logout()
            raise

    def logout(self):
        if self._session is not None:
            logger.info("Logging out of %s", self.registry)
            self._session.close()
            self._session = None

    def head_manifest(self, name: str, reference: str) -> httpx.Response:
        result = self.head(
            f"/v2/{name}/manifests/{reference}", headers={"Accept": MANIFEST_ACCEPT}
        )
        result.raise_for_status()
        return result

    def get_manifest(self, name: str, reference: str) -> httpx.Response:
        result = self.get(
            f"/v2/{name}/manifests/{reference}", headers={"Accept": MANIFEST_ACCEPT}
        )
        result.raise_for_status()
        return result

    def list_referrers(
        self, name: str, digest: str, artifact_type: str | None = None
    ) -> dict | None:
        """List the manifests that have `digest` as their subject

        Returns `None` when the registry does not support the referrers API,
        which it signals with a 404.

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-referrers
        """
        params = {"artifactType": artifact_type} if artifact_type else None
        result = self.get(f"/v2/{name}/referrers/{digest}", params=params)
        if result.status_code == 404:
            logger.debug("Referrers API not supported by %s", self.registry)
            return None
        result.raise_for_status()
        return result.json()

    def push_blob(self, name: str, blob: bytes, digest: str):
        """Push a blob for repository `name`

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-blobs
        """
        response = self.head(f"/v2/{name}/blobs/{digest}")
        if response.status_code == 200:
            logger.debug("Blob already exists: %s@%s", name, digest)
            return

        # POST then PUT
        response = self.post(
            f"/v2/{name}/blobs/uploads/",
            headers={"content-type": "application/octet-stream"},
        )
        response.raise_for_status()
        if response.status_code == 202:
            location = response.headers["location"]
            if location.startswith("/"):
                put = self.put
            else:
                put = self.session.put
            response = put(
                location,
                content=blob,
                headers={"content-type": "application/octet-stream"},
                params={"digest": digest},
            )
            response.raise_for_status()

    def push_manifest(
        self,
        name: str,
        manifest: Manifest | ReferrersIndex,
        reference: str | None = None,
    ) -> httpx.Response:
        """Push a manifest for repository `name`, by tag `reference` or by digest

        Registries supporting the referrers API answer a manifest with a
        `subject` with the `OCI-Subject` header.

        ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#pushing-manifests
        """
        descriptor = manifest.descriptor
        if reference is None:
            reference = descriptor.digest

        logger.debug("Pushing manifest: %s", descriptor.data)
        response = self.put(
            f"/v2/{name}/manifests/{reference}",
            content=descriptor.data,
            headers={"content-type": descriptor.mediaType},
        )
        if (
            not response.is_success
            and "application/json" in response.headers.get("Content-Type", "")
        ):
            logger.error(response.json())
        response.raise_for_status()
        return response
