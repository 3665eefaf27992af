import json
import logging
import re
from hashlib import sha256
from pathlib import Path

import httpx
import pytest
from httpx_retries import Retry

from ocieol.catalog import Catalog, Image, ManifestData, Platform, Repo
from ocieol.oci import Client

TEST_DATA = Path(__file__).parent / "testdata"

NO_BACKOFF = Retry(
    total=2,
    backoff_factor=0.0,
    allowed_methods=("GET", "HEAD", "POST", "PUT"),
    status_forcelist=(500, 502, 503),
)

_UPLOAD_RE = re.compile(r"^/v2/(?P<name>.+)/blobs/uploads/(?P<id>.*)$")
_RESOURCE_RE = re.compile(r"^/v2/(?P<name>.+)/(?P<kind>manifests|blobs|referrers)/(?P<ref>[^/]+)$")


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo the logging configuration installed by the CLI"""
    root = logging.getLogger()
    handlers = root.handlers[:]
    yield
    root.handlers[:] = handlers
    for name in ("ocieol", "httpx"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)


@pytest.fixture
def testdata() -> Path:
    """Return the testdata dir for this module"""
    return TEST_DATA


def digest_of(value: str) -> str:
    return f"sha256:{sha256(value.encode('utf-8')).hexdigest()}"


def make_image(
    product_version: str,
    platforms: dict[str, str],
    manifest: str | None = None,
    shared_tags: list[str] | None = None,
) -> Image:
    """`platforms` maps Dockerfile paths to digests"""
    return Image(
        productVersion=product_version,
        manifest=ManifestData(digest=manifest, sharedTags=shared_tags) if manifest else None,
        platforms=[Platform(dockerfile=path, digest=digest) for path, digest in platforms.items()],
    )


def make_catalog(**repos: list[Image]) -> Catalog:
    return Catalog(repos=[Repo(repo=name, images=images) for name, images in repos.items()])


class FakeRegistry:
    """Just enough of an OCI registry, served through httpx.MockTransport"""

    def __init__(self, referrers_api: bool = True):
        self.referrers_api = referrers_api
        self.content_length = True
        self.manifests: dict[tuple[str, str], bytes] = {}
        self.blobs: dict[tuple[str, str], bytes] = {}
        self.failing: set[str] = set()
        self.requests: list[httpx.Request] = []

    def add_image(self, name: str, content: str = "image") -> str:
        data = json.dumps({"schemaVersion": 2, "content": content}).encode("utf-8")
        digest = f"sha256:{sha256(data).hexdigest()}"
        self.manifests[(name, digest)] = data
        return digest

    def referrers(self, name: str, digest: str) -> list[dict]:
        result = []
        for (repo, ref), data in self.manifests.items():
            manifest = json.loads(data)
            if repo == name and manifest.get("subject", {}).get("digest") == digest:
                result.append(
                    {
                        "mediaType": manifest["mediaType"],
                        "digest": ref,
                        "size": len(data),
                        "artifactType": manifest.get("artifactType"),
                        "annotations": manifest.get("annotations"),
                    }
                )
        return result

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v2/":
            return httpx.Response(200)

        if match := _UPLOAD_RE.match(path):
            if request.method == "POST":
                return httpx.Response(202, headers={"Location": f"/v2/{match['name']}/blobs/uploads/1"})
            self.blobs[(match["name"], request.url.params["digest"])] = request.content
            return httpx.Response(201)

        match = _RESOURCE_RE.match(path)
        if match is None:
            return httpx.Response(404)
        name, kind, ref = match["name"], match["kind"], match["ref"]
        if ref in self.failing:
            return httpx.Response(500)

        if kind == "referrers":
            if not self.referrers_api:
                return httpx.Response(404)
            manifests = self.referrers(name, ref)
            if artifact_type := request.url.params.get("artifactType"):
                manifests = [m for m in manifests if m["artifactType"] == artifact_type]
            return httpx.Response(
                200,
                json={
                    "schemaVersion": 2,
                    "mediaType": "application/vnd.oci.image.index.v1+json",
                    "manifests": manifests,
                },
            )

        if kind == "blobs":
            if (name, ref) in self.blobs:
                return httpx.Response(200, headers={"Content-Length": str(len(self.blobs[(name, ref)]))})
            return httpx.Response(404)

        if request.method == "PUT":
            self.manifests[(name, ref)] = request.content
            headers = {"Docker-Content-Digest": ref}
            subject = json.loads(request.content).get("subject")
            if self.referrers_api and subject:
                headers["OCI-Subject"] = subject["digest"]
            return httpx.Response(201, headers=headers)
        if (name, ref) not in self.manifests:
            return httpx.Response(404)
        data = self.manifests[(name, ref)]
        media_type = json.loads(data).get("mediaType", "application/vnd.oci.image.manifest.v1+json")
        if request.method == "GET":
            return httpx.Response(200, content=data, headers={"Content-Type": media_type})
        headers = {"Content-Type": media_type}
        if self.content_length:
            headers["Content-Length"] = str(len(data))
        return httpx.Response(200, headers=headers)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def client(registry):
    with Client(
        registry_url="https://registry.example.com",
        transport=registry.transport(),
        retry=NO_BACKOFF,
    ) as client:
        yield client
