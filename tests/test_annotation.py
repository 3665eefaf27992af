import json
from datetime import date, datetime, timezone

import pytest

from ocieol.oci import (
    EOL_DATE_ANNOTATION,
    LIFECYCLE_ARTIFACT_TYPE,
    AnnotationError,
    Client,
    DigestReference,
    RegistryAnnotator,
)
from ocieol.oci.annotation import lifecycle_manifest, referrers_tag, registry_of
from ocieol.oci.descriptor import EMPTY_DIGEST, Descriptor
from tests.conftest import NO_BACKOFF, FakeRegistry


@pytest.mark.parametrize(
    "value,expected",
    [
        ("sha256:abc", DigestReference(digest="sha256:abc")),
        ("dotnet/runtime@sha256:abc", DigestReference("sha256:abc", "dotnet/runtime")),
        ("mcr.microsoft.com/dotnet/runtime@sha256:abc", DigestReference("sha256:abc", "dotnet/runtime", "mcr.microsoft.com")),
        ("localhost:5000/runtime@sha256:abc", DigestReference("sha256:abc", "runtime", "localhost:5000")),
        ("localhost/runtime@sha256:abc", DigestReference("sha256:abc", "runtime", "localhost")),
        ("runtime@sha256:abc", DigestReference("sha256:abc", "runtime")),
    ],
)
def test_parse_reference(value, expected):
    assert (ref := DigestReference.parse(value)) == expected
    assert str(ref) == value


def test_parse_invalid_reference():
    with pytest.raises(ValueError):
        DigestReference.parse("runtime@latest")


def test_registry_of():
    assert registry_of("mcr.microsoft.com/dotnet/runtime@sha256:abc") == "mcr.microsoft.com"
    assert registry_of("dotnet/runtime@sha256:abc") is None


def test_lifecycle_manifest():
    subject = Descriptor(mediaType="application/vnd.oci.image.manifest.v1+json", digest="sha256:abc", size=10)
    manifest = lifecycle_manifest(
        subject, date(2024, 5, 14), created=datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    )
    data = json.loads(manifest.descriptor.data)
    assert data == {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "artifactType": LIFECYCLE_ARTIFACT_TYPE,
        "config": {"mediaType": "application/vnd.oci.empty.v1+json", "digest": EMPTY_DIGEST, "size": 2},
        "layers": [{"mediaType": "application/vnd.oci.empty.v1+json", "digest": EMPTY_DIGEST, "size": 2}],
        "subject": {"mediaType": "application/vnd.oci.image.manifest.v1+json", "digest": "sha256:abc", "size": 10},
        "annotations": {
            EOL_DATE_ANNOTATION: "2024-05-14",
            "org.opencontainers.image.created": "2024-05-01T12:00:00Z",
        },
    }


def test_annotate_then_is_annotated(registry, client):
    digest = registry.add_image("dotnet/runtime")
    reference = f"registry.example.com/dotnet/runtime@{digest}"
    annotator = RegistryAnnotator(client)

    assert annotator.is_annotated(reference) is False
    annotator.annotate(reference, date(2024, 5, 14))
    assert annotator.is_annotated(reference) is True

    (referrer,) = registry.referrers("dotnet/runtime", digest)
    assert referrer["artifactType"] == LIFECYCLE_ARTIFACT_TYPE
    assert referrer["annotations"][EOL_DATE_ANNOTATION] == "2024-05-14"
    assert ("dotnet/runtime", EMPTY_DIGEST) in registry.blobs


def test_other_referrers_are_not_annotations(registry, client):
    digest = registry.add_image("runtime")
    signature = {
        "schemaVersion": 2,
        "mediaType": "application/vnd.oci.image.manifest.v1+json",
        "artifactType": "application/vnd.cncf.notary.signature",
        "subject": {"digest": digest},
    }
    registry.manifests[("runtime", "sha256:signature")] = json.dumps(signature).encode("utf-8")
    assert RegistryAnnotator(client).is_annotated(f"runtime@{digest}") is False


def test_default_repository(registry, client):
    digest = registry.add_image("dotnet/sdk")
    annotator = RegistryAnnotator(client, default_repository="dotnet/sdk")
    annotator.annotate(digest, date(2024, 5, 14))
    assert annotator.is_annotated(digest)


def test_missing_repository(client):
    with pytest.raises(AnnotationError, match="no repository"):
        RegistryAnnotator(client).annotate("sha256:abc", date(2024, 5, 14))


def test_unknown_digest(client):
    with pytest.raises(AnnotationError, match="attach failed"):
        RegistryAnnotator(client).annotate("runtime@sha256:missing", date(2024, 5, 14))


def test_referrers_tag_schema():
    registry = FakeRegistry(referrers_api=False)
    digest = registry.add_image("runtime")
    reference = f"runtime@{digest}"
    with Client("registry.example.com", transport=registry.transport(), retry=NO_BACKOFF) as client:
        annotator = RegistryAnnotator(client)
        assert annotator.is_annotated(reference) is False
        annotator.annotate(reference, date(2024, 5, 14))
        assert annotator.is_annotated(reference) is True

    index = json.loads(registry.manifests[("runtime", referrers_tag(digest))])
    assert index["mediaType"] == "application/vnd.oci.image.index.v1+json"
    (referrer,) = index["manifests"]
    assert referrer["artifactType"] == LIFECYCLE_ARTIFACT_TYPE
    assert referrer["annotations"][EOL_DATE_ANNOTATION] == "2024-05-14"
    assert ("runtime", referrer["digest"]) in registry.manifests


def test_referrers_api_does_not_use_the_tag(registry, client):
    digest = registry.add_image("runtime")
    RegistryAnnotator(client).annotate(f"runtime@{digest}", date(2024, 5, 14))
    assert ("runtime", referrers_tag(digest)) not in registry.manifests


def test_referrers_tag():
    assert referrers_tag("sha256:abc") == "sha256-abc"


def test_subject_size_without_content_length(registry, client):
    digest = registry.add_image("runtime")
    registry.content_length = False
    RegistryAnnotator(client).annotate(f"runtime@{digest}", date(2024, 5, 14))

    (referrer,) = registry.referrers("runtime", digest)
    manifest = json.loads(registry.manifests[("runtime", referrer["digest"])])
    assert manifest["subject"]["size"] == len(registry.manifests[("runtime", digest)])
    assert any(r.method == "GET" and digest in r.url.path for r in registry.requests)


def test_invalid_referrers_index(registry, client):
    digest = registry.add_image("runtime")
    registry.referrers_api = False
    registry.manifests[("runtime", referrers_tag(digest))] = b'{"manifests": "nope"}'
    with pytest.raises(AnnotationError, match="invalid referrers index"):
        RegistryAnnotator(client).is_annotated(f"runtime@{digest}")


def test_server_errors_are_retried_then_reported(registry, client):
    digest = registry.add_image("runtime")
    registry.failing.add(digest)
    with pytest.raises(AnnotationError, match="referrers lookup failed"):
        RegistryAnnotator(client).is_annotated(f"runtime@{digest}")
    referrer_requests = [r for r in registry.requests if "/referrers/" in r.url.path]
    assert len(referrer_requests) > 1
