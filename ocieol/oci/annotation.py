"""Lifecycle annotations

An EOL annotation is an artifact manifest attached to the retired digest
through its `subject` field, carrying the end-of-life date as an annotation.
This is what `oras attach` produces, and what `oras discover` lists.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Protocol

import httpx
from pydantic import ValidationError

from ocieol.oci.client import Client
from ocieol.oci.descriptor import Descriptor, EmptyDescriptor
from ocieol.oci.manifest import MANIFEST_MEDIA_TYPE, Manifest, ReferrersIndex

logger = logging.getLogger(__name__)

LIFECYCLE_ARTIFACT_TYPE = "application/vnd.microsoft.artifact.lifecycle"
EOL_DATE_ANNOTATION = "vnd.microsoft.artifact.lifecycle.end-of-life.date"
CREATED_ANNOTATION = "org.opencontainers.image.created"


class AnnotationError(Exception):
    """Raised when a digest could not be checked or annotated."""

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"{reference}: {reason}")


class Annotator(Protocol):
    def is_annotated(self, reference: str) -> bool:
        ...

    def annotate(self, reference: str, eol_date: date) -> None:
        ...


@dataclass(frozen=True, slots=True)
class DigestReference:
    """`[registry/]repository@digest`"""

    digest: str
    repository: str | None = None
    registry: str | None = None

    def __str__(self):
        name = "/".join(p for p in (self.registry, self.repository) if p)
        return f"{name}@{self.digest}" if name else self.digest

    @classmethod
    def parse(cls, value: str) -> DigestReference:
        name, sep, digest = value.rpartition("@")
        if not sep:
            return cls(digest=value)
        if ":" not in digest:
            raise ValueError(f"Invalid digest reference: {value}")
        first, _, rest = name.partition("/")
        if rest and ("." in first or ":" in first or first == "localhost"):
            return cls(digest=digest, repository=rest, registry=first)
        return cls(digest=digest, repository=name)


def registry_of(value: str) -> str | None:
    """Return the registry host of a digest reference, if it has one"""
    return DigestReference.parse(value).registry


def referrers_tag(digest: str) -> str:
    """Tag of the referrers index for registries without the referrers API

    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#referrers-tag-schema
    """
    return digest.replace(":", "-", 1)


class RegistryAnnotator:
    """Annotates digests through the registry's referrers API

    Registries without the referrers API are handled through the referrers
    tag schema, like `oras` does.
    """

    def __init__(self, client: Client, default_repository: str | None = None):
        self.client = client
        self.default_repository = default_repository

    def _resolve(self, reference: str) -> tuple[str, str]:
        try:
            ref = DigestReference.parse(reference)
        except ValueError as e:
            raise AnnotationError(reference, str(e)) from e
        repository = ref.repository or self.default_repository
        if repository is None:
            raise AnnotationError(reference, "no repository to resolve the digest in")
        if ref.registry is not None and ref.registry != self.client.registry:
            logger.debug(
                "Resolving %s against %s instead of %s",
                reference,
                self.client.registry,
                ref.registry,
            )
        return repository, ref.digest

    def _tag_index(self, repository: str, digest: str) -> ReferrersIndex:
        try:
            response = self.client.get_manifest(
                name=repository, reference=referrers_tag(digest)
            )
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return ReferrersIndex()
            raise
        return ReferrersIndex.model_validate_json(response.content)

    def _add_to_tag_index(self, repository: str, digest: str, manifest: Manifest):
        index = self._tag_index(repository, digest)
        if manifest.descriptor.digest in {m.digest for m in index.manifests}:
            return
        referrer = manifest.descriptor.model_copy(
            update={
                "artifactType": manifest.artifactType,
                "annotations": manifest.annotations,
            }
        )
        logger.debug("Adding %s to the referrers tag of %s", referrer.digest, digest)
        self.client.push_manifest(
            name=repository,
            manifest=ReferrersIndex(manifests=[*index.manifests, referrer]),
            reference=referrers_tag(digest),
        )

    def is_annotated(self, reference: str) -> bool:
        repository, digest = self._resolve(reference)
        try:
            data = self.client.list_referrers(
                name=repository, digest=digest, artifact_type=LIFECYCLE_ARTIFACT_TYPE
            )
            if data is None:
                index = self._tag_index(repository, digest)
            else:
                index = ReferrersIndex.model_validate(data)
        except httpx.HTTPError as e:
            raise AnnotationError(reference, f"referrers lookup failed: {e}") from e
        except ValidationError as e:
            raise AnnotationError(reference, f"invalid referrers index: {e}") from e
        # Registries may ignore the artifactType filter
        return bool(index.of_type(LIFECYCLE_ARTIFACT_TYPE))

    def _subject(self, repository: str, digest: str) -> Descriptor:
        response = self.client.head_manifest(name=repository, reference=digest)
        size = response.headers.get("Content-Length")
        if size is None:
            response = self.client.get_manifest(name=repository, reference=digest)
            size = len(response.content)
        return Descriptor(
            mediaType=response.headers.get("Content-Type", MANIFEST_MEDIA_TYPE),
            digest=digest,
            size=int(size),
        )

    def annotate(self, reference: str, eol_date: date) -> None:
        repository, digest = self._resolve(reference)
        try:
            manifest = lifecycle_manifest(
                subject=self._subject(repository, digest), eol_date=eol_date
            )
            response = manifest.push(name=repository, client=self.client)
            if "OCI-Subject" not in response.headers:
                self._add_to_tag_index(repository, digest, manifest)
        except httpx.HTTPError as e:
            raise AnnotationError(reference, f"attach failed: {e}") from e
        except ValidationError as e:
            raise AnnotationError(reference, f"invalid referrers index: {e}") from e


def lifecycle_manifest(
    subject: Descriptor, eol_date: date, created: datetime | None = None
) -> Manifest:
    """Build the artifact manifest marking `subject` as end of life"""
    created = created or datetime.now(timezone.utc)
    return Manifest(
        artifactType=LIFECYCLE_ARTIFACT_TYPE,
        config=EmptyDescriptor(),
        layers=[EmptyDescriptor()],
        subject=subject,
        annotations={
            EOL_DATE_ANNOTATION: eol_date.isoformat(),
            CREATED_ANNOTATION: created.strftime("%Y-%m-%dT%H:%M:%SZ"),
        },
    )
