from functools import cached_property
from hashlib import sha256

import httpx
from pydantic import BaseModel

from ocieol.oci.client import Client
from ocieol.oci.descriptor import Descriptor

MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"


def _describe(model: BaseModel, media_type: str) -> Descriptor:
    data = model.model_dump_json(exclude_none=True).encode("utf-8")
    return Descriptor(
        mediaType=media_type,
        digest=f"sha256:{sha256(data).hexdigest()}",
        size=len(data),
        data=data,
    )


class Manifest(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md
    """

    config: Descriptor
    artifactType: str | None = None
    layers: list[Descriptor] = []
    subject: Descriptor | None = None
    annotations: dict[str, str] | None = None

    mediaType: str = MANIFEST_MEDIA_TYPE
    schemaVersion: int = 2

    @cached_property
    def descriptor(self) -> Descriptor:
        return _describe(self, self.mediaType)

    def push(self, name: str, client: Client) -> httpx.Response:
        """Push the config, the layers and the manifest itself, by digest."""
        self.config.push(name=name, client=client)
        for layer in self.layers:
            if layer.digest != self.config.digest:
                layer.push(name=name, client=client)
        return client.push_manifest(name=name, manifest=self)


class ReferrersIndex(BaseModel):
    """Response body of the referrers API, also stored under the referrers tag

    ref: https://github.com/opencontainers/distribution-spec/blob/main/spec.md#listing-referrers
    """

    manifests: list[Descriptor] = []
    schemaVersion: int = 2
    mediaType: str = INDEX_MEDIA_TYPE

    @cached_property
    def descriptor(self) -> Descriptor:
        return _describe(self, self.mediaType)

    def of_type(self, artifact_type: str) -> list[Descriptor]:
        return [m for m in self.manifests if m.artifactType == artifact_type]
