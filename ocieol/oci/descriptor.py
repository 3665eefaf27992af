from typing import Any

from pydantic import BaseModel, Field

from ocieol.oci.client import Client

EMPTY_MEDIA_TYPE = "application/vnd.oci.empty.v1+json"
EMPTY_DIGEST = "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a"


class Descriptor(BaseModel):
    """
    ref: https://github.com/opencontainers/image-spec/blob/main/descriptor.md
    """

    digest: str
    size: int
    mediaType: str
    urls: list[str] | None = None
    annotations: dict[str, str] | None = None
    artifactType: str | None = None
    data: bytes | None = Field(exclude=True, default=None)

    def push(self, name: str, client: Client):
        if self.data is None:
            raise ValueError(f"Missing {self.__class__.__name__}.data")
        client.push_blob(name=name, blob=self.data, digest=self.digest)


class EmptyDescriptor(Descriptor):
    """The `{}` blob, used as config and sole layer of annotation artifacts

    ref: https://github.com/opencontainers/image-spec/blob/main/manifest.md#guidance-for-an-empty-descriptor
    """

    mediaType: str = EMPTY_MEDIA_TYPE
    digest: str = EMPTY_DIGEST
    size: int = 2

    def model_post_init(self, __context: Any) -> None:
        self.data = b"{}"
