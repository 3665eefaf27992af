"""Image catalog snapshots

A catalog is the "image info" document published by an image build: the
repos that were built, their images and the platforms of each image, all
identified by content digest.
"""
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class Platform(BaseModel):
    model_config = ConfigDict(frozen=True)

    dockerfile: str
    digest: str
    osType: str = "Linux"
    osVersion: str | None = None
    architecture: str = "amd64"
    simpleTags: list[str] = []


class ManifestData(BaseModel):
    """The multi-platform manifest list of an image"""

    model_config = ConfigDict(frozen=True)

    digest: str
    sharedTags: list[str] | None = None


class Image(BaseModel):
    model_config = ConfigDict(frozen=True)

    productVersion: str = ""
    manifest: ManifestData | None = None
    platforms: list[Platform] = []

    @property
    def shared_tags(self) -> list[str] | None:
        return self.manifest.sharedTags if self.manifest else None

    @property
    def manifest_digest(self) -> str | None:
        return self.manifest.digest if self.manifest else None

    @property
    def identity(self) -> str:
        """The key that identifies an image across releases

        Product version, followed by the sorted shared tags when there are any.
        """
        if self.shared_tags is None:
            return self.productVersion
        return f"{self.productVersion} {' '.join(sorted(self.shared_tags))}"

    @property
    def dockerfiles(self) -> set[str]:
        return {p.dockerfile for p in self.platforms}

    def get_platform(self, dockerfile: str) -> Platform | None:
        return next((p for p in self.platforms if p.dockerfile == dockerfile), None)


class Repo(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo: str
    images: list[Image] = []

    @property
    def name(self) -> str:
        return self.repo


class Catalog(BaseModel):
    model_config = ConfigDict(frozen=True)

    repos: list[Repo] = []

    def get_repo(self, name: str) -> Repo | None:
        return next((r for r in self.repos if r.repo == name), None)


def load_catalog(path: Path) -> Catalog:
    """Load a catalog snapshot

    Raises FileNotFoundError when the file does not exist and
    pydantic.ValidationError when it is not a valid catalog.
    """
    logger.debug("Loading catalog %s", path)
    return Catalog.model_validate_json(Path(path).read_bytes())
