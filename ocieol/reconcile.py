"""Work out which digests a new release retires

Every repo of the old catalog is compared with the new catalog:

- a repo missing from the new catalog retires all of its digests
- an old image is matched to its successor, first on a shared Dockerfile and
  then on its identity (product version and shared tags)
- an old platform digest is retired when there is no successor, when the
  successor lost the platform or when the platform was rebuilt
- an old manifest list digest is retired when the successor does not have
  the same one
"""
import logging
from datetime import date
from functools import cache
from typing import Iterator

from ocieol.catalog import Catalog, Image, Repo
from ocieol.eol import EolBatch, utc_today

logger = logging.getLogger(__name__)


def repo_digests(repo: Repo) -> Iterator[str]:
    """All manifest list and platform digests of a repo"""
    for image in repo.images:
        if image.manifest_digest is not None:
            yield image.manifest_digest
        for platform in image.platforms:
            yield platform.digest


def find_successor(image: Image, new_repo: Repo) -> Image | None:
    """Find the image of `new_repo` that replaces `image`"""
    dockerfiles = image.dockerfiles
    identity = image.identity
    candidates = (
        i for i in new_repo.images if any(p.dockerfile in dockerfiles for p in i.platforms)
    )
    return next((i for i in candidates if i.identity == identity), None)


def image_eol_digests(image: Image, new_repo: Repo) -> Iterator[str]:
    """Digests of `image` that are no longer in use in `new_repo`"""

    @cache
    def successor() -> Image | None:
        return find_successor(image, new_repo)

    for platform in image.platforms:
        if successor() is None:
            yield platform.digest
            continue
        new_platform = successor().get_platform(platform.dockerfile)
        if new_platform is None or new_platform.digest != platform.digest:
            yield platform.digest

    if image.manifest_digest is not None and (
        successor() is None or successor().manifest_digest != image.manifest_digest
    ):
        yield image.manifest_digest


def eol_digests(old: Catalog, new: Catalog) -> Iterator[str]:
    for old_repo in old.repos:
        new_repo = new.get_repo(old_repo.repo)
        if new_repo is None:
            logger.info("Repo '%s' was removed, retiring all its digests", old_repo.repo)
            yield from repo_digests(old_repo)
            continue
        for image in old_repo.images:
            yield from image_eol_digests(image, new_repo)


def generate_eol_batch(old: Catalog, new: Catalog, eol_date: date | None = None) -> EolBatch:
    """Compute the EOL batch for moving from the `old` to the `new` catalog"""
    eol_date = eol_date or utc_today()
    try:
        batch = EolBatch.from_digests(eol_digests(old, new), eol_date=eol_date)
    except Exception:
        logger.exception("Error occurred while generating EOL annotation data")
        raise
    logger.info("Found %d EOL digests", len(batch.eolDigests))
    return batch
