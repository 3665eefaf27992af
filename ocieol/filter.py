import platform as host
import re
from dataclasses import dataclass, field
from typing import Iterator

from ocieol.catalog import Catalog, Image, Platform, Repo

# platform.machine() to docker architecture names
ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv8l": "arm",
}


def host_architecture() -> str:
    machine = host.machine().lower()
    return ARCHITECTURES.get(machine, machine)


def host_os() -> str:
    return host.system().lower()


def glob_pattern(value: str) -> re.Pattern:
    """Translate a `*` / `?` wildcard into an anchored, case-insensitive regex"""
    pattern = re.escape(value).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{pattern}$", re.IGNORECASE)


@dataclass
class CatalogFilter:
    """Select the repos and platforms a run applies to

    Every method returns a fresh generator, the catalog is never modified.
    """

    include_repo: str = ""
    include_path: str = ""
    architecture: str = field(default_factory=host_architecture)
    os: str = field(default_factory=host_os)
    active_only: bool = False

    def get_repos(self, catalog: Catalog) -> Iterator[Repo]:
        return (
            repo
            for repo in catalog.repos
            if not self.include_repo.strip() or repo.repo == self.include_repo
        )

    def get_platforms(self, image: Image) -> Iterator[Platform]:
        if not self.include_path.strip():
            return iter(image.platforms)
        pattern = glob_pattern(self.include_path)
        return (p for p in image.platforms if pattern.match(p.dockerfile))

    def get_active_platforms(self, image: Image) -> Iterator[Platform]:
        """Platforms that can be built or run on this host"""
        return (
            p
            for p in self.get_platforms(image)
            if p.osType.lower() == self.os.lower()
            and p.architecture == self.architecture
        )

    def apply(self, catalog: Catalog) -> Catalog:
        """Return a copy of `catalog` holding only the selected repos and platforms

        With a path filter or `active_only`, images without any selected
        platform are left out, they are out of scope rather than empty.
        """
        select = self.get_active_platforms if self.active_only else self.get_platforms
        scoped = self.active_only or bool(self.include_path.strip())
        repos = []
        for repo in self.get_repos(catalog):
            images = []
            for image in repo.images:
                platforms = list(select(image))
                if scoped and not platforms:
                    continue
                images.append(image.model_copy(update={"platforms": platforms}))
            repos.append(repo.model_copy(update={"images": images}))
        return Catalog(repos=repos)
