"""Registry credentials

Credentials are resolved once per run, before any registry call is made.
"""
import base64
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

DOCKER_CONFIG = Path.home() / ".docker" / "config.json"


class NoCredentialsFound(Exception):
    """Raised when no credentials are configured for a registry."""

    def __init__(self, registry: str):
        self.registry = registry
        super().__init__(f"No credentials found for the registry '{registry}'.")


@dataclass(frozen=True, slots=True)
class RegistryCredentials:
    username: str
    password: str = field(repr=False)


class CredentialsProvider(Protocol):
    def get_credentials(self, registry: str) -> RegistryCredentials:
        ...


@dataclass
class StaticCredentialsProvider:
    """Credentials passed on the command line or through the environment"""

    credentials: dict[str, RegistryCredentials] = field(default_factory=dict)

    def get_credentials(self, registry: str) -> RegistryCredentials:
        try:
            return self.credentials[registry]
        except KeyError:
            raise NoCredentialsFound(registry) from None


@dataclass
class DockerConfigCredentialsProvider:
    """Credentials stored by `docker login` in the docker config file

    Only inline `auths` entries are supported, credential helpers are not.
    """

    path: Path = DOCKER_CONFIG

    def get_credentials(self, registry: str) -> RegistryCredentials:
        if not self.path.is_file():
            raise NoCredentialsFound(registry)
        auths = json.loads(self.path.read_text()).get("auths", {})
        for key in (registry, f"https://{registry}", f"http://{registry}"):
            if auth := auths.get(key, {}).get("auth"):
                username, password = (
                    base64.b64decode(auth).decode("utf-8").split(":", 1)
                )
                logger.debug("Using credentials for %s from %s", registry, self.path)
                return RegistryCredentials(username=username, password=password)
        raise NoCredentialsFound(registry)


@dataclass
class ChainedCredentialsProvider:
    """Ask each provider in turn, the first one with credentials wins"""

    providers: list[CredentialsProvider]

    def get_credentials(self, registry: str) -> RegistryCredentials:
        for provider in self.providers:
            try:
                return provider.get_credentials(registry)
            except NoCredentialsFound:
                continue
        raise NoCredentialsFound(registry)
