import logging
import logging.config
from datetime import datetime
from pathlib import Path

import click
import httpx
from pydantic import ValidationError

from ocieol.catalog import load_catalog
from ocieol.credentials import (
    ChainedCredentialsProvider,
    DockerConfigCredentialsProvider,
    NoCredentialsFound,
    RegistryCredentials,
    StaticCredentialsProvider,
)
from ocieol.dispatch import BatchAnnotationError, annotate_digests
from ocieol.eol import EolBatch
from ocieol.filter import CatalogFilter
from ocieol.oci import AuthenticationError, Client, RegistryAnnotator
from ocieol.oci.annotation import registry_of
from ocieol.reconcile import generate_eol_batch

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    },
    "loggers": {
        "ocieol": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "httpx": {"handlers": ["default"], "level": "WARNING", "propagate": False},
    },
}


def configure_logging(debug: bool = False):
    logging.config.dictConfig(LOGGING_CONFIG)
    if debug:
        logging.getLogger("ocieol").setLevel(logging.DEBUG)
        logging.getLogger("httpx").setLevel(logging.DEBUG)


def _registry_from_batch(batch: EolBatch) -> str:
    registries = {registry_of(d.digest) for d in batch.eolDigests}
    registries.discard(None)
    if len(registries) != 1:
        raise click.UsageError(
            "Unable to derive the registry from the EOL digests "
            f"(found {sorted(registries) or 'none'}), use --registry."
        )
    return registries.pop()


@click.group()
@click.option("-d", "--debug", help="Debug output", is_flag=True)
def cli(debug: bool):
    configure_logging(debug=debug)


@cli.command()
@click.argument("old", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("new", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option(
    "--eol-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="EOL annotations date (default is today's UTC date)",
)
@click.option("--repo", "include_repo", default="", help="Only this repo")
@click.option("--path", "include_path", default="", help="Only Dockerfiles matching this glob")
@click.option("--active-only", is_flag=True, help="Only platforms matching this host's OS and architecture")
def generate(
    old: Path,
    new: Path,
    output: Path,
    eol_date: datetime | None,
    include_repo: str,
    include_path: str,
    active_only: bool,
):
    """Generate the EOL digests for moving from the OLD to the NEW image info."""
    try:
        old_catalog = load_catalog(old)
        new_catalog = load_catalog(new)
    except ValidationError as e:
        raise click.ClickException(f"Invalid image info: {e}") from e

    manifest_filter = CatalogFilter(
        include_repo=include_repo, include_path=include_path, active_only=active_only
    )
    batch = generate_eol_batch(
        manifest_filter.apply(old_catalog),
        manifest_filter.apply(new_catalog),
        eol_date=eol_date.date() if eol_date else None,
    )
    batch.dump(output)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--no-check", is_flag=True, help="Annotate without checking for an existing annotation")
@click.option("--dry-run", is_flag=True, help="Log the annotations instead of pushing them")
@click.option("-r", "--registry", default=None, help="Registry to annotate in")
@click.option("-u", "--username", default=None, envvar="OCIEOL_USERNAME", help="Username")
@click.option("-p", "--password", default=None, envvar="OCIEOL_PASSWORD", help="Password")
@click.option("--repository", default=None, help="Repository for digests without one")
@click.option("--max-workers", type=click.IntRange(min=1), default=None, help="Parallel annotations")
def annotate(
    path: Path,
    no_check: bool,
    dry_run: bool,
    registry: str | None,
    username: str | None,
    password: str | None,
    repository: str | None,
    max_workers: int | None,
):
    """Annotate the digests in the EOL batch file at PATH."""
    try:
        batch = EolBatch.load(path)
    except ValidationError as e:
        raise click.ClickException(f"Invalid EOL digests file: {e}") from e

    registry = registry or _registry_from_batch(batch)
    static = {}
    if username and password:
        static[registry] = RegistryCredentials(username=username, password=password)
    provider = ChainedCredentialsProvider(
        [StaticCredentialsProvider(static), DockerConfigCredentialsProvider()]
    )
    try:
        credentials = provider.get_credentials(registry)
        with Client(registry_url=registry, credentials=credentials) as client:
            ledger = annotate_digests(
                batch,
                RegistryAnnotator(client, default_repository=repository),
                skip_check=no_check,
                dry_run=dry_run,
                max_workers=max_workers,
            )
        ledger.raise_for_failures()
    except (NoCredentialsFound, AuthenticationError, BatchAnnotationError, httpx.HTTPError) as e:
        raise click.ClickException(str(e)) from e


if __name__ == "__main__":
    cli()
