"""Jenkins sync operator CLI (jobsync).

Usage:
    jobsync run                      # Run the operator (configured from env)
    jobsync validate ./manifests     # Validate a manifests directory
    jobsync hash ./manifests/a.yaml  # Print content hashes of manifest specs
    jobsync render ./manifests/a.yaml  # Print the rendered Jenkins config.xml
"""

from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import click

from .external import InvalidSpecError, derive_external_name
from .jenkins import render_config_xml
from .manifests import ManifestLoadError, is_auto_sync, load_manifest, load_manifests
from .models import content_hash

VERSION = "0.1.0"


@click.group()
@click.version_option(version=VERSION, prog_name="jobsync")
def cli() -> None:
    """Jenkins sync operator CLI (jobsync).

    Keeps declared ManagedJob manifests in sync with Jenkins items.

    \b
    Quick Start:
        jobsync validate ./manifests   # Check manifests before deploying
        jobsync run                    # Run the operator
    """
    pass


# =============================================================================
# Run Commands
# =============================================================================


@cli.command()
@click.option("--jenkins-url", help="Jenkins base URL (overrides JENKINS_URL)")
@click.option(
    "--manifests-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Manifests directory (overrides MANIFESTS_DIR)",
)
@click.option("--workers", "-w", type=click.IntRange(min=1), help="Number of reconcile workers")
def run(jenkins_url: str | None, manifests_dir: str | None, workers: int | None) -> None:
    """Run the operator until SIGTERM or SIGINT.

    \b
    Examples:
        jobsync run
        jobsync run --jenkins-url http://localhost:8080 --manifests-dir ./manifests
    """
    # The operator reads its configuration from the environment
    if jenkins_url:
        os.environ["JENKINS_URL"] = jenkins_url
    if manifests_dir:
        os.environ["MANIFESTS_DIR"] = str(Path(manifests_dir).resolve())

    from .main import main

    sys.exit(asyncio.run(main(worker_count=workers)))


# =============================================================================
# Manifest Commands
# =============================================================================


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--quiet", "-q", is_flag=True, help="Only report errors")
def validate(directory: Path, quiet: bool) -> None:
    """Validate every manifest in DIRECTORY."""
    try:
        manifests = load_manifests(directory)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    if not quiet:
        for manifest in manifests:
            flags = " (autosync)" if is_auto_sync(manifest) else ""
            click.echo(f"  {manifest.key}{flags}")

    click.secho(f"✓ {len(manifests)} manifests valid", fg="green")


@cli.command("hash")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def hash_command(file: Path) -> None:
    """Print the content hash of each manifest spec in FILE.

    The hash matches the jobsync.io/spechash annotation written after a
    successful sync.
    """
    try:
        manifests = load_manifest(file)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    for manifest in manifests:
        click.echo(f"{manifest.key}\t{content_hash(manifest.spec)}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def render(file: Path) -> None:
    """Print the Jenkins config.xml for each manifest in FILE."""
    try:
        manifests = load_manifest(file)
    except ManifestLoadError as e:
        raise click.ClickException(str(e)) from e

    for manifest in manifests:
        name = derive_external_name(manifest.metadata.namespace, manifest.metadata.name)
        try:
            config_xml = render_config_xml(manifest.spec)
        except InvalidSpecError as e:
            raise click.ClickException(f"{manifest.key}: {e}") from e
        click.echo(f"# {name}")
        click.echo(config_xml)


if __name__ == "__main__":
    cli()
