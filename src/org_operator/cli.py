"""Atlas Organization Operator CLI (orgop).

Usage:
    orgop run                     # Run the control loop
    orgop reconcile acme          # One reconciliation pass for one manifest
    orgop validate specs/acme.yaml
    orgop secret-name specs/acme.yaml --external-id org-42
    orgop status acme             # Print persisted status
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import click
import yaml

from .config import Config, ConfigurationError
from .main import build_reconciler, main, setup_logging
from .reconciler import ReconcileResult
from .secret_naming import DEFAULT_SECRET_NAMESPACE, resolve_secret_name
from .spec_loader import SpecLoadError, find_manifest, load_manifest
from .status_store import StatusStore, StatusStoreError

PROG_NAME = "orgop"


def apply_path_overrides(
    specs_dir: str | None,
    state_dir: str | None,
    provider_config: str | None,
) -> None:
    """Export path options so Config.from_env() picks them up."""
    for key, value in (
        ("SPECS_DIR", specs_dir),
        ("STATE_DIR", state_dir),
        ("PROVIDER_CONFIG_PATH", provider_config),
    ):
        if value:
            os.environ[key] = str(Path(value).resolve())


def load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def path_options(func):
    """Shared --specs-dir/--state-dir/--provider-config options."""
    func = click.option(
        "--provider-config",
        type=click.Path(dir_okay=False),
        help="Provider config YAML (env: PROVIDER_CONFIG_PATH)",
    )(func)
    func = click.option(
        "--state-dir", type=click.Path(file_okay=False), help="Status directory (env: STATE_DIR)"
    )(func)
    func = click.option(
        "--specs-dir",
        type=click.Path(file_okay=False),
        help="Manifest directory (env: SPECS_DIR)",
    )(func)
    return func


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name=PROG_NAME)
def cli() -> None:
    """Atlas Organization Operator CLI (orgop).

    Reconciles Organization manifests into organizations and their stored
    API credentials.

    \b
    Quick Start:
        orgop validate specs/acme.yaml
        orgop reconcile acme
        orgop run
    """
    pass


@cli.command()
@path_options
def run(specs_dir: str | None, state_dir: str | None, provider_config: str | None) -> None:
    """Run the reconciliation loop until SIGTERM/SIGINT."""
    apply_path_overrides(specs_dir, state_dir, provider_config)
    exit_code = asyncio.run(main())
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command()
@click.argument("name")
@path_options
def reconcile(
    name: str,
    specs_dir: str | None,
    state_dir: str | None,
    provider_config: str | None,
) -> None:
    """Run one reconciliation pass for the manifest NAME."""
    apply_path_overrides(specs_dir, state_dir, provider_config)
    config = load_config()
    setup_logging(config.log_level, config.enable_json_logging)

    try:
        organization = find_manifest(config.specs_dir, name)
        reconciler = build_reconciler(config)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    result = asyncio.run(reconciler.reconcile(organization))
    echo_result(result)
    if not result.success:
        raise click.ClickException(f"Reconciliation of '{name}' failed: {result.error}")


def echo_result(result: ReconcileResult) -> None:
    click.echo(f"Resource:  {result.name}")
    click.echo(f"Action:    {result.action.value}")
    click.echo(f"Duration:  {result.duration_seconds:.2f}s")
    if result.compensation is not None and not result.compensation.succeeded:
        click.secho(
            f"Compensation failed: {result.compensation.action} "
            f"{result.compensation.target}: {result.compensation.error}",
            fg="yellow",
        )
    if result.success:
        click.secho("✓ Reconciled", fg="green")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
def validate(path: str) -> None:
    """Validate the Organization manifest at PATH."""
    try:
        organization = load_manifest(Path(path))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ {path}: Organization '{organization.name}' is valid", fg="green")


@cli.command("secret-name")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--namespace",
    envvar="SECRET_NAMESPACE",
    default=DEFAULT_SECRET_NAMESPACE,
    show_default=True,
    help="Credential name prefix",
)
@click.option("--external-id", help="Organization id, once known")
def secret_name(path: str, namespace: str, external_id: str | None) -> None:
    """Print the credential name the manifest at PATH resolves to."""
    try:
        organization = load_manifest(Path(path))
        name = resolve_secret_name(
            organization.spec, namespace=namespace, external_id=external_id
        )
    except (SpecLoadError, ValueError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(name)


@cli.command()
@click.argument("name")
@click.option(
    "--state-dir",
    envvar="STATE_DIR",
    default="/state",
    type=click.Path(file_okay=False),
    help="Status directory",
)
def status(name: str, state_dir: str) -> None:
    """Print the persisted status of resource NAME."""
    try:
        record = StatusStore(Path(state_dir)).load(name)
    except StatusStoreError as e:
        raise click.ClickException(str(e)) from e

    if record is None:
        raise click.ClickException(f"No status recorded for '{name}' in {state_dir}")

    click.echo(
        yaml.safe_dump(
            {"name": name, "status": record.status.model_dump(mode="json", by_alias=True)},
            sort_keys=False,
        ),
        nl=False,
    )


if __name__ == "__main__":
    cli()
