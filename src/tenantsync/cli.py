"""tenantsync CLI.

Usage:
    tenantsync deploy --input tenant.yaml                 # Apply desired state
    tenantsync deploy --input tenant.yaml --allow-delete  # ... including deletes
    tenantsync plan --input tenant.yaml                   # Show planned changes only
    tenantsync types                                      # List managed resource types

Tenant and credentials come from TENANT_DOMAIN / TENANT_ACCESS_TOKEN (or
--domain / --token); every other setting is read from the environment.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .catalog import build_catalog
from .client import ManagementApiClient
from .config import Config, ConfigurationError
from .main import EXIT_FAILURE, execute, exit_code_for, setup_logging
from .reconciler import RunReport, select_resources
from .spec_loader import SpecLoadError


def load_config(**overrides: Any) -> Config:
    """Build configuration from the environment plus CLI overrides.

    Raises:
        click.ClickException: If the configuration is invalid.
    """
    try:
        return Config.from_env(**{k: v for k, v in overrides.items() if v is not None})
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def print_report(report: RunReport) -> None:
    """Print one line per resource type."""
    for result in report.results:
        if result.skipped:
            status = "not declared, skipped"
        elif result.absent:
            status = "not available for this tenant"
        elif result.errors:
            status = "FAILED"
        elif result.dry_run and result.changes is not None:
            counts = result.changes.counts()
            status = (
                f"plan: {counts['create']} to create, {counts['update']} to update, "
                f"{counts['delete']} to delete"
            )
        else:
            status = (
                f"{result.created} created, {result.updated} updated, {result.deleted} deleted"
            )
            if result.skipped_deletes:
                status += f" ({result.skipped_deletes} deletes skipped, ALLOW_DELETE is off)"

        click.echo(f"{result.resource_type:<18} {status}")
        for error in result.errors:
            click.echo(f"  - {error}", err=True)

    totals = report.totals()
    click.echo(
        f"\nTotal: {totals['created']} created, {totals['updated']} updated, "
        f"{totals['deleted']} deleted, {totals['failed_types']} failed resource types"
    )


def run_and_report(config: Config, input_path: Path) -> int:
    try:
        report = asyncio.run(execute(config, input_path))
    except (ConfigurationError, SpecLoadError) as e:
        raise click.ClickException(str(e)) from e

    print_report(report)
    return exit_code_for(report)


@click.group()
@click.version_option(version="0.1.0", prog_name="tenantsync")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Declarative configuration sync for a tenant management API.

    \b
    Quick Start:
        tenantsync plan --input tenant.yaml     # See what would change
        tenantsync deploy --input tenant.yaml   # Apply it
    """
    setup_logging(logging.DEBUG if verbose else None)


input_option = click.option(
    "--input",
    "-i",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="Desired state file (YAML or JSON)",
)
domain_option = click.option("--domain", help="Tenant domain (default: TENANT_DOMAIN)")
token_option = click.option("--token", help="Access token (default: TENANT_ACCESS_TOKEN)")


@cli.command()
@input_option
@domain_option
@token_option
@click.option("--dry-run", is_flag=True, help="Compute changes without applying them")
@click.option("--allow-delete", is_flag=True, help="Delete remote items missing from the input")
@click.option("--include", "include", multiple=True, help="Only reconcile this resource type")
@click.option("--exclude", "exclude", multiple=True, help="Skip this resource type")
def deploy(
    input_path: Path,
    domain: str | None,
    token: str | None,
    dry_run: bool,
    allow_delete: bool,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
) -> None:
    """Apply the desired state to the tenant.

    \b
    Examples:
        tenantsync deploy -i tenant.yaml
        tenantsync deploy -i tenant.yaml --include roles --include logStreams
        tenantsync deploy -i tenant.yaml --allow-delete
    """
    config = load_config(
        domain=domain,
        access_token=token,
        dry_run=True if dry_run else None,
        allow_delete=True if allow_delete else None,
        included_types=include or None,
        excluded_types=exclude or None,
    )
    sys.exit(run_and_report(config, input_path))


@cli.command()
@input_option
@domain_option
@token_option
def plan(input_path: Path, domain: str | None, token: str | None) -> None:
    """Show the changes a deploy would make, without making them."""
    config = load_config(domain=domain, access_token=token, dry_run=True)
    sys.exit(run_and_report(config, input_path))


async def _list_types(config: Config) -> list[tuple[str, int]]:
    async with ManagementApiClient.from_config(config) as client:
        resources = select_resources(build_catalog(client), config.as_policy())
    return [(resource.type, resource.order) for resource in resources]


@cli.command()
def types() -> None:
    """List managed resource types in processing order."""
    # No request is sent; the client only binds endpoints
    try:
        config = Config.from_env(domain="localhost")
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    for name, order in asyncio.run(_list_types(config)):
        click.echo(f"{name:<18} order {order}")


def main() -> None:
    """Entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
