"""GitOps Promotions CLI (gpo).

Operate the promotions controller and run single reconciles by hand.

Usage:
    gpo run                          # Run the controller loop
    gpo reconcile PROMOTION          # One promotion attempt
    gpo check-environment ENV        # One environment readiness check
    gpo status                       # Ready condition of every resource

Configuration is read from the same environment variables as the
operator process (MANIFESTS_DIR, STATUS_DIR, SECRETS_DIR, ...).
"""

from __future__ import annotations

import asyncio
import json
import logging

import click

from .config import Config, ConfigurationError
from .main import build_components, setup_logging
from .main import main as operator_main
from .models import CONDITION_TRUE, DEFAULT_NAMESPACE, READY_CONDITION, find_condition
from .store import ResourceLoadError


def load_config() -> Config:
    """Load configuration from the environment for a CLI command.

    Raises:
        click.ClickException: If configuration is invalid.
    """
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def resolve_namespace(config: Config, namespace: str | None) -> str:
    return namespace or config.namespace or DEFAULT_NAMESPACE


@click.group()
@click.version_option(version="0.1.0", prog_name="gpo")
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
@click.option("--json-logs", is_flag=True, help="Emit JSON logs instead of plain text")
def cli(verbose: bool, json_logs: bool) -> None:
    """GitOps Promotions CLI (gpo).

    Copies declared paths between git-backed environments and lands the
    change on the target through a pull request.

    \b
    Quick Start:
        gpo status                     # Show resources and readiness
        gpo check-environment staging  # Verify an environment clones
        gpo reconcile app --dry-run    # Preview a promotion
    """
    setup_logging(json_output=json_logs, level=logging.DEBUG if verbose else logging.INFO)


@cli.command()
def run() -> None:
    """Run the controller loop until SIGTERM/SIGINT."""
    exit_code = asyncio.run(operator_main())
    if exit_code != 0:
        raise SystemExit(exit_code)


@cli.command()
@click.argument("promotion")
@click.option("--namespace", "-n", help="Namespace of the promotion")
@click.option("--dry-run", is_flag=True, help="Commit locally but never push or open PRs")
def reconcile(promotion: str, namespace: str | None, dry_run: bool) -> None:
    """Run one reconcile attempt for PROMOTION and print the result.

    \b
    Examples:
        gpo reconcile app-to-prod
        gpo reconcile app-to-prod -n team-a --dry-run
    """
    config = load_config()
    _, _, engine = build_components(config)
    ns = resolve_namespace(config, namespace)

    try:
        result = engine.reconcile(ns, promotion, dry_run=dry_run or config.dry_run)
    except ResourceLoadError as e:
        raise click.ClickException(str(e)) from e

    if not result.found:
        raise click.ClickException(f"Promotion {ns}/{promotion} not found")

    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.error is not None:
        raise SystemExit(1)
    if result.waiting:
        click.secho(result.message, fg="yellow")
    else:
        click.secho(f"✓ {result.message}", fg="green")


@cli.command("check-environment")
@click.argument("environment")
@click.option("--namespace", "-n", help="Namespace of the environment")
def check_environment(environment: str, namespace: str | None) -> None:
    """Clone ENVIRONMENT once and update its Ready condition."""
    config = load_config()
    _, environments, _ = build_components(config)
    ns = resolve_namespace(config, namespace)

    try:
        result = environments.reconcile(ns, environment)
    except ResourceLoadError as e:
        raise click.ClickException(str(e)) from e

    if not result.found:
        raise click.ClickException(f"Environment {ns}/{environment} not found")
    if result.error is not None:
        raise click.ClickException(result.message)
    click.secho(f"✓ {result.message} ({result.commit[:7]})", fg="green")


@cli.command()
@click.option("--namespace", "-n", help="Only show resources in this namespace")
def status(namespace: str | None) -> None:
    """Show every Environment and Promotion with its Ready condition."""
    config = load_config()
    store, _, _ = build_components(config)
    ns = namespace or config.namespace

    try:
        resources = [r for r in store.load_all() if ns is None or r.namespace == ns]
    except ResourceLoadError as e:
        raise click.ClickException(str(e)) from e

    if not resources:
        click.echo("No resources found")
        return

    header = f"{'KIND':<12} {'NAMESPACE':<16} {'NAME':<28} {'READY':<8} {'REASON':<26} MESSAGE"
    click.echo(header)
    for resource in resources:
        condition = find_condition(resource.status.conditions, READY_CONDITION)
        ready = condition.status if condition else "Unknown"
        reason = condition.reason if condition else ""
        message = condition.message if condition else ""
        line = (
            f"{resource.kind:<12} {resource.namespace:<16} {resource.name:<28} "
            f"{ready:<8} {reason:<26} {message}"
        )
        click.secho(line, fg="green" if ready == CONDITION_TRUE else None)


if __name__ == "__main__":
    cli()
