"""ruledrift command line interface.

Usage:
    ruledrift reconcile --org contoso --env dev --mode import
    ruledrift reconcile --org contoso --env dev --mode promotion-check --target-env prod
    ruledrift promote --org contoso --source-env dev --target-env prod --rule brute-force
    ruledrift environments --org contoso

Exit codes:
    0  no drift and no errors
    1  promotion gaps found, or the run failed (including cancellation)
    2  some rules failed; the rest were processed
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import NoReturn

import click

from . import __version__
from .config import Config, ConfigurationError, ReconcileMode
from .config_store import ConfigStore
from .errors import RuleDriftError
from .main import EXIT_FAILURE, EXIT_OK, exit_code_for, reconcile, setup_logging
from .reconciler import Reconciler
from .report import ReportRenderer
from .security import SecretlessViolationError

logger = logging.getLogger(__name__)

# Errors that end a command with a message instead of a traceback
FATAL_ERRORS = (RuleDriftError, ConfigurationError, SecretlessViolationError)

rules_root_option = click.option(
    "--rules-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Desired-state root directory (overrides RULEDRIFT_RULES_ROOT)",
)


def load_config(rules_root: Path | None) -> Config:
    try:
        return Config.from_env(rules_root=rules_root)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def fail(message: str, error: BaseException) -> NoReturn:
    """Log a fatal error, echo it to stderr and exit 1."""
    logger.error(message, extra={"error": str(error), "error_type": type(error).__name__})
    click.secho(f"Error: {error}", fg="red", err=True)
    sys.exit(EXIT_FAILURE)


@click.group()
@click.version_option(version=__version__, prog_name="ruledrift")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Detection rule drift detection and reconciliation."""
    setup_logging(verbose)


@cli.command("reconcile")
@click.option("--org", "orgs", multiple=True, required=True, help="Organization (repeatable)")
@click.option("--env", required=True, help="Environment to reconcile")
@click.option(
    "--mode",
    type=click.Choice([m.value for m in ReconcileMode]),
    default=ReconcileMode.IMPORT.value,
    show_default=True,
)
@click.option("--target-env", default=None, help="Target environment for promotion-check")
@click.option("--dry-run", is_flag=True, help="Compute actions without writing")
@click.option("--force", is_flag=True, help="Bypass the import size guardrail")
@click.option(
    "--jsonl",
    "jsonl_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the report as JSON lines to this file",
)
@rules_root_option
def reconcile_command(
    orgs: tuple[str, ...],
    env: str,
    mode: str,
    target_env: str | None,
    dry_run: bool,
    force: bool,
    jsonl_path: Path | None,
    rules_root: Path | None,
) -> None:
    """Compare desired and actual state and reconcile drift."""
    reconcile_mode = ReconcileMode(mode)
    if reconcile_mode == ReconcileMode.PROMOTION_CHECK:
        if not target_env:
            raise click.UsageError("--target-env is required for promotion-check")
        if target_env == env:
            raise click.UsageError("--target-env must differ from --env")

    config = load_config(rules_root)

    try:
        results = asyncio.run(
            reconcile(
                config,
                list(dict.fromkeys(orgs)),
                env,
                reconcile_mode,
                target_env=target_env,
                dry_run=dry_run,
                force=force,
            )
        )
    except FATAL_ERRORS as e:
        fail("Reconciliation aborted", e)
    except Exception as e:
        logger.exception("Reconciliation failed unexpectedly", extra={"error": str(e)})
        sys.exit(EXIT_FAILURE)

    renderer = ReportRenderer()
    click.echo(renderer.render_text(results), nl=False)

    if jsonl_path is not None:
        try:
            jsonl_path.write_text(renderer.render_jsonl(results), encoding="utf-8")
        except OSError as e:
            fail("Failed to write JSON lines report", e)

    sys.exit(exit_code_for(results))


@cli.command("promote")
@click.option("--org", required=True)
@click.option("--source-env", required=True)
@click.option("--target-env", required=True)
@click.option("--rule", "rule_name", required=True, help="Local rule name")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--dry-run", is_flag=True, help="Validate without writing")
@rules_root_option
def promote_command(
    org: str,
    source_env: str,
    target_env: str,
    rule_name: str,
    yes: bool,
    dry_run: bool,
    rules_root: Path | None,
) -> None:
    """Copy one rule from a source environment to a target environment."""
    if source_env == target_env:
        raise click.UsageError("--target-env must differ from --source-env")

    config = load_config(rules_root)
    reconciler = Reconciler(config, ConfigStore(config.rules_root))

    if not yes and not dry_run:
        click.confirm(
            f"Copy rule '{rule_name}' of '{org}' from '{source_env}' to '{target_env}'?",
            abort=True,
        )

    try:
        outcome = reconciler.promote(org, source_env, target_env, rule_name, dry_run=dry_run)
    except FATAL_ERRORS as e:
        fail("Promotion failed", e)

    if outcome is None:
        click.echo(f"Dry run: '{rule_name}' can be promoted to '{target_env}'")
    elif outcome.written:
        verb = "Created" if outcome.created else "Updated"
        click.echo(f"{verb} '{rule_name}' in '{target_env}'")
    else:
        click.echo(f"'{rule_name}' is already up to date in '{target_env}'")
    sys.exit(EXIT_OK)


@cli.command("environments")
@click.option("--org", required=True)
@rules_root_option
def environments_command(org: str, rules_root: Path | None) -> None:
    """List the environments of an organization."""
    config = load_config(rules_root)
    try:
        environments = ConfigStore(config.rules_root).list_environments(org)
    except FATAL_ERRORS as e:
        fail("Failed to list environments", e)

    for env in environments:
        click.echo(env)


def main() -> None:
    """Entry point for the ruledrift CLI."""
    cli()


if __name__ == "__main__":
    main()
