"""Workload identity federation provisioner CLI (wif-provisioner).

Usage:
    wif-provisioner apply --project-id my-project --repository owner/repo
    wif-provisioner plan --config-file federation.yaml
    wif-provisioner init --project-id my-project --repository owner/repo

Every option can also be set through its environment variable (see
Config.from_env); flags take precedence.
"""

from __future__ import annotations

import asyncio
import functools
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
import yaml

from .config import Config
from .defaults import github_federation_resources
from .errors import ConfigurationError
from .executor import SECRET_STATE_BUCKET
from .main import (
    EXIT_ABORTED,
    apply as run_apply,
    plan as run_plan,
    setup_logging,
    verify as run_verify,
)
from .outputs import DEFAULT_PROVIDER_FILE, format_github_secrets, update_backend_config
from .session import SessionState
from .spec_loader import API_VERSION, DOCUMENT_KIND

VERSION = "0.1.0"
DEFAULT_INIT_PATH = Path("federation.yaml")


def config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by commands that talk to the cloud."""

    @click.option("--project-id", help="Target GCP project [GCP_PROJECT_ID]")
    @click.option("--repository", help="GitHub repository owner/name [GITHUB_REPOSITORY]")
    @click.option(
        "--config-file",
        type=click.Path(dir_okay=False, path_type=Path),
        help="Declared configuration YAML [FEDERATION_CONFIG]",
    )
    @click.option("--project-number", help="Project number, resolved if omitted [GCP_PROJECT_NUMBER]")
    @click.option("--max-attempts", type=int, help="Attempts per call [MAX_ATTEMPTS]")
    @click.option(
        "--json-logs/--text-logs",
        default=None,
        help="Log format (default: JSON when ENABLE_AUDIT_LOGGING is on)",
    )
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return func(*args, **kwargs)

    return wrapper


def load_config(json_logs: bool | None, **overrides: Any) -> Config:
    """Build the configuration and set up logging, exiting on error."""
    try:
        config = Config.from_env(**overrides)
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_ABORTED)

    setup_logging(json_output=config.security.enable_audit_logging if json_logs is None else json_logs)
    return config


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="wif-provisioner")
def cli() -> None:
    """Idempotent GCP workload identity federation provisioner.

    \b
    Quick Start:
        wif-provisioner plan  --project-id my-project --repository owner/repo
        wif-provisioner apply --project-id my-project --repository owner/repo
    """


@cli.command()
@config_options
@click.option("--dry-run/--no-dry-run", default=None, help="Plan only [DRY_RUN]")
@click.option(
    "--summary-path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the JSON session summary here [SUMMARY_PATH]",
)
@click.option(
    "--terraform-provider-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_PROVIDER_FILE,
    show_default=True,
    help="Terraform file whose backend bucket placeholder is filled in",
)
@click.option("--no-backend-update", is_flag=True, help="Leave the Terraform backend alone")
@click.option(
    "--verify",
    "verify_setup",
    is_flag=True,
    help="After a Completed run, check impersonation and state bucket access",
)
def apply(
    json_logs: bool | None,
    terraform_provider_file: Path,
    no_backend_update: bool,
    verify_setup: bool,
    **overrides: Any,
) -> None:
    """Create or update the federation resources."""
    config = load_config(json_logs, **overrides)
    if config.dry_run:
        sys.exit(_plan(config))

    exit_code, result = asyncio.run(run_apply(config))
    if result is None:
        sys.exit(exit_code)

    click.echo(
        f"Session {result.status.value}: {result.changes_applied} changed, "
        f"{len(result.failed)} failed, {len(result.results)} total",
        err=True,
    )
    for failed in result.failed:
        click.secho(f"  FAILED {failed.identifier}: {failed.reason}", fg="red", err=True)

    if result.status != SessionState.ABORTED:
        click.echo(format_github_secrets(result))
        bucket = result.secrets.get(SECRET_STATE_BUCKET)
        if bucket and not no_backend_update:
            update_backend_config(terraform_provider_file, bucket)

    if verify_setup and result.status == SessionState.COMPLETED:
        report = asyncio.run(run_verify(config, result))
        for warning in report.warnings:
            click.secho(f"  WARNING {warning}", fg="yellow", err=True)

    sys.exit(exit_code)


def _plan(config: Config) -> int:
    exit_code, planned = asyncio.run(run_plan(config))
    if planned is None:
        return exit_code

    for item in planned:
        if item.error is not None:
            label, reason = "ERROR", f"{item.error.kind.value}: {item.error.message}"
        else:
            assert item.action is not None  # SAFETY: set whenever error is None
            label, reason = item.action.action.value, item.action.reason
        click.echo(f"{label:<7} {item.spec.kind.value:<15} {item.spec.identifier}  ({reason})")
    return exit_code


@cli.command()
@config_options
def plan(json_logs: bool | None, **overrides: Any) -> None:
    """Show what apply would do, without changing anything."""
    config = load_config(json_logs, **overrides)
    sys.exit(_plan(config))


@cli.command()
@click.option("--project-id", required=True, help="Target GCP project")
@click.option("--repository", required=True, help="GitHub repository owner/name")
@click.option("--state-bucket", help="Terraform state bucket (default: <project>-terraform-state)")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_INIT_PATH,
    show_default=True,
)
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(
    project_id: str,
    repository: str,
    state_bucket: str | None,
    output: Path,
    force: bool,
) -> None:
    """Write a declared configuration with the default resource set."""
    if output.exists() and not force:
        raise click.ClickException(f"{output} already exists (use --force to overwrite)")

    try:
        specs = github_federation_resources(project_id, repository, state_bucket=state_bucket)
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    document = {
        "apiVersion": API_VERSION,
        "kind": DOCUMENT_KIND,
        "spec": {
            "projectId": project_id,
            "repository": repository,
            "resources": [
                spec.model_dump(mode="json", by_alias=True, exclude_defaults=True) for spec in specs
            ],
        },
    }
    output.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
    click.secho(f"Wrote {len(specs)} resources to {output}", fg="green")


if __name__ == "__main__":
    cli()
