# sitekv/cli/commands.py
"""Command-line interface for sitekv."""

import os
import sys
import json
import signal
import logging
from typing import Optional

import click
from tabulate import tabulate

from ..config import ENV_VARS, DeploymentConfig, load_config, validate_config
from ..deploy import Deployer, DeploymentReport, RunState
from ..errors import AuthError, SiteKVError
from ..http.kv_client import KVRestClient
from ..utils.environment import load_env_file, validate_env_vars
from ..utils.security import default_masker

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = ".sitekv.json"

EXIT_CODES = {
    RunState.FULL_SUCCESS: 0,
    RunState.FATAL_ABORT: 1,
    RunState.PARTIAL_SUCCESS: 2,
}

# Failed keys listed in the summary before it is truncated
MAX_LISTED_FAILURES = 20


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_file: Optional[str], env_file: Optional[str], **overrides) -> DeploymentConfig:
    """Load configuration, treating the default config file as optional."""
    if config_file == DEFAULT_CONFIG_FILE and not os.path.exists(config_file):
        config_file = None
    return load_config(config_file=config_file, env_file=env_file, **overrides)


def config_options(func):
    """Options shared by every command that needs a configuration."""
    func = click.option(
        "--env-file",
        default=".env",
        help="Path to environment file",
        show_default=True,
    )(func)
    func = click.option(
        "--config-file",
        default=DEFAULT_CONFIG_FILE,
        help="Path to configuration file",
        show_default=True,
    )(func)
    return func


def pipeline_options(func):
    """Options that shape how a site is planned and uploaded."""
    func = click.option("--verbose", is_flag=True, help="Enable verbose output")(func)
    func = click.option("--delete-stale", is_flag=True, default=None,
                        help="Delete remote keys that no longer exist locally")(func)
    func = click.option("--full", is_flag=True, help="Upload every file, ignoring remote fingerprints")(func)
    func = click.option("--no-bulk", is_flag=True, help="Upload one file per request")(func)
    func = click.option("--workers", type=click.IntRange(1, 32), help="Concurrent upload workers")(func)
    return func


def _overrides(workers, no_bulk, full, delete_stale):
    overrides = {"workers": workers, "delete_stale": delete_stale}
    if no_bulk:
        overrides["use_bulk_upload"] = False
    if full:
        overrides["incremental"] = False
    return overrides


def render_report(report: DeploymentReport) -> str:
    """Human readable summary of a finished deployment."""
    status = report.status
    counts = report.summary()
    rows = [[name, counts[name]] for name in ("Uploaded", "Skipped", "Failed", "Total")]
    lines = [status.message, tabulate(rows, headers=["Status", "Files"], tablefmt="simple")]

    failures = report.failure_counts()
    if failures:
        lines.append("")
        lines.append(tabulate(sorted(failures.items()), headers=["Failure", "Files"], tablefmt="simple"))

    if status.failed_keys:
        lines.append("")
        lines.append("Failed keys:")
        for key in status.failed_keys[:MAX_LISTED_FAILURES]:
            lines.append(f"  - {key}")
        hidden = len(status.failed_keys) - MAX_LISTED_FAILURES
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")

    if report.deleted_keys or report.delete_failures:
        lines.append("")
        lines.append(
            f"Stale keys deleted: {len(report.deleted_keys)}, not deleted: {len(report.delete_failures)}"
        )

    if report.duration is not None:
        lines.append(f"Finished in {report.duration:.2f}s")
    return "\n".join(lines)


@click.group()
@click.version_option(package_name="sitekv")
def cli():
    """Deploy static sites to Cloudflare Workers KV."""
    pass


@cli.command(name="deploy")
@click.argument("site_dir", type=click.Path(file_okay=False))
@config_options
@pipeline_options
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
def deploy_command(site_dir: str, config_file: str, env_file: str, workers: Optional[int],
                   no_bulk: bool, full: bool, delete_stale: Optional[bool], verbose: bool,
                   as_json: bool):
    """Deploy a processed site directory to Workers KV."""
    _setup_logging(verbose)

    try:
        config = _load(config_file, env_file, **_overrides(workers, no_bulk, full, delete_stale))
    except SiteKVError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    deployer = Deployer(config)

    def interrupt(signum, frame):
        click.echo("Interrupted, finishing in-flight uploads...", err=True)
        deployer.cancel("Interrupted")

    previous = signal.signal(signal.SIGINT, interrupt)
    try:
        report = deployer.deploy(site_dir)
    finally:
        signal.signal(signal.SIGINT, previous)

    if as_json:
        click.echo(json.dumps(report.as_dict(), indent=2))
    else:
        click.echo(render_report(report))

    sys.exit(EXIT_CODES[report.status.state])


@cli.command(name="plan")
@click.argument("site_dir", type=click.Path(file_okay=False))
@config_options
@pipeline_options
def plan_command(site_dir: str, config_file: str, env_file: str, workers: Optional[int],
                 no_bulk: bool, full: bool, delete_stale: Optional[bool], verbose: bool):
    """Show the batches a deployment would send, without writing anything."""
    _setup_logging(verbose)

    try:
        config = _load(config_file, env_file, **_overrides(workers, no_bulk, full, delete_stale))
        plan = Deployer(config).plan(site_dir)
    except SiteKVError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    rows = [
        [batch.sequence, "single" if batch.is_single or batch.oversized else "bulk", len(batch), batch.size_bytes]
        for batch in plan.batches
    ]
    click.echo(tabulate(rows, headers=["Batch", "Mode", "Files", "Bytes"], tablefmt="simple"))
    click.echo("")
    click.echo(f"Files to upload: {sum(len(batch) for batch in plan.batches)}")
    click.echo(f"Unchanged files: {len(plan.skipped_keys)}")
    if not plan.catalog_used:
        click.echo("Remote catalog not used: every file will be uploaded")
    if config.delete_stale:
        click.echo(f"Stale keys to delete: {len(plan.stale_keys)}")


@cli.command(name="validate")
@config_options
def validate_command(config_file: str, env_file: str):
    """Validate configuration and credentials without contacting Cloudflare."""
    try:
        config = _load(config_file, env_file)
    except SiteKVError as e:
        click.echo(f"Configuration validation failed: {e}", err=True)
        sys.exit(1)

    issues = validate_config(config.model_dump())
    missing = config.missing_credentials()
    if missing:
        click.echo("Configuration validation failed:", err=True)
        for issue in issues or [f"{name} is required" for name in missing]:
            click.echo(f"- {issue}", err=True)
        env = {**load_env_file(env_file), **{k: v for k, v in os.environ.items() if v}}
        unset = validate_env_vars([var for var, field in ENV_VARS.items() if field in missing], env)
        if unset:
            click.echo(f"Set {', '.join(unset)} in the environment or {env_file}", err=True)
        sys.exit(1)

    click.echo("Configuration validation passed!")
    click.echo(f"  Account:   {config.account_id}")
    click.echo(f"  Namespace: {config.namespace_id}")
    click.echo(f"  Bulk mode: {'on' if config.use_bulk_upload else 'off'}")


@cli.command(name="verify")
@config_options
@click.option("--verbose", is_flag=True, help="Enable verbose output")
def verify_command(config_file: str, env_file: str, verbose: bool):
    """Check that the API token is valid and active."""
    _setup_logging(verbose)

    try:
        config = _load(config_file, env_file)
        config.ensure_deployable()
    except SiteKVError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    token = config.api_token.get_secret_value()
    default_masker.register_secret(token)
    try:
        with KVRestClient(config) as client:
            result = client.verify_token()
    except AuthError as e:
        click.echo(f"Token rejected: {e}", err=True)
        sys.exit(1)
    except SiteKVError as e:
        click.echo(f"Could not verify token: {e}", err=True)
        sys.exit(1)
    finally:
        default_masker.unregister_secret(token)

    click.echo(f"Token is {result.get('status')}")
