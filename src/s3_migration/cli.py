# src/s3_migration/cli.py
"""Command-line interface for the s3-migration tool."""

import asyncio
import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Coroutine, Dict, Iterator, Optional

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from s3_migration.aws import create_clients
from s3_migration.config import (
    DEFAULT_INVENTORY_CONFIG,
    DEFAULT_KMS_KEY_ID,
    DEFAULT_SUCCESS_THRESHOLD,
    AppConfig,
    AwsConfig,
    FilterCriteria,
    MigrationConfig,
    parse_duration,
    parse_latest_only,
    parse_optional_datetime,
    validate_account_id,
    validate_role_arn,
)
from s3_migration.exceptions import MigrationCancelledError, MigrationError
from s3_migration.preview import DEFAULT_FILE_SCHEMA
from s3_migration.runner import DryRunReport, MigrationResult, MigrationRunner
from s3_migration.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)

console: Console = Console()


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["botocore", "aiobotocore", "urllib3"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


@contextmanager
def logging_session() -> Iterator[None]:
    """Flushes every root log handler when the command exits, however it exits."""
    try:
        yield
    finally:
        for handler in logging.getLogger().handlers:
            handler.flush()


def build_config(shared: Dict[str, Any], options: Dict[str, Any]) -> MigrationConfig:
    """
    Validates raw option values into a `MigrationConfig`.

    Args:
        shared (Dict[str, Any]): Options of the command group.
        options (Dict[str, Any]): Options of the subcommand.

    Returns:
        MigrationConfig: The validated configuration.

    Raises:
        ConfigError: If any value is invalid.
    """
    criteria: FilterCriteria = FilterCriteria(
        start=parse_optional_datetime(options.get("start")),
        end=parse_optional_datetime(options.get("end")),
        latest_only=parse_latest_only(options.get("latest_only")),
        kms_key_id=options.get("kms_id") or DEFAULT_KMS_KEY_ID,
    )
    app: AppConfig = AppConfig(retry_interval=parse_duration(options.get("retry") or "1h"))
    return MigrationConfig(
        aws=AwsConfig.from_env(shared["region"]),
        source_bucket=shared["sourcebucket"],
        account_id=validate_account_id(shared["account"]),
        role_arn=validate_role_arn(shared["role"]),
        destination_bucket=options.get("destinationbucket"),
        inventory_config_name=shared["inventoryconfig"] or DEFAULT_INVENTORY_CONFIG,
        criteria=criteria,
        required_threshold=options.get("threshold", DEFAULT_SUCCESS_THRESHOLD),
        app=app,
    )


def execute(main: Callable[[], Coroutine[Any, Any, None]]) -> None:
    """
    Runs a command coroutine and maps its outcome to an exit code.

    Args:
        main (Callable): Factory for the coroutine to run.
    """
    with logging_session():
        try:
            asyncio.run(main())
            logger.info("✅ Run completed successfully.")
        except MigrationCancelledError as e:
            logger.warning(f"Shutdown signal received, run aborted: {e}")
            sys.exit(1)
        except MigrationError as e:
            logger.critical(f"A critical application error occurred: {e}")
            sys.exit(1)
        except Exception:
            logger.critical(
                "An unexpected error caused the application to fail:", exc_info=True
            )
            sys.exit(1)


async def main_async(config: MigrationConfig) -> MigrationResult:
    """
    Asynchronously execute a migration run.

    Args:
        config (MigrationConfig): The run configuration.

    Returns:
        MigrationResult: The finished jobs and the achieved ratio.
    """
    progress: Progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )
    async with GracefulShutdown() as shutdown_event:
        async with create_clients(config.aws) as (s3_client, control_client):
            with progress:
                runner: MigrationRunner = MigrationRunner(
                    config, shutdown_event, s3_client, control_client, progress=progress
                )
                return await runner.run()


async def dry_run_async(
    config: MigrationConfig, local_inventory: Optional[Path], file_schema: str
) -> DryRunReport:
    """
    Asynchronously validate a migration without changing anything.

    Args:
        config (MigrationConfig): The run configuration.
        local_inventory (Path, optional): Local inventory file to preview.
        file_schema (str): Column names of the local inventory file.

    Returns:
        DryRunReport: The findings.
    """
    async with GracefulShutdown() as shutdown_event:
        async with create_clients(config.aws) as (s3_client, control_client):
            runner: MigrationRunner = MigrationRunner(
                config, shutdown_event, s3_client, control_client
            )
            return await runner.dry_run(local_inventory, file_schema)


def render_report(report: DryRunReport) -> None:
    """Prints a dry-run report as a rich table."""
    table: Table = Table(title="s3-migration dry run", show_header=False)
    table.add_column("Check", style="bold cyan")
    table.add_column("Result")
    table.add_row("Versioning disabled", str(report.versioning_disabled))
    table.add_row(
        "Inventory configuration",
        f"{report.inventory_status} (a run would {report.inventory_action})",
    )
    table.add_row(
        "Manifest location",
        f"s3://{report.location.bucket}/{report.location.prefix} "
        f"(window {report.location.date_window})",
    )
    table.add_row(
        "Latest manifest",
        report.manifest.key if report.manifest is not None else "none",
    )
    if report.ownership_enforced is not None:
        table.add_row("Destination ownership enforced", str(report.ownership_enforced))
    if report.preview is not None:
        table.add_row("Select statement", report.preview.expression)
        table.add_row(
            "Matching objects",
            f"{report.preview.matching_rows} of {report.preview.total_rows}",
        )
        for row in report.preview.sample.iter_rows():
            table.add_row("Sample", "/".join(str(value) for value in row))
    for note in report.notes:
        table.add_row("Note", note)
    console.print(table)


def filter_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Adds the inventory filter options shared by `run` and `dry-run`."""
    decorators = [
        click.option(
            "--start",
            default=None,
            help=(
                "Range start, 'YYYY-MM-DD HH:MM:SS'. With --end, copies objects "
                "modified between the two; alone, copies objects modified before it."
            ),
        ),
        click.option(
            "--end",
            default=None,
            help=(
                "Range end, 'YYYY-MM-DD HH:MM:SS'. With --start, copies objects "
                "modified between the two; alone, copies objects modified after it."
            ),
        ),
        click.option(
            "--latest-only",
            default=None,
            help=(
                "'Yes' copies only the latest versions of a versioned bucket. "
                "'No' or unset copies older versions first, then the latest ones."
            ),
        ),
        click.option(
            "--kms-id",
            default=DEFAULT_KMS_KEY_ID,
            help="KMS key id for filtered manifests, or SSE-S3.",
            show_default=True,
        ),
    ]
    for decorator in reversed(decorators):
        func = decorator(func)
    return func


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option("--region", required=True, help="AWS region of the source bucket.")
@click.option("--sourcebucket", required=True, help="Bucket to copy objects from.")
@click.option("--account", required=True, help="Account id the batch jobs run in.")
@click.option("--role", required=True, help="IAM role ARN for S3 Batch Operations.")
@click.option(
    "--inventoryconfig",
    default=DEFAULT_INVENTORY_CONFIG,
    help="Inventory configuration name on the source bucket.",
    show_default=True,
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
@click.pass_context
def cli(ctx: click.Context, **kwargs: Any) -> None:
    """
    Bulk-migrates objects between S3 buckets with S3 Batch Operations.

    The source bucket's inventory report is filtered with S3 Select and fed
    to one or two batch copy jobs. For versioned buckets older versions are
    copied before the latest ones so that the destination ends up with the
    same current version.

    Endpoint overrides and a named profile may be set via environment
    variables. See the .env.example file.
    """
    load_dotenv()
    setup_logging(kwargs["log_level"])
    ctx.obj = kwargs


@cli.command()
@click.option("--destinationbucket", required=True, help="Bucket to copy objects to.")
@click.option(
    "--retry",
    default="1h",
    help="Wait between inventory manifest lookups, e.g. 1h, 30m.",
    show_default=True,
)
@click.option(
    "--threshold",
    type=click.FloatRange(0.0, 1.0),
    default=DEFAULT_SUCCESS_THRESHOLD,
    help="Minimum fraction of objects that must copy successfully.",
    show_default=True,
)
@filter_options
@click.pass_obj
def run(shared: Dict[str, Any], **kwargs: Any) -> None:
    """Copies the source bucket into the destination bucket."""

    async def main() -> None:
        result: MigrationResult = await main_async(build_config(shared, kwargs))
        if result.success_ratio is not None:
            logger.info(f"Overall success ratio: {result.success_ratio:.4f}")

    execute(main)


@cli.command(name="dry-run")
@click.option("--destinationbucket", default=None, help="Bucket to copy objects to.")
@click.option(
    "--local-inventory",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Local inventory CSV (or CSV.GZ) data file to preview the filter on.",
)
@click.option(
    "--file-schema",
    default=DEFAULT_FILE_SCHEMA,
    help="Comma separated column names of the local inventory file.",
    show_default=True,
)
@filter_options
@click.pass_obj
def dry_run(shared: Dict[str, Any], **kwargs: Any) -> None:
    """Validates the migration settings without creating or copying anything."""

    async def main() -> None:
        config: MigrationConfig = build_config(shared, kwargs)
        report: DryRunReport = await dry_run_async(
            config, kwargs["local_inventory"], kwargs["file_schema"]
        )
        render_report(report)

    execute(main)


if __name__ == "__main__":
    cli()
