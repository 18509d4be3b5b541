# src/s3_migration/runner.py
"""Core orchestration logic for a migration run."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from s3_migration.aws import remote_call
from s3_migration.config import MigrationConfig
from s3_migration.exceptions import (
    ConfigError,
    ConfigurationNotFoundError,
    PreconditionFailedError,
    RemoteServiceError,
)
from s3_migration.filtering import ManifestFilterPipeline
from s3_migration.inventory import DAILY_WINDOW, InventoryConfigManager, default_prefix
from s3_migration.jobs import (
    DualOrderedPlan,
    JobOrchestrator,
    JobPlan,
    LatestOnlyPlan,
    NoVersioningPlan,
    create_job_request,
)
from s3_migration.manifests import ManifestLocation, ManifestLocator, ManifestReference
from s3_migration.poller import JobPoller, JobProgress, evaluate_threshold
from s3_migration.preview import DEFAULT_FILE_SCHEMA, InventoryPreview, preview_inventory

if TYPE_CHECKING:
    from rich.progress import Progress
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3control.client import S3ControlClient

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MigrationResult:
    """
    Outcome of a successful run.

    Attributes:
        jobs (Tuple[JobProgress, ...]): Final job snapshots in submission order.
        success_ratio (float, optional): Aggregate ratio; None if nothing ran.
    """

    jobs: Tuple[JobProgress, ...]
    success_ratio: Optional[float]


@dataclass
class DryRunReport:
    """
    Findings of a dry run. Nothing is created or modified.

    Attributes:
        versioning_disabled (bool): True if the source bucket was never versioned.
        inventory_status (str): "enabled", "disabled" or "missing".
        inventory_action (str): What a real run would do with the configuration.
        location (ManifestLocation): Where manifests are (or will be) delivered.
        manifest (ManifestReference, optional): Newest manifest, if delivered.
        ownership_enforced (bool, optional): Destination ACL setting, when known.
        preview (InventoryPreview, optional): Local inventory preview.
        notes (List[str]): Warnings gathered along the way.
    """

    versioning_disabled: bool
    inventory_status: str
    inventory_action: str
    location: ManifestLocation
    manifest: Optional[ManifestReference] = None
    ownership_enforced: Optional[bool] = None
    preview: Optional[InventoryPreview] = None
    notes: List[str] = field(default_factory=list)


class MigrationRunner:
    """Drives a migration from inventory configuration to job completion."""

    def __init__(
        self,
        config: MigrationConfig,
        shutdown_event: asyncio.Event,
        s3_client: "S3Client",
        control_client: "S3ControlClient",
        progress: Optional["Progress"] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            config (MigrationConfig): The validated run configuration.
            shutdown_event (asyncio.Event): The cancellation event.
            s3_client (S3Client): An open S3 client.
            control_client (S3ControlClient): An open S3 Control client.
            progress (Progress, optional): rich display for job progress.
            log (logging.Logger, optional): Injected logger.
        """
        self._config: MigrationConfig = config
        self._shutdown_event: asyncio.Event = shutdown_event
        self._s3: "S3Client" = s3_client
        self._log: logging.Logger = log or logger

        self.inventory: InventoryConfigManager = InventoryConfigManager(
            s3_client, shutdown_event, log=self._log
        )
        self.locator: ManifestLocator = ManifestLocator(
            s3_client, shutdown_event, log=self._log
        )
        self.filter_pipeline: ManifestFilterPipeline = ManifestFilterPipeline(
            s3_client, shutdown_event, config.app.upload_part_size, log=self._log
        )
        self.poller: JobPoller = JobPoller(
            control_client,
            config.account_id,
            shutdown_event,
            warmup_s=config.app.job_warmup_s,
            poll_interval_s=config.app.job_poll_interval_s,
            progress=progress,
            log=self._log,
        )

    def _orchestrator(self, target_bucket: str) -> JobOrchestrator:
        return JobOrchestrator(
            self._s3,
            self._shutdown_event,
            self.filter_pipeline,
            account_id=self._config.account_id,
            role_arn=self._config.role_arn,
            source_bucket=self._config.source_bucket,
            target_bucket=target_bucket,
            log=self._log,
        )

    async def is_versioning_disabled(self, bucket: str) -> bool:
        """
        Checks whether versioning was never enabled on a bucket.

        A suspended bucket still holds versions and counts as versioned.
        """
        response: Dict[str, Any] = await remote_call(
            "GetBucketVersioning",
            self._s3.get_bucket_versioning(Bucket=bucket),
            self._shutdown_event,
        )
        return not response.get("Status")

    async def run(self) -> MigrationResult:
        """
        Executes the full migration.

        Returns:
            MigrationResult: Final job snapshots and the achieved ratio.

        Raises:
            MigrationError: Any unrecovered failure; the caller decides the exit code.
        """
        config: MigrationConfig = self._config
        if not config.destination_bucket:
            raise ConfigError("A destination bucket is required to run a migration.")

        self._log.info(
            f"Starting migration from '{config.source_bucket}' to "
            f"'{config.destination_bucket}'."
        )
        versioning_disabled: bool = await self.is_versioning_disabled(config.source_bucket)
        self._log.info(
            f"Bucket '{config.source_bucket}' versioning disabled: {versioning_disabled}"
        )

        location: ManifestLocation = await self.inventory.reconcile(
            config.source_bucket,
            config.inventory_config_name,
            config.owns_inventory_config,
        )
        self._log.debug(
            f"Searching for manifests in 's3://{location.bucket}/{location.prefix}' "
            f"with date window {location.date_window}."
        )
        manifest: ManifestReference = await self.locator.wait_for_manifest(
            location, config.app.retry_interval, config.app.max_manifest_retries
        )

        plan: JobPlan = await self._orchestrator(config.destination_bucket).plan(
            manifest, location.bucket, config.criteria, versioning_disabled
        )
        return await self.execute(plan)

    async def execute(self, plan: JobPlan) -> MigrationResult:
        """
        Submits the plan's jobs in order and evaluates the success threshold.

        For a dual plan the non-latest job must meet the threshold on its own
        before the latest job is submitted.

        Args:
            plan (JobPlan): The jobs to run.

        Returns:
            MigrationResult: Final job snapshots and the achieved ratio.
        """
        required: float = self._config.required_threshold
        report_prefix: str = self._config.app.report_prefix

        if isinstance(plan, (NoVersioningPlan, LatestOnlyPlan)):
            self._log.info(f"Creating batch job for {plan.job.label}.")
            only: JobProgress = await self.poller.run(
                create_job_request(plan.job, report_prefix)
            )
            ratio: Optional[float] = evaluate_threshold(required, only, log=self._log)
            return MigrationResult(jobs=(only,), success_ratio=ratio)

        if isinstance(plan, DualOrderedPlan):
            self._log.info(f"Creating batch job for {plan.non_latest.label}.")
            first: JobProgress = await self.poller.run(
                create_job_request(plan.non_latest, report_prefix)
            )
            evaluate_threshold(required, first, scope=plan.non_latest.label, log=self._log)

            self._log.info(f"Creating batch job for {plan.latest.label}.")
            second: JobProgress = await self.poller.run(
                create_job_request(plan.latest, report_prefix)
            )
            ratio = evaluate_threshold(required, first, second, log=self._log)
            return MigrationResult(jobs=(first, second), success_ratio=ratio)

        raise TypeError(f"Unsupported job plan: {plan!r}")

    async def dry_run(
        self,
        local_inventory: Optional[Path] = None,
        file_schema: str = DEFAULT_FILE_SCHEMA,
    ) -> DryRunReport:
        """
        Validates the settings a run depends on without changing anything.

        Args:
            local_inventory (Path, optional): Local inventory data file to preview.
            file_schema (str): Column names of the local inventory file.

        Returns:
            DryRunReport: What a real run would find and do.

        Raises:
            ConfigurationNotFoundError: A caller-supplied configuration is missing.
            PreconditionFailedError: A caller-supplied configuration is disabled.
        """
        config: MigrationConfig = self._config
        bucket: str = config.source_bucket
        name: str = config.inventory_config_name

        versioning_disabled: bool = await self.is_versioning_disabled(bucket)
        configuration: Optional[Dict[str, Any]] = await self.inventory.probe(bucket, name)
        location: ManifestLocation = ManifestLocation(
            bucket=bucket, prefix=default_prefix(bucket, name), date_window=DAILY_WINDOW
        )

        if configuration is None:
            if not config.owns_inventory_config:
                raise ConfigurationNotFoundError(
                    f"Inventory configuration '{name}' does not exist on bucket '{bucket}'."
                )
            status, action = "missing", "create it"
        elif configuration.get("IsEnabled"):
            status, action = "enabled", "use it as is"
            location = self.inventory.location_from(bucket, name, configuration)
        else:
            if not config.owns_inventory_config:
                raise PreconditionFailedError(
                    f"Inventory configuration '{name}' on bucket '{bucket}' is disabled "
                    "and is not managed by this tool."
                )
            status, action = "disabled", "enable it"

        report: DryRunReport = DryRunReport(
            versioning_disabled=versioning_disabled,
            inventory_status=status,
            inventory_action=action,
            location=location,
        )

        try:
            report.manifest = await self.locator.locate(location)
        except RemoteServiceError as e:
            report.notes.append(f"Could not list inventory manifests: {e}")
        if report.manifest is None:
            report.notes.append(
                "No inventory manifest delivered yet; a run would wait for one."
            )

        if config.destination_bucket:
            try:
                report.ownership_enforced = await self._orchestrator(
                    config.destination_bucket
                ).is_ownership_enforced(config.destination_bucket)
            except RemoteServiceError as e:
                report.notes.append(f"Could not read destination ownership controls: {e}")

        if local_inventory is not None:
            report.preview = preview_inventory(
                local_inventory,
                config.criteria,
                versioning_disabled,
                file_schema=file_schema,
                log=self._log,
            )
        return report
