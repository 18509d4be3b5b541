# src/s3_migration/jobs.py
"""
Plans the S3 Batch Operations copy jobs of a migration run.

A plan holds one or two job specifications, decided once from the source
bucket's versioning state and the latest-only selector:

* never-versioned bucket: one job over every listed object;
* versioned bucket with `latest_only=Yes`: one job for the latest versions;
* any other versioned bucket: the non-latest versions first, then
  the latest versions, so an older version can never overwrite a newer one
  at the destination.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple, Union

from s3_migration.aws import bucket_arn, remote_call
from s3_migration.config import FilterCriteria, LatestOnly
from s3_migration.exceptions import RemoteServiceError
from s3_migration.filtering import FilteredManifest, ManifestFilterPipeline
from s3_migration.manifests import ManifestReference

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

BUCKET_OWNER_FULL_CONTROL: str = "bucket-owner-full-control"
MANIFEST_FORMAT: str = "S3BatchOperations_CSV_20180820"
REPORT_FORMAT: str = "Report_CSV_20180820"
JOB_PRIORITY: int = 10
# Both manifests of a dual plan come from one data file and need distinct keys
NON_LATEST_VARIANT: str = "non-latest"


@dataclass(frozen=True)
class BatchJobSpec:
    """
    Everything needed to submit one S3 Batch Operations copy job.

    Attributes:
        label (str): Human readable job name, e.g. "latest versions".
        account_id (str): Account the job runs in.
        role_arn (str): Role assumed by S3 Batch Operations.
        source_bucket (str): Bucket copied from.
        target_bucket (str): Bucket copied to.
        manifest_arn (str): ARN of the filtered CSV manifest.
        manifest_etag (str): ETag of the filtered CSV manifest.
        versioned (bool): True when the source bucket has versioning.
        canned_acl (str, optional): ACL override for copied objects.
    """

    label: str
    account_id: str
    role_arn: str
    source_bucket: str
    target_bucket: str
    manifest_arn: str
    manifest_etag: str
    versioned: bool
    canned_acl: Optional[str] = None


@dataclass(frozen=True)
class NoVersioningPlan:
    """A single job for a bucket that never had versioning enabled."""

    job: BatchJobSpec

    @property
    def specs(self) -> Tuple[BatchJobSpec, ...]:
        return (self.job,)


@dataclass(frozen=True)
class LatestOnlyPlan:
    """A single job over the latest versions of a versioned bucket."""

    job: BatchJobSpec

    @property
    def specs(self) -> Tuple[BatchJobSpec, ...]:
        return (self.job,)


@dataclass(frozen=True)
class DualOrderedPlan:
    """
    Two jobs for a versioned bucket; `non_latest` must succeed before `latest`
    is submitted.
    """

    non_latest: BatchJobSpec
    latest: BatchJobSpec

    @property
    def specs(self) -> Tuple[BatchJobSpec, ...]:
        return (self.non_latest, self.latest)


JobPlan = Union[NoVersioningPlan, LatestOnlyPlan, DualOrderedPlan]


def create_job_request(
    spec: BatchJobSpec, report_prefix: str, token: Optional[str] = None
) -> Dict[str, Any]:
    """
    Builds the S3 Control `CreateJob` parameters for a copy job.

    Args:
        spec (BatchJobSpec): The job to submit.
        report_prefix (str): Prefix in the source bucket for failure reports.
        token (str, optional): Idempotency token; random when omitted.

    Returns:
        Dict[str, Any]: Keyword arguments for `s3control.create_job`.
    """
    source_kind: str = "versioned" if spec.versioned else "unversioned"
    copy_operation: Dict[str, Any] = {
        "TargetResource": bucket_arn(spec.target_bucket),
        "MetadataDirective": "COPY",
    }
    if spec.canned_acl:
        copy_operation["CannedAccessControlList"] = spec.canned_acl

    return {
        "AccountId": spec.account_id,
        "ConfirmationRequired": False,
        "Operation": {"S3PutObjectCopy": copy_operation},
        "Report": {
            "Bucket": bucket_arn(spec.source_bucket),
            "Prefix": report_prefix,
            "Format": REPORT_FORMAT,
            "Enabled": True,
            "ReportScope": "FailedTasksOnly",
        },
        "ClientRequestToken": token or str(uuid.uuid4()),
        "Manifest": {
            "Spec": {"Format": MANIFEST_FORMAT, "Fields": ["Bucket", "Key"]},
            "Location": {"ObjectArn": spec.manifest_arn, "ETag": spec.manifest_etag},
        },
        "Description": (
            f"s3-migration copy of {spec.label} from "
            f"{source_kind} bucket {spec.source_bucket} "
            f"to {spec.target_bucket}"
        )[:256],
        "Priority": JOB_PRIORITY,
        "RoleArn": spec.role_arn,
    }


class JobOrchestrator:
    """Filters a manifest per job and assembles the run's `JobPlan`."""

    def __init__(
        self,
        client: "S3Client",
        shutdown_event: asyncio.Event,
        filter_pipeline: ManifestFilterPipeline,
        account_id: str,
        role_arn: str,
        source_bucket: str,
        target_bucket: str,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._client: "S3Client" = client
        self._shutdown_event: asyncio.Event = shutdown_event
        self._filter_pipeline: ManifestFilterPipeline = filter_pipeline
        self._account_id: str = account_id
        self._role_arn: str = role_arn
        self._source_bucket: str = source_bucket
        self._target_bucket: str = target_bucket
        self._log: logging.Logger = log or logger

    async def is_ownership_enforced(self, bucket: str) -> bool:
        """
        Checks whether a bucket has ACLs disabled (`BucketOwnerEnforced`).

        Args:
            bucket (str): The bucket to inspect.

        Returns:
            bool: True if object ownership is enforced.
        """
        response: Dict[str, Any] = await remote_call(
            "GetBucketOwnershipControls",
            self._client.get_bucket_ownership_controls(Bucket=bucket),
            self._shutdown_event,
        )
        rules = response.get("OwnershipControls", {}).get("Rules", [])
        return any(rule.get("ObjectOwnership") == "BucketOwnerEnforced" for rule in rules)

    async def _canned_acl(self) -> Optional[str]:
        # Copies that preserve a source ACL fail against an ACL-disabled bucket
        try:
            enforced: bool = await self.is_ownership_enforced(self._target_bucket)
        except RemoteServiceError as e:
            self._log.warning(
                f"Failed to get ownership setting of destination bucket "
                f"'{self._target_bucket}': {e}"
            )
            return None
        if enforced:
            self._log.info(
                "Destination bucket ownership is enforced, using the canned "
                f"'{BUCKET_OWNER_FULL_CONTROL}' ACL."
            )
            return BUCKET_OWNER_FULL_CONTROL
        return None

    async def build_spec(
        self,
        label: str,
        manifest: ManifestReference,
        manifest_bucket: str,
        criteria: FilterCriteria,
        versioning_disabled: bool,
        variant: Optional[str] = None,
    ) -> BatchJobSpec:
        """
        Filters the manifest for one job and returns its specification.

        Args:
            label (str): Human readable job name.
            manifest (ManifestReference): The selected inventory manifest.
            manifest_bucket (str): Bucket holding the inventory output.
            criteria (FilterCriteria): Filters specific to this job.
            versioning_disabled (bool): True for never-versioned buckets.
            variant (str, optional): Qualifier for the filtered manifest key.

        Returns:
            BatchJobSpec: The job specification.
        """
        self._log.info(f"Filtering inventory manifest for the {label} job.")
        filtered: FilteredManifest = await self._filter_pipeline.filter_manifest(
            manifest, manifest_bucket, criteria, versioning_disabled, variant
        )
        manifest_arn: str = bucket_arn(f"{filtered.bucket}/{filtered.key}")
        self._log.debug(f"Manifest object ARN for the {label} job: {manifest_arn}")
        return BatchJobSpec(
            label=label,
            account_id=self._account_id,
            role_arn=self._role_arn,
            source_bucket=self._source_bucket,
            target_bucket=self._target_bucket,
            manifest_arn=manifest_arn,
            manifest_etag=filtered.etag,
            versioned=not versioning_disabled,
            canned_acl=await self._canned_acl(),
        )

    async def plan(
        self,
        manifest: ManifestReference,
        manifest_bucket: str,
        criteria: FilterCriteria,
        versioning_disabled: bool,
    ) -> JobPlan:
        """
        Decides how many jobs to run and prepares each one.

        Args:
            manifest (ManifestReference): The selected inventory manifest.
            manifest_bucket (str): Bucket holding the inventory output.
            criteria (FilterCriteria): The user's filters.
            versioning_disabled (bool): True for never-versioned buckets.

        Returns:
            JobPlan: The plan, with specs in submission order.
        """
        if versioning_disabled:
            return NoVersioningPlan(
                await self.build_spec(
                    "all objects", manifest, manifest_bucket, criteria, True
                )
            )

        if criteria.latest_only is LatestOnly.YES:
            return LatestOnlyPlan(
                await self.build_spec(
                    "latest versions", manifest, manifest_bucket, criteria, False
                )
            )

        non_latest: BatchJobSpec = await self.build_spec(
            "non-latest versions",
            manifest,
            manifest_bucket,
            replace(criteria, latest_only=LatestOnly.NO),
            False,
            variant=NON_LATEST_VARIANT,
        )
        latest: BatchJobSpec = await self.build_spec(
            "latest versions",
            manifest,
            manifest_bucket,
            replace(criteria, latest_only=LatestOnly.YES),
            False,
        )
        return DualOrderedPlan(non_latest=non_latest, latest=latest)
