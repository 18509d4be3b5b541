# src/s3_migration/config.py
"""
Configuration for the s3-migration engine.

This module centralizes all configuration. Command-line values are validated
and parsed here once, then frozen into typed dataclasses that are passed
explicitly down the call chain. Endpoint overrides and an optional named
profile are read from environment variables.
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from s3_migration.exceptions import ConfigError

DEFAULT_INVENTORY_CONFIG: str = "bulk-copy-inventory"
DEFAULT_KMS_KEY_ID: str = "SSE-S3"
DEFAULT_SUCCESS_THRESHOLD: float = 0.8
DATETIME_FORMAT: str = "%Y-%m-%d %H:%M:%S"

_DATETIME_PATTERN: re.Pattern[str] = re.compile(
    r"\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}"
)
_DURATION_PART: re.Pattern[str] = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_ACCOUNT_ID_PATTERN: re.Pattern[str] = re.compile(r"\d{12}")
_ROLE_ARN_PATTERN: re.Pattern[str] = re.compile(
    r"^(?:\d{12}|(arn:(aws|aws-us-gov|aws-cn):iam::\d{12}"
    r"(?:|:(?:role\/[0-9A-Za-z\+\.@_,-]{1,64}))))$"
)
_DURATION_UNITS: Dict[str, timedelta] = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}


def _get_env_var(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Retrieves an optional environment variable, treating empty values as unset.

    Args:
        name (str): The name of the environment variable.
        default (str, optional): The value returned when the variable is unset.

    Returns:
        Optional[str]: The value of the environment variable, or the default.
    """
    value: Optional[str] = os.environ.get(name)
    return value if value else default


class LatestOnly(Enum):
    """Selects current or superseded object versions in a versioned bucket."""

    YES = "Yes"
    NO = "No"


def parse_latest_only(value: Optional[str]) -> Optional[LatestOnly]:
    """
    Parses the `--latest-only` flag, accepting `yes`/`no` in any case.

    Args:
        value (str, optional): The raw flag value.

    Returns:
        Optional[LatestOnly]: The selector, or None when the flag is blank.
    """
    if value is None or not value.strip():
        return None
    normalized: str = value.strip().upper()
    if normalized == "YES":
        return LatestOnly.YES
    if normalized == "NO":
        return LatestOnly.NO
    raise ConfigError(f"Input arg 'latest-only' value '{value}' is not valid.")


def parse_datetime(value: str) -> datetime:
    """
    Parses a `YYYY-MM-DD HH:MM:SS` timestamp.

    Args:
        value (str): The timestamp string.

    Returns:
        datetime: The parsed, naive timestamp.
    """
    candidate: str = value.strip()
    if not _DATETIME_PATTERN.fullmatch(candidate):
        raise ConfigError(
            f"Invalid date time '{value}', valid format is 'YYYY-MM-DD HH:MM:SS'."
        )
    try:
        return datetime.strptime(candidate, DATETIME_FORMAT)
    except ValueError as e:
        raise ConfigError(f"Invalid date time '{value}': {e}") from e


def parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parses a timestamp flag, returning None for a blank value."""
    if value is None or not value.strip():
        return None
    return parse_datetime(value)


def parse_duration(value: str) -> timedelta:
    """
    Parses a duration such as `1h`, `30m`, `10s`, `1h30m` or `250ms`.

    Args:
        value (str): The duration string.

    Returns:
        timedelta: The parsed duration.
    """
    candidate: str = value.strip()
    total: timedelta = timedelta()
    position: int = 0
    while position < len(candidate):
        match: Optional[re.Match[str]] = _DURATION_PART.match(candidate, position)
        if match is None:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    if not candidate or position != len(candidate):
        raise ConfigError(
            f"Invalid duration '{value}', expected a value like 1h, 30m or 10s."
        )
    return total


def validate_account_id(value: str) -> str:
    """Ensures the account id is a 12 digit number."""
    if not _ACCOUNT_ID_PATTERN.fullmatch(value):
        raise ConfigError(
            f"Invalid 'account' arg value '{value}', it must be a 12 digit number."
        )
    return value


def validate_role_arn(value: str) -> str:
    """Ensures the role is an IAM role ARN (or a bare account id)."""
    if not _ROLE_ARN_PATTERN.match(value):
        raise ConfigError(
            f"Invalid 'role' arg value '{value}'. It must be an AWS ARN, e.g. "
            "arn:aws:iam::<ACCOUNT_NUM>:role/BatchOperationsCopyRole"
        )
    return value


@dataclass(frozen=True)
class AwsConfig:
    """
    Connection settings shared by the S3 and S3 Control clients.

    Attributes:
        region (str): The AWS region to operate in.
        endpoint_url (str, optional): Override for the S3 endpoint.
        control_endpoint_url (str, optional): Override for the S3 Control endpoint.
        profile (str, optional): Named profile from the shared credentials file.
    """

    region: str
    endpoint_url: Optional[str] = None
    control_endpoint_url: Optional[str] = None
    profile: Optional[str] = None

    @classmethod
    def from_env(cls, region: str) -> "AwsConfig":
        """
        Builds the configuration for a region, reading overrides from the environment.

        Args:
            region (str): The AWS region.

        Returns:
            AwsConfig: The connection settings.
        """
        return cls(
            region=region,
            endpoint_url=_get_env_var("S3_MIGRATION_ENDPOINT_URL"),
            control_endpoint_url=_get_env_var("S3_MIGRATION_CONTROL_ENDPOINT_URL"),
            profile=_get_env_var("S3_MIGRATION_PROFILE"),
        )

    def client_kwargs(self, service: str) -> Dict[str, Any]:
        """
        Returns keyword arguments for `AioSession.create_client`.

        Args:
            service (str): Either "s3" or "s3control".

        Returns:
            Dict[str, Any]: A dictionary of client parameters.
        """
        kwargs: Dict[str, Any] = {"region_name": self.region}
        endpoint: Optional[str] = (
            self.control_endpoint_url if service == "s3control" else self.endpoint_url
        )
        if endpoint:
            kwargs["endpoint_url"] = endpoint
        return kwargs


@dataclass(frozen=True)
class FilterCriteria:
    """
    User supplied filters applied to the inventory before copying.

    Attributes:
        start (datetime, optional): Lower last-modified bound.
        end (datetime, optional): Upper last-modified bound.
        latest_only (LatestOnly, optional): Version selector, None when unset.
        kms_key_id (str): Encryption for uploaded manifests, "SSE-S3" or a KMS key id.
    """

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    latest_only: Optional[LatestOnly] = None
    kms_key_id: str = DEFAULT_KMS_KEY_ID


@dataclass(frozen=True)
class AppConfig:
    """
    Defines the engine's operational parameters.

    Attributes:
        retry_interval (timedelta): Sleep between manifest discovery attempts.
        max_manifest_retries (int): Retries after the first discovery attempt.
        job_warmup_s (float): Delay before the first job status check.
        job_poll_interval_s (float): Delay between job status checks.
        upload_part_size (int): Multipart part size for filtered manifests.
        report_prefix (str): Prefix for batch job completion reports.
    """

    retry_interval: timedelta = field(default_factory=lambda: timedelta(hours=1))
    max_manifest_retries: int = 24
    job_warmup_s: float = 15.0
    job_poll_interval_s: float = 60.0
    upload_part_size: int = 64 * 1024 * 1024
    report_prefix: str = "batch-copy-reports"


@dataclass(frozen=True)
class MigrationConfig:
    """
    Top-level, immutable configuration for a single migration run.

    Attributes:
        aws (AwsConfig): Client connection settings.
        source_bucket (str): Bucket copied from; also hosts inventory and manifests.
        account_id (str): Account the batch jobs run in.
        role_arn (str): Role assumed by S3 Batch Operations.
        destination_bucket (str, optional): Bucket copied to.
        inventory_config_name (str): Name of the inventory configuration.
        criteria (FilterCriteria): Inventory filters.
        required_threshold (float): Minimum success ratio for the run.
        app (AppConfig): Timing and sizing parameters.
    """

    aws: AwsConfig
    source_bucket: str
    account_id: str
    role_arn: str
    destination_bucket: Optional[str] = None
    inventory_config_name: str = DEFAULT_INVENTORY_CONFIG
    criteria: FilterCriteria = field(default_factory=FilterCriteria)
    required_threshold: float = DEFAULT_SUCCESS_THRESHOLD
    app: AppConfig = field(default_factory=AppConfig)

    def __post_init__(self) -> None:
        if not 0.0 <= self.required_threshold <= 1.0:
            raise ConfigError(
                f"Success threshold {self.required_threshold} must be within [0, 1]."
            )

    @property
    def owns_inventory_config(self) -> bool:
        """True when the default configuration name is used and may be modified."""
        return self.inventory_config_name == DEFAULT_INVENTORY_CONFIG
