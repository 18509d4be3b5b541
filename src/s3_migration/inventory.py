# src/s3_migration/inventory.py
"""
Reconciles the source bucket's S3 Inventory configuration.

The engine only ever creates or re-enables the configuration it owns (the
default name). A caller-supplied configuration is used read-only; if it is
missing or disabled the run stops rather than modifying someone else's setup.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from s3_migration.aws import bucket_arn, error_code, remote_call
from s3_migration.exceptions import (
    ConfigurationNotFoundError,
    PreconditionFailedError,
    RemoteServiceError,
)
from s3_migration.manifests import ManifestLocation

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

DAILY_WINDOW: int = -1
WEEKLY_WINDOW: int = -8
OPTIONAL_FIELDS = ["Size", "LastModifiedDate", "ReplicationStatus"]


def date_window_for_schedule(frequency: Optional[str]) -> int:
    """
    Returns the manifest look-back window for an inventory schedule.

    Args:
        frequency (str, optional): The schedule frequency, "Daily" or "Weekly".

    Returns:
        int: -8 for weekly inventories, -1 for anything else.
    """
    return WEEKLY_WINDOW if frequency == "Weekly" else DAILY_WINDOW


def default_prefix(bucket: str, config_name: str) -> str:
    """The key prefix S3 Inventory delivers under when no destination prefix is set."""
    return f"{bucket}/{config_name}/"


class InventoryConfigManager:
    """Reads, and when permitted creates or enables, an inventory configuration."""

    def __init__(
        self,
        client: "S3Client",
        shutdown_event: asyncio.Event,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self._client: "S3Client" = client
        self._shutdown_event: asyncio.Event = shutdown_event
        self._log: logging.Logger = log or logger

    async def probe(self, bucket: str, config_name: str) -> Optional[Dict[str, Any]]:
        """
        Fetches an inventory configuration without modifying anything.

        Args:
            bucket (str): The source bucket.
            config_name (str): The inventory configuration id.

        Returns:
            Optional[Dict[str, Any]]: The `InventoryConfiguration`, or None if
                it does not exist.

        Raises:
            RemoteServiceError: On any failure other than a missing configuration.
        """
        self._log.debug(
            f"Checking for inventory configuration '{config_name}' on '{bucket}'."
        )
        try:
            response: Dict[str, Any] = await remote_call(
                "GetBucketInventoryConfiguration",
                self._client.get_bucket_inventory_configuration(
                    Bucket=bucket, Id=config_name
                ),
                self._shutdown_event,
            )
        except RemoteServiceError as e:
            if error_code(e) == "NoSuchConfiguration":
                return None
            raise
        return response["InventoryConfiguration"]

    def location_from(
        self, bucket: str, config_name: str, configuration: Dict[str, Any]
    ) -> ManifestLocation:
        """
        Derives where manifests of an existing configuration are delivered.

        Args:
            bucket (str): The source bucket.
            config_name (str): The inventory configuration id.
            configuration (Dict[str, Any]): The `InventoryConfiguration`.

        Returns:
            ManifestLocation: The destination bucket, prefix and window.
        """
        destination: Dict[str, Any] = configuration["Destination"]["S3BucketDestination"]
        destination_arn: str = destination["Bucket"]
        prefix: str = default_prefix(bucket, config_name)
        destination_prefix: Optional[str] = destination.get("Prefix")
        if destination_prefix:
            prefix = f"{destination_prefix.rstrip('/')}/{prefix}"
        frequency: Optional[str] = configuration.get("Schedule", {}).get("Frequency")
        return ManifestLocation(
            bucket=destination_arn.rsplit(":", 1)[-1],
            prefix=prefix,
            date_window=date_window_for_schedule(frequency),
        )

    async def reconcile(
        self, bucket: str, config_name: str, owns_config: bool
    ) -> ManifestLocation:
        """
        Ensures an enabled inventory configuration exists and locates its output.

        Args:
            bucket (str): The source bucket.
            config_name (str): The inventory configuration id.
            owns_config (bool): True when the default configuration name is in
                use, which allows creating or enabling it.

        Returns:
            ManifestLocation: Where manifests will be delivered.

        Raises:
            ConfigurationNotFoundError: A caller-supplied configuration is missing.
            PreconditionFailedError: A caller-supplied configuration is disabled.
            RemoteServiceError: Reading or writing the configuration failed.
        """
        configuration: Optional[Dict[str, Any]] = await self.probe(bucket, config_name)

        if configuration is None and not owns_config:
            raise ConfigurationNotFoundError(
                f"Inventory configuration '{config_name}' does not exist on "
                f"bucket '{bucket}'."
            )
        if configuration is not None and configuration.get("IsEnabled"):
            location: ManifestLocation = self.location_from(
                bucket, config_name, configuration
            )
            self._log.info(
                f"Using enabled inventory configuration '{config_name}' delivering to "
                f"'s3://{location.bucket}/{location.prefix}'."
            )
            return location
        if configuration is not None and not owns_config:
            raise PreconditionFailedError(
                f"Inventory configuration '{config_name}' on bucket '{bucket}' is "
                "disabled and is not managed by this tool."
            )

        self._log.info(
            f"Inventory configuration '{config_name}' does not exist or is disabled "
            f"on '{bucket}'. Creating/enabling it."
        )
        await remote_call(
            "PutBucketInventoryConfiguration",
            self._client.put_bucket_inventory_configuration(
                Bucket=bucket,
                Id=config_name,
                InventoryConfiguration=self._owned_configuration(bucket, config_name),
            ),
            self._shutdown_event,
        )
        # The new destination is the bucket itself, so it is not read back.
        return ManifestLocation(
            bucket=bucket,
            prefix=default_prefix(bucket, config_name),
            date_window=DAILY_WINDOW,
        )

    @staticmethod
    def _owned_configuration(bucket: str, config_name: str) -> Dict[str, Any]:
        return {
            "Destination": {
                "S3BucketDestination": {
                    "Bucket": bucket_arn(bucket),
                    "Format": "CSV",
                    "Encryption": {"SSES3": {}},
                }
            },
            "Id": config_name,
            "IncludedObjectVersions": "All",
            "IsEnabled": True,
            "Schedule": {"Frequency": "Daily"},
            # Size lets operators spot objects over the 5 GB batch copy limit
            "OptionalFields": list(OPTIONAL_FIELDS),
        }
