# src/s3_migration/manifests.py
"""
Inventory manifest model, parsing and discovery.

S3 Inventory delivers a `manifest.json` per cycle, up to 48 hours after the
configuration is created. `ManifestLocator.locate` performs one listing and
picks the newest manifest inside the expected date window;
`ManifestLocator.wait_for_manifest` repeats that under a bounded retry policy.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from s3_migration.aws import remote_call
from s3_migration.exceptions import (
    MalformedManifestError,
    ManifestNotFoundError,
    RemoteServiceError,
)
from s3_migration.signals import cancellable_sleep

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3.paginator import ListObjectsV2Paginator
    from types_aiobotocore_s3.type_defs import ListObjectsV2OutputTypeDef

logger: logging.Logger = logging.getLogger(__name__)

MANIFEST_SUFFIX: str = "manifest.json"
# One date-window unit spans two days of inventory delivery latency.
WINDOW_UNIT: timedelta = timedelta(hours=48)


@dataclass(frozen=True)
class ManifestLocation:
    """
    Where inventory manifests for a configuration are delivered.

    Attributes:
        bucket (str): Destination bucket name of the inventory.
        prefix (str): Key prefix, ending with "/".
        date_window (int): Signed number of `WINDOW_UNIT`s to look back;
            -1 for daily inventories, -8 for weekly ones.
    """

    bucket: str
    prefix: str
    date_window: int

    def window_start(self, now: datetime) -> datetime:
        """Returns the oldest acceptable manifest timestamp."""
        return now + self.date_window * WINDOW_UNIT


@dataclass(frozen=True)
class ManifestReference:
    """A discovered `manifest.json` object."""

    key: str
    last_modified: datetime


@dataclass(frozen=True)
class ManifestDocument:
    """
    The parts of `manifest.json` the migration consumes.

    Attributes:
        file_schema (str): Comma-delimited, positional column names.
        files (Tuple[str, ...]): Keys of the inventory data files.
    """

    file_schema: str
    files: Tuple[str, ...]

    @property
    def data_file(self) -> str:
        """The first data file, the only one a migration filters."""
        return self.files[0]


def parse_manifest_document(body: bytes) -> ManifestDocument:
    """
    Parses an inventory `manifest.json`.

    Args:
        body (bytes): The raw manifest content.

    Returns:
        ManifestDocument: The schema and data file keys.

    Raises:
        MalformedManifestError: If the JSON is invalid or lacks data files.
    """
    try:
        content: Any = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedManifestError(
            f"Inventory manifest.json is corrupt or malformed: {e}"
        ) from e

    if not isinstance(content, dict):
        raise MalformedManifestError("Inventory manifest.json is not a JSON object.")

    files: Any = content.get("files")
    if not isinstance(files, list) or not files:
        raise MalformedManifestError("Inventory manifest.json lists no data files.")
    keys: List[str] = []
    for entry in files:
        if not isinstance(entry, dict) or not isinstance(entry.get("key"), str):
            raise MalformedManifestError(
                f"Inventory manifest.json has an invalid file entry: {entry!r}"
            )
        keys.append(entry["key"])

    file_schema: Any = content.get("fileSchema", "")
    if not isinstance(file_schema, str):
        raise MalformedManifestError("Inventory manifest.json fileSchema is not a string.")
    return ManifestDocument(file_schema=file_schema, files=tuple(keys))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ManifestLocator:
    """Finds the newest inventory manifest for a `ManifestLocation`."""

    def __init__(
        self,
        client: "S3Client",
        shutdown_event: asyncio.Event,
        log: Optional[logging.Logger] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Args:
            client (S3Client): S3 client with access to the inventory bucket.
            shutdown_event (asyncio.Event): The cancellation event.
            log (logging.Logger, optional): Injected logger.
            clock (Callable[[], datetime]): Returns the current, tz-aware time.
        """
        self._client: "S3Client" = client
        self._shutdown_event: asyncio.Event = shutdown_event
        self._log: logging.Logger = log or logger
        self._clock: Callable[[], datetime] = clock

    async def locate(self, location: ManifestLocation) -> Optional[ManifestReference]:
        """
        Lists the location once and returns the newest manifest in the window.

        Args:
            location (ManifestLocation): Where to look.

        Returns:
            Optional[ManifestReference]: The newest manifest, or None if none
                has been delivered yet.

        Raises:
            RemoteServiceError: If listing fails.
        """
        window_start: datetime = location.window_start(self._clock())
        date_string: str = window_start.strftime("%Y-%m-%d")
        start_after: str = f"{location.prefix}{date_string}"

        paginator: "ListObjectsV2Paginator" = self._client.get_paginator(
            "list_objects_v2"
        )
        pages: AsyncIterator["ListObjectsV2OutputTypeDef"] = paginator.paginate(
            Bucket=location.bucket,
            Prefix=location.prefix,
            StartAfter=start_after,
        )

        async def scan() -> List[Dict[str, Any]]:
            return [obj async for page in pages for obj in page.get("Contents", [])]

        listed: List[Dict[str, Any]] = await remote_call(
            "ListObjectsV2", scan(), self._shutdown_event
        )
        candidates: List[ManifestReference] = [
            ManifestReference(key=obj["Key"], last_modified=obj["LastModified"])
            for obj in listed
            if obj["Key"].endswith(MANIFEST_SUFFIX) and obj["LastModified"] > window_start
        ]

        self._log.debug(
            f"Listed {len(listed)} objects under 's3://{location.bucket}/{location.prefix}' "
            f"starting after '{start_after}'."
        )
        if not candidates:
            self._log.info(
                f"No manifest file available under '{location.prefix}' "
                f"since {date_string}."
            )
            return None

        candidates.sort(key=lambda ref: ref.last_modified, reverse=True)
        return candidates[0]

    async def wait_for_manifest(
        self,
        location: ManifestLocation,
        retry_interval: timedelta,
        max_retries: int = 24,
    ) -> ManifestReference:
        """
        Polls for a manifest, sleeping `retry_interval` between attempts.

        Listing failures are logged and count as an unsuccessful attempt.

        Args:
            location (ManifestLocation): Where to look.
            retry_interval (timedelta): Sleep between attempts.
            max_retries (int): Retries after the first attempt.

        Returns:
            ManifestReference: The manifest found.

        Raises:
            ManifestNotFoundError: If every attempt came up empty.
            MigrationCancelledError: If cancellation interrupts a wait.
        """
        retries: int = 0
        while True:
            manifest: Optional[ManifestReference] = None
            try:
                manifest = await self.locate(location)
            except RemoteServiceError as e:
                self._log.error(
                    f"Recoverable error while looking for the latest inventory "
                    f"manifest: {e}"
                )

            if manifest is not None:
                self._log.info(
                    f"Found inventory manifest 's3://{location.bucket}/{manifest.key}' "
                    f"(last modified {manifest.last_modified.isoformat()})."
                )
                return manifest

            if retries >= max_retries:
                raise ManifestNotFoundError(
                    f"No inventory manifest found under "
                    f"'s3://{location.bucket}/{location.prefix}' after "
                    f"{max_retries} retries."
                )
            retries += 1
            self._log.info(
                f"No manifest found, sleeping {retry_interval} before retry "
                f"{retries}/{max_retries}."
            )
            await cancellable_sleep(
                retry_interval.total_seconds(),
                self._shutdown_event,
                "waiting for the inventory manifest",
            )
