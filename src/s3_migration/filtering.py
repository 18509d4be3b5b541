# src/s3_migration/filtering.py
"""
Turns a raw inventory data file into a batch-job-ready manifest.

The inventory CSV is gzipped and carries every column of the inventory
schema. S3 Select projects it down to `bucket,key` rows matching the filter
criteria server side; the result is streamed straight back into S3 as an
uncompressed CSV next to the original data file.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Optional

from s3_migration.aws import remote_call
from s3_migration.config import DEFAULT_KMS_KEY_ID, FilterCriteria
from s3_migration.manifests import (
    ManifestDocument,
    ManifestReference,
    parse_manifest_document,
)
from s3_migration.query import FilterExpression, build_filter_expression
from s3_migration.select_reader import SelectStreamReader
from s3_migration.uploader import StreamingUploader, UploadResult

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)

COMPRESSION_SUFFIX: str = ".gz"


@dataclass(frozen=True)
class FilteredManifest:
    """
    A filtered manifest uploaded for a batch job.

    Attributes:
        bucket (str): Bucket holding the filtered manifest.
        key (str): Key of the uncompressed CSV.
        etag (str): ETag of the uploaded object.
        size (int): Size in bytes.
    """

    bucket: str
    key: str
    etag: str
    size: int


def filtered_key(data_file_key: str, variant: Optional[str] = None) -> str:
    """
    Returns the key of the uncompressed, filtered copy of a data file.

    Args:
        data_file_key (str): Key of the gzipped inventory data file.
        variant (str, optional): Qualifier that keeps two manifests filtered
            from the same data file apart, e.g. "non-latest".

    Returns:
        str: The data file key without its ".gz" suffix, qualified by `variant`.
    """
    key: str = data_file_key
    if key.endswith(COMPRESSION_SUFFIX):
        key = key[: -len(COMPRESSION_SUFFIX)]
    if not variant:
        return key
    stem, dot, extension = key.rpartition(".")
    if dot and "/" not in extension:
        return f"{stem}.{variant}.{extension}"
    return f"{key}.{variant}"


def encryption_args(kms_key_id: str) -> Dict[str, Any]:
    """
    Returns server-side encryption parameters for uploads.

    Args:
        kms_key_id (str): "SSE-S3" for S3 managed keys, otherwise a KMS key id.

    Returns:
        Dict[str, Any]: Parameters for PutObject/CreateMultipartUpload.
    """
    if not kms_key_id or kms_key_id == DEFAULT_KMS_KEY_ID:
        return {"ServerSideEncryption": "AES256"}
    return {"ServerSideEncryption": "aws:kms", "SSEKMSKeyId": kms_key_id}


class ManifestFilterPipeline:
    """Reads a manifest, filters its data file with S3 Select and re-uploads it."""

    def __init__(
        self,
        client: "S3Client",
        shutdown_event: asyncio.Event,
        part_size: int,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            client (S3Client): S3 client for the source bucket.
            shutdown_event (asyncio.Event): The cancellation event.
            part_size (int): Multipart part size for the filtered upload.
            log (logging.Logger, optional): Injected logger.
        """
        self._client: "S3Client" = client
        self._shutdown_event: asyncio.Event = shutdown_event
        self._log: logging.Logger = log or logger
        self._uploader: StreamingUploader = StreamingUploader(
            client, shutdown_event, part_size, log=self._log
        )

    async def read_manifest(
        self, bucket: str, manifest: ManifestReference
    ) -> ManifestDocument:
        """
        Downloads and parses a `manifest.json`.

        Args:
            bucket (str): Bucket holding the manifest.
            manifest (ManifestReference): The manifest to read.

        Returns:
            ManifestDocument: The parsed manifest.
        """
        response: Dict[str, Any] = await remote_call(
            "GetObject",
            self._client.get_object(Bucket=bucket, Key=manifest.key),
            self._shutdown_event,
        )
        async with response["Body"] as stream:
            body: bytes = await remote_call(
                "GetObject", stream.read(), self._shutdown_event
            )
        return parse_manifest_document(body)

    async def select(
        self, bucket: str, key: str, expression: FilterExpression
    ) -> SelectStreamReader:
        """
        Starts an S3 Select query over a gzipped, header-less inventory CSV.

        Args:
            bucket (str): Bucket holding the data file.
            key (str): The data file key.
            expression (FilterExpression): The row filter.

        Returns:
            SelectStreamReader: A reader over the query's record stream.
        """
        sql: str = expression.to_sql()
        self._log.debug(f"Running S3 Select on 's3://{bucket}/{key}': {sql}")
        response: Dict[str, Any] = await remote_call(
            "SelectObjectContent",
            self._client.select_object_content(
                Bucket=bucket,
                Key=key,
                Expression=sql,
                ExpressionType="SQL",
                InputSerialization={
                    "CSV": {"FieldDelimiter": ",", "FileHeaderInfo": "NONE"},
                    "CompressionType": "GZIP",
                },
                OutputSerialization={"CSV": {}},
                RequestProgress={"Enabled": False},
            ),
            self._shutdown_event,
        )
        return SelectStreamReader(response["Payload"], log=self._log)

    async def filter_manifest(
        self,
        manifest: ManifestReference,
        manifest_bucket: str,
        criteria: FilterCriteria,
        versioning_disabled: bool,
        variant: Optional[str] = None,
    ) -> FilteredManifest:
        """
        Produces one filtered, uploaded manifest for a batch job.

        Args:
            manifest (ManifestReference): The selected inventory manifest.
            manifest_bucket (str): Bucket holding the inventory output; the
                filtered manifest is written there too.
            criteria (FilterCriteria): Filters for this job. Its `latest_only`
                value is the one this job copies.
            versioning_disabled (bool): True for never-versioned source buckets.
            variant (str, optional): Key qualifier, see `filtered_key`.

        Returns:
            FilteredManifest: Location and ETag of the uploaded manifest.
        """
        document: ManifestDocument = await self.read_manifest(manifest_bucket, manifest)
        data_file: str = document.data_file
        self._log.info(f"Processing inventory data file '{data_file}'.")

        expression: FilterExpression = build_filter_expression(
            document.file_schema,
            criteria.start,
            criteria.end,
            criteria.latest_only,
            versioning_disabled,
            log=self._log,
        )
        reader: SelectStreamReader = await self.select(
            manifest_bucket, data_file, expression
        )

        key: str = filtered_key(data_file, variant)
        try:
            result: UploadResult = await self._uploader.upload(
                manifest_bucket, key, reader, encryption_args(criteria.kms_key_id)
            )
        finally:
            reader.close()
        self._log.info(
            f"Uploaded filtered inventory file 's3://{manifest_bucket}/{key}' "
            f"({result.size} bytes)."
        )

        head: Dict[str, Any] = await remote_call(
            "HeadObject",
            self._client.head_object(Bucket=manifest_bucket, Key=key),
            self._shutdown_event,
        )
        return FilteredManifest(
            bucket=manifest_bucket, key=key, etag=head["ETag"], size=result.size
        )
