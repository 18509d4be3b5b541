# tests/unit/test_filtering.py
"""Unit tests for the manifest filter pipeline."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import pytest

from conftest import FakeS3Client, client_error
from s3_migration.config import FilterCriteria, LatestOnly
from s3_migration.exceptions import MalformedManifestError, RemoteServiceError
from s3_migration.filtering import (
    FilteredManifest,
    ManifestFilterPipeline,
    encryption_args,
    filtered_key,
)
from s3_migration.manifests import ManifestReference

BUCKET: str = "source-bucket"
PREFIX: str = f"{BUCKET}/bulk-copy-inventory/"
ROWS: bytes = b"source-bucket,a.txt\nsource-bucket,b.txt\n"


@pytest.mark.parametrize(
    "key, variant, expected",
    [
        ("inv/data/abc.csv.gz", None, "inv/data/abc.csv"),
        ("inv/data/abc.csv", None, "inv/data/abc.csv"),
        ("inv/data/abc.csv.gz", "non-latest", "inv/data/abc.non-latest.csv"),
        ("inv/data/abc.gz", "non-latest", "inv/data/abc.non-latest"),
        ("inv.d/data/abc", "non-latest", "inv.d/data/abc.non-latest"),
    ],
)
def test_filtered_key(key: str, variant: str, expected: str) -> None:
    """
    Tests the key of the filtered manifest.

    Args:
        key (str): The data file key.
        variant (str): The optional qualifier.
        expected (str): The filtered key.
    """
    assert filtered_key(key, variant) == expected


def test_encryption_args() -> None:
    """Tests S3 managed versus KMS encryption parameters."""
    assert encryption_args("SSE-S3") == {"ServerSideEncryption": "AES256"}
    assert encryption_args("") == {"ServerSideEncryption": "AES256"}
    assert encryption_args("key-id") == {
        "ServerSideEncryption": "aws:kms",
        "SSEKMSKeyId": "key-id",
    }


@pytest.mark.asyncio
async def test_filter_manifest_uploads_select_output(
    s3_client: FakeS3Client,
    shutdown_event: asyncio.Event,
    manifest_factory: Callable[..., str],
) -> None:
    """
    Tests the full read, select, upload and head sequence.

    Arrange:
        - A manifest whose data file select returns two rows.
    Act:
        - Filter for latest versions with a KMS key.
    Assert:
        - The select query uses the manifest schema and GZIP CSV input.
        - The uncompressed key holds the rows, encrypted with the KMS key.
        - The returned ETag matches the stored object.
    """
    # Arrange
    manifest_key: str = manifest_factory(BUCKET, PREFIX)
    s3_client.select_responder = lambda bucket, key, sql: ROWS
    pipeline: ManifestFilterPipeline = ManifestFilterPipeline(
        s3_client, shutdown_event, part_size=1024
    )
    reference: ManifestReference = ManifestReference(
        manifest_key, datetime.now(timezone.utc)
    )

    # Act
    filtered: FilteredManifest = await pipeline.filter_manifest(
        reference,
        BUCKET,
        FilterCriteria(latest_only=LatestOnly.YES, kms_key_id="key-id"),
        versioning_disabled=False,
    )

    # Assert
    select: Dict[str, Any] = s3_client.calls_to("SelectObjectContent")[0]
    assert select["Expression"] == (
        "SELECT s._1, s._2 FROM s3object s WHERE s._4 = 'true'"
    )
    assert select["InputSerialization"]["CompressionType"] == "GZIP"
    assert select["InputSerialization"]["CSV"]["FileHeaderInfo"] == "NONE"
    assert filtered.key == select["Key"][: -len(".gz")]
    assert filtered.bucket == BUCKET
    assert s3_client.body(BUCKET, filtered.key) == ROWS
    assert filtered.etag == s3_client.objects[(BUCKET, filtered.key)]["ETag"]
    assert filtered.etag
    assert filtered.size == len(ROWS)
    put: Dict[str, Any] = s3_client.calls_to("PutObject")[0]
    assert put["SSEKMSKeyId"] == "key-id"
    assert s3_client.select_streams[0].closed


@pytest.mark.asyncio
async def test_failed_upload_releases_select_stream(
    s3_client: FakeS3Client,
    shutdown_event: asyncio.Event,
    manifest_factory: Callable[..., str],
) -> None:
    """
    Tests that the select event stream is closed when the upload fails.

    Arrange:
        - A select result spanning four parts; the first part upload fails.
    Act:
        - Filter the manifest.
    Assert:
        - The error propagates, the multipart upload is aborted and the
          partly read event stream is closed.
    """
    # Arrange
    manifest_key: str = manifest_factory(BUCKET, PREFIX)
    s3_client.select_responder = lambda bucket, key, sql: b"x" * 64
    s3_client.fail("UploadPart", client_error("InternalError", "UploadPart"))
    pipeline: ManifestFilterPipeline = ManifestFilterPipeline(
        s3_client, shutdown_event, part_size=16
    )
    reference: ManifestReference = ManifestReference(
        manifest_key, datetime.now(timezone.utc)
    )

    # Act
    with pytest.raises(RemoteServiceError):
        await pipeline.filter_manifest(reference, BUCKET, FilterCriteria(), True)

    # Assert
    assert len(s3_client.aborted) == 1
    assert len(s3_client.select_streams) == 1
    assert s3_client.select_streams[0].closed
    assert not s3_client.calls_to("HeadObject")


@pytest.mark.asyncio
async def test_filter_manifest_variant_keeps_manifests_apart(
    s3_client: FakeS3Client,
    shutdown_event: asyncio.Event,
    manifest_factory: Callable[..., str],
) -> None:
    """Tests that two manifests filtered from one data file do not collide."""
    manifest_key: str = manifest_factory(BUCKET, PREFIX)
    s3_client.select_responder = lambda bucket, key, sql: (
        b"old\n" if "'false'" in sql else b"new\n"
    )
    pipeline: ManifestFilterPipeline = ManifestFilterPipeline(
        s3_client, shutdown_event, part_size=1024
    )
    reference: ManifestReference = ManifestReference(
        manifest_key, datetime.now(timezone.utc)
    )

    older: FilteredManifest = await pipeline.filter_manifest(
        reference, BUCKET, FilterCriteria(latest_only=LatestOnly.NO), False, "non-latest"
    )
    newer: FilteredManifest = await pipeline.filter_manifest(
        reference, BUCKET, FilterCriteria(latest_only=LatestOnly.YES), False
    )

    assert older.key != newer.key
    assert s3_client.body(BUCKET, older.key) == b"old\n"
    assert s3_client.body(BUCKET, newer.key) == b"new\n"


@pytest.mark.asyncio
async def test_malformed_manifest_stops_before_select(
    s3_client: FakeS3Client, shutdown_event: asyncio.Event
) -> None:
    """Tests that a corrupt manifest.json fails without querying."""
    s3_client.put(BUCKET, PREFIX + "x/manifest.json", b"{broken")
    pipeline: ManifestFilterPipeline = ManifestFilterPipeline(
        s3_client, shutdown_event, part_size=1024
    )

    with pytest.raises(MalformedManifestError):
        await pipeline.filter_manifest(
            ManifestReference(PREFIX + "x/manifest.json", datetime.now(timezone.utc)),
            BUCKET,
            FilterCriteria(),
            versioning_disabled=True,
        )
    assert not s3_client.calls_to("SelectObjectContent")
