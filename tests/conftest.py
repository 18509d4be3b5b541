# tests/conftest.py
"""
Pytest configuration and fixtures for the s3-migration test suite.

This module sets up the testing environment, including:
- In-memory fakes of the aiobotocore S3 and S3 Control clients for unit tests.
- Factories for inventory manifests and migration configurations.
- Spinning up a MinIO Docker container for the end-to-end tests.
- Creating and cleaning up isolated S3 buckets for each e2e test function.
"""

import asyncio
import hashlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import (
    Any,
    AsyncGenerator,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

import boto3
import pytest
import pytest_asyncio
import requests
from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from requests.exceptions import ConnectionError
from types_boto3_s3.service_resource import Bucket, S3ServiceResource

from s3_migration.config import AppConfig, AwsConfig, MigrationConfig

# --- Constants ---
S3_ACCESS_KEY: str = "minio-key"
S3_SECRET_KEY: str = "minio-secret"
S3_REGION: str = "us-east-1"
ACCOUNT_ID: str = "123456789012"
ROLE_ARN: str = f"arn:aws:iam::{ACCOUNT_ID}:role/BatchOperationsCopyRole"
INVENTORY_SCHEMA: str = (
    "Bucket, Key, VersionId, IsLatest, IsDeleteMarker, Size, LastModifiedDate, "
    "ReplicationStatus"
)

SelectResponder = Callable[[str, str, str], bytes]
JobScript = List[Tuple[str, int, int, int]]


def client_error(code: str, operation: str) -> ClientError:
    """
    Build a botocore `ClientError` as the service would raise it.

    Args:
        code (str): The AWS error code.
        operation (str): The API operation name.

    Returns:
        ClientError: The error.
    """
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeStreamingBody:
    """Mimics the aiobotocore `StreamingBody` used in `get_object` responses."""

    def __init__(self, data: bytes) -> None:
        self._data: bytes = data

    async def __aenter__(self) -> "FakeStreamingBody":
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    async def read(self) -> bytes:
        return self._data


async def event_stream(events: List[Dict[str, Any]]) -> AsyncIterator[Dict[str, Any]]:
    """Yields S3 Select events one at a time."""
    for event in events:
        await asyncio.sleep(0)
        yield event


def records_events(data: bytes, chunk_size: int = 7) -> List[Dict[str, Any]]:
    """
    Split a select result into `Records` events, interleaved with noise.

    Args:
        data (bytes): The full query output.
        chunk_size (int): Payload size of each `Records` event.

    Returns:
        List[Dict[str, Any]]: The event sequence, terminated by `End`.
    """
    events: List[Dict[str, Any]] = [{"Cont": {}}]
    for offset in range(0, len(data), chunk_size):
        events.append({"Records": {"Payload": data[offset : offset + chunk_size]}})
        events.append({"Progress": {"Details": {}}})
    events.append({"Stats": {"Details": {"BytesReturned": len(data)}}})
    events.append({"End": {}})
    return events


class FakeEventStream:
    """A `select_object_content` payload that records whether it was closed."""

    def __init__(self, events: List[Dict[str, Any]]) -> None:
        self._events: List[Dict[str, Any]] = events
        self.closed: bool = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return event_stream(self._events)

    def close(self) -> None:
        self.closed = True


class FakeListObjectsV2Paginator:
    """Pages through `FakeS3Client` objects the way the botocore paginator does."""

    def __init__(self, client: "FakeS3Client") -> None:
        self._client: "FakeS3Client" = client

    async def paginate(self, **kwargs: Any) -> AsyncIterator[Dict[str, Any]]:
        request: Dict[str, Any] = dict(kwargs)
        while True:
            await asyncio.sleep(0)
            page: Dict[str, Any] = self._client.list_page(request)
            yield page
            if not page["IsTruncated"]:
                return
            request["ContinuationToken"] = page["NextContinuationToken"]


class FakeS3Client:
    """
    An in-memory stand-in for the aiobotocore S3 client.

    Only the operations the migration engine uses are implemented. Every
    call is recorded in `calls`; `fail` queues an error for an operation.
    """

    def __init__(self) -> None:
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.versioning: Dict[str, str] = {}
        self.inventory: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.ownership: Dict[str, str] = {}
        self.uploads: Dict[str, Dict[int, bytes]] = {}
        self.aborted: List[str] = []
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self.page_size: int = 1000
        self.select_streams: List[FakeEventStream] = []
        self.select_responder: SelectResponder = self._default_select

    # --- Helpers ---
    def fail(self, operation: str, error: BaseException, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        last_modified: Optional[datetime] = None,
    ) -> None:
        self.objects[(bucket, key)] = {
            "Body": body,
            "ETag": f'"{hashlib.md5(body).hexdigest()}"',
            "LastModified": last_modified or datetime.now(timezone.utc),
            "Extra": {},
        }

    def body(self, bucket: str, key: str) -> bytes:
        return self.objects[(bucket, key)]["Body"]

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def _record(self, operation: str, kwargs: Dict[str, Any]) -> None:
        self.calls.append((operation, kwargs))
        pending: List[BaseException] = self.failures.get(operation, [])
        if pending:
            raise pending.pop(0)

    def _default_select(self, bucket: str, key: str, expression: str) -> bytes:
        return self.objects.get((bucket, key), {}).get("Body", b"")

    # --- Bucket configuration ---
    async def get_bucket_versioning(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("GetBucketVersioning", kwargs)
        status: Optional[str] = self.versioning.get(kwargs["Bucket"])
        return {"Status": status} if status else {}

    async def get_bucket_inventory_configuration(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("GetBucketInventoryConfiguration", kwargs)
        configuration = self.inventory.get((kwargs["Bucket"], kwargs["Id"]))
        if configuration is None:
            raise client_error("NoSuchConfiguration", "GetBucketInventoryConfiguration")
        return {"InventoryConfiguration": configuration}

    async def put_bucket_inventory_configuration(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("PutBucketInventoryConfiguration", kwargs)
        self.inventory[(kwargs["Bucket"], kwargs["Id"])] = kwargs[
            "InventoryConfiguration"
        ]
        return {}

    async def get_bucket_ownership_controls(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("GetBucketOwnershipControls", kwargs)
        setting: Optional[str] = self.ownership.get(kwargs["Bucket"])
        if setting is None:
            raise client_error(
                "OwnershipControlsNotFoundError", "GetBucketOwnershipControls"
            )
        return {"OwnershipControls": {"Rules": [{"ObjectOwnership": setting}]}}

    # --- Objects ---
    def get_paginator(self, operation_name: str) -> "FakeListObjectsV2Paginator":
        assert operation_name == "list_objects_v2"
        return FakeListObjectsV2Paginator(self)

    def list_page(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Serves one ListObjectsV2 page of at most `page_size` keys."""
        self._record("ListObjectsV2", dict(request))
        bucket: str = request["Bucket"]
        prefix: str = request.get("Prefix", "")
        after: str = request.get("ContinuationToken") or request.get("StartAfter", "")
        keys: List[str] = sorted(
            key
            for (b, key) in self.objects
            if b == bucket and key.startswith(prefix) and key > after
        )
        page: List[str] = keys[: self.page_size]
        response: Dict[str, Any] = {
            "Contents": [
                {
                    "Key": key,
                    "LastModified": self.objects[(bucket, key)]["LastModified"],
                    "Size": len(self.objects[(bucket, key)]["Body"]),
                }
                for key in page
            ],
            "IsTruncated": len(keys) > len(page),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = page[-1]
        return response

    async def get_object(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("GetObject", kwargs)
        obj = self.objects.get((kwargs["Bucket"], kwargs["Key"]))
        if obj is None:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": FakeStreamingBody(obj["Body"]), "ETag": obj["ETag"]}

    async def head_object(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("HeadObject", kwargs)
        obj = self.objects.get((kwargs["Bucket"], kwargs["Key"]))
        if obj is None:
            raise client_error("404", "HeadObject")
        return {"ETag": obj["ETag"], "ContentLength": len(obj["Body"])}

    async def put_object(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("PutObject", kwargs)
        self.put(kwargs["Bucket"], kwargs["Key"], kwargs["Body"])
        return {"ETag": self.objects[(kwargs["Bucket"], kwargs["Key"])]["ETag"]}

    async def select_object_content(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("SelectObjectContent", kwargs)
        data: bytes = self.select_responder(
            kwargs["Bucket"], kwargs["Key"], kwargs["Expression"]
        )
        stream: FakeEventStream = FakeEventStream(records_events(data))
        self.select_streams.append(stream)
        return {"Payload": stream}

    # --- Multipart ---
    async def create_multipart_upload(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("CreateMultipartUpload", kwargs)
        upload_id: str = uuid.uuid4().hex
        self.uploads[upload_id] = {}
        return {"UploadId": upload_id}

    async def upload_part(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("UploadPart", kwargs)
        self.uploads[kwargs["UploadId"]][kwargs["PartNumber"]] = kwargs["Body"]
        return {"ETag": f'"{hashlib.md5(kwargs["Body"]).hexdigest()}"'}

    async def complete_multipart_upload(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("CompleteMultipartUpload", kwargs)
        parts: Dict[int, bytes] = self.uploads.pop(kwargs["UploadId"])
        body: bytes = b"".join(
            parts[part["PartNumber"]] for part in kwargs["MultipartUpload"]["Parts"]
        )
        self.put(kwargs["Bucket"], kwargs["Key"], body)
        return {"ETag": self.objects[(kwargs["Bucket"], kwargs["Key"])]["ETag"]}

    async def abort_multipart_upload(self, **kwargs: Any) -> Dict[str, Any]:
        self._record("AbortMultipartUpload", kwargs)
        self.uploads.pop(kwargs["UploadId"], None)
        self.aborted.append(kwargs["UploadId"])
        return {}


class FakeS3ControlClient:
    """
    An in-memory stand-in for the aiobotocore S3 Control client.

    Each created job consumes the next script from `scripts`; every
    `describe_job` call advances the job one step through its script and
    stays on the last step.
    """

    def __init__(self, scripts: Optional[List[JobScript]] = None) -> None:
        self.scripts: List[JobScript] = list(scripts or [])
        self.requests: List[Dict[str, Any]] = []
        self.describes: List[str] = []
        self.failures: Dict[str, List[BaseException]] = {}
        self._jobs: Dict[str, JobScript] = {}

    def fail(self, operation: str, error: BaseException, times: int = 1) -> None:
        self.failures.setdefault(operation, []).extend([error] * times)

    def _raise_queued(self, operation: str) -> None:
        pending: List[BaseException] = self.failures.get(operation, [])
        if pending:
            raise pending.pop(0)

    async def create_job(self, **kwargs: Any) -> Dict[str, Any]:
        self._raise_queued("CreateJob")
        self.requests.append(kwargs)
        job_id: str = f"job-{len(self.requests)}"
        script: JobScript = (
            self.scripts.pop(0) if self.scripts else [("Complete", 1, 0, 1)]
        )
        self._jobs[job_id] = list(script)
        return {"JobId": job_id}

    async def describe_job(self, **kwargs: Any) -> Dict[str, Any]:
        self._raise_queued("DescribeJob")
        job_id: str = kwargs["JobId"]
        self.describes.append(job_id)
        script: JobScript = self._jobs[job_id]
        status, succeeded, failed, total = (
            script.pop(0) if len(script) > 1 else script[0]
        )
        return {
            "Job": {
                "JobId": job_id,
                "Status": status,
                "ProgressSummary": {
                    "TotalNumberOfTasks": total,
                    "NumberOfTasksSucceeded": succeeded,
                    "NumberOfTasksFailed": failed,
                },
            }
        }


# --- Unit test fixtures ---
@pytest.fixture
def shutdown_event() -> asyncio.Event:
    """
    Provide a cancellation event that is never set unless a test sets it.

    Returns:
        asyncio.Event: The event.
    """
    return asyncio.Event()


@pytest.fixture
def s3_client() -> FakeS3Client:
    """Provide an empty in-memory S3 client."""
    return FakeS3Client()


@pytest.fixture
def control_client() -> FakeS3ControlClient:
    """Provide an in-memory S3 Control client with default job outcomes."""
    return FakeS3ControlClient()


@pytest.fixture
def fast_app_config() -> AppConfig:
    """
    Provide an `AppConfig` with every delay set to zero.

    Returns:
        AppConfig: Timing parameters suitable for unit tests.
    """
    return AppConfig(
        retry_interval=timedelta(0),
        job_warmup_s=0.0,
        job_poll_interval_s=0.0,
        upload_part_size=64,
    )


@pytest.fixture
def config_factory(fast_app_config: AppConfig) -> Callable[..., MigrationConfig]:
    """
    Provide a factory for `MigrationConfig` objects with test defaults.

    Yields:
        A function accepting `MigrationConfig` field overrides.
    """

    def _factory(**overrides: Any) -> MigrationConfig:
        values: Dict[str, Any] = {
            "aws": AwsConfig(region=S3_REGION),
            "source_bucket": "source-bucket",
            "account_id": ACCOUNT_ID,
            "role_arn": ROLE_ARN,
            "destination_bucket": "destination-bucket",
            "app": fast_app_config,
        }
        values.update(overrides)
        return MigrationConfig(**values)

    return _factory


@pytest.fixture
def manifest_factory(
    s3_client: FakeS3Client,
) -> Callable[..., str]:
    """
    Provide a factory that stores an inventory manifest and its data file.

    Yields:
        A function `(bucket, prefix, data_file, schema, last_modified) -> key`
        returning the key of the stored `manifest.json`.
    """

    def _factory(
        bucket: str,
        prefix: str,
        data: bytes = b"",
        schema: str = INVENTORY_SCHEMA,
        last_modified: Optional[datetime] = None,
    ) -> str:
        moment: datetime = last_modified or datetime.now(timezone.utc)
        folder: str = f"{prefix}{moment:%Y-%m-%dT%H-%MZ}/"
        data_key: str = f"{prefix}data/{uuid.uuid4().hex}.csv.gz"
        s3_client.put(bucket, data_key, data, moment)
        manifest: Dict[str, Any] = {
            "sourceBucket": bucket,
            "fileFormat": "CSV",
            "fileSchema": schema,
            "files": [{"key": data_key, "size": len(data), "MD5checksum": ""}],
        }
        key: str = f"{folder}manifest.json"
        s3_client.put(bucket, key, json.dumps(manifest).encode(), moment)
        return key

    return _factory


# --- Docker Fixtures ---
@pytest.fixture(scope="session")
def docker_compose_file(pytestconfig: pytest.Config) -> str:
    """
    Locate the docker-compose.yml file for the test suite.

    Args:
        pytestconfig (pytest.Config): The pytest configuration object.

    Returns:
        str: The absolute path to the docker-compose.yml file.
    """
    return str(Path(pytestconfig.rootdir) / "tests" / "docker-compose.yml")


@pytest.fixture(scope="session")
def docker_compose_project_name() -> str:
    """
    Define a unique, static project name for the Docker stack.

    Returns:
        str: A unique name for the docker-compose project.
    """
    return "s3-migration-tests"


def _is_s3_responsive(url: str) -> bool:
    """
    Check if the MinIO health endpoint is responsive.

    Args:
        url (str): The base URL of the MinIO API.

    Returns:
        bool: True if the service is responsive, False otherwise.
    """
    try:
        response: requests.Response = requests.get(f"{url}/minio/health/live")
        return response.status_code == 200
    except ConnectionError:
        return False


@pytest.fixture(scope="session")
def s3_service(docker_ip: str, docker_services: Any) -> Dict[str, Any]:
    """
    Ensure the MinIO service is running and return its connection details.

    Args:
        docker_ip (str): The IP address of the Docker host, provided by pytest-docker.
        docker_services (Any): The pytest-docker services fixture.

    Returns:
        Dict[str, Any]: Keyword arguments for `create_client("s3", ...)`.
    """
    port: int = docker_services.port_for("minio", 9000)
    api_url: str = f"http://{docker_ip}:{port}"
    docker_services.wait_until_responsive(
        timeout=30.0, pause=0.1, check=lambda: _is_s3_responsive(api_url)
    )
    return {
        "endpoint_url": api_url,
        "aws_access_key_id": S3_ACCESS_KEY,
        "aws_secret_access_key": S3_SECRET_KEY,
        "region_name": S3_REGION,
    }


@pytest_asyncio.fixture(scope="function")
async def minio_bucket(s3_service: Dict[str, Any]) -> AsyncGenerator[str, None]:
    """
    Create a unique, isolated bucket for a single e2e test function.

    Args:
        s3_service (Dict[str, Any]): Connection details for MinIO.

    Yields:
        str: The name of the created bucket.
    """
    session: AioSession = get_session()
    bucket: str = f"migration-{uuid.uuid4()}"
    async with session.create_client("s3", **s3_service) as client:
        await client.create_bucket(Bucket=bucket)

    yield bucket

    # Cleanup: boto3 is simpler for synchronous, recursive delete
    boto_config: BotoConfig = BotoConfig(
        retries={"max_attempts": 0, "mode": "standard"}
    )
    resource: S3ServiceResource = boto3.resource("s3", **s3_service, config=boto_config)
    try:
        bucket_obj: Bucket = resource.Bucket(bucket)
        bucket_obj.objects.all().delete()
        bucket_obj.delete()
    except ClientError as e:
        if e.response["Error"]["Code"] != "NoSuchBucket":
            raise
