# src/s3_migration/uploader.py
"""
Streams a reader of unknown length into an S3 object.

S3 Select output has no Content-Length up front, so a plain PUT is only used
when the whole body fits in one part. Larger bodies go through a multipart
upload, one part at a time to keep memory bounded, and the upload is aborted
if anything fails part way.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol

from s3_migration.aws import remote_call

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client

logger: logging.Logger = logging.getLogger(__name__)


class AsyncByteReader(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


@dataclass(frozen=True)
class UploadResult:
    """
    Outcome of a streamed upload.

    Attributes:
        bucket (str): The target bucket.
        key (str): The object key written.
        size (int): Bytes uploaded.
        parts (int): Number of parts; 1 for a single PUT.
    """

    bucket: str
    key: str
    size: int
    parts: int


class StreamingUploader:
    """Uploads from an async byte reader using PUT or multipart upload."""

    def __init__(
        self,
        client: "S3Client",
        shutdown_event: asyncio.Event,
        part_size: int,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            client (S3Client): The S3 client.
            shutdown_event (asyncio.Event): The cancellation event.
            part_size (int): Bytes per part, also the single-PUT ceiling.
            log (logging.Logger, optional): Injected logger.
        """
        self._client: "S3Client" = client
        self._shutdown_event: asyncio.Event = shutdown_event
        self._part_size: int = part_size
        self._log: logging.Logger = log or logger

    async def upload(
        self,
        bucket: str,
        key: str,
        reader: AsyncByteReader,
        extra_args: Optional[Dict[str, Any]] = None,
    ) -> UploadResult:
        """
        Uploads everything `reader` yields to `s3://bucket/key`.

        Args:
            bucket (str): Target bucket.
            key (str): Target key.
            reader (AsyncByteReader): Source of bytes; read until it returns b"".
            extra_args (Dict[str, Any], optional): Extra PUT/CreateMultipartUpload
                parameters such as server-side encryption.

        Returns:
            UploadResult: What was written.
        """
        extra: Dict[str, Any] = dict(extra_args or {})
        first: bytes = await reader.read(self._part_size)
        second: bytes = await reader.read(self._part_size) if first else b""

        if not second:
            await remote_call(
                "PutObject",
                self._client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=first,
                    ContentLength=len(first),
                    **extra,
                ),
                self._shutdown_event,
            )
            self._log.debug(f"Uploaded s3://{bucket}/{key} ({len(first)} bytes).")
            return UploadResult(bucket=bucket, key=key, size=len(first), parts=1)

        return await self._multipart_upload(bucket, key, reader, [first, second], extra)

    async def _multipart_upload(
        self,
        bucket: str,
        key: str,
        reader: AsyncByteReader,
        buffered: List[bytes],
        extra: Dict[str, Any],
    ) -> UploadResult:
        created: Dict[str, Any] = await remote_call(
            "CreateMultipartUpload",
            self._client.create_multipart_upload(Bucket=bucket, Key=key, **extra),
            self._shutdown_event,
        )
        upload_id: str = created["UploadId"]
        parts: List[Dict[str, Any]] = []
        size: int = 0

        try:
            pending: List[bytes] = list(buffered)
            while True:
                body: bytes = pending.pop(0) if pending else await reader.read(
                    self._part_size
                )
                if not body:
                    break
                part_number: int = len(parts) + 1
                response: Dict[str, Any] = await remote_call(
                    "UploadPart",
                    self._client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=body,
                        ContentLength=len(body),
                    ),
                    self._shutdown_event,
                )
                parts.append({"ETag": response["ETag"], "PartNumber": part_number})
                size += len(body)
                self._log.debug(
                    f"Uploaded part {part_number} of s3://{bucket}/{key} "
                    f"({len(body)} bytes)."
                )

            await remote_call(
                "CompleteMultipartUpload",
                self._client.complete_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id,
                    MultipartUpload={"Parts": parts},
                ),
                self._shutdown_event,
            )
        except BaseException:
            self._log.warning(f"Aborting multipart upload of s3://{bucket}/{key}.")
            # Not routed through remote_call: the abort must run even after a
            # cancellation has been requested.
            try:
                await self._client.abort_multipart_upload(
                    Bucket=bucket, Key=key, UploadId=upload_id
                )
            except Exception as abort_error:
                self._log.error(
                    f"Failed to abort multipart upload '{upload_id}': {abort_error}"
                )
            raise

        self._log.debug(
            f"Completed multipart upload of s3://{bucket}/{key} "
            f"({len(parts)} parts, {size} bytes)."
        )
        return UploadResult(bucket=bucket, key=key, size=size, parts=len(parts))
