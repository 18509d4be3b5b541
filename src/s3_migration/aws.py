# src/s3_migration/aws.py
"""
AWS client construction and the guarded remote-call helper.

All S3 and S3 Control traffic goes through `remote_call`, which makes the
call cancellable and converts botocore failures into `RemoteServiceError`
carrying the operation name.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Optional, Tuple, TypeVar

from aiobotocore.session import AioSession, get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from s3_migration.config import AwsConfig
from s3_migration.exceptions import RemoteServiceError
from s3_migration.signals import cancellable

if TYPE_CHECKING:
    from types_aiobotocore_s3.client import S3Client
    from types_aiobotocore_s3control.client import S3ControlClient

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")


def error_code(error: BaseException) -> Optional[str]:
    """
    Extracts the AWS error code from a `ClientError` or a wrapping error.

    Args:
        error (BaseException): The raised exception.

    Returns:
        Optional[str]: The error code, e.g. "NoSuchConfiguration".
    """
    if isinstance(error, RemoteServiceError) and error.cause is not None:
        error = error.cause
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


async def remote_call(
    operation: str,
    awaitable: Awaitable[T],
    shutdown_event: asyncio.Event,
) -> T:
    """
    Awaits an AWS API call, honouring cancellation and normalizing errors.

    Args:
        operation (str): The API operation name, used in errors and logs.
        awaitable (Awaitable[T]): The pending client call.
        shutdown_event (asyncio.Event): The cancellation event.

    Returns:
        T: The API response.

    Raises:
        RemoteServiceError: If botocore reports a failure.
        MigrationCancelledError: If cancellation is requested first.
    """
    try:
        return await cancellable(awaitable, shutdown_event, f"calling {operation}")
    except (ClientError, BotoCoreError) as e:
        raise RemoteServiceError(operation, e) from e


@asynccontextmanager
async def create_clients(
    aws_config: AwsConfig,
) -> AsyncIterator[Tuple["S3Client", "S3ControlClient"]]:
    """
    Opens the S3 and S3 Control clients for one run.

    Args:
        aws_config (AwsConfig): Region, endpoints and optional profile.

    Yields:
        Tuple[S3Client, S3ControlClient]: The open clients.
    """
    session: AioSession = (
        AioSession(profile=aws_config.profile) if aws_config.profile else get_session()
    )
    boto_config: BotoConfig = BotoConfig(
        signature_version="s3v4",
        retries={"max_attempts": 5, "mode": "standard"},
    )
    logger.debug(f"Opening AWS clients in region '{aws_config.region}'.")
    async with (
        session.create_client(
            "s3", **aws_config.client_kwargs("s3"), config=boto_config
        ) as s3_client,
        session.create_client(
            "s3control", **aws_config.client_kwargs("s3control"), config=boto_config
        ) as control_client,
    ):
        yield s3_client, control_client


def bucket_arn(bucket: str) -> str:
    """Converts a bucket (or `bucket/key`) into an S3 ARN."""
    return f"arn:aws:s3:::{bucket}"
