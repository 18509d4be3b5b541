# src/s3_migration/poller.py
"""
Submits S3 Batch Operations jobs, polls them to completion and judges the
outcome against the required success ratio.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional

from s3_migration.aws import remote_call
from s3_migration.exceptions import JobFailedError, ThresholdNotMetError
from s3_migration.signals import cancellable_sleep

if TYPE_CHECKING:
    from rich.progress import Progress, TaskID
    from types_aiobotocore_s3control.client import S3ControlClient

logger: logging.Logger = logging.getLogger(__name__)

TERMINAL_STATUSES: FrozenSet[str] = frozenset({"Complete", "Failed", "Cancelled"})
UNSUCCESSFUL_STATUSES: FrozenSet[str] = frozenset({"Failed", "Cancelled"})


def is_terminal(status: str) -> bool:
    """A terminal job status will not change any further."""
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobProgress:
    """
    A snapshot of a batch job as reported by `DescribeJob`.

    Attributes:
        job_id (str): The job identifier.
        status (str): The job status, e.g. "Active" or "Complete".
        succeeded (int): Tasks that succeeded.
        failed (int): Tasks that failed.
        total (int): Tasks in the job.
    """

    job_id: str
    status: str
    succeeded: int = 0
    failed: int = 0
    total: int = 0

    @property
    def terminal(self) -> bool:
        return is_terminal(self.status)

    @classmethod
    def from_response(cls, response: Dict[str, Any]) -> "JobProgress":
        job: Dict[str, Any] = response["Job"]
        summary: Dict[str, Any] = job.get("ProgressSummary") or {}
        return cls(
            job_id=job["JobId"],
            status=job.get("Status", ""),
            succeeded=summary.get("NumberOfTasksSucceeded", 0),
            failed=summary.get("NumberOfTasksFailed", 0),
            total=summary.get("TotalNumberOfTasks", 0),
        )


def success_ratio(*jobs: Optional[JobProgress]) -> Optional[float]:
    """
    Computes the aggregate success ratio over finished jobs.

    Jobs without tasks (and missing jobs) are left out of both the numerator
    and the denominator.

    Args:
        *jobs (Optional[JobProgress]): Final job snapshots.

    Returns:
        Optional[float]: Summed succeeded over summed total tasks, or None if
            no job had any task.
    """
    succeeded: int = 0
    total: int = 0
    for job in jobs:
        if job is None:
            continue
        if job.total < 1:
            logger.warning(f"Job '{job.job_id}' had no objects to copy.")
            continue
        succeeded += job.succeeded
        total += job.total
    if total == 0:
        return None
    return succeeded / total


def evaluate_threshold(
    required: float,
    *jobs: Optional[JobProgress],
    scope: str = "overall",
    log: Optional[logging.Logger] = None,
) -> Optional[float]:
    """
    Checks finished jobs against the required success ratio.

    Args:
        required (float): The minimum acceptable ratio.
        *jobs (Optional[JobProgress]): Final job snapshots.
        scope (str): Which jobs are judged, used in logs and errors.
        log (logging.Logger, optional): Injected logger.

    Returns:
        Optional[float]: The achieved ratio, None when there was nothing to copy.

    Raises:
        JobFailedError: If a job failed or was cancelled without any task.
        ThresholdNotMetError: If the achieved ratio is below `required`.
    """
    log = log or logger
    for job in jobs:
        if job is not None and job.total < 1 and job.status in UNSUCCESSFUL_STATUSES:
            raise JobFailedError(job.job_id, job.status)
    achieved: Optional[float] = success_ratio(*jobs)
    if achieved is None:
        log.warning(f"No tasks ran in the {scope} job(s); nothing was copied.")
        return None
    if achieved < required:
        raise ThresholdNotMetError(achieved, required, scope)
    log.info(
        f"Job(s) completed, {scope} success ratio {achieved:.4f} meets the "
        f"required {required:.4f}."
    )
    return achieved


class JobPoller:
    """Creates batch jobs and waits for them to reach a terminal status."""

    def __init__(
        self,
        client: "S3ControlClient",
        account_id: str,
        shutdown_event: asyncio.Event,
        warmup_s: float = 15.0,
        poll_interval_s: float = 60.0,
        progress: Optional["Progress"] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            client (S3ControlClient): The S3 Control client.
            account_id (str): Account the jobs run in.
            shutdown_event (asyncio.Event): The cancellation event.
            warmup_s (float): Delay before the first status check.
            poll_interval_s (float): Delay between status checks.
            progress (Progress, optional): rich progress display to update.
            log (logging.Logger, optional): Injected logger.
        """
        self._client: "S3ControlClient" = client
        self._account_id: str = account_id
        self._shutdown_event: asyncio.Event = shutdown_event
        self._warmup_s: float = warmup_s
        self._poll_interval_s: float = poll_interval_s
        self._progress: Optional["Progress"] = progress
        self._log: logging.Logger = log or logger

    async def submit(self, request: Dict[str, Any]) -> str:
        """
        Creates a batch job.

        Args:
            request (Dict[str, Any]): `CreateJob` parameters.

        Returns:
            str: The new job id.
        """
        response: Dict[str, Any] = await remote_call(
            "CreateJob", self._client.create_job(**request), self._shutdown_event
        )
        job_id: str = response["JobId"]
        self._log.info(f"Created batch job '{job_id}': {request.get('Description', '')}")
        return job_id

    async def describe(self, job_id: str) -> JobProgress:
        """Fetches the current status of a job."""
        response: Dict[str, Any] = await remote_call(
            "DescribeJob",
            self._client.describe_job(AccountId=self._account_id, JobId=job_id),
            self._shutdown_event,
        )
        return JobProgress.from_response(response)

    async def wait(self, job_id: str) -> JobProgress:
        """
        Polls a job until it reaches a terminal status.

        A failed status check ends the wait with `RemoteServiceError`; unlike
        manifest discovery it is not retried.

        Args:
            job_id (str): The job to watch.

        Returns:
            JobProgress: The terminal snapshot.
        """
        self._log.info(
            f"Sleeping {self._warmup_s:.0f} seconds before checking initial job status."
        )
        await cancellable_sleep(
            self._warmup_s, self._shutdown_event, f"waiting for job '{job_id}'"
        )

        task_id: Optional["TaskID"] = None
        if self._progress is not None:
            task_id = self._progress.add_task(f"Job {job_id}", total=None)

        while True:
            status: JobProgress = await self.describe(job_id)
            self._log.info(
                f"Copy job '{job_id}' status: {status.status}, "
                f"succeeded={status.succeeded}, failed={status.failed}, "
                f"total={status.total}"
            )
            if self._progress is not None and task_id is not None:
                self._progress.update(
                    task_id,
                    total=status.total or None,
                    completed=status.succeeded + status.failed,
                )
            if status.terminal:
                return status

            self._log.debug(
                f"Batch job not complete, sleeping {self._poll_interval_s:.0f} seconds."
            )
            await cancellable_sleep(
                self._poll_interval_s,
                self._shutdown_event,
                f"polling job '{job_id}'",
            )

    async def run(self, request: Dict[str, Any]) -> JobProgress:
        """Submits a job and waits for it to finish."""
        return await self.wait(await self.submit(request))
