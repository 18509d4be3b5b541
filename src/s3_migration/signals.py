# src/s3_migration/signals.py
"""
Cooperative cancellation for a migration run.

SIGINT and SIGTERM are translated into an `asyncio.Event`. Every blocking
wait in the engine (discovery back-off, job polling, remote calls) goes
through the helpers below, so a signal unblocks the wait and surfaces as a
`MigrationCancelledError` instead of being swallowed.
"""

import asyncio
import logging
import os
import signal
from types import FrameType
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from s3_migration.exceptions import MigrationCancelledError

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

_SignalHandler = Callable[[int, Optional[FrameType]], Any]


class GracefulShutdown:
    """
    An async context manager that turns POSIX signals into a cancellation event.

    The first SIGINT/SIGTERM sets the event, which aborts the current sleep or
    remote call. A second signal exits the process immediately. Previous
    handlers are restored on exit.
    """

    def __init__(self) -> None:
        self._event: asyncio.Event = asyncio.Event()
        self._old_handlers: Dict[signal.Signals, _SignalHandler] = {}

    async def __aenter__(self) -> asyncio.Event:
        """
        Registers the signal handlers.

        Returns:
            asyncio.Event: The event set when cancellation is requested.
        """
        loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()

        def _handler(sig: int, _: Optional[FrameType]) -> None:
            if self._event.is_set():
                logger.critical("Received second shutdown signal. Forcing exit.")
                os._exit(1)
            logger.warning(
                f"Received {signal.strsignal(sig)}. Cancelling the migration run..."
            )
            loop.call_soon_threadsafe(self._event.set)

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                self._old_handlers[sig] = signal.signal(sig, _handler)
            except (ValueError, OSError) as e:
                # Only the main thread may install handlers
                logger.warning(f"Could not set handler for {sig.name}: {e}")

        return self._event

    async def __aexit__(self, *args: Any) -> None:
        """Restores the original signal handlers."""
        for sig, handler in self._old_handlers.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError) as e:
                logger.warning(f"Could not restore handler for {sig.name}: {e}")
        self._old_handlers.clear()


def _raise_if_set(shutdown_event: asyncio.Event, what: str) -> None:
    if shutdown_event.is_set():
        raise MigrationCancelledError(f"Cancelled while {what}.")


async def cancellable_sleep(
    delay_s: float,
    shutdown_event: asyncio.Event,
    what: str = "waiting",
) -> None:
    """
    Sleeps for `delay_s` seconds unless cancellation is requested first.

    Args:
        delay_s (float): Seconds to sleep.
        shutdown_event (asyncio.Event): The cancellation event.
        what (str): Short description of the wait, used in the error message.

    Raises:
        MigrationCancelledError: If the event is or becomes set.
    """
    _raise_if_set(shutdown_event, what)
    if delay_s <= 0:
        await asyncio.sleep(0)
        _raise_if_set(shutdown_event, what)
        return
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=delay_s)
    except asyncio.TimeoutError:
        return
    raise MigrationCancelledError(f"Cancelled while {what}.")


async def cancellable(
    awaitable: Awaitable[T],
    shutdown_event: asyncio.Event,
    what: str = "calling a remote service",
) -> T:
    """
    Races an awaitable against the cancellation event.

    Args:
        awaitable (Awaitable[T]): Typically an aiobotocore API call.
        shutdown_event (asyncio.Event): The cancellation event.
        what (str): Short description of the call, used in the error message.

    Returns:
        T: The awaitable's result. Its exceptions propagate unchanged.

    Raises:
        MigrationCancelledError: If cancellation wins the race.
    """
    call_task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    if shutdown_event.is_set():
        call_task.cancel()
        await asyncio.gather(call_task, return_exceptions=True)
        raise MigrationCancelledError(f"Cancelled while {what}.")

    shutdown_task: asyncio.Task[bool] = asyncio.create_task(shutdown_event.wait())
    done, _ = await asyncio.wait(
        {call_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED
    )
    if call_task in done:
        shutdown_task.cancel()
        await asyncio.gather(shutdown_task, return_exceptions=True)
        return call_task.result()

    call_task.cancel()
    await asyncio.gather(call_task, return_exceptions=True)
    raise MigrationCancelledError(f"Cancelled while {what}.")
