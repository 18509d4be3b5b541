# src/s3_migration/select_reader.py
"""
Pull-based reader over an S3 Select event stream.

`select_object_content` pushes `Records` chunks of arbitrary size interleaved
with `Stats`, `Progress` and `Cont` events, and finishes with `End`. The
uploader needs the opposite shape: "give me up to N bytes". This module
adapts one to the other.
"""

import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict, Optional

from s3_migration.exceptions import StreamClosedError

logger: logging.Logger = logging.getLogger(__name__)


class SelectStreamReader:
    """
    Buffers S3 Select `Records` payloads and serves them in caller-sized reads.

    `read` returns `b""` exactly once, after the last byte has been handed
    out. Reading again raises `StreamClosedError`.
    """

    def __init__(
        self,
        events: AsyncIterable[Dict[str, Any]],
        log: Optional[logging.Logger] = None,
    ) -> None:
        """
        Args:
            events (AsyncIterable[Dict[str, Any]]): The `Payload` event stream
                of a `select_object_content` response.
            log (logging.Logger, optional): Logger for stream diagnostics.
        """
        self._source: AsyncIterable[Dict[str, Any]] = events
        self._events: AsyncIterator[Dict[str, Any]] = events.__aiter__()
        self._log: logging.Logger = log or logger
        self._remaining: bytearray = bytearray()
        self._exhausted: bool = False
        self._closed: bool = False
        self.bytes_read: int = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stops reading and releases the underlying event stream."""
        self._closed = True
        self._exhausted = True
        self._remaining.clear()
        release = getattr(self._source, "close", None)
        if release is not None:
            release()

    async def _next_event(self) -> Optional[Dict[str, Any]]:
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            self._log.debug("Select event stream closed.")
            return None

    async def read(self, size: int = -1) -> bytes:
        """
        Reads up to `size` bytes, or everything left when `size` is negative.

        Args:
            size (int): Maximum number of bytes to return.

        Returns:
            bytes: The data read; empty once the stream is exhausted.

        Raises:
            StreamClosedError: If called after end of data was returned.
        """
        if self._closed:
            raise StreamClosedError("Read from a select stream that has already ended.")
        if size == 0:
            return b""

        out: bytearray = bytearray()
        while size < 0 or len(out) < size:
            if self._remaining:
                take: int = (
                    len(self._remaining) if size < 0 else size - len(out)
                )
                out += self._remaining[:take]
                del self._remaining[:take]
                continue

            if self._exhausted:
                break

            event: Optional[Dict[str, Any]] = await self._next_event()
            if event is None:
                self._exhausted = True
            elif "Records" in event:
                self._remaining += event["Records"].get("Payload", b"")
            elif "End" in event:
                self._log.debug(
                    f"Select event stream ended after {self.bytes_read + len(out)} bytes."
                )
                self._exhausted = True
            # Stats, Progress and Cont events carry no record data

        if out:
            self.bytes_read += len(out)
            return bytes(out)
        self._closed = True
        return b""
