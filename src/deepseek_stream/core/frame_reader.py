"""Incremental server-sent-event framing over an async byte stream."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from deepseek_stream.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

SENTINEL = "[DONE]"
DATA_FIELD = "data"
EVENT_FIELD = "event"


@dataclass(frozen=True)
class Frame:
    """Payload of one SSE record."""

    data: str
    event: str | None = None
    # Recovered from undelimited bytes when the transport closed
    trailing: bool = False


class FrameParser:
    """Splits a byte stream into frames, one blank-line-delimited record each.

    Bytes are buffered until a full delimiter has been seen, so frames may be
    split across any number of ``feed`` calls. The ``[DONE]`` sentinel sets
    ``done`` and is never returned as a frame.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.done = False

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet part of a complete record."""
        return self._buffer

    def feed(self, data: bytes) -> list[Frame]:
        self._buffer = (self._buffer + data).replace(b"\r\n", b"\n")
        frames: list[Frame] = []
        while True:
            record, sep, rest = self._buffer.partition(b"\n\n")
            if not sep:
                break
            self._buffer = rest
            frame = self._parse_record(record)
            if frame is None:
                continue
            if self.done:
                logger.warning("Discarding frame received after end-of-stream marker")
                continue
            if _is_sentinel(frame):
                self.done = True
                continue
            frames.append(frame)
        return frames

    def flush(self) -> Frame | None:
        """Turn the undelimited tail left at transport close into a frame.

        Returns None when the tail is blank, comments, the sentinel, or holds
        no data field; in the last case the bytes stay in ``pending``.
        """
        tail = self._buffer.rstrip(b"\r\n")
        if _is_blank_or_comment(tail):
            self._buffer = b""
            return None
        if self.done:
            return None
        frame = self._parse_record(tail)
        if frame is None:
            return None
        self._buffer = b""
        if _is_sentinel(frame):
            self.done = True
            return None
        return Frame(data=frame.data, event=frame.event, trailing=True)

    @staticmethod
    def _parse_record(record: bytes) -> Frame | None:
        data_lines: list[str] = []
        event: str | None = None
        for line in record.decode("utf-8", errors="replace").split("\n"):
            if not line or line.startswith(":"):
                continue
            field, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if field == DATA_FIELD:
                data_lines.append(value)
            elif field == EVENT_FIELD:
                event = value
        if not data_lines:
            return None
        return Frame(data="\n".join(data_lines), event=event)


def _is_blank_or_comment(record: bytes) -> bool:
    return all(
        not line.strip() or line.startswith(b":") for line in record.split(b"\n")
    )


def _is_sentinel(frame: Frame) -> bool:
    return frame.data.strip() == SENTINEL


class FrameReader:
    """Lazily yields frames read from ``source`` until the sentinel or close.

    Every read from the source is raced against ``cancel_token`` so a stalled
    connection can be abandoned without waiting for more bytes. ``on_data`` is
    called with each chunk as it is read, before it is parsed.
    """

    def __init__(
        self,
        source: AsyncIterator[bytes],
        cancel_token: CancellationToken | None = None,
        on_data: Callable[[bytes], None] | None = None,
    ) -> None:
        self._source = source
        self._token = cancel_token or CancellationToken()
        self._on_data = on_data
        self._parser = FrameParser()
        self.closed = False
        self.bytes_received = 0

    @property
    def done(self) -> bool:
        return self._parser.done

    @property
    def pending(self) -> bytes:
        return self._parser.pending

    def __aiter__(self) -> AsyncIterator[Frame]:
        return self._frames()

    async def _frames(self) -> AsyncIterator[Frame]:
        while not self._parser.done:
            data = await self._read()
            if data is None:
                tail = self._parser.flush()
                if tail is not None:
                    logger.debug("Transport closed with undelimited frame")
                    yield tail
                return
            for frame in self._parser.feed(data):
                yield frame

    async def drain(self) -> None:
        """Consume the source to its end after the sentinel has been seen."""
        while not self.closed:
            data = await self._read()
            if data is None:
                return
            self._parser.feed(data)

    async def _read(self) -> bytes | None:
        if self.closed:
            return None
        data = await self._token.race(self._next_chunk())
        if data is None:
            self.closed = True
            return None
        self.bytes_received += len(data)
        if self._on_data is not None:
            self._on_data(data)
        return data

    async def _next_chunk(self) -> bytes | None:
        try:
            return await self._source.__anext__()
        except StopAsyncIteration:
            return None
