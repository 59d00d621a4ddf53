"""Drive one streamed chat completion from HTTP request to final messages."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import AsyncGenerator, AsyncIterator

import httpx

from deepseek_stream.core.accumulator import AccumulatedMessage, DeltaAccumulator
from deepseek_stream.core.cancellation import CancellationToken
from deepseek_stream.core.decoder import ChoiceDelta, CompletionChunk, Usage, decode_chunk
from deepseek_stream.core.frame_reader import Frame, FrameReader
from deepseek_stream.errors import (
    MalformedChunk,
    StreamCancelled,
    StreamError,
    TransportFailure,
    TruncatedStream,
)

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    DRAINING = "draining"
    COMPLETED = "completed"
    ABORTED = "aborted"


_ACTIVE = (StreamState.CONNECTING, StreamState.STREAMING, StreamState.DRAINING)


class StreamController:
    """Single-use async iterator of choice deltas for one request.

    Owns the HTTP response for the stream's lifetime and closes it exactly
    once on every exit path. Whatever was accumulated before a failure stays
    available through ``messages()``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        request: httpx.Request,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._client = client
        self._request = request
        self.cancel_token = cancel_token or CancellationToken()
        self.accumulator = DeltaAccumulator()
        self.state = StreamState.IDLE
        self.error: BaseException | None = None
        self.response_id: str | None = None
        self.model: str | None = None
        self.usage: Usage | None = None
        self._response: httpx.Response | None = None
        self._iterator: AsyncGenerator[ChoiceDelta, None] | None = None

    async def __aenter__(self) -> StreamController:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __aiter__(self) -> AsyncIterator[ChoiceDelta]:
        if self._iterator is not None:
            raise RuntimeError("StreamController can only be iterated once")
        self._iterator = self._run()
        return self._iterator

    def cancel(self, reason: str | None = None) -> None:
        self.cancel_token.cancel(reason)

    async def aclose(self) -> None:
        """Stop the stream early and release the connection."""
        if self._iterator is not None:
            await self._iterator.aclose()
        if self.state in _ACTIVE:
            self._transition(StreamState.ABORTED)
        await self._release()

    @property
    def released(self) -> bool:
        return self._response is not None and self._response.is_closed

    def message(self, choice_index: int = 0) -> AccumulatedMessage | None:
        return self.accumulator.snapshot(choice_index)

    def messages(self) -> list[AccumulatedMessage]:
        return self.accumulator.messages()

    async def _run(self) -> AsyncGenerator[ChoiceDelta, None]:
        self._transition(StreamState.CONNECTING)
        try:
            response = await self._connect()
            reader = FrameReader(
                response.aiter_bytes(), self.cancel_token, on_data=self._on_data
            )
            tail: Frame | None = None
            finished = False

            async for frame in reader:
                self.cancel_token.raise_if_cancelled()
                if frame.trailing:
                    tail = frame
                chunk = self._decode(frame)
                if chunk.done:
                    finished = True
                    break
                for choice in self._absorb(chunk):
                    self.cancel_token.raise_if_cancelled()
                    self.accumulator.merge(choice.index, choice)
                    yield choice

            if reader.done or finished:
                self._transition(StreamState.DRAINING)
                await reader.drain()
                if reader.pending.strip():
                    raise TruncatedStream(
                        f"{len(reader.pending)} undelimited bytes after end-of-stream marker",
                        reader.pending,
                    )
            elif tail is not None or reader.pending.strip():
                raise TruncatedStream(
                    "Connection closed in the middle of a frame",
                    tail.data.encode() if tail is not None else reader.pending,
                )
            else:
                raise TransportFailure("Connection closed before end-of-stream marker")

            self.accumulator.finalize_all()
            self._transition(StreamState.COMPLETED)
        except StreamCancelled as e:
            self._abort(e)
            logger.warning("Stream cancelled: %s", e)
            raise
        except StreamError as e:
            self._abort(e)
            logger.error("Stream aborted: %s", e)
            raise
        except (httpx.HTTPError, httpx.StreamError) as e:
            failure = TransportFailure(f"{type(e).__name__}: {e}")
            self._abort(failure)
            logger.error("Stream aborted: %s", failure)
            raise failure from e
        except (asyncio.CancelledError, GeneratorExit):
            self._abort(None)
            raise
        finally:
            await self._release()

    async def _connect(self) -> httpx.Response:
        response = await self.cancel_token.race(
            self._client.send(self._request, stream=True)
        )
        self._response = response
        if response.is_error:
            await self.cancel_token.race(response.aread())
            raise TransportFailure(
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _on_data(self, data: bytes) -> None:
        if data and self.state is StreamState.CONNECTING:
            self._transition(StreamState.STREAMING)

    def _decode(self, frame: Frame) -> CompletionChunk:
        try:
            return decode_chunk(frame.data)
        except MalformedChunk as e:
            if frame.trailing:
                raise TruncatedStream(
                    "Connection closed in the middle of a frame", frame.data.encode()
                ) from e
            raise

    def _absorb(self, chunk: CompletionChunk) -> list[ChoiceDelta]:
        if chunk.id:
            self.response_id = chunk.id
        if chunk.model:
            self.model = chunk.model
        if chunk.usage is not None:
            self.usage = chunk.usage
        return chunk.choices

    def _abort(self, error: BaseException | None) -> None:
        self.error = error
        if self.state in _ACTIVE:
            self._transition(StreamState.ABORTED)

    def _transition(self, state: StreamState) -> None:
        logger.debug("Stream %s -> %s", self.state.value, state.value)
        self.state = state

    async def _release(self) -> None:
        if self._response is not None and not self._response.is_closed:
            await self._response.aclose()
