"""Terminal error kinds surfaced by a chat-completion stream."""

from __future__ import annotations


class StreamError(Exception):
    """Base class for every failure raised out of a stream."""


class TransportFailure(StreamError):
    """The connection failed, returned an error status, or closed early."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedChunk(StreamError):
    """A frame payload could not be decoded into a completion chunk."""

    def __init__(self, message: str, payload: str = "") -> None:
        super().__init__(message)
        self.payload = payload


class TruncatedStream(StreamError):
    """The transport closed while a frame was still incomplete."""

    def __init__(self, message: str, pending: bytes = b"") -> None:
        super().__init__(message)
        self.pending = pending


class StreamProtocolError(StreamError):
    """The server broke the append-only / finalize rules of the stream."""

    def __init__(
        self,
        message: str,
        choice_index: int | None = None,
        call_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.choice_index = choice_index
        self.call_index = call_index


class ProtocolViolation(StreamProtocolError):
    """Recoverable protocol error: logged and recorded, never raised."""


class StreamCancelled(StreamError):
    """The caller cancelled the stream through its cancellation token."""

    def __init__(self, reason: str | None = None) -> None:
        super().__init__(reason or "Stream cancelled")
        self.reason = reason
