"""Custom exceptions for the relay agent."""

from typing import Optional


class RelayError(Exception):
    """Base exception for relay session errors."""

    pass


class UnknownSession(RelayError):
    """Raised when an operation references a call key that is not registered."""

    def __init__(self, call_sid: Optional[str]):
        super().__init__(f"Unknown session: {call_sid!r}")
        self.call_sid = call_sid


class DuplicateSetup(RelayError):
    """Raised when setup arrives for a call key that already has a transcript."""

    def __init__(self, call_sid: str):
        super().__init__(f"Session already set up: {call_sid!r}")
        self.call_sid = call_sid


class MalformedEvent(RelayError):
    """Raised when an inbound relay payload cannot be decoded."""

    pass


class UnsupportedEvent(MalformedEvent):
    """Raised for a well-formed relay message with an unknown type."""

    def __init__(self, event_type: str):
        super().__init__(f"Unknown event type: {event_type!r}")
        self.event_type = event_type


class UpstreamStreamError(RelayError):
    """Raised when the completion provider fails or disconnects mid-stream."""

    pass
