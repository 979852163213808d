"""
Twilio ConversationRelay WebSocket Protocol.

Twilio transcribes the caller and sends JSON messages with a `type`:
- setup: Connection established, contains callSid
- prompt: Caller utterance as text (voicePrompt)
- interrupt: Caller spoke over the playback
- dtmf: DTMF tone detected
- error: Relay-side error report

Outbound messages:
- text: A token for Twilio to speak (`last` marks the end of a speakable unit)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple, Union

import msgspec

from src.relay.exceptions import MalformedEvent, UnsupportedEvent

decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


def _get_str(message: Dict[str, Any], key: str) -> str:
    """String field, "" if absent or null."""
    value = message.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise MalformedEvent(f"{key} must be a string, got {type(value).__name__}")
    return value


def _get_dict(message: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise MalformedEvent(f"{key} must be an object, got {type(value).__name__}")
    return value


class RelayEventType(str, Enum):
    """ConversationRelay inbound message types."""
    SETUP = "setup"
    PROMPT = "prompt"
    INTERRUPT = "interrupt"
    DTMF = "dtmf"
    ERROR = "error"


@dataclass
class SetupEvent:
    """Parsed setup message."""
    call_sid: str
    session_id: str = ""
    account_sid: str = ""
    from_number: str = ""
    to_number: str = ""
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "SetupEvent":
        """Parse from relay message."""
        return cls(
            call_sid=_get_str(message, "callSid"),
            session_id=_get_str(message, "sessionId"),
            account_sid=_get_str(message, "accountSid"),
            from_number=_get_str(message, "from"),
            to_number=_get_str(message, "to"),
            custom_parameters=_get_dict(message, "customParameters"),
        )


@dataclass
class PromptEvent:
    """Parsed prompt message."""
    voice_prompt: str
    lang: str = ""
    last: bool = True

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "PromptEvent":
        """Parse from relay message."""
        return cls(
            voice_prompt=_get_str(message, "voicePrompt"),
            lang=_get_str(message, "lang"),
            last=bool(message.get("last", True)),
        )


@dataclass
class InterruptEvent:
    """Parsed interrupt message."""
    utterance_until_interrupt: str = ""
    duration_until_interrupt_ms: int = 0

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "InterruptEvent":
        """Parse from relay message."""
        try:
            duration = int(message.get("durationUntilInterruptMs", 0) or 0)
        except (TypeError, ValueError):
            duration = 0
        return cls(
            utterance_until_interrupt=_get_str(message, "utteranceUntilInterrupt"),
            duration_until_interrupt_ms=duration,
        )


@dataclass
class DTMFEvent:
    """Parsed DTMF message."""
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "DTMFEvent":
        """Parse from relay message."""
        return cls(digit=_get_str(message, "digit"))


@dataclass
class ErrorEvent:
    """Parsed error report from the relay."""
    description: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "ErrorEvent":
        """Parse from relay message."""
        return cls(description=_get_str(message, "description"))


_PARSERS = {
    RelayEventType.SETUP: SetupEvent.from_message,
    RelayEventType.PROMPT: PromptEvent.from_message,
    RelayEventType.INTERRUPT: InterruptEvent.from_message,
    RelayEventType.DTMF: DTMFEvent.from_message,
    RelayEventType.ERROR: ErrorEvent.from_message,
}


def parse_relay_message(raw_message: Union[str, bytes]) -> Tuple[RelayEventType, Any]:
    """
    Parse a raw ConversationRelay WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        MalformedEvent: If the message is not a JSON object with a string type,
            or a known field has the wrong type
        UnsupportedEvent: If the type is not a known relay message
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise MalformedEvent(f"Invalid JSON: {e}") from e

    if not isinstance(message, dict):
        raise MalformedEvent(f"Expected a JSON object, got {type(message).__name__}")

    event_type_str = message.get("type")
    if not isinstance(event_type_str, str):
        raise MalformedEvent("Message has no type")

    try:
        event_type = RelayEventType(event_type_str)
    except ValueError:
        raise UnsupportedEvent(event_type_str) from None

    return event_type, _PARSERS[event_type](message)


def create_text_message(token: str, last: bool = True) -> str:
    """
    Create a ConversationRelay text message.

    Args:
        token: Text for Twilio to speak
        last: Whether this completes a speakable unit

    Returns:
        JSON string to send to Twilio
    """
    message = {
        "type": "text",
        "token": token,
        "last": last,
    }

    return encoder.encode(message).decode("utf-8")
