"""
TwiML for answering a call with ConversationRelay.

Twilio fetches this document from the voice webhook and then opens the relay
WebSocket; speech synthesis settings are passed straight through.
"""

from typing import Optional

import structlog
from twilio.twiml.voice_response import Connect, VoiceResponse

from src.relay.config import Config, get_config
from src.relay.prompts import get_welcome_greeting

logger = structlog.get_logger(__name__)


def build_conversation_relay_twiml(
    ws_url: str,
    *,
    welcome_greeting: str,
    tts_provider: str,
    voice: str,
    elevenlabs_text_normalization: Optional[str] = None,
) -> str:
    """
    Build the TwiML that connects a call to the relay WebSocket.

    Args:
        ws_url: wss:// URL of the relay endpoint
        welcome_greeting: Text spoken as soon as the call connects
        tts_provider: ConversationRelay TTS provider name
        voice: Provider-specific voice identifier
        elevenlabs_text_normalization: "on"/"off"/"auto", omitted if empty

    Returns:
        XML document as a string
    """
    response = VoiceResponse()
    connect = Connect()

    attributes = {
        "url": ws_url,
        "tts_provider": tts_provider,
        "voice": voice,
        "welcome_greeting": welcome_greeting,
    }
    if elevenlabs_text_normalization:
        attributes["elevenlabs_text_normalization"] = elevenlabs_text_normalization

    connect.conversation_relay(**attributes)
    response.append(connect)
    return str(response)


def twiml_for_config(config: Optional[Config] = None) -> str:
    """TwiML for the configured public host, voice and greeting."""
    if config is None:
        config = get_config()

    twiml = build_conversation_relay_twiml(
        config.ws_url,
        welcome_greeting=get_welcome_greeting(config),
        tts_provider=config.tts_provider,
        voice=config.tts_voice,
        elevenlabs_text_normalization=config.elevenlabs_text_normalization,
    )
    logger.info("Generated TwiML", ws_url=config.ws_url, tts_provider=config.tts_provider)
    return twiml
