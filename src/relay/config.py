"""
Configuration management for the Conversation Relay voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"
GROQ_BASE_URL = "https://api.groq.com/openai/v1"

LLM_PROVIDERS = ("openai", "groq")
INTERRUPT_POLICIES = ("signal", "cancel")
DUPLICATE_SETUP_POLICIES = ("overwrite", "reject")
PARTIAL_REPLY_POLICIES = ("discard", "commit")

DEFAULT_TTS_VOICE = "ZF6FPAbjXT4488VcRRnw-flash_v2_5-1.2_1.0_1.0"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 8080
    log_level: str = "INFO"

    # LLM Provider (OpenAI/Groq)
    # - Default is OpenAI with gpt-4o-mini.
    # - Set LLM_PROVIDER=groq + GROQ_API_KEY/GROQ_MODEL to use Groq's OpenAI-compatible API.
    llm_provider: str = "openai"  # "openai" | "groq"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    llm_temperature: Optional[float] = None
    llm_max_tokens: Optional[int] = None
    validate_model_on_startup: bool = True

    # Persona
    agent_name: str = "Melissa"
    company_name: str = "LoanCater"
    system_prompt: str = ""
    system_prompt_file: str = ""
    welcome_greeting: str = ""

    # ConversationRelay speech (opaque to the core, passed through TwiML)
    tts_provider: str = "ElevenLabs"
    tts_voice: str = DEFAULT_TTS_VOICE
    elevenlabs_text_normalization: str = "on"

    # Session behaviour
    # - max_history_turns: user/assistant pairs sent as context (0 = whole transcript)
    # - interrupt_policy: "signal" only logs, "cancel" stops the in-flight reply
    # - duplicate_setup_policy: "overwrite" replaces the transcript, "reject" keeps it
    # - partial_reply_policy: "discard" or "commit" text emitted before a failure/cancel
    max_history_turns: int = 0
    interrupt_policy: str = "signal"
    duplicate_setup_policy: str = "overwrite"
    partial_reply_policy: str = "discard"

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for ConversationRelay."""
        return f"wss://{self.public_host}/ws"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def llm_model(self) -> str:
        """Model identifier for the active provider."""
        return self.groq_model if self.llm_provider == "groq" else self.openai_model

    @property
    def llm_api_key(self) -> str:
        """API key for the active provider."""
        return self.groq_api_key if self.llm_provider == "groq" else self.openai_api_key

    @property
    def llm_base_url(self) -> str:
        """OpenAI-compatible base URL for the active provider."""
        return GROQ_BASE_URL if self.llm_provider == "groq" else OPENAI_BASE_URL

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")

        provider = (self.llm_provider or "openai").strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'openai' or 'groq'."
            )

        if provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        for name, value, allowed in (
            ("INTERRUPT_POLICY", self.interrupt_policy, INTERRUPT_POLICIES),
            ("DUPLICATE_SETUP_POLICY", self.duplicate_setup_policy, DUPLICATE_SETUP_POLICIES),
            ("PARTIAL_REPLY_POLICY", self.partial_reply_policy, PARTIAL_REPLY_POLICIES),
        ):
            if value not in allowed:
                raise ConfigError(
                    f"Invalid {name} '{value}'. Expected one of: {', '.join(allowed)}."
                )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            llm_temperature=self.llm_temperature,
            llm_max_tokens=self.llm_max_tokens,
            agent_name=self.agent_name,
            company_name=self.company_name,
            system_prompt_source="inline" if self.system_prompt else (self.system_prompt_file or "default"),
            tts_provider=self.tts_provider,
            tts_voice=self.tts_voice,
            max_history_turns=self.max_history_turns,
            interrupt_policy=self.interrupt_policy,
            duplicate_setup_policy=self.duplicate_setup_policy,
            partial_reply_policy=self.partial_reply_policy,
            openai_key_set=bool(self.openai_api_key),
            groq_key_set=bool(self.groq_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_optional_int(key: str) -> Optional[int]:
    """Get an integer, or None if unset or invalid."""
    raw = os.getenv(key, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _get_optional_float(key: str) -> Optional[float]:
    """Get a float, or None if unset or invalid."""
    raw = os.getenv(key, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _get_choice(key: str, default: str) -> str:
    return os.getenv(key, default).strip().lower()


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", os.getenv("NGROK_URL", "")),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # LLM Provider
        llm_provider=_get_choice("LLM_PROVIDER", "openai"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        llm_temperature=_get_optional_float("LLM_TEMPERATURE"),
        llm_max_tokens=_get_optional_int("LLM_MAX_TOKENS"),
        validate_model_on_startup=_get_bool("VALIDATE_MODEL_ON_STARTUP", True),

        # Persona
        agent_name=os.getenv("AGENT_NAME", "Melissa"),
        company_name=os.getenv("COMPANY_NAME", "LoanCater"),
        system_prompt=os.getenv("SYSTEM_PROMPT", ""),
        system_prompt_file=os.getenv("SYSTEM_PROMPT_FILE", ""),
        welcome_greeting=os.getenv("WELCOME_GREETING", ""),

        # Speech
        tts_provider=os.getenv("TTS_PROVIDER", "ElevenLabs"),
        tts_voice=os.getenv("TTS_VOICE", DEFAULT_TTS_VOICE),
        elevenlabs_text_normalization=os.getenv("ELEVENLABS_TEXT_NORMALIZATION", "on"),

        # Session behaviour
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 0),
        interrupt_policy=_get_choice("INTERRUPT_POLICY", "signal"),
        duplicate_setup_policy=_get_choice("DUPLICATE_SETUP_POLICY", "overwrite"),
        partial_reply_policy=_get_choice("PARTIAL_REPLY_POLICY", "discard"),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
