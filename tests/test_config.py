"""
Tests for configuration loading and validation.
"""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from src.relay.config import (
    DEFAULT_TTS_VOICE,
    GROQ_BASE_URL,
    OPENAI_BASE_URL,
    ConfigError,
    get_config,
    init_config,
)


def _reload(**env):
    with patch.dict(os.environ, env):
        get_config.cache_clear()
        return get_config()


class TestDefaults:
    def test_defaults(self):
        config = get_config()

        assert config.port == 8080
        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o-mini"
        assert config.llm_base_url == OPENAI_BASE_URL
        assert config.agent_name == "Melissa"
        assert config.company_name == "LoanCater"
        assert config.tts_provider == "ElevenLabs"
        assert config.tts_voice == DEFAULT_TTS_VOICE
        assert config.max_history_turns == 0
        assert config.llm_temperature is None
        assert config.llm_max_tokens is None

    def test_urls_from_public_host(self):
        config = get_config()

        assert config.ws_url == "wss://test.ngrok.io/ws"
        assert config.base_url == "https://test.ngrok.io"

    def test_ngrok_url_fallback(self):
        with patch.dict(os.environ, {"NGROK_URL": "abc.ngrok.app"}):
            os.environ.pop("PUBLIC_HOST")
            get_config.cache_clear()

            assert get_config().public_host == "abc.ngrok.app"

    def test_numeric_settings(self):
        config = _reload(LLM_TEMPERATURE="0.4", LLM_MAX_TOKENS="200", PORT="nope")

        assert config.llm_temperature == 0.4
        assert config.llm_max_tokens == 200
        assert config.port == 8080

    def test_policies_are_normalized(self):
        config = _reload(INTERRUPT_POLICY=" Cancel ", PARTIAL_REPLY_POLICY="COMMIT")

        assert config.interrupt_policy == "cancel"
        assert config.partial_reply_policy == "commit"


class TestValidation:
    def test_valid_config_passes(self):
        config = init_config()

        assert config.openai_api_key == "test_openai_key"

    def test_missing_openai_key(self):
        config = replace(get_config(), openai_api_key="")

        with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
            config.validate()

    def test_missing_public_host(self):
        config = replace(get_config(), public_host="")

        with pytest.raises(ConfigError, match="PUBLIC_HOST"):
            config.validate()

    def test_unknown_provider(self):
        config = replace(get_config(), llm_provider="anthropic")

        with pytest.raises(ConfigError, match="LLM_PROVIDER"):
            config.validate()

    def test_groq_requires_groq_key(self):
        config = replace(get_config(), llm_provider="groq", groq_api_key="")

        with pytest.raises(ConfigError, match="GROQ_API_KEY"):
            config.validate()

    def test_groq_provider(self):
        config = _reload(LLM_PROVIDER="groq", GROQ_API_KEY="gk", GROQ_MODEL="llama-3.1-8b-instant")

        config.validate()
        assert config.llm_api_key == "gk"
        assert config.llm_model == "llama-3.1-8b-instant"
        assert config.llm_base_url == GROQ_BASE_URL

    @pytest.mark.parametrize(
        "field_name",
        ["interrupt_policy", "duplicate_setup_policy", "partial_reply_policy"],
    )
    def test_bad_policy(self, field_name):
        config = replace(get_config(), **{field_name: "sometimes"})

        with pytest.raises(ConfigError, match=field_name.upper()):
            config.validate()
