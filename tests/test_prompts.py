"""
Tests for system prompt and greeting resolution.
"""

from dataclasses import replace

from src.relay.config import get_config
from src.relay.prompts import (
    get_system_prompt,
    get_welcome_greeting,
    resolve_prompt,
)


def test_default_system_prompt_uses_persona():
    prompt = get_system_prompt(get_config())

    assert "You're Melissa, a LoanCater representative." in prompt
    assert "{AGENT_NAME}" not in prompt


def test_default_greeting_uses_persona():
    config = replace(get_config(), agent_name="Sam", company_name="Acme")

    assert get_welcome_greeting(config).startswith("Hi! I am Sam, a Acme representative.")


def test_inline_prompt_wins_over_file(tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("From file", encoding="utf-8")
    config = replace(get_config(), system_prompt="Inline {agent_name}", system_prompt_file=str(prompt_file))

    assert get_system_prompt(config) == "Inline Melissa"


def test_prompt_file_is_read(tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("  You work for {COMPANY_NAME}.\n", encoding="utf-8")
    config = replace(get_config(), system_prompt_file=str(prompt_file))

    assert get_system_prompt(config) == "You work for LoanCater."


def test_missing_file_falls_back_to_default(tmp_path):
    config = get_config()

    prompt = resolve_prompt(
        config=config,
        inline_text="",
        file_path=str(tmp_path / "missing.txt"),
        default="Default for {AGENT_NAME}",
    )

    assert prompt == "Default for Melissa"


def test_long_prompt_file_is_truncated(tmp_path):
    prompt_file = tmp_path / "prompt.txt"
    prompt_file.write_text("x" * 100, encoding="utf-8")

    prompt = resolve_prompt(
        config=get_config(),
        inline_text="",
        file_path=str(prompt_file),
        max_chars=10,
    )

    assert prompt == "x" * 10
