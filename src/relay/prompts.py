from __future__ import annotations

from pathlib import Path

import structlog

from src.relay.config import Config

logger = structlog.get_logger(__name__)

_DEFAULT_MAX_PROMPT_CHARS = 40_000

DEFAULT_SYSTEM_PROMPT = """You are a professional sales representative calling a new lead.

CONVERSATION RULES:
1. Keep responses under 15 seconds - be concise but friendly
2. Ask ONE question at a time and wait for their response
3. Do not respond if the user's input appears to be incomplete, hesitant, or still in formulation (e.g., abrupt stops)
4. Wait for a more complete or confident message before generating a reply
5. Listen carefully to their answers and build on them
6. If they seem uninterested, politely end the call
7. If they're interested, gather key information and schedule follow-up

YOUR PERSONA:
- You're {AGENT_NAME}, a {COMPANY_NAME} representative.

YOUR GOALS:
- Introduce yourself and company briefly
- Qualify the lead with 2-3 key questions
- Schedule a follow-up if interested
- Be conversational, not robotic

RESPONSE FORMAT:
- Ask one specific question
- End with a natural transition
- No bullet points, lists or markdown; everything you write is spoken aloud

Remember: You're having a real conversation, not reading a script."""

DEFAULT_WELCOME_GREETING = (
    "Hi! I am {AGENT_NAME}, a {COMPANY_NAME} representative. "
    "I understand you're looking for a lead call setter, is that correct?"
)


def _repo_root() -> Path:
    # src/relay/prompts.py -> repo root is ../../
    return Path(__file__).resolve().parents[2]


def _read_text_file(path: str, *, max_chars: int) -> str:
    if not path:
        return ""

    file_path = Path(path)
    if not file_path.is_absolute():
        file_path = _repo_root() / file_path

    try:
        content = file_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("Prompt file not found", path=str(file_path))
        return ""
    except UnicodeDecodeError:
        logger.warning("Prompt file decode failed", path=str(file_path))
        return ""

    content = content.strip()
    if len(content) > max_chars:
        logger.warning("Prompt truncated (too long)", path=str(file_path), max_chars=max_chars)
        content = content[:max_chars]

    return content


def _apply_placeholders(prompt: str, config: Config) -> str:
    if not prompt:
        return ""

    replacements = {
        "{AGENT_NAME}": config.agent_name,
        "{COMPANY_NAME}": config.company_name,
        "{agent_name}": config.agent_name,
        "{company_name}": config.company_name,
    }
    for key, value in replacements.items():
        prompt = prompt.replace(key, value)

    return prompt


def resolve_prompt(
    *,
    config: Config,
    inline_text: str,
    file_path: str,
    default: str = "",
    max_chars: int = _DEFAULT_MAX_PROMPT_CHARS,
) -> str:
    """
    Resolve a prompt from (1) inline text, else (2) file path, else (3) default.

    - Applies simple placeholder substitution.
    - Truncates large prompt files for safety.
    """
    prompt = (inline_text or "").strip()
    if not prompt:
        prompt = _read_text_file(file_path, max_chars=max_chars)
    if not prompt:
        prompt = default

    return _apply_placeholders(prompt, config)


def get_system_prompt(config: Config) -> str:
    """System instruction that seeds every call transcript."""
    return resolve_prompt(
        config=config,
        inline_text=config.system_prompt,
        file_path=config.system_prompt_file,
        default=DEFAULT_SYSTEM_PROMPT,
    )


def get_welcome_greeting(config: Config) -> str:
    """Greeting spoken by ConversationRelay when the call connects."""
    return resolve_prompt(
        config=config,
        inline_text=config.welcome_greeting,
        file_path="",
        default=DEFAULT_WELCOME_GREETING,
    )
