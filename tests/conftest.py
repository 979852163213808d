"""
Pytest configuration and fixtures.
"""

import asyncio
import json
import os
from typing import List, Optional
from unittest.mock import patch

import pytest

from src.relay.exceptions import UpstreamStreamError


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "LLM_PROVIDER": "openai",
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_MODEL": "gpt-4o-mini",
        "VALIDATE_MODEL_ON_STARTUP": "false",
        "INTERRUPT_POLICY": "signal",
        "DUPLICATE_SETUP_POLICY": "overwrite",
        "PARTIAL_REPLY_POLICY": "discard",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.relay.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeCompletion:
    """
    Scripted completion source.

    Yields `fragments` in order. `fail_at` raises UpstreamStreamError before
    the fragment at that index; `hold_at` parks the stream before that index
    until `release` is set (`held` is set once it is parked).
    """

    def __init__(
        self,
        fragments: List[str],
        *,
        fail_at: Optional[int] = None,
        hold_at: Optional[int] = None,
    ):
        self.fragments = list(fragments)
        self.fail_at = fail_at
        self.hold_at = hold_at
        self.held = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: List[List[dict]] = []
        self.closed = 0
        self.active = 0
        self.max_active = 0

    async def stream(self, transcript):
        self.calls.append([dict(m) for m in transcript])
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            for index in range(len(self.fragments) + 1):
                if index == self.fail_at:
                    raise UpstreamStreamError("connection dropped")
                if index == self.hold_at:
                    self.held.set()
                    await self.release.wait()
                if index == len(self.fragments):
                    break
                await asyncio.sleep(0)
                yield self.fragments[index]
        finally:
            self.active -= 1
            self.closed += 1


@pytest.fixture
def fake_completion():
    """Factory for scripted completion sources."""
    return FakeCompletion


@pytest.fixture
def setup_message():
    """Sample ConversationRelay setup message."""
    return json.dumps({
        "type": "setup",
        "sessionId": "VX123456",
        "callSid": "CA789012",
        "accountSid": "AC345678",
        "from": "+15550001111",
        "to": "+15550002222",
        "customParameters": {},
    })


@pytest.fixture
def prompt_message():
    """Factory for ConversationRelay prompt messages."""
    def _make(text: str) -> str:
        return json.dumps({
            "type": "prompt",
            "voicePrompt": text,
            "lang": "en-US",
            "last": True,
        })
    return _make


@pytest.fixture
def interrupt_message():
    """Sample ConversationRelay interrupt message."""
    return json.dumps({
        "type": "interrupt",
        "utteranceUntilInterrupt": "Hello there",
        "durationUntilInterruptMs": 460,
    })
