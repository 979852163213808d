"""
Streaming chat completion over an OpenAI-compatible API.

Provides:
- Startup model validation
- Streaming response as an async iterator of text fragments
- Provider errors normalised to UpstreamStreamError
"""

from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Union

import httpx
import structlog
from openai import AsyncOpenAI

from src.relay.config import Config, get_config
from src.relay.conversation import Turn
from src.relay.exceptions import UpstreamStreamError

logger = structlog.get_logger(__name__)

Message = Union[Turn, Mapping[str, str]]


def _to_messages(transcript: Iterable[Message]) -> List[Dict[str, str]]:
    messages = []
    for item in transcript:
        if isinstance(item, Turn):
            messages.append(item.to_message())
        else:
            messages.append({"role": item["role"], "content": item["content"]})
    return messages


async def validate_model(api_key: str, model_name: str, base_url: str) -> bool:
    """
    Validate that the configured model exists.

    Calls GET {base_url}/models to check.

    Args:
        api_key: Provider API key
        model_name: Model name to validate
        base_url: OpenAI-compatible API root

    Returns:
        True if model exists

    Raises:
        SystemExit: If model doesn't exist (fail fast)
    """
    logger.info("Validating LLM model", model=model_name, base_url=base_url)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{base_url}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to LLM API", error=str(e))
            raise SystemExit(
                f"Failed to connect to LLM API: {e}\n"
                "Check your network connection and API key."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch LLM models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate LLM model. API returned status {response.status_code}. "
            "Check your API key."
        )

    data = response.json()
    model_ids = [m.get("id") for m in data.get("data", [])]

    if model_name not in model_ids:
        available = ", ".join(sorted(model_ids)[:10])
        logger.error(
            "LLM model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"Model '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update the model in your .env file."
        )

    logger.info("LLM model validated successfully", model=model_name)
    return True


class CompletionStream:
    """
    Streaming text completion for a call transcript.

    Uses the OpenAI client for both OpenAI and Groq (OpenAI-compatible API).
    """

    def __init__(self, config: Optional[Config] = None, client: Optional[Any] = None):
        if config is None:
            config = get_config()

        self.config = config
        self.model = config.llm_model

        if client is None:
            client = AsyncOpenAI(
                api_key=config.llm_api_key,
                base_url=config.llm_base_url,
            )
        self._client = client

    async def validate_model(self) -> bool:
        """Validate the configured model exists."""
        return await validate_model(self.config.llm_api_key, self.model, self.config.llm_base_url)

    def _request_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        if self.config.llm_temperature is not None:
            options["temperature"] = self.config.llm_temperature
        if self.config.llm_max_tokens:
            options["max_tokens"] = self.config.llm_max_tokens
        return options

    async def stream(self, transcript: Iterable[Message]) -> AsyncIterator[str]:
        """
        Stream the reply to a transcript.

        Args:
            transcript: Ordered turns (or chat message dicts), system turn first

        Yields:
            Non-empty text fragments in generation order

        Raises:
            UpstreamStreamError: If the request fails or the stream drops
        """
        messages = _to_messages(transcript)

        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                **self._request_options(),
            )
        except Exception as e:
            logger.error("LLM request failed", model=self.model, error=str(e))
            raise UpstreamStreamError(f"Completion request failed: {e}") from e

        fragments = 0
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if not content:
                    continue
                fragments += 1
                yield content
        except Exception as e:
            logger.error(
                "LLM stream interrupted",
                model=self.model,
                fragments=fragments,
                error=str(e),
            )
            raise UpstreamStreamError(f"Completion stream interrupted: {e}") from e

        logger.debug("LLM stream complete", model=self.model, fragments=fragments)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.close()


async def initialize_completion(config: Optional[Config] = None) -> CompletionStream:
    """
    Create the completion client and validate the model at startup.

    Returns:
        Ready-to-use CompletionStream
    """
    completion = CompletionStream(config)
    if completion.config.validate_model_on_startup:
        await completion.validate_model()
    return completion
