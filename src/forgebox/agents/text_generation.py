"""Text-generation backends used by the agent stages.

The backend is a black box: prompt in, text out, no retries of its own.
Retrying on malformed output is the pipeline's job.
"""

import logging
import os
from typing import Optional, Protocol

from anthropic import Anthropic, APIError

from ..exceptions import TextGenerationError

logger = logging.getLogger(__name__)

# Above this, responses are streamed to avoid the SDK's long-request timeout
STREAMING_THRESHOLD_TOKENS = 8192


class TextGenerator(Protocol):
    def generate(
        self,
        system: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> str:
        ...


class AnthropicTextGenerator:
    """Text generation through the Anthropic Messages API."""

    def __init__(self, api_key: Optional[str] = None, default_model: str = "claude-sonnet-4-5", client=None):
        """
        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            default_model: Model used when a call does not name one
            client: Pre-built client (tests)
        """
        self.default_model = default_model
        self.client = client or Anthropic(api_key=api_key or os.getenv("ANTHROPIC_API_KEY"))

    def generate(
        self,
        system: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 4096,
    ) -> str:
        model = model or self.default_model
        try:
            if max_tokens > STREAMING_THRESHOLD_TOKENS:
                with self.client.messages.stream(
                    model=model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=temperature,
                ) as stream:
                    content = "".join(stream.text_stream)
                    response = stream.get_final_message()
            else:
                response = self.client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=temperature,
                )
                content = "".join(
                    block.text for block in response.content if getattr(block, "type", "text") == "text"
                )
        except APIError as e:
            raise TextGenerationError(f"Anthropic request failed ({model}): {e}") from e

        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning(f"[Pipeline] Output from {model} was truncated (stop_reason=max_tokens)")
        return content
