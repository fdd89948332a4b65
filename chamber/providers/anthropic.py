"""Anthropic Claude provider using anthropic SDK with native async."""

import asyncio
import base64
import json
import logging
import os
import time
from collections.abc import Sequence

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from chamber.models import Attachment
from chamber.providers.base import GenerativeProvider, ProviderError, StructuredReply

logger = logging.getLogger(__name__)

_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}


def _content_blocks(prompt: str, attachments: Sequence[Attachment]) -> list[dict]:
    blocks: list[dict] = []
    for att in attachments:
        if att.mime_type in _IMAGE_TYPES:
            blocks.append({
                "type": "image",
                "source": {"type": "base64", "media_type": att.mime_type, "data": att.data},
            })
        elif att.mime_type == "application/pdf":
            blocks.append({
                "type": "document",
                "source": {"type": "base64", "media_type": att.mime_type, "data": att.data},
            })
        elif att.mime_type.startswith("text/"):
            body = base64.b64decode(att.data).decode("utf-8", errors="replace")
            blocks.append({"type": "text", "text": f"--- Attachment: {att.name} ---\n{body}"})
        else:
            logger.warning("Attachment %s (%s) not supported by Anthropic, skipping", att.name, att.mime_type)
    blocks.append({"type": "text", "text": prompt})
    return blocks


class AnthropicProvider(GenerativeProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def _create(self, content, label: str, system: str | None = None) -> str:
        start = time.monotonic()
        kwargs: dict = {}
        if system:
            kwargs["system"] = system
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._config.model,
                    max_tokens=self._config.max_tokens,
                    messages=[{"role": "user", "content": content}],
                    **kwargs,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info(
            "Anthropic %s: %.2fs, %s tokens",
            label,
            time.monotonic() - start,
            token_count,
        )
        return "\n".join(text_blocks)

    async def generate_text(self, prompt: str) -> str:
        return await self._create(prompt, "text")

    async def generate_structured(
        self,
        prompt: str,
        schema: dict,
        attachments: Sequence[Attachment] = (),
    ) -> StructuredReply:
        system = (
            "Reply with a single JSON object and nothing else. It must validate "
            "against this JSON schema:\n" + json.dumps(schema)
        )
        text = await self._create(_content_blocks(prompt, attachments), "structured", system=system)
        return StructuredReply(text=text)
