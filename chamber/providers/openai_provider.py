"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible endpoints (xAI Grok) when base_url is set.
"""

import asyncio
import base64
import json
import logging
import os
import time
from collections.abc import Sequence

from openai import AsyncOpenAI

from config.config_loader import ModelConfig
from chamber.models import Attachment, GeneratedImage
from chamber.providers.base import GenerativeProvider, ProviderError, StructuredReply

logger = logging.getLogger(__name__)

_IMAGE_SIZES = {
    "1:1": "1024x1024",
    "16:9": "1536x1024",
    "9:16": "1024x1536",
}


def _content_parts(prompt: str, attachments: Sequence[Attachment]) -> list[dict]:
    """Images go inline as data URLs, text files as text. Anything else is dropped."""
    parts: list[dict] = [{"type": "text", "text": prompt}]
    for att in attachments:
        if att.mime_type.startswith("image/"):
            parts.append({
                "type": "image_url",
                "image_url": {"url": f"data:{att.mime_type};base64,{att.data}"},
            })
        elif att.mime_type.startswith("text/"):
            body = base64.b64decode(att.data).decode("utf-8", errors="replace")
            parts.append({"type": "text", "text": f"--- Attachment: {att.name} ---\n{body}"})
        else:
            logger.warning("Attachment %s (%s) not supported by OpenAI chat, skipping", att.name, att.mime_type)
    return parts


class OpenAIProvider(GenerativeProvider):
    """OpenAI provider via openai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        if config.base_url:
            self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        else:
            self._client = AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def _complete(self, messages: list[dict], label: str, json_mode: bool = False) -> str:
        start = time.monotonic()
        kwargs: dict = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(
                    model=self._config.model,
                    messages=messages,
                    max_tokens=self._config.max_tokens,
                    **kwargs,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info(
            "OpenAI %s: %.2fs, %s tokens",
            label,
            time.monotonic() - start,
            token_count,
        )
        return choice.message.content

    async def generate_text(self, prompt: str) -> str:
        return await self._complete([{"role": "user", "content": prompt}], "text")

    async def generate_structured(
        self,
        prompt: str,
        schema: dict,
        attachments: Sequence[Attachment] = (),
    ) -> StructuredReply:
        system = (
            "Reply with a single JSON object that validates against this JSON schema:\n"
            + json.dumps(schema)
        )
        content = await self._complete(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": _content_parts(prompt, attachments)},
            ],
            "structured",
            json_mode=True,
        )
        return StructuredReply(text=content)

    async def generate_image(self, prompt: str, *, aspect_ratio: str = "1:1") -> GeneratedImage:
        if not self._config.image_model:
            raise ProviderError(self._config.name, "No image_model configured")

        kwargs: dict = {"size": _IMAGE_SIZES.get(aspect_ratio, "1024x1024")}
        if self._config.image_model.startswith("dall-e"):
            kwargs["response_format"] = "b64_json"
        try:
            response = await asyncio.wait_for(
                self._client.images.generate(model=self._config.image_model, prompt=prompt, **kwargs),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        if not response.data or not response.data[0].b64_json:
            raise ProviderError(self._config.name, "No image data in response")
        return GeneratedImage(mime_type="image/png", data=base64.b64decode(response.data[0].b64_json))
