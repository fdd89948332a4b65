"""Gemini provider using google-genai SDK with native async."""

import asyncio
import base64
import logging
import os
import time
from collections.abc import Sequence

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from chamber.models import Attachment, GeneratedImage
from chamber.providers.base import GenerativeProvider, ProviderError, StructuredReply

logger = logging.getLogger(__name__)


def _grounding_links(response) -> list[str]:
    """Pull web/maps URIs out of the first candidate's grounding metadata."""
    if not response.candidates:
        return []
    metadata = response.candidates[0].grounding_metadata
    if metadata is None or not metadata.grounding_chunks:
        return []
    links: list[str] = []
    for chunk in metadata.grounding_chunks:
        for source in (chunk.web, getattr(chunk, "maps", None)):
            if source is not None and source.uri and source.uri not in links:
                links.append(source.uri)
    return links


class GeminiProvider(GenerativeProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def _generate(self, model: str, contents, config: genai_types.GenerateContentConfig, label: str):
        start = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=config,
                ),
                timeout=self._config.timeout_sec,
            )
        except TimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info(
            "Gemini %s: %.2fs, %s tokens",
            label,
            time.monotonic() - start,
            token_count,
        )
        return response

    async def generate_text(self, prompt: str) -> str:
        response = await self._generate(
            self._config.model,
            prompt,
            genai_types.GenerateContentConfig(max_output_tokens=self._config.max_tokens),
            "text",
        )
        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")
        return response.text

    async def generate_structured(
        self,
        prompt: str,
        schema: dict,
        attachments: Sequence[Attachment] = (),
    ) -> StructuredReply:
        contents: list = [prompt]
        for att in attachments:
            contents.append(
                genai_types.Part.from_bytes(data=base64.b64decode(att.data), mime_type=att.mime_type)
            )

        tools = None
        if self._config.search_grounding:
            tools = [genai_types.Tool(google_search=genai_types.GoogleSearch())]

        response = await self._generate(
            self._config.model,
            contents,
            genai_types.GenerateContentConfig(
                max_output_tokens=self._config.max_tokens,
                response_mime_type="application/json",
                response_json_schema=schema,
                tools=tools,
            ),
            "structured",
        )
        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")
        return StructuredReply(text=response.text, links=_grounding_links(response))

    async def generate_image(self, prompt: str, *, aspect_ratio: str = "1:1") -> GeneratedImage:
        if not self._config.image_model:
            raise ProviderError(self._config.name, "No image_model configured")

        response = await self._generate(
            self._config.image_model,
            prompt,
            genai_types.GenerateContentConfig(
                response_modalities=["IMAGE"],
                image_config=genai_types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
            "image",
        )
        parts = response.candidates[0].content.parts if response.candidates else None
        for part in parts or []:
            if part.inline_data and part.inline_data.data:
                return GeneratedImage(
                    mime_type=part.inline_data.mime_type or "image/png",
                    data=part.inline_data.data,
                )
        raise ProviderError(self._config.name, "No image data in response")

    async def search(self, query: str, *, maps: bool = False) -> StructuredReply:
        if maps:
            tool = genai_types.Tool(google_maps=genai_types.GoogleMaps())
        else:
            tool = genai_types.Tool(google_search=genai_types.GoogleSearch())

        response = await self._generate(
            self._config.model,
            query,
            genai_types.GenerateContentConfig(
                max_output_tokens=self._config.max_tokens,
                tools=[tool],
            ),
            "search",
        )
        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")
        return StructuredReply(text=response.text, links=_grounding_links(response))
