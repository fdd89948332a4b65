"""Unit tests for provider helpers — no network, no SDK calls."""

import base64
from types import SimpleNamespace

import pytest

from config.config_loader import ModelConfig
from chamber.models import Attachment
from chamber.providers.anthropic import AnthropicProvider, _content_blocks
from chamber.providers.base import GenerativeProvider, ProviderError, StructuredReply
from chamber.providers.gemini import GeminiProvider, _grounding_links
from chamber.providers.openai_provider import OpenAIProvider, _content_parts


def _attachment(name: str, mime: str, raw: bytes = b"data") -> Attachment:
    return Attachment(name=name, preview=f"preview://x/{name}", data=base64.b64encode(raw).decode(), mime_type=mime)


def _config(sdk: str, env: str) -> ModelConfig:
    return ModelConfig(name=sdk, sdk=sdk, model="m", api_key_env=env, timeout_sec=5, max_tokens=10)


@pytest.mark.parametrize("cls", [GeminiProvider, OpenAIProvider, AnthropicProvider])
def test_missing_api_key_raises(cls, monkeypatch):
    monkeypatch.delenv("TEST_CHAMBER_MISSING_KEY", raising=False)
    with pytest.raises(ProviderError, match="Missing API key"):
        cls(_config("x", "TEST_CHAMBER_MISSING_KEY"))


def test_provider_error_format():
    assert str(ProviderError("gemini", "boom")) == "[gemini] boom"


class TextOnlyProvider(GenerativeProvider):
    def name(self) -> str:
        return "text-only"

    def model_string(self) -> str:
        return "m"

    async def generate_text(self, prompt: str) -> str:
        return prompt

    async def generate_structured(self, prompt, schema, attachments=()) -> StructuredReply:
        return StructuredReply(text="{}")


async def test_optional_capabilities_default_to_unsupported():
    provider = TextOnlyProvider()
    with pytest.raises(ProviderError, match="Image generation not supported"):
        await provider.generate_image("x")
    with pytest.raises(ProviderError, match="Grounded search not supported"):
        await provider.search("x", maps=True)


def test_openai_parts_inline_images_and_text():
    parts = _content_parts(
        "prompt",
        [
            _attachment("a.png", "image/png"),
            _attachment("notes.txt", "text/plain", b"hello"),
            _attachment("a.zip", "application/zip"),
        ],
    )
    assert parts[0] == {"type": "text", "text": "prompt"}
    assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")
    assert parts[2]["text"] == "--- Attachment: notes.txt ---\nhello"
    assert len(parts) == 3


def test_anthropic_blocks_put_prompt_last():
    blocks = _content_blocks(
        "prompt",
        [_attachment("a.jpg", "image/jpeg"), _attachment("brief.pdf", "application/pdf")],
    )
    assert [b["type"] for b in blocks] == ["image", "document", "text"]
    assert blocks[-1]["text"] == "prompt"
    assert blocks[1]["source"]["media_type"] == "application/pdf"


def test_grounding_links_dedupes_web_and_maps():
    chunks = [
        SimpleNamespace(web=SimpleNamespace(uri="https://a"), maps=None),
        SimpleNamespace(web=None, maps=SimpleNamespace(uri="https://maps/b")),
        SimpleNamespace(web=SimpleNamespace(uri="https://a"), maps=None),
    ]
    response = SimpleNamespace(
        candidates=[SimpleNamespace(grounding_metadata=SimpleNamespace(grounding_chunks=chunks))]
    )
    assert _grounding_links(response) == ["https://a", "https://maps/b"]


def test_grounding_links_without_metadata():
    assert _grounding_links(SimpleNamespace(candidates=[])) == []
    response = SimpleNamespace(candidates=[SimpleNamespace(grounding_metadata=None)])
    assert _grounding_links(response) == []
