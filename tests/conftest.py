"""Shared pytest fixtures."""

import asyncio
import itertools
import json
from collections.abc import Sequence
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PlaybackConfig, PromptsConfig
from chamber.agents import AgentRegistry, MemoryAgentStore
from chamber.models import Agent, Attachment, DebateOutcome, DebateTurn, GeneratedImage, NeuralState
from chamber.providers.base import GenerativeProvider, StructuredReply
from chamber.session import SessionController


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        debate="Topic: {topic}\nCouncil:\n{roster}\n{history}",
        follow_up="Topic: {topic}\nCouncil:\n{roster}\nHistory:\n{history}",
        custom_agent="Design an agent: {description}",
        hybrid_agent="Fuse these: {bases}",
        visual="Visualise {topic}\n{consensus_line}\n{highlights}",
        portrait="Portrait of {name}: {personality}",
        intel="Find intel on: {query}",
    )


@pytest.fixture
def sample_agents() -> list[Agent]:
    return [
        Agent(id="alpha", name="Alpha", full_name="Alpha Strategist", personality="Cold logic.", color="cyan"),
        Agent(id="beta", name="Beta", full_name="Beta Skeptic", personality="Doubts everything.", color="red"),
        Agent(id="gamma", name="Gamma", full_name="Gamma Dreamer", personality="Wild ideas.", color="magenta"),
    ]


@pytest.fixture
def agent_store() -> MemoryAgentStore:
    return MemoryAgentStore()


@pytest.fixture
def registry(sample_agents: list[Agent], agent_store: MemoryAgentStore) -> AgentRegistry:
    ids = (f"{n:03d}" for n in itertools.count(1))
    return AgentRegistry(sample_agents, agent_store, id_factory=lambda: next(ids))


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_prompts_config: PromptsConfig, sample_agents: list[Agent]) -> AppConfig:
    model_cfg = ModelConfig(
        name="gemini",
        sdk="gemini",
        model="gemini-test",
        api_key_env="GEMINI_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=DefaultsConfig(
            provider="gemini",
            output_dir=tmp_path / "output",
            data_dir=tmp_path / "data",
            participants=["alpha", "beta"],
        ),
        models={"gemini": model_cfg},
        prompts=sample_prompts_config,
        agents=sample_agents,
        playback=PlaybackConfig(concluding_dwell_ms=0, time_scale=0.0),
        available_providers={"gemini"},
    )


@pytest.fixture
def sample_attachment() -> Attachment:
    return Attachment(name="notes.txt", preview="preview://1/notes.txt", data="aGVsbG8=", mime_type="text/plain")


def make_turn(agent_id: str, text: str, **neural) -> DebateTurn:
    state = NeuralState(
        speaker_id=agent_id,
        target_id=neural.get("target_id", ""),
        sentiment_hex=neural.get("sentiment_hex", "#22C55E"),
        intensity=neural.get("intensity", 50),
        connection_type=neural.get("connection_type", "agree"),
        status_text=neural.get("status_text", "thinking"),
    )
    return DebateTurn(agent_id=agent_id, text=text, neural_state=state)


def make_outcome(turns: Sequence[tuple[str, str]], consensus: str = "We agree.", sources=()) -> DebateOutcome:
    return DebateOutcome(
        turns=tuple(make_turn(a, t) for a, t in turns),
        consensus=consensus,
        sources=tuple(sources),
    )


def debate_json(turns: Sequence[tuple[str, str]], consensus: str = "We agree.") -> str:
    """Serialize a reply in the shape the council backend returns."""
    return json.dumps(
        {
            "discussion": [
                {
                    "agentId": agent_id,
                    "thought": text,
                    "blindRating": 7,
                    "neuralState": {
                        "speaker_id": agent_id,
                        "target_id": "",
                        "sentiment_hex": "#22C55E",
                        "intensity": 40,
                        "connection_type": "agree",
                        "status_text": "nodding",
                    },
                }
                for agent_id, text in turns
            ],
            "finalConsensus": consensus,
            "creatorInsights": {
                "observations": ["Alpha dominated"],
                "suggestedImprovements": ["Give Beta more room"],
                "rawReport": "A short session.",
            },
        }
    )


class FakeSleep:
    """Records requested delays and yields control without waiting."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


class GatedRequester:
    """Requester that blocks until the test releases it."""

    def __init__(self, outcome: DebateOutcome | None = None, error: Exception | None = None) -> None:
        self.outcome = outcome
        self.error = error
        self.requests = []
        self.gate = asyncio.Event()

    async def __call__(self, request):
        self.requests.append(request)
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.outcome


class MockProvider(GenerativeProvider):
    """Test double GenerativeProvider."""

    def __init__(self, provider_name: str = "mock", response_text: str = "Mock response") -> None:
        self._name = provider_name
        # Shadow the class methods with AsyncMocks at the instance level.
        self.generate_text = AsyncMock(return_value=response_text)  # type: ignore[method-assign]
        self.generate_structured = AsyncMock(  # type: ignore[method-assign]
            return_value=StructuredReply(text=response_text)
        )
        self.generate_image = AsyncMock(  # type: ignore[method-assign]
            return_value=GeneratedImage(mime_type="image/png", data=b"\x89PNG")
        )
        self.search = AsyncMock(  # type: ignore[method-assign]
            return_value=StructuredReply(text="Intel text", links=["https://example.com/a"])
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate_text(self, prompt: str) -> str:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return "Mock response"

    async def generate_structured(self, prompt, schema, attachments=()) -> StructuredReply:  # type: ignore[override]
        return StructuredReply(text="{}")


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def id_counter():
    counter = itertools.count(1)
    return lambda: f"m{next(counter)}"


@pytest.fixture
def make_controller(registry, sample_prompts_config, fake_sleep, id_counter):
    """Build a SessionController with deterministic sleep, clock and ids."""

    def _make(requester, participants=("alpha", "beta"), **kwargs) -> SessionController:
        kwargs.setdefault("sleep", fake_sleep)
        kwargs.setdefault("clock", lambda: 1000.0)
        kwargs.setdefault("id_factory", id_counter)
        return SessionController(registry, requester, sample_prompts_config, participants=participants, **kwargs)

    return _make
