"""Integration tests — real API calls, no mocks. Requires .env with GEMINI_API_KEY."""

import os
from pathlib import Path

import pytest
from dotenv import load_dotenv

load_dotenv()

pytestmark = pytest.mark.integration

if not os.environ.get("GEMINI_API_KEY", "").strip():
    pytestmark = pytest.mark.skip(reason="GEMINI_API_KEY not set")


async def test_full_session_pipeline(tmp_path: Path):
    """Run one real council round through the controller, verify it finishes."""
    from config.config_loader import load_config
    from chamber.agents import AgentRegistry, MemoryAgentStore
    from chamber.models import SessionStatus
    from chamber.output import save_transcript
    from chamber.providers.gemini import GeminiProvider
    from chamber.request import request_debate
    from chamber.session import SessionController

    config = load_config()
    provider = GeminiProvider(config.models["gemini"])
    registry = AgentRegistry(config.agents, MemoryAgentStore())

    async def requester(request):
        return await request_debate(provider, request)

    controller = SessionController(
        registry,
        requester,
        config.prompts,
        participants=["alpha", "machiavelli"],
        concluding_dwell=0.0,
        time_scale=0.0,
    )

    session = await controller.submit("Should a two-person startup write its own auth?")

    assert session.status is SessionStatus.FINISHED, session.error_message
    assert len(session.messages) > 0
    assert session.consensus

    saved = save_transcript(session, {a.id: a for a in registry.agents()}, tmp_path)
    assert saved.exists()
