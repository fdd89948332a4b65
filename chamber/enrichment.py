"""Enrichment hooks that run beside the session lifecycle.

None of these change session status. Portraits and visuals are best-effort:
failures are logged and the caller gets None back. Results that arrive after
their agent or session is gone are dropped.
"""

import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from config.config_loader import PromptsConfig
from chamber.agents import AgentRegistry, default_id_factory
from chamber.models import Agent, GeneratedImage, IntelReport, SessionStatus
from chamber.output import slugify
from chamber.providers.base import GenerativeProvider, ProviderError
from chamber.session import SessionController, SubmissionRejected

logger = logging.getLogger(__name__)

_AGENT_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string"},
        "full_name": {"type": "string"},
        "personality": {"type": "string"},
        "icon": {"type": "string"},
        "color": {"type": "string"},
    },
    "required": ["name", "full_name", "personality", "icon", "color"],
}

_VISUAL_STYLE = "Style: cinematic, ultra-detailed, 4K, realistic textures, dark synthwave palette."


def save_image(image: GeneratedImage, directory: Path, stem: str) -> Path:
    """Write image bytes to directory/<stem>_<id>.<ext> and return the path."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{stem}_{default_id_factory()}.{image.extension}"
    path.write_bytes(image.data)
    return path


def inject_intel(topic: str, intel: str) -> str:
    """Append an intel block to the pending topic text."""
    intel = intel.strip()
    if not intel:
        return topic
    block = f"[INJECTED INTEL]\n{intel}"
    if not topic.strip():
        return block
    return f"{topic.rstrip()}\n\n{block}"


async def gather_intel(
    provider: GenerativeProvider,
    query: str,
    *,
    prompts: PromptsConfig,
    maps: bool = False,
) -> IntelReport:
    """Run a grounded search and return the text plus its source links.

    Raises:
        ProviderError: If the provider cannot search or the call fails.
    """
    prompt = prompts.intel.format(query=query) if prompts.intel else query
    reply = await provider.search(prompt, maps=maps)
    logger.info("Intel on %r: %d chars, %d sources", query, len(reply.text), len(reply.links))
    return IntelReport(query=query, text=reply.text, links=list(reply.links))


async def _design(provider: GenerativeProvider, prompt: str, agent_id: str) -> Agent:
    reply = await provider.generate_structured(prompt, _AGENT_SCHEMA)
    try:
        data = json.loads(reply.text)
        return Agent(
            id=agent_id,
            name=str(data["name"]),
            full_name=str(data.get("full_name") or data["name"]),
            personality=str(data["personality"]),
            icon=str(data.get("icon", "")),
            color=str(data.get("color", "")),
        )
    except (json.JSONDecodeError, KeyError, TypeError) as exc:
        raise ProviderError(provider.name(), f"Malformed agent design: {exc}") from exc


async def design_agent(
    provider: GenerativeProvider,
    description: str,
    *,
    registry: AgentRegistry,
    prompts: PromptsConfig,
) -> Agent:
    """Have the provider design a custom agent from a free-text description.

    The agent is returned, not registered.
    """
    prompt = prompts.custom_agent.format(description=description)
    agent = await _design(provider, prompt, registry.new_agent_id("custom"))
    logger.info("Designed custom agent %s (%s)", agent.id, agent.name)
    return agent


async def fuse_agents(
    provider: GenerativeProvider,
    bases: Sequence[str],
    *,
    registry: AgentRegistry,
    prompts: PromptsConfig,
) -> Agent:
    """Have the provider synthesize one hybrid agent from several base names."""
    if not bases:
        raise ValueError("Need at least one base to fuse")
    prompt = prompts.hybrid_agent.format(bases=", ".join(bases))
    agent = await _design(provider, prompt, registry.new_agent_id("hybrid"))
    logger.info("Fused hybrid agent %s from %s", agent.id, ", ".join(bases))
    return agent


class PortraitMaterializer:
    """Generates one portrait per agent, at most one request in flight per agent."""

    def __init__(
        self,
        provider: GenerativeProvider,
        registry: AgentRegistry,
        image_dir: Path,
        prompts: PromptsConfig,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._image_dir = image_dir
        self._prompts = prompts
        self._in_flight: set[str] = set()

    def in_flight(self, agent_id: str) -> bool:
        return agent_id in self._in_flight

    async def materialize(self, agent_id: str) -> str | None:
        agent = self._registry.get(agent_id)
        if agent is None:
            logger.warning("No agent %s to portray", agent_id)
            return None
        if agent.portrait:
            return agent.portrait
        if agent_id in self._in_flight:
            logger.debug("Portrait for %s already in progress", agent_id)
            return None

        self._in_flight.add(agent_id)
        try:
            prompt = self._prompts.portrait.format(name=agent.name, personality=agent.personality)
            image = await self._provider.generate_image(prompt, aspect_ratio="1:1")
            path = await asyncio.to_thread(save_image, image, self._image_dir, f"portrait_{slugify(agent_id)}")
        except (ProviderError, OSError) as exc:
            logger.warning("Portrait for %s failed: %s", agent.name, exc)
            return None
        finally:
            self._in_flight.discard(agent_id)

        if agent_id not in self._registry:
            logger.info("Agent %s was removed before its portrait arrived", agent_id)
            return None
        self._registry.attach_portrait(agent_id, str(path))
        logger.info("Portrait for %s saved to %s", agent.name, path)
        return str(path)


class VisualSynthesizer:
    """Turns the current session into an image and appends it to the session's visuals."""

    def __init__(
        self,
        provider: GenerativeProvider,
        controller: SessionController,
        image_dir: Path,
        prompts: PromptsConfig,
        history_limit: int = 10,
    ) -> None:
        self._provider = provider
        self._controller = controller
        self._image_dir = image_dir
        self._prompts = prompts
        self._history_limit = history_limit
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    def _prompt(self) -> str:
        session = self._controller.session
        recent = session.messages[-self._history_limit:] if self._history_limit > 0 else ()
        if session.consensus:
            consensus_line = f"Established consensus: {session.consensus}"
        else:
            consensus_line = "Session status: ongoing debate"
        return self._prompts.visual.format(
            topic=session.topic,
            consensus_line=consensus_line,
            highlights="\n".join(f"- {m.content}" for m in recent),
        )

    async def synthesize(self) -> str | None:
        """Generate one visual for the current session.

        Raises:
            SubmissionRejected: While the session is idle or preparing, or while
                another synthesis is running.
        """
        session = self._controller.session
        if session.status in (SessionStatus.IDLE, SessionStatus.PREPARING):
            raise SubmissionRejected("Nothing to visualise yet")
        if self._busy:
            raise SubmissionRejected("A visual synthesis is already running")

        epoch = self._controller.epoch
        self._busy = True
        try:
            refined = (await self._provider.generate_text(self._prompt())).strip()
            if not refined:
                refined = f"Cinematic abstract representation of {session.topic} in a gritty cyberpunk style."
            image = await self._provider.generate_image(f"{refined}. {_VISUAL_STYLE}", aspect_ratio="16:9")
            path = await asyncio.to_thread(save_image, image, self._image_dir, "visual")
        except (ProviderError, OSError) as exc:
            logger.warning("Visual synthesis failed: %s", exc)
            return None
        finally:
            self._busy = False

        if self._controller.add_visual(epoch, str(path)):
            return str(path)
        return None
