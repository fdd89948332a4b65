"""Agent registry: built-in personas plus user-made ones, persisted via a store."""

import json
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import Protocol

from chamber.models import Agent

logger = logging.getLogger(__name__)


def default_id_factory() -> str:
    return uuid.uuid4().hex[:9]


class DuplicateAgentError(ValueError):
    """Raised when an agent id is already taken."""


class AgentStore(Protocol):
    def load(self) -> list[Agent]: ...

    def save(self, agents: list[Agent]) -> None: ...


class MemoryAgentStore:
    """Keeps custom agents in memory. Used by tests and --no-save runs."""

    def __init__(self, agents: Iterable[Agent] = ()) -> None:
        self.saved: list[Agent] = list(agents)

    def load(self) -> list[Agent]:
        return list(self.saved)

    def save(self, agents: list[Agent]) -> None:
        self.saved = list(agents)


class JsonAgentStore:
    """Custom agents as a JSON list in a single file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> list[Agent]:
        """Return stored agents, or [] if the file is missing or unreadable."""
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(raw, list):
                raise ValueError(f"expected a list, got {type(raw).__name__}")
            return [Agent.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to load saved agents from %s: %s", self.path, exc)
            return []

    def save(self, agents: list[Agent]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [a.to_dict() for a in agents]
        # Write beside the target, then swap it in whole.
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        tmp.replace(self.path)


class AgentRegistry:
    """Ordered catalog of agents. Built-ins first, then custom agents.

    Every mutation writes the custom subset back to the store.
    """

    def __init__(
        self,
        builtins: Iterable[Agent],
        store: AgentStore,
        id_factory: Callable[[], str] = default_id_factory,
    ) -> None:
        self._builtins = tuple(replace(a, builtin=True) for a in builtins)
        if not self._builtins:
            raise ValueError("Agent registry needs at least one built-in agent")
        self._store = store
        self._id_factory = id_factory

        builtin_ids = {a.id for a in self._builtins}
        self._custom: list[Agent] = []
        for agent in store.load():
            if agent.id in builtin_ids or any(c.id == agent.id for c in self._custom):
                logger.warning("Skipping stored agent with duplicate id: %s", agent.id)
                continue
            self._custom.append(replace(agent, builtin=False))

        logger.debug("Registry loaded: %d built-in, %d custom", len(self._builtins), len(self._custom))

    def builtins(self) -> tuple[Agent, ...]:
        return self._builtins

    def agents(self) -> tuple[Agent, ...]:
        return self._builtins + tuple(self._custom)

    def custom(self) -> tuple[Agent, ...]:
        return tuple(self._custom)

    def get(self, agent_id: str) -> Agent | None:
        return next((a for a in self.agents() if a.id == agent_id), None)

    def __contains__(self, agent_id: object) -> bool:
        return any(a.id == agent_id for a in self.agents())

    def __len__(self) -> int:
        return len(self._builtins) + len(self._custom)

    def new_agent_id(self, prefix: str = "custom") -> str:
        return f"{prefix}-{self._id_factory()}"

    def add(self, agent: Agent) -> Agent:
        if agent.id in self:
            raise DuplicateAgentError(f"Agent id already exists: {agent.id}")
        agent = replace(agent, builtin=False)
        self._custom = [*self._custom, agent]
        self._persist()
        logger.info("Agent added: %s (%s)", agent.id, agent.name)
        return agent

    def remove(self, agent_id: str) -> bool:
        """Remove a custom agent. Built-ins and the last agent are kept."""
        if any(a.id == agent_id for a in self._builtins):
            logger.info("Built-in agent %s cannot be removed", agent_id)
            return False
        if agent_id not in self:
            logger.info("No agent with id %s", agent_id)
            return False
        if len(self) <= 1:
            logger.info("Refusing to remove the last agent")
            return False
        self._custom = [a for a in self._custom if a.id != agent_id]
        self._persist()
        logger.info("Agent removed: %s", agent_id)
        return True

    def attach_portrait(self, agent_id: str, handle: str) -> None:
        for i, agent in enumerate(self._builtins):
            if agent.id == agent_id:
                builtins = list(self._builtins)
                builtins[i] = replace(agent, portrait=handle)
                self._builtins = tuple(builtins)
                return
        for i, agent in enumerate(self._custom):
            if agent.id == agent_id:
                if agent.portrait == handle:
                    return
                custom = list(self._custom)
                custom[i] = replace(agent, portrait=handle)
                self._custom = custom
                self._persist()
                return

    def _persist(self) -> None:
        try:
            self._store.save(list(self._custom))
        except OSError as exc:
            logger.warning("Failed to save custom agents: %s", exc)
