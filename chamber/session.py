"""Session lifecycle: submit, play back, conclude, follow up, reset.

The controller owns the current Session record and the draft the user is
composing (topic, attachments, participants). A session moves through

    idle -> preparing -> debating -> concluding -> finished

with error reachable from preparing and debating. A finished (or idle)
session can take a follow-up message, which runs one more round and lands
on finished again.

Every change replaces the whole Session record, so subscribers never see a
half-applied update. Each round carries the generation number it was started
with; reset and new submissions bump the generation, and a round whose
generation is stale stops mutating the session.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import replace

from config.config_loader import PromptsConfig
from chamber.agents import AgentRegistry, default_id_factory
from chamber.attachments import AttachmentCollector
from chamber.models import (
    USER_AGENT_ID,
    Agent,
    Attachment,
    DebateOutcome,
    Message,
    Session,
    SessionStatus,
)
from chamber.playback import Sleep, first_round_delay, follow_up_delay, message_from_turn, play_turns
from chamber.request import MIN_PARTICIPANTS, DebateRequest, build_request

logger = logging.getLogger(__name__)

Requester = Callable[[DebateRequest], Awaitable[DebateOutcome]]
Listener = Callable[[Session], None]


class SubmissionRejected(Exception):
    """Input was refused. The session is left exactly as it was."""


class SessionController:
    """State machine for one council session plus its follow-up rounds."""

    def __init__(
        self,
        registry: AgentRegistry,
        requester: Requester,
        prompts: PromptsConfig,
        *,
        participants: Sequence[str] = (),
        collector: AttachmentCollector | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = default_id_factory,
        concluding_dwell: float = 2.0,
        time_scale: float = 1.0,
    ) -> None:
        self._registry = registry
        self._requester = requester
        self._prompts = prompts
        self._collector = collector
        self._sleep = sleep
        self._clock = clock
        self._id_factory = id_factory
        self._concluding_dwell = concluding_dwell
        self._time_scale = time_scale

        self._session = Session()
        self._generation = 0
        self._epoch = 0         # bumped per session, not per round
        self._task: asyncio.Task | None = None
        self._listeners: list[Listener] = []

        self.topic = ""
        self._attachments: list[Attachment] = []
        self._participants: tuple[str, ...] = ()
        for agent_id in participants:
            if agent_id in registry and agent_id not in self._participants:
                self._participants += (agent_id,)
            elif agent_id not in registry:
                logger.warning("Unknown agent in participant list: %s", agent_id)

    # -- read side --------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def participants(self) -> tuple[str, ...]:
        return self._participants

    @property
    def attachments(self) -> tuple[Attachment, ...]:
        return tuple(self._attachments)

    def participating_agents(self) -> list[Agent]:
        agents = [self._registry.get(agent_id) for agent_id in self._participants]
        return [a for a in agents if a is not None]

    def is_current(self, generation: int) -> bool:
        return generation == self._generation

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with every new Session record. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait(self) -> Session:
        """Wait for the in-flight round, if any, and return the session."""
        if self._task is not None:
            await self._task
        return self._session

    # -- draft editing ----------------------------------------------------

    def set_topic(self, text: str) -> None:
        self.topic = text

    def add_attachment(self, attachment: Attachment) -> None:
        self._attachments.append(attachment)

    def remove_attachment(self, index: int) -> Attachment:
        attachment = self._attachments.pop(index)
        if self._collector is not None:
            self._collector.revoke(attachment)
        return attachment

    def _require_idle(self, action: str) -> None:
        if self._session.status is not SessionStatus.IDLE:
            raise SubmissionRejected(f"Cannot {action} while the session is {self._session.status.value}")

    def select(self, agent_id: str) -> None:
        self._require_idle("change participants")
        if agent_id not in self._registry:
            raise SubmissionRejected(f"Unknown agent: {agent_id}")
        if agent_id not in self._participants:
            self._participants += (agent_id,)

    def deselect(self, agent_id: str) -> None:
        self._require_idle("change participants")
        self._participants = tuple(p for p in self._participants if p != agent_id)

    def set_participants(self, agent_ids: Sequence[str]) -> None:
        self._require_idle("change participants")
        unknown = [a for a in agent_ids if a not in self._registry]
        if unknown:
            raise SubmissionRejected(f"Unknown agents: {', '.join(unknown)}")
        self._participants = tuple(dict.fromkeys(agent_ids))

    # -- transitions ------------------------------------------------------

    def _commit(self, session: Session) -> None:
        previous = self._session.status
        self._session = session
        if session.status is not previous:
            logger.debug("Session %s -> %s", previous.value, session.status.value)
        for listener in list(self._listeners):
            # A failing subscriber must not change the session's status.
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    def _quorum(self) -> list[Agent]:
        agents = self.participating_agents()
        if len(agents) < MIN_PARTICIPANTS:
            raise SubmissionRejected(
                f"The council requires at least {MIN_PARTICIPANTS} active agents to form a quorum"
            )
        return agents

    def submit(
        self,
        topic: str | None = None,
        attachments: Sequence[Attachment] | None = None,
    ) -> "asyncio.Task[Session]":
        """Start a new session round. Must be called from a running event loop.

        Raises:
            SubmissionRejected: If a round is in flight, the session is in error,
                both topic and attachments are empty, or quorum is missing.
        """
        status = self._session.status
        if status.is_active:
            raise SubmissionRejected(f"A round is already in flight ({status.value})")
        if status is SessionStatus.ERROR:
            raise SubmissionRejected("Acknowledge the current error before starting again")

        text = (self.topic if topic is None else topic).strip()
        snapshot = tuple(self._attachments if attachments is None else attachments)
        if not text and not snapshot:
            raise SubmissionRejected("Enter a topic or attach a file first")
        agents = self._quorum()

        request = build_request(text, agents, (), snapshot, prompts=self._prompts)

        self._generation += 1
        self._epoch += 1
        generation = self._generation
        self._commit(Session(topic=text, status=SessionStatus.PREPARING, attachments=snapshot))
        logger.info("Session submitted: %d agents, %d attachments", len(agents), len(snapshot))

        self._task = asyncio.get_running_loop().create_task(
            self._run_round(generation, request, follow_up=False)
        )
        return self._task

    def send_follow_up(self, text: str) -> "asyncio.Task[Session]":
        """Append a user message and run one more round on the full history.

        Raises:
            SubmissionRejected: If text is blank, the session is not idle or
                finished, or quorum is missing.
        """
        text = text.strip()
        if not text:
            raise SubmissionRejected("Follow-up message is empty")
        status = self._session.status
        if status not in (SessionStatus.IDLE, SessionStatus.FINISHED):
            raise SubmissionRejected(f"Cannot send a follow-up while the session is {status.value}")
        agents = self._quorum()

        message = Message(
            id=self._id_factory(),
            agent_id=USER_AGENT_ID,
            content=text,
            timestamp=self._clock(),
        )
        topic = self._session.topic or text
        history = self._session.messages + (message,)
        request = build_request(
            topic, agents, history, self._session.attachments, prompts=self._prompts, follow_up=True
        )

        self._generation += 1
        generation = self._generation
        self._commit(
            replace(
                self._session,
                topic=topic,
                messages=history,
                status=SessionStatus.DEBATING,
                error_message=None,
            )
        )
        logger.info("Follow-up sent (%d messages of history)", len(history))

        self._task = asyncio.get_running_loop().create_task(
            self._run_round(generation, request, follow_up=True)
        )
        return self._task

    async def _run_round(self, generation: int, request: DebateRequest, follow_up: bool) -> Session:
        try:
            outcome = await self._requester(request)
            if not self.is_current(generation):
                logger.debug("Discarding reply for stale round %d", generation)
                return self._session

            if not follow_up:
                self._commit(replace(self._session, status=SessionStatus.DEBATING, messages=()))
            await self._play(generation, outcome, follow_up)
            if not self.is_current(generation):
                return self._session

            consensus = outcome.consensus or self._session.consensus
            report = outcome.report or self._session.report
            if follow_up:
                self._commit(
                    replace(
                        self._session,
                        status=SessionStatus.FINISHED,
                        active_speaker=None,
                        consensus=consensus,
                        report=report,
                        rounds=self._session.rounds + 1,
                    )
                )
                return self._session

            self._commit(
                replace(
                    self._session,
                    status=SessionStatus.CONCLUDING,
                    active_speaker=None,
                    consensus=consensus,
                    report=report,
                )
            )
            await self._sleep(self._concluding_dwell * self._time_scale)
            if self.is_current(generation):
                self._commit(
                    replace(self._session, status=SessionStatus.FINISHED, rounds=self._session.rounds + 1)
                )
        except Exception as exc:
            self._fail(generation, exc)
        return self._session

    async def _play(self, generation: int, outcome: DebateOutcome, follow_up: bool) -> None:
        last = len(outcome.turns) - 1
        cues = play_turns(
            outcome.turns,
            delay=follow_up_delay if follow_up else first_round_delay,
            sleep=self._sleep,
            is_current=lambda: self.is_current(generation),
            time_scale=self._time_scale,
        )
        async for cue in cues:
            if cue.kind == "speaking":
                self._commit(replace(self._session, active_speaker=cue.turn.agent_id))
                continue
            message = message_from_turn(
                cue.turn,
                message_id=self._id_factory(),
                timestamp=self._clock(),
                links=outcome.sources if cue.index == last else (),
            )
            self._commit(replace(self._session, messages=self._session.messages + (message,)))

    def _fail(self, generation: int, exc: Exception) -> None:
        if not self.is_current(generation):
            logger.debug("Ignoring failure of stale round %d: %s", generation, exc)
            return
        logger.error("Council session failed: %s", exc)
        self._commit(
            replace(
                self._session,
                status=SessionStatus.ERROR,
                error_message=str(exc) or "An unexpected error occurred.",
                active_speaker=None,
            )
        )

    def acknowledge(self) -> Session:
        """Clear an error and return to a clean idle session."""
        if self._session.status is not SessionStatus.ERROR:
            logger.debug("acknowledge() ignored: session is %s", self._session.status.value)
            return self._session
        self._epoch += 1
        self._commit(Session())
        return self._session

    def reset(self) -> Session:
        """Drop everything and return to idle. Invalidates any in-flight round."""
        self._generation += 1
        self._epoch += 1
        if self._collector is not None:
            for attachment in (*self._attachments, *self._session.attachments):
                self._collector.revoke(attachment)
        self._attachments = []
        self.topic = ""
        self._commit(Session())
        return self._session

    def add_visual(self, epoch: int, handle: str) -> bool:
        """Append a visual if the session that asked for it is still current."""
        if epoch != self._epoch:
            logger.info("Discarding visual from an earlier session: %s", handle)
            return False
        self._commit(replace(self._session, visuals=self._session.visuals + (handle,)))
        return True
