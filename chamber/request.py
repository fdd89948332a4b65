"""Debate request: build the single outbound call and parse its structured reply."""

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from config.config_loader import PromptsConfig
from chamber.models import (
    CONNECTION_TYPES,
    Agent,
    Attachment,
    DebateOutcome,
    DebateTurn,
    DiscoveredArtifact,
    EnrichmentReport,
    Message,
    NeuralState,
)
from chamber.providers.base import GenerativeProvider, ProviderError

logger = logging.getLogger(__name__)

MIN_PARTICIPANTS = 2

_NEURAL_STATE_SCHEMA = {
    "type": "object",
    "properties": {
        "speaker_id": {"type": "string"},
        "target_id": {"type": "string"},
        "sentiment_hex": {"type": "string"},
        "intensity": {"type": "number"},
        "connection_type": {"type": "string", "enum": list(CONNECTION_TYPES)},
        "status_text": {"type": "string"},
        "memory_link_text": {"type": "string"},
    },
    "required": ["speaker_id", "target_id", "sentiment_hex", "intensity", "connection_type", "status_text"],
}

_ARTIFACT_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "size": {"type": "string"},
        "healthScore": {"type": "number"},
        "safetyStatus": {"type": "string", "enum": ["VERIFIED", "SUSPICIOUS", "DANGEROUS"]},
        "link": {"type": "string"},
        "source": {"type": "string"},
    },
    "required": ["title", "safetyStatus"],
}

DEBATE_RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "discussion": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "agentId": {"type": "string"},
                    "thought": {"type": "string"},
                    "blindRating": {"type": "number"},
                    "neuralState": _NEURAL_STATE_SCHEMA,
                    "artifacts": {"type": "array", "items": _ARTIFACT_SCHEMA},
                },
                "required": ["agentId", "thought", "neuralState"],
            },
        },
        "finalConsensus": {"type": "string"},
        "creatorInsights": {
            "type": "object",
            "properties": {
                "observations": {"type": "array", "items": {"type": "string"}},
                "suggestedImprovements": {"type": "array", "items": {"type": "string"}},
                "codeSnippets": {"type": "array", "items": {"type": "string"}},
                "rawReport": {"type": "string"},
            },
            "required": ["observations", "suggestedImprovements", "rawReport"],
        },
    },
    "required": ["discussion", "finalConsensus", "creatorInsights"],
}

_FALLBACK_ERROR = "A neural override disrupted the council session."

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class DebateRequestError(Exception):
    """The debate call failed or its reply could not be used."""


@dataclass(frozen=True)
class DebateRequest:
    topic: str
    prompt: str
    participant_ids: tuple[str, ...]
    attachments: tuple[Attachment, ...] = ()
    follow_up: bool = False
    schema: dict | None = None

    @property
    def expected_shape(self) -> dict:
        return self.schema or DEBATE_RESPONSE_SCHEMA


def _format_roster(participants: Sequence[Agent]) -> str:
    return "\n".join(f"- {a.name} ({a.full_name}, ID: {a.id}): {a.personality}" for a in participants)


def _format_history(history: Sequence[Message], participants: Sequence[Agent]) -> str:
    names = {a.id: a.name for a in participants}
    lines: list[str] = []
    for msg in history:
        speaker = "USER" if msg.from_user else names.get(msg.agent_id, msg.agent_id)
        lines.append(f"[{speaker}]: {msg.content}")
    return "\n".join(lines)


def build_request(
    topic: str,
    participants: Sequence[Agent],
    history: Sequence[Message],
    attachments: Sequence[Attachment],
    *,
    prompts: PromptsConfig,
    follow_up: bool = False,
) -> DebateRequest:
    """Assemble one outbound debate request.

    Args:
        topic: Topic text, possibly with injected intel appended.
        participants: Agents taking part (at least two).
        history: Prior messages; empty for a first round.
        attachments: Inline payloads forwarded as-is.
        prompts: Templates from config.
        follow_up: Use the follow-up template instead of the opening one.

    Raises:
        ValueError: If fewer than two participants are given.
    """
    if len(participants) < MIN_PARTICIPANTS:
        raise ValueError(f"Need at least {MIN_PARTICIPANTS} participants, got {len(participants)}")

    history_block = _format_history(history, participants)
    if follow_up:
        prompt = prompts.follow_up.format(
            topic=topic,
            roster=_format_roster(participants),
            history=history_block,
        )
    else:
        prompt = prompts.debate.format(
            topic=topic,
            roster=_format_roster(participants),
            history=f"Prior discussion:\n{history_block}" if history_block else "",
        )

    return DebateRequest(
        topic=topic,
        prompt=prompt,
        participant_ids=tuple(a.id for a in participants),
        attachments=tuple(attachments),
        follow_up=follow_up,
        schema=DEBATE_RESPONSE_SCHEMA,
    )


def _clamp_intensity(value) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def _parse_neural_state(raw, agent_id: str) -> NeuralState:
    if not isinstance(raw, dict):
        return NeuralState.neutral(agent_id)
    connection = str(raw.get("connection_type", "query")).lower()
    if connection not in CONNECTION_TYPES:
        logger.debug("Unknown connection type %r for %s, using 'query'", connection, agent_id)
        connection = "query"
    return NeuralState(
        speaker_id=str(raw.get("speaker_id") or agent_id),
        target_id=str(raw.get("target_id") or ""),
        sentiment_hex=str(raw.get("sentiment_hex") or "#9CA3AF"),
        intensity=_clamp_intensity(raw.get("intensity")),
        connection_type=connection,
        status_text=str(raw.get("status_text") or ""),
        memory_link_text=raw.get("memory_link_text") or None,
    )


def _parse_artifacts(raw) -> tuple[DiscoveredArtifact, ...]:
    if not isinstance(raw, list):
        return ()
    artifacts: list[DiscoveredArtifact] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("title"):
            continue
        try:
            health = max(1, min(10, int(item.get("healthScore", 1))))
        except (TypeError, ValueError):
            health = 1
        artifacts.append(
            DiscoveredArtifact(
                title=str(item["title"]),
                size=str(item.get("size", "")),
                health_score=health,
                safety_status=str(item.get("safetyStatus", "SUSPICIOUS")).upper(),
                link=str(item.get("link", "")),
                source=str(item.get("source", "")),
            )
        )
    return tuple(artifacts)


def _parse_rating(raw) -> float | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _parse_report(raw) -> EnrichmentReport | None:
    if not isinstance(raw, dict):
        return None
    return EnrichmentReport(
        observations=tuple(str(o) for o in raw.get("observations") or []),
        suggested_improvements=tuple(str(s) for s in raw.get("suggestedImprovements") or []),
        narrative=str(raw.get("rawReport", "")),
        snippets=tuple(str(c) for c in raw.get("codeSnippets") or []),
    )


def parse_debate_response(
    text: str,
    participant_ids: Sequence[str] = (),
    sources: Sequence[str] = (),
) -> DebateOutcome:
    """Parse the JSON reply into a DebateOutcome.

    Raises:
        DebateRequestError: If the text is not JSON or lacks the required shape.
    """
    cleaned = text.strip()
    fenced = _FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise DebateRequestError(f"The council returned malformed JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise DebateRequestError("The council reply is not a JSON object")

    discussion = data.get("discussion")
    if not isinstance(discussion, list):
        raise DebateRequestError("The council reply has no discussion")

    consensus = data.get("finalConsensus")
    if not isinstance(consensus, str):
        raise DebateRequestError("The council reply has no final consensus")

    known = set(participant_ids)
    turns: list[DebateTurn] = []
    for index, raw_turn in enumerate(discussion):
        if not isinstance(raw_turn, dict) or not raw_turn.get("agentId") or "thought" not in raw_turn:
            raise DebateRequestError(f"Turn {index + 1} is missing agentId or thought")
        agent_id = str(raw_turn["agentId"])
        if known and agent_id not in known:
            logger.warning("Turn %d comes from agent %r outside the roster", index + 1, agent_id)
        turns.append(
            DebateTurn(
                agent_id=agent_id,
                text=str(raw_turn["thought"]),
                neural_state=_parse_neural_state(raw_turn.get("neuralState"), agent_id),
                rating=_parse_rating(raw_turn.get("blindRating")),
                artifacts=_parse_artifacts(raw_turn.get("artifacts")),
            )
        )

    return DebateOutcome(
        turns=tuple(turns),
        consensus=consensus,
        report=_parse_report(data.get("creatorInsights")),
        sources=tuple(sources),
    )


async def request_debate(provider: GenerativeProvider, request: DebateRequest) -> DebateOutcome:
    """Send the request and parse the reply.

    Raises:
        DebateRequestError: On any provider, transport or parsing failure.
    """
    logger.info(
        "Requesting %s round from %s (%d participants, %d attachments)",
        "follow-up" if request.follow_up else "opening",
        provider.name(),
        len(request.participant_ids),
        len(request.attachments),
    )
    try:
        reply = await provider.generate_structured(request.prompt, request.expected_shape, request.attachments)
    except ProviderError as exc:
        raise DebateRequestError(str(exc)) from exc
    except Exception as exc:
        raise DebateRequestError(str(exc) or _FALLBACK_ERROR) from exc

    if not reply.text.strip():
        raise DebateRequestError("The council was unable to form a response.")

    outcome = parse_debate_response(reply.text, request.participant_ids, reply.links)
    logger.info("Council replied with %d turns", len(outcome.turns))
    return outcome
