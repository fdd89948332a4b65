"""Dataclasses for the council chamber. No I/O, no SDK deps."""

from dataclasses import dataclass, field
from enum import Enum

# Reserved agent id for messages typed by the user (follow-ups)
USER_AGENT_ID = "user"

CONNECTION_TYPES = ("attack", "agree", "query")


@dataclass
class Agent:
    id: str
    name: str
    full_name: str
    personality: str
    color: str = ""
    icon: str = ""
    portrait: str | None = None   # path to a materialized portrait image
    builtin: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "full_name": self.full_name,
            "personality": self.personality,
            "color": self.color,
            "icon": self.icon,
            "portrait": self.portrait,
        }

    @classmethod
    def from_dict(cls, raw: dict, builtin: bool = False) -> "Agent":
        return cls(
            id=str(raw["id"]),
            name=str(raw["name"]),
            full_name=str(raw.get("full_name") or raw["name"]),
            personality=str(raw.get("personality", "")),
            color=str(raw.get("color", "")),
            icon=str(raw.get("icon", "")),
            portrait=raw.get("portrait"),
            builtin=builtin,
        )


@dataclass(frozen=True)
class Attachment:
    name: str
    preview: str           # revocable preview handle
    data: str              # base64 payload
    mime_type: str


@dataclass(frozen=True)
class NeuralState:
    speaker_id: str
    target_id: str
    sentiment_hex: str
    intensity: int          # 0-100
    connection_type: str    # "attack", "agree" or "query"
    status_text: str
    memory_link_text: str | None = None

    @classmethod
    def neutral(cls, speaker_id: str) -> "NeuralState":
        """Default used when a turn arrives without neural metadata."""
        return cls(
            speaker_id=speaker_id,
            target_id="",
            sentiment_hex="#9CA3AF",
            intensity=0,
            connection_type="query",
            status_text="listening",
        )


@dataclass(frozen=True)
class DiscoveredArtifact:
    title: str
    size: str
    health_score: int       # 1-10
    safety_status: str      # "VERIFIED", "SUSPICIOUS", "DANGEROUS"
    link: str
    source: str


@dataclass(frozen=True)
class DebateTurn:
    agent_id: str
    text: str
    neural_state: NeuralState
    rating: float | None = None
    artifacts: tuple[DiscoveredArtifact, ...] = ()


@dataclass(frozen=True)
class Message:
    id: str
    agent_id: str
    content: str
    timestamp: float
    rating: float | None = None
    neural_state: NeuralState | None = None
    links: tuple[str, ...] = ()
    artifacts: tuple[DiscoveredArtifact, ...] = ()

    @property
    def from_user(self) -> bool:
        return self.agent_id == USER_AGENT_ID


@dataclass(frozen=True)
class EnrichmentReport:
    observations: tuple[str, ...]
    suggested_improvements: tuple[str, ...]
    narrative: str
    snippets: tuple[str, ...] = ()


@dataclass(frozen=True)
class DebateOutcome:
    turns: tuple[DebateTurn, ...]
    consensus: str
    report: EnrichmentReport | None = None
    sources: tuple[str, ...] = ()


class SessionStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    DEBATING = "debating"
    CONCLUDING = "concluding"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """True while a round is in flight."""
        return self in (SessionStatus.PREPARING, SessionStatus.DEBATING, SessionStatus.CONCLUDING)


@dataclass(frozen=True)
class Session:
    topic: str = ""
    messages: tuple[Message, ...] = ()
    consensus: str | None = None
    status: SessionStatus = SessionStatus.IDLE
    error_message: str | None = None
    attachments: tuple[Attachment, ...] = ()
    visuals: tuple[str, ...] = ()
    report: EnrichmentReport | None = None
    active_speaker: str | None = None
    rounds: int = 0


@dataclass(frozen=True)
class GeneratedImage:
    mime_type: str
    data: bytes

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/")[-1].lower()
        return {"jpeg": "jpg", "svg+xml": "svg"}.get(subtype, subtype)


@dataclass
class IntelReport:
    query: str
    text: str
    links: list[str] = field(default_factory=list)
