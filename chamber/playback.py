"""Turn playback: replay a resolved batch one turn at a time, as if live."""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass

from chamber.models import DebateTurn, Message

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def first_round_delay(text: str) -> float:
    """Seconds to 'type' an opening-round turn: 0.5s + 5ms/char, capped at 2s."""
    return min(2.0, 0.5 + 0.005 * len(text))


def follow_up_delay(text: str) -> float:
    """Seconds to 'type' a follow-up turn: 0.8s + 4ms/char, at least 1s."""
    return max(1.0, 0.8 + 0.004 * len(text))


@dataclass(frozen=True)
class PlaybackCue:
    kind: str               # "speaking" before the delay, "spoken" after it
    turn: DebateTurn
    index: int


async def play_turns(
    turns: Sequence[DebateTurn],
    *,
    delay: Callable[[str], float] = first_round_delay,
    sleep: Sleep = asyncio.sleep,
    is_current: Callable[[], bool] = lambda: True,
    time_scale: float = 1.0,
) -> AsyncIterator[PlaybackCue]:
    """Yield a 'speaking' cue, wait, then a 'spoken' cue for each turn in order.

    Stops as soon as is_current() turns false, so an abandoned round never
    produces another cue.
    """
    for index, turn in enumerate(turns):
        if not is_current():
            logger.debug("Playback abandoned before turn %d", index + 1)
            return
        yield PlaybackCue("speaking", turn, index)
        await sleep(delay(turn.text) * time_scale)
        if not is_current():
            logger.debug("Playback abandoned during turn %d", index + 1)
            return
        yield PlaybackCue("spoken", turn, index)


def message_from_turn(
    turn: DebateTurn,
    *,
    message_id: str,
    timestamp: float,
    links: Sequence[str] = (),
) -> Message:
    return Message(
        id=message_id,
        agent_id=turn.agent_id,
        content=turn.text,
        timestamp=timestamp,
        rating=turn.rating,
        neural_state=turn.neural_state,
        links=tuple(links),
        artifacts=turn.artifacts,
    )
