"""Round state and the transitions that move a game through its story.

State flows: not_started -> active -> (active)* -> completed.
Every transition returns a new RoundState; callers persist it as a unit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from story.graph import StoryGraph, StoryNode

from .errors import GameInactiveError, NodeNotFoundError, UnknownChoiceError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_UNITS = {"hours": 3600, "minutes": 60}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso(ts: str) -> datetime | None:
    if not ts:
        return None
    raw = ts.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class RoundTiming:
    """Length of every round in a game.

    Normal games count in hours; test mode counts the same number in minutes.
    """

    duration: float = 24
    unit: str = "hours"

    def __post_init__(self) -> None:
        if self.unit not in _UNITS:
            raise ValueError(f"Unknown round duration unit: {self.unit}")
        if self.duration <= 0:
            raise ValueError("Round duration must be positive")

    @classmethod
    def for_mode(cls, duration: float, test_mode: bool = False) -> RoundTiming:
        return cls(duration=duration, unit="minutes" if test_mode else "hours")

    def as_timedelta(self) -> timedelta:
        return timedelta(seconds=self.duration * _UNITS[self.unit])


@dataclass
class RoundState:
    current_node_id: str
    round_number: int = 1
    path: list[str] = field(default_factory=list)
    active: bool = True
    completed: bool = False
    round_started_at: datetime = field(default_factory=utcnow)
    round_duration: float = 24
    duration_unit: str = "hours"

    @property
    def timing(self) -> RoundTiming:
        return RoundTiming(duration=self.round_duration, unit=self.duration_unit)

    @property
    def status(self) -> str:
        if self.active:
            return "active"
        if self.completed:
            return "completed"
        return "not_started"

    @property
    def round_deadline(self) -> datetime:
        return self.round_started_at + self.timing.as_timedelta()

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentNodeId": self.current_node_id,
            "roundNumber": self.round_number,
            "storyPath": list(self.path),
            "isActive": self.active,
            "isCompleted": self.completed,
            "roundStartTime": self.round_started_at.isoformat(),
            "roundDuration": self.round_duration,
            "durationUnit": self.duration_unit,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoundState:
        started = parse_iso(data.get("roundStartTime", ""))
        if started is None:
            raise ValueError(f"Round state has no valid roundStartTime: {data.get('roundStartTime')!r}")
        return cls(
            current_node_id=data["currentNodeId"],
            round_number=int(data.get("roundNumber", 1)),
            path=list(data.get("storyPath", [])),
            active=bool(data.get("isActive", False)),
            completed=bool(data.get("isCompleted", False)),
            round_started_at=started,
            round_duration=data.get("roundDuration", 24),
            duration_unit=data.get("durationUnit", "hours"),
        )


@dataclass(frozen=True)
class PathStep:
    node_id: str
    title: str
    choice_made: str | None = None


class RoundStateMachine:
    """Transitions for one game. Owns the game's story graph handle."""

    def __init__(self, graph: StoryGraph, clock: Clock | None = None):
        self._graph = graph
        self._clock = clock or utcnow

    @property
    def graph(self) -> StoryGraph:
        return self._graph

    def node(self, node_id: str) -> StoryNode:
        node = self._graph.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node

    def current_node(self, state: RoundState) -> StoryNode:
        return self.node(state.current_node_id)

    # ── Transitions ─────────────────────────────────────────────

    def start(self, timing: RoundTiming | None = None) -> RoundState:
        timing = timing or RoundTiming()
        start_id = self._graph.start_node_id
        state = RoundState(
            current_node_id=start_id,
            round_number=1,
            path=[start_id],
            active=True,
            completed=False,
            round_started_at=self._clock(),
            round_duration=timing.duration,
            duration_unit=timing.unit,
        )
        logger.info(
            "Game started on %r at node %s (%s %s rounds)",
            self._graph.title, start_id, timing.duration, timing.unit,
        )
        return state

    def advance(self, state: RoundState, choice_id: str) -> RoundState:
        """Follow ``choice_id`` out of the current node.

        The input state is never modified. Reaching an ending does not end
        the game here; that is :meth:`finalize`, so advancing and declaring
        completion can be retried separately.
        """
        if not state.active:
            raise GameInactiveError(f"Game is not active (status={state.status}); cannot advance")

        node = self.current_node(state)
        choice = node.get_choice(choice_id)
        if choice is None:
            raise UnknownChoiceError(node.id, choice_id)
        next_node = self.node(choice.next_node_id)

        path = list(state.path)
        if not path or path[-1] != next_node.id:
            path.append(next_node.id)

        new_state = replace(
            state,
            current_node_id=next_node.id,
            round_number=state.round_number + 1,
            path=path,
            round_started_at=self._clock(),
        )
        logger.info(
            "Advanced: choice %r (%s) -> node %s, round %d",
            choice.id, choice.text[:60], next_node.id, new_state.round_number,
        )
        return new_state

    def finalize(self, state: RoundState) -> RoundState:
        if not state.active:
            raise GameInactiveError(f"Game is not active (status={state.status}); cannot finalize")
        node = self.current_node(state)
        if not node.is_terminal:
            raise GameInactiveError(f"Node {node.id} is not an ending; game cannot be finalized")
        logger.info("Game completed at node %s after %d rounds", node.id, state.round_number)
        return replace(state, active=False, completed=True, path=list(state.path))

    def reset(self, state: RoundState) -> RoundState:
        """Back to the start node. Timing is kept."""
        if not state.active:
            raise GameInactiveError(f"Only an active game can be reset (status={state.status})")
        start_id = self._graph.start_node_id
        logger.info("Game reset from round %d to start node %s", state.round_number, start_id)
        return replace(
            state,
            current_node_id=start_id,
            round_number=1,
            path=[start_id],
            active=False,
            completed=False,
        )

    # ── Queries ─────────────────────────────────────────────────

    def time_remaining(self, state: RoundState, now: datetime | None = None) -> timedelta:
        now = now or self._clock()
        return max(timedelta(0), state.round_deadline - now)

    def is_expired(self, state: RoundState, now: datetime | None = None) -> bool:
        return self.time_remaining(state, now=now) == timedelta(0)

    def path_details(self, state: RoundState) -> list[PathStep]:
        """Visited nodes with the choice taken out of each."""
        steps: list[PathStep] = []
        for idx, node_id in enumerate(state.path):
            node = self._graph.get_node(node_id)
            if node is None:
                logger.warning("Node %s from path not found in story; skipping", node_id)
                continue
            choice_made = None
            if idx < len(state.path) - 1:
                next_id = state.path[idx + 1]
                for choice in node.choices:
                    if choice.next_node_id == next_id:
                        choice_made = choice.text
                        break
            steps.append(PathStep(node_id=node_id, title=node.title, choice_made=choice_made))
        return steps
