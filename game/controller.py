"""Game lifecycle: start, reset, manual advance, standings, status, resume."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from story.graph import StoryGraph, StoryValidationError, validate_story

from .errors import GameInactiveError, PublishError, StoreError
from .publisher import PublishResult, RoundPublisher
from .scheduler import AdvancementResult, RoundScheduler
from .state import Clock, RoundState, RoundStateMachine, RoundTiming, utcnow
from .store import GameStore
from .tally import VoteRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChoiceStanding:
    choice_id: str
    text: str
    score: int
    tracked: bool


@dataclass
class RoundStandings:
    """Live vote counts for the current round, best first."""

    game_id: str
    round_number: int
    node_id: str
    choices: list[ChoiceStanding] = field(default_factory=list)
    time_remaining: timedelta = timedelta(0)

    @property
    def tracked_count(self) -> int:
        return sum(1 for c in self.choices if c.tracked)

    @property
    def leader(self) -> str | None:
        """Sole top scorer, or None while nobody has votes or the top is tied."""
        if not self.choices or self.choices[0].score == 0:
            return None
        if len(self.choices) > 1 and self.choices[1].score == self.choices[0].score:
            return None
        return self.choices[0].choice_id


@dataclass
class GameStatus:
    game_id: str
    status: str  # "not_started" | "active" | "completed"
    round_number: int = 0
    current_node_id: str = ""
    current_node_title: str = ""
    time_remaining: timedelta = timedelta(0)
    is_expired: bool = False
    timer_pending: bool = False
    path: list[str] | None = None


class GameController:
    """The touchpoints outer layers use to drive a game."""

    def __init__(
        self,
        store: GameStore,
        scheduler: RoundScheduler,
        publisher: RoundPublisher,
        default_timing: RoundTiming | None = None,
        publish_timeout: float = 120.0,
        clock: Clock | None = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._publisher = publisher
        self._default_timing = default_timing or RoundTiming()
        self._publish_timeout = publish_timeout
        self._clock = clock or utcnow

    async def _load(self, game_id: str) -> tuple[StoryGraph, RoundState | None]:
        graph = await self._store.get_story_graph(game_id)
        if graph is None:
            raise GameInactiveError(f"No story loaded for game {game_id}")
        return graph, await self._store.get_round_state(game_id)

    async def start_game(
        self,
        game_id: str,
        story_data: Any,
        timing: RoundTiming | None = None,
    ) -> RoundState:
        """Validate the story, publish round 1 and arm its timer.

        Raises StoryValidationError with every finding when the story is
        unusable, and PublishError when round 1 could not be posted.
        """
        if isinstance(story_data, StoryGraph):
            story_data = story_data.to_dict()
        report = validate_story(story_data)
        if not report.ok:
            raise StoryValidationError(report.errors, report.warnings)
        graph = report.graph

        async with self._scheduler.lock_for(game_id):
            self._scheduler.cancel_all(game_id)
            machine = RoundStateMachine(graph, clock=self._clock)
            state = machine.start(timing or self._default_timing)

            await self._store.set_story_graph(game_id, graph)
            await self._store.clear_vote_records(game_id)
            await self._store.set_round_state(game_id, state)

            try:
                published: PublishResult = await asyncio.wait_for(
                    self._publisher.publish_next_round(graph, machine.current_node(state), state),
                    timeout=self._publish_timeout,
                )
                if not published.success or published.vote_record is None:
                    raise PublishError(published.error or "no vote record")
                await self._store.set_vote_record(game_id, state.round_number, published.vote_record)
            except Exception as exc:
                await self._store.delete_round_state(game_id)
                raise PublishError(f"Could not publish round 1 for {game_id}: {exc}") from exc

            self._scheduler.schedule_round(game_id, state.round_number, state.round_deadline)
        logger.info("Game %s started: %r, first post %s", game_id, graph.title, published.post_id)
        return state

    async def reset_game(self, game_id: str) -> RoundState:
        async with self._scheduler.lock_for(game_id):
            graph, state = await self._load(game_id)
            if state is None:
                raise GameInactiveError(f"Game {game_id} has no state to reset")
            self._scheduler.cancel_all(game_id)
            new_state = RoundStateMachine(graph, clock=self._clock).reset(state)
            await self._store.clear_vote_records(game_id)
            await self._store.set_round_state(game_id, new_state)
        return new_state

    async def force_advance(self, game_id: str) -> AdvancementResult:
        """Run the advancement for the live round now instead of waiting for its timer."""
        try:
            state = await self._store.get_round_state(game_id)
        except StoreError as exc:
            return AdvancementResult(game_id, 0, "failed", detail=str(exc))
        if state is None or not state.active:
            return AdvancementResult(game_id, 0, "inactive", detail="No active game found")
        return await self._scheduler.execute_advancement(game_id, state.round_number, manual=True)

    async def resume(self, game_id: str) -> bool:
        """Re-arm the live round's timer, e.g. after a restart."""
        state = await self._store.get_round_state(game_id)
        if state is None or not state.active:
            logger.info("Nothing to resume for %s", game_id)
            return False
        self._scheduler.schedule_round(game_id, state.round_number, state.round_deadline)
        return True

    async def standings(self, game_id: str) -> RoundStandings:
        """Tally the live round without advancing it.

        Every choice of the current node is listed; one with no tracked
        comment counts 0. Equal scores keep the node's choice order.
        """
        graph, state = await self._load(game_id)
        if state is None or not state.active:
            raise GameInactiveError(f"Game {game_id} has no live round")

        machine = RoundStateMachine(graph, clock=self._clock)
        node = machine.current_node(state)
        record = await self._store.get_vote_record(game_id, state.round_number)
        if record is None or record.node_id != node.id:
            record = VoteRecord.for_round(node, state)
        result = await self._scheduler.vote_tally.tally(record, state.round_number)

        entries = [
            ChoiceStanding(
                choice_id=choice.id,
                text=choice.text,
                score=result.score_of(choice.id) or 0,
                tracked=choice.id in record.choices,
            )
            for choice in node.choices
        ]
        entries.sort(key=lambda e: e.score, reverse=True)

        return RoundStandings(
            game_id=game_id,
            round_number=state.round_number,
            node_id=node.id,
            choices=entries,
            time_remaining=machine.time_remaining(state),
        )

    async def status(self, game_id: str) -> GameStatus:
        graph = await self._store.get_story_graph(game_id)
        state = await self._store.get_round_state(game_id)
        if graph is None or state is None:
            return GameStatus(game_id=game_id, status="not_started")

        machine = RoundStateMachine(graph, clock=self._clock)
        node = graph.get_node(state.current_node_id)
        remaining = machine.time_remaining(state) if state.active else timedelta(0)
        return GameStatus(
            game_id=game_id,
            status=state.status,
            round_number=state.round_number,
            current_node_id=state.current_node_id,
            current_node_title=node.title if node else "",
            time_remaining=remaining,
            is_expired=state.active and remaining == timedelta(0),
            timer_pending=state.round_number in self._scheduler.pending_rounds(game_id),
            path=list(state.path),
        )
