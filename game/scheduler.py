"""Round scheduler, the loop that moves a game forward.

Each firing: reload state -> tally votes -> advance -> publish the next
round (or the recap) -> arm the next timer. Timer fires and manual triggers
both go through :meth:`RoundScheduler.execute_advancement`, which is
serialized per game and never raises past its own boundary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from story.graph import StoryGraph, StoryNode

from .errors import InvalidWinningChoiceError, PublishError, RollbackError, StoreError
from .publisher import PublishResult, RoundPublisher
from .retry import RetryPolicy, Sleep
from .state import Clock, RoundState, RoundStateMachine, utcnow
from .store import GameStore
from .tally import TallyResult, VoteTally
from .timers import TimerFacility, TimerHandle

logger = logging.getLogger(__name__)

_OUTCOME_KINDS = {
    "advanced": "success",
    "completed": "success",
    "stale": "noop",
    "inactive": "noop",
    "no_winner": "soft_failure",
    "failed": "hard_failure",
    "invalid_choice": "hard_failure",
    "escalated": "hard_failure",
}


@dataclass
class AdvancementResult:
    """What one firing did. ``kind`` groups outcomes for callers."""

    game_id: str
    round_number: int
    outcome: str  # see _OUTCOME_KINDS
    detail: str = ""
    winner: str | None = None
    post_id: str = ""
    new_round_number: int | None = None
    next_timer_armed: bool = False
    attempts: int = 0
    tally: TallyResult | None = None

    @property
    def kind(self) -> str:
        return _OUTCOME_KINDS[self.outcome]

    @property
    def success(self) -> bool:
        return self.kind == "success"


class _FinalizationPending(PublishError):
    """The game sits on an ending but the recap has not gone out yet."""

    def __init__(self, message: str, round_number: int):
        self.round_number = round_number
        super().__init__(message)


class RoundScheduler:
    def __init__(
        self,
        store: GameStore,
        tally: VoteTally,
        publisher: RoundPublisher,
        timers: TimerFacility,
        *,
        retry: RetryPolicy | None = None,
        publish_timeout: float = 120.0,
        rearm_delay: float = 300.0,
        clock: Clock | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._store = store
        self._tally = tally
        self._publisher = publisher
        self._timers = timers
        self._retry = retry or RetryPolicy(max_attempts=3, base_delay=5.0, backoff="fixed")
        self._publish_timeout = publish_timeout
        self._rearm_delay = rearm_delay
        self._clock = clock or utcnow
        self._sleep = sleep
        self._handles: dict[tuple[str, int], TimerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        logger.debug(
            "Advancement retries: %d attempt(s), waits %s", self._retry.max_attempts, self._retry.delays(),
        )

    @property
    def vote_tally(self) -> VoteTally:
        return self._tally

    def lock_for(self, game_id: str) -> asyncio.Lock:
        """The lock every state-changing operation on ``game_id`` holds."""
        return self._locks.setdefault(game_id, asyncio.Lock())

    # ── Timers ──────────────────────────────────────────────────

    def schedule_round(self, game_id: str, round_number: int, fire_at: datetime) -> TimerHandle:
        """Arm the timer for ``round_number``, replacing any pending one."""
        if round_number <= 0:
            raise ValueError("Round number must be positive")
        self.cancel_round(game_id, round_number)
        handle = self._timers.schedule(game_id, round_number, fire_at)
        self._handles[(game_id, round_number)] = handle
        logger.info("Scheduled %s round %d advancement for %s", game_id, round_number, fire_at.isoformat())
        return handle

    def cancel_round(self, game_id: str, round_number: int) -> bool:
        handle = self._handles.pop((game_id, round_number), None)
        if handle is None:
            return False
        self._timers.cancel(handle)
        logger.debug("Cancelled %s round %d timer", game_id, round_number)
        return True

    def cancel_all(self, game_id: str) -> int:
        rounds = self.pending_rounds(game_id)
        for round_number in rounds:
            self.cancel_round(game_id, round_number)
        if rounds:
            logger.info("Cancelled %d timer(s) for %s: rounds %s", len(rounds), game_id, rounds)
        return len(rounds)

    def pending_rounds(self, game_id: str) -> list[int]:
        return sorted(r for (gid, r) in self._handles if gid == game_id)

    async def on_timer(self, game_id: str, round_number: int) -> AdvancementResult:
        """Timer callback."""
        self._handles.pop((game_id, round_number), None)
        return await self.execute_advancement(game_id, round_number)

    # ── Firing ──────────────────────────────────────────────────

    async def execute_advancement(
        self, game_id: str, round_number: int, manual: bool = False
    ) -> AdvancementResult:
        """Advance ``game_id`` out of ``round_number`` if that is still the live round."""
        async with self.lock_for(game_id):
            logger.info(
                "=== Advancement === %s round %d (%s)", game_id, round_number, "manual" if manual else "timer",
            )
            expected_round = round_number
            last_error: Exception | None = None

            for attempt in range(1, self._retry.max_attempts + 1):
                try:
                    result = await self._advance_once(game_id, round_number, expected_round)
                    result.attempts = attempt
                    return result
                except InvalidWinningChoiceError as exc:
                    logger.error("%s round %d: %s", game_id, round_number, exc)
                    return AdvancementResult(
                        game_id, round_number, "invalid_choice", detail=str(exc),
                        winner=exc.choice_id, attempts=attempt,
                    )
                except RollbackError as exc:
                    logger.critical(
                        "%s: state may show round %d advanced without a published post. "
                        "Operator action required: %s",
                        game_id, round_number + 1, exc,
                    )
                    return AdvancementResult(
                        game_id, round_number, "escalated", detail=str(exc), attempts=attempt,
                    )
                except Exception as exc:
                    last_error = exc
                    if isinstance(exc, _FinalizationPending):
                        expected_round = exc.round_number
                    logger.warning(
                        "%s round %d: attempt %d/%d failed: %s",
                        game_id, round_number, attempt, self._retry.max_attempts, exc,
                    )
                    if attempt < self._retry.max_attempts:
                        await self._sleep(self._retry.next_delay(attempt))

            logger.error(
                "%s round %d: advancement failed after %d attempts: %s",
                game_id, round_number, self._retry.max_attempts, last_error,
            )
            return AdvancementResult(
                game_id,
                round_number,
                "failed",
                detail=f"All {self._retry.max_attempts} attempts failed. Last error: {last_error}",
                next_timer_armed=self._rearm(game_id, expected_round),
                attempts=self._retry.max_attempts,
            )

    def _rearm(self, game_id: str, round_number: int) -> bool:
        """Keep an unadvanced round armed so a later firing tries again."""
        if round_number in self.pending_rounds(game_id):
            return True
        fire_at = self._clock() + timedelta(seconds=self._rearm_delay)
        try:
            self.schedule_round(game_id, round_number, fire_at)
        except Exception as exc:
            logger.warning("%s: could not re-arm round %d (%s); advance manually", game_id, round_number, exc)
            return False
        return True

    async def _advance_once(self, game_id: str, round_number: int, expected_round: int) -> AdvancementResult:
        state = await self._store.get_round_state(game_id)
        if state is None or not state.active:
            logger.info("%s is not active; round %d firing is a no-op", game_id, round_number)
            return AdvancementResult(game_id, round_number, "inactive", detail="Game is not active")

        if state.round_number != expected_round:
            logger.info(
                "%s: stale firing for round %d, current round is %d", game_id, expected_round, state.round_number,
            )
            return AdvancementResult(
                game_id, round_number, "stale",
                detail=f"Round mismatch: firing for round {expected_round}, current round is {state.round_number}",
            )

        graph = await self._store.get_story_graph(game_id)
        if graph is None:
            raise StoreError(f"No story stored for game {game_id}")
        machine = RoundStateMachine(graph, clock=self._clock)
        node = machine.current_node(state)

        if node.is_terminal:
            # An earlier firing advanced here but the recap never went out
            return await self._finalize(game_id, round_number, graph, machine, state)

        record = await self._store.get_vote_record(game_id, state.round_number)
        if record is None or not record.choices:
            logger.warning("%s round %d: no votes tracked", game_id, state.round_number)
            return AdvancementResult(
                game_id, round_number, "no_winner", detail=f"No votes tracked for round {state.round_number}",
            )

        tally = await self._tally.tally(record, state.round_number)
        winner = self._tally.winning_choice(tally, graph, node.id)
        if winner is None:
            return AdvancementResult(
                game_id, round_number, "no_winner",
                detail="No winning choice could be determined", tally=tally,
            )

        snapshot = state
        new_state = machine.advance(state, winner)
        await self._store.set_round_state(game_id, new_state)

        next_node = machine.current_node(new_state)
        if next_node.is_terminal:
            result = await self._finalize(game_id, round_number, graph, machine, new_state)
            result.winner = winner
            result.tally = tally
            return result

        result = await self._publish_round(game_id, graph, next_node, snapshot, new_state)
        result.winner = winner
        result.tally = tally
        return result

    async def _finalize(
        self,
        game_id: str,
        round_number: int,
        graph: StoryGraph,
        machine: RoundStateMachine,
        state: RoundState,
    ) -> AdvancementResult:
        try:
            recap: PublishResult = await asyncio.wait_for(
                self._publisher.publish_recap(graph, state), timeout=self._publish_timeout
            )
            if not recap.success:
                raise PublishError(recap.error or "recap was not published")
            final_state = machine.finalize(state)
            await self._store.set_round_state(game_id, final_state)
        except Exception as exc:
            raise _FinalizationPending(
                f"Failed to finalize {game_id} at node {state.current_node_id}: {exc}", state.round_number
            ) from exc

        self.cancel_all(game_id)
        logger.info("%s completed after %d rounds; recap post %s", game_id, state.round_number, recap.post_id)
        return AdvancementResult(
            game_id, round_number, "completed",
            detail=f"Game completed. Recap post created: {recap.post_id}",
            post_id=recap.post_id,
            new_round_number=state.round_number,
        )

    async def _publish_round(
        self,
        game_id: str,
        graph: StoryGraph,
        node: StoryNode,
        snapshot: RoundState,
        new_state: RoundState,
    ) -> AdvancementResult:
        try:
            published: PublishResult = await asyncio.wait_for(
                self._publisher.publish_next_round(graph, node, new_state), timeout=self._publish_timeout
            )
            if not published.success:
                raise PublishError(published.error or "round post was not published")
            if published.vote_record is None:
                raise PublishError("round was published without a vote record")
            await self._store.set_vote_record(game_id, new_state.round_number, published.vote_record)
        except Exception as exc:
            logger.error(
                "%s: publishing round %d failed, rolling back to round %d: %s",
                game_id, new_state.round_number, snapshot.round_number, exc,
            )
            await self._rollback(game_id, snapshot)
            raise PublishError(f"Failed to create round {new_state.round_number} post: {exc}") from exc

        self.cancel_round(game_id, snapshot.round_number)
        armed = False
        try:
            self.schedule_round(game_id, new_state.round_number, new_state.round_deadline)
            armed = True
        except Exception as exc:
            logger.warning(
                "%s: could not schedule round %d (%s); advance manually", game_id, new_state.round_number, exc,
            )

        return AdvancementResult(
            game_id,
            snapshot.round_number,
            "advanced",
            detail=f"Round {snapshot.round_number} completed. Next round post: {published.post_id}",
            post_id=published.post_id,
            new_round_number=new_state.round_number,
            next_timer_armed=armed,
        )

    async def _rollback(self, game_id: str, snapshot: RoundState) -> None:
        try:
            await self._store.set_round_state(game_id, snapshot)
        except Exception as exc:
            raise RollbackError(
                f"Rollback of {game_id} to round {snapshot.round_number} failed: {exc}",
                game_id,
                snapshot.round_number,
            ) from exc
        logger.info(
            "%s rolled back to round %d at node %s", game_id, snapshot.round_number, snapshot.current_node_id,
        )
