"""Vote tracking and tallying.

Each round publishes one external reference (a comment) per choice. At
round end the tally reads every reference's score, ranks the choices and
picks a winner.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from story.graph import StoryGraph, StoryNode

from .errors import InvalidWinningChoiceError, NodeNotFoundError, UnknownChoiceError
from .retry import RetryPolicy, Sleep
from .state import RoundState, parse_iso, utcnow

logger = logging.getLogger(__name__)

TIE_BREAK_MODES = ("random", "first")


class VoteSource(Protocol):
    async def get_score(self, reference_id: str) -> int:
        """Current score of an external reference. May raise on transient failure."""
        ...


@dataclass
class VoteRecord:
    """Choice -> external reference mapping for one round."""

    node_id: str
    round_deadline: datetime
    choices: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_round(cls, node: StoryNode, state: RoundState) -> VoteRecord:
        return cls(node_id=node.id, round_deadline=state.round_deadline)

    def track(self, node: StoryNode, choice_id: str, reference_id: str) -> None:
        if node.id != self.node_id:
            raise UnknownChoiceError(node.id, choice_id)
        if node.get_choice(choice_id) is None:
            raise UnknownChoiceError(node.id, choice_id)
        self.choices[choice_id] = reference_id
        logger.debug("Tracking choice %s -> reference %s", choice_id, reference_id)

    def is_voting_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.round_deadline

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "choices": dict(self.choices),
            "roundEndTime": self.round_deadline.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VoteRecord:
        deadline = parse_iso(data.get("roundEndTime", ""))
        if deadline is None:
            raise ValueError(f"Vote record has no valid roundEndTime: {data.get('roundEndTime')!r}")
        return cls(
            node_id=data.get("nodeId", ""),
            round_deadline=deadline,
            choices=dict(data.get("choices", {})),
        )


@dataclass(frozen=True)
class ChoiceScore:
    choice_id: str
    reference_id: str
    score: int


@dataclass
class TallyResult:
    round_number: int
    scores: list[ChoiceScore] = field(default_factory=list)

    def score_of(self, choice_id: str) -> int | None:
        for entry in self.scores:
            if entry.choice_id == choice_id:
                return entry.score
        return None


class VoteTally:
    """Counts votes for a round and resolves the winner."""

    def __init__(
        self,
        source: VoteSource,
        *,
        retry: RetryPolicy | None = None,
        fetch_timeout: float = 10.0,
        minimum_votes: int = 0,
        tie_break: str = "random",
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        if tie_break not in TIE_BREAK_MODES:
            raise ValueError(f"Unknown tie-break mode: {tie_break}")
        self._source = source
        self._retry = retry or RetryPolicy(max_attempts=3, base_delay=1.0, backoff="exponential")
        self._fetch_timeout = fetch_timeout
        self._minimum_votes = minimum_votes
        self._tie_break = tie_break
        self._rng = rng or random.Random()
        self._sleep = sleep

    async def _fetch_score(self, choice_id: str, reference_id: str) -> int:
        """Score for one reference; 0 once the retry budget is spent."""
        last_error: BaseException | None = None
        for attempt in range(1, self._retry.max_attempts + 1):
            try:
                score = await asyncio.wait_for(
                    self._source.get_score(reference_id), timeout=self._fetch_timeout
                )
                return max(0, int(score))
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Score fetch attempt %d/%d failed for choice %s (%s): %s",
                    attempt, self._retry.max_attempts, choice_id, reference_id, exc or type(exc).__name__,
                )
                if attempt < self._retry.max_attempts:
                    await self._sleep(self._retry.next_delay(attempt))

        logger.error(
            "Giving up on score for choice %s (%s) after %d attempts: %s; counting 0",
            choice_id, reference_id, self._retry.max_attempts, last_error,
        )
        return 0

    async def tally(self, record: VoteRecord, round_number: int = 0) -> TallyResult:
        items = list(record.choices.items())
        scores = await asyncio.gather(
            *(self._fetch_score(choice_id, ref) for choice_id, ref in items)
        )
        entries = [
            ChoiceScore(choice_id=choice_id, reference_id=ref, score=score)
            for (choice_id, ref), score in zip(items, scores)
        ]
        # sorted() is stable, so equal scores keep record order
        entries = sorted(entries, key=lambda e: e.score, reverse=True)
        return TallyResult(round_number=round_number, scores=entries)

    def winning_choice(
        self,
        result: TallyResult,
        graph: StoryGraph,
        node_id: str,
        minimum_votes: int | None = None,
        tie_break: str | None = None,
    ) -> str | None:
        """Pick the winner among choices at or above ``minimum_votes``.

        Ties resolve randomly or, with ``tie_break="first"``, by the current
        node's choice order. Returns None when nothing qualifies.
        """
        minimum = self._minimum_votes if minimum_votes is None else minimum_votes
        mode = tie_break or self._tie_break
        if mode not in TIE_BREAK_MODES:
            raise ValueError(f"Unknown tie-break mode: {mode}")

        node = graph.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)

        eligible = [entry for entry in result.scores if entry.score >= minimum]
        if not eligible:
            logger.warning(
                "Round %d: no choice met the minimum of %d vote(s)", result.round_number, minimum,
            )
            return None

        top_score = max(entry.score for entry in eligible)
        top_set = [entry for entry in eligible if entry.score == top_score]

        if len(top_set) == 1:
            winner = top_set[0].choice_id
        elif mode == "random":
            winner = self._rng.choice(top_set).choice_id
            logger.info(
                "Round %d: %d-way tie at %d, picked %s at random",
                result.round_number, len(top_set), top_score, winner,
            )
        else:
            def node_order(entry: ChoiceScore) -> int:
                idx = node.choice_index(entry.choice_id)
                return len(node.choices) if idx is None else idx

            winner = min(top_set, key=node_order).choice_id
            logger.info(
                "Round %d: %d-way tie at %d, picked %s by choice order",
                result.round_number, len(top_set), top_score, winner,
            )

        choice = node.get_choice(winner)
        if choice is None:
            raise InvalidWinningChoiceError(node.id, winner, "not a choice of the current node")
        if graph.get_node(choice.next_node_id) is None:
            raise InvalidWinningChoiceError(
                node.id, winner, f"next node {choice.next_node_id} does not exist"
            )

        for line in describe_tally(result, winner):
            logger.info(line)
        return winner


def describe_tally(result: TallyResult, winner: str | None) -> list[str]:
    lines = [f"Round {result.round_number} results ({len(result.scores)} choices):"]
    for rank, entry in enumerate(result.scores, start=1):
        marker = "WINNER" if entry.choice_id == winner else f"#{rank}"
        lines.append(f"  {marker}: {entry.choice_id} ({entry.reference_id}) = {entry.score}")
    return lines
