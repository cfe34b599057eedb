"""Tests for vote tallying and winner selection."""

import asyncio
import random
from datetime import datetime, timezone

import pytest

from game.errors import InvalidWinningChoiceError, UnknownChoiceError
from game.retry import RetryPolicy
from game.state import RoundStateMachine
from game.tally import ChoiceScore, TallyResult, VoteRecord, VoteTally, describe_tally
from story.graph import parse_story

DEADLINE = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def _three_way_graph():
    return parse_story({
        "title": "Three",
        "startNodeId": "s",
        "nodes": {
            "s": {
                "id": "s",
                "title": "S",
                "content": "pick",
                "choices": [
                    {"id": "B", "text": "b", "nextNodeId": "e"},
                    {"id": "A", "text": "a", "nextNodeId": "e"},
                    {"id": "C", "text": "c", "nextNodeId": "e"},
                ],
            },
            "e": {"id": "e", "title": "E", "content": "end", "isEnd": True},
        },
    })


def _result(**scores) -> TallyResult:
    return TallyResult(
        round_number=1,
        scores=[ChoiceScore(choice_id=k, reference_id=f"ref_{k}", score=v) for k, v in scores.items()],
    )


def _record(graph, node_id: str, refs: dict) -> VoteRecord:
    node = graph.get_node(node_id)
    record = VoteRecord(node_id=node_id, round_deadline=DEADLINE)
    for choice_id, ref in refs.items():
        record.track(node, choice_id, ref)
    return record


# ── Tallying ────────────────────────────────────────────────────


def test_tally_ranks_by_score(graph, votes, sleeps):
    votes.scores.update({"ra": 5, "rb": 3})
    tally = VoteTally(votes, sleep=sleeps)
    result = asyncio.run(tally.tally(_record(graph, "start", {"A": "ra", "B": "rb"}), 1))
    assert [(s.choice_id, s.score) for s in result.scores] == [("A", 5), ("B", 3)]
    assert result.score_of("B") == 3
    assert result.score_of("Z") is None
    assert sorted(votes.calls) == ["ra", "rb"]


def test_fetch_failure_counts_zero_after_backoff(graph, votes, sleeps):
    votes.scores.update({"ra": RuntimeError("boom"), "rb": 4})
    tally = VoteTally(votes, retry=RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleeps)
    result = asyncio.run(tally.tally(_record(graph, "start", {"A": "ra", "B": "rb"}), 1))
    assert result.score_of("A") == 0
    assert result.score_of("B") == 4
    assert votes.calls.count("ra") == 3
    assert sleeps.delays == [1.0, 2.0]


def test_negative_scores_clamped_to_zero(graph, votes, sleeps):
    votes.scores["ra"] = -4
    tally = VoteTally(votes, sleep=sleeps)
    result = asyncio.run(tally.tally(_record(graph, "start", {"A": "ra"}), 1))
    assert result.score_of("A") == 0


def test_slow_source_times_out_and_counts_zero(graph, sleeps):
    class Hanging:
        async def get_score(self, reference_id):
            await asyncio.sleep(5)
            return 9

    tally = VoteTally(Hanging(), retry=RetryPolicy(max_attempts=1), fetch_timeout=0.01, sleep=sleeps)
    result = asyncio.run(tally.tally(_record(graph, "start", {"A": "ra"}), 1))
    assert result.score_of("A") == 0


# ── Winner selection ────────────────────────────────────────────


def test_clear_winner(graph, votes):
    assert VoteTally(votes).winning_choice(_result(A=5, B=3), graph, "start") == "A"


def test_tie_first_follows_node_choice_order(votes):
    tally = VoteTally(votes, tie_break="first")
    assert tally.winning_choice(_result(A=10, B=10, C=5), _three_way_graph(), "s") == "B"


def test_tie_random_only_picks_from_top_set(votes):
    graph = _three_way_graph()
    tally = VoteTally(votes, tie_break="random", rng=random.Random(7))
    picks = {tally.winning_choice(_result(A=10, B=10, C=5), graph, "s") for _ in range(30)}
    assert picks <= {"A", "B"}


def test_minimum_votes_filters_everything(graph, votes):
    tally = VoteTally(votes)
    assert tally.winning_choice(_result(A=10, B=10), graph, "start", minimum_votes=11) is None


def test_minimum_votes_from_constructor(graph, votes):
    tally = VoteTally(votes, minimum_votes=4)
    assert tally.winning_choice(_result(A=3, B=4), graph, "start") == "B"


def test_empty_result_has_no_winner(graph, votes):
    assert VoteTally(votes).winning_choice(TallyResult(round_number=1), graph, "start") is None


def test_winner_not_on_node_is_rejected(graph, votes):
    with pytest.raises(InvalidWinningChoiceError) as excinfo:
        VoteTally(votes).winning_choice(_result(C=8), graph, "start")
    assert excinfo.value.choice_id == "C"


def test_unknown_tie_break_rejected(votes):
    with pytest.raises(ValueError):
        VoteTally(votes, tie_break="loudest")


# ── Vote records ────────────────────────────────────────────────


def test_track_rejects_choice_not_on_node(graph):
    record = VoteRecord(node_id="start", round_deadline=DEADLINE)
    with pytest.raises(UnknownChoiceError):
        record.track(graph.get_node("start"), "C", "ref")
    assert record.choices == {}


def test_record_for_round_uses_state_deadline(graph, clock):
    state = RoundStateMachine(graph, clock=clock).start()
    record = VoteRecord.for_round(graph.start_node, state)
    assert record.node_id == "start"
    assert record.round_deadline == state.round_deadline
    assert not record.is_voting_expired(clock.now)
    assert record.is_voting_expired(state.round_deadline)


def test_record_serialization(graph):
    record = _record(graph, "start", {"A": "ra", "B": "rb"})
    data = record.to_dict()
    assert data == {"nodeId": "start", "choices": {"A": "ra", "B": "rb"}, "roundEndTime": DEADLINE.isoformat()}
    assert VoteRecord.from_dict(data) == record
    with pytest.raises(ValueError):
        VoteRecord.from_dict({"nodeId": "start", "choices": {}})


def test_describe_tally_marks_winner():
    lines = describe_tally(_result(A=5, B=3), "A")
    assert lines[0] == "Round 1 results (2 choices):"
    assert "WINNER: A" in lines[1]
    assert "#2: B" in lines[2]
