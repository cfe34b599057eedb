"""Shared fakes for round engine tests."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from game.publisher import PublishResult
from game.scheduler import RoundScheduler
from game.store import MemoryGameStore
from game.tally import VoteRecord, VoteTally
from game.timers import TimerHandle
from story.graph import parse_story

START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def story_dict() -> dict:
    """start -> (A: nodeX, B: nodeY); nodeX and nodeZ end, nodeY -> nodeZ."""
    return {
        "title": "Test Quest",
        "description": "A small test story.",
        "startNodeId": "start",
        "nodes": {
            "start": {
                "id": "start",
                "title": "Crossroads",
                "content": "Two roads.",
                "choices": [
                    {"id": "A", "text": "Go left", "nextNodeId": "nodeX"},
                    {"id": "B", "text": "Go right", "nextNodeId": "nodeY"},
                ],
            },
            "nodeX": {"id": "nodeX", "title": "Cliff", "content": "The end.", "isEnd": True},
            "nodeY": {
                "id": "nodeY",
                "title": "Forest",
                "content": "Trees everywhere.",
                "choices": [{"id": "C", "text": "Keep walking", "nextNodeId": "nodeZ"}],
            },
            "nodeZ": {"id": "nodeZ", "title": "Village", "content": "Home at last.", "isEnd": True},
        },
    }


class Clock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVoteSource:
    """Scores by reference id. A reference mapped to an exception raises it."""

    def __init__(self, scores: dict | None = None):
        self.scores = dict(scores or {})
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None  # when set, fetches wait for it

    async def get_score(self, reference_id: str) -> int:
        self.calls.append(reference_id)
        if self.gate is not None:
            await self.gate.wait()
        value = self.scores.get(reference_id, 0)
        if isinstance(value, Exception):
            raise value
        return value


class FakePublisher:
    def __init__(self):
        self.rounds: list[tuple[str, int]] = []
        self.recaps: list[list[str]] = []
        self.fail_round = False
        self.round_error: Exception | None = None
        self.fail_recap = 0  # number of recap calls that fail before one succeeds

    async def publish_next_round(self, graph, node, state) -> PublishResult:
        self.rounds.append((node.id, state.round_number))
        if self.round_error is not None:
            raise self.round_error
        if self.fail_round:
            return PublishResult(success=False, error="post rejected")
        record = VoteRecord.for_round(node, state)
        for choice in node.choices:
            record.track(node, choice.id, f"c_{state.round_number}_{choice.id}")
        return PublishResult(success=True, post_id=f"p_{state.round_number}", vote_record=record)

    async def publish_recap(self, graph, state) -> PublishResult:
        self.recaps.append(list(state.path))
        if self.fail_recap > 0:
            self.fail_recap -= 1
            return PublishResult(success=False, error="recap rejected")
        return PublishResult(success=True, post_id="p_recap")


class FakeTimers:
    def __init__(self):
        self.scheduled: list[TimerHandle] = []
        self.cancelled: list[TimerHandle] = []
        self.fail = False

    def schedule(self, game_id: str, round_number: int, fire_at: datetime) -> TimerHandle:
        if self.fail:
            raise RuntimeError("scheduler unavailable")
        handle = TimerHandle(game_id=game_id, round_number=round_number, fire_at=fire_at)
        self.scheduled.append(handle)
        return handle

    def cancel(self, handle: TimerHandle) -> None:
        self.cancelled.append(handle)


class NoSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def graph():
    return parse_story(story_dict())


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return MemoryGameStore()


@pytest.fixture
def votes():
    return FakeVoteSource()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def sleeps():
    return NoSleep()


@pytest.fixture
def scheduler(store, votes, publisher, timers, clock, sleeps):
    tally = VoteTally(votes, tie_break="first", sleep=sleeps)
    return RoundScheduler(store, tally, publisher, timers, clock=clock, sleep=sleeps)


@pytest.fixture
def story_data():
    return story_dict()
