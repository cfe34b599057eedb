"""Tests for the SQLite game store."""

import asyncio

import aiosqlite
import pytest

from game.errors import StoreError
from game.state import RoundStateMachine
from game.store import SqliteGameStore
from game.tally import VoteRecord


def test_round_trip_all_records(tmp_path, graph, clock):
    machine = RoundStateMachine(graph, clock=clock)
    state = machine.advance(machine.start(), "B")
    record = VoteRecord.for_round(graph.get_node("nodeY"), state)
    record.track(graph.get_node("nodeY"), "C", "cmt_1")

    async def main():
        async with SqliteGameStore(tmp_path / "data" / "games.db") as store:
            assert await store.get_round_state("g") is None
            assert await store.get_story_graph("g") is None
            assert await store.get_vote_record("g", 2) is None

            await store.set_story_graph("g", graph)
            await store.set_round_state("g", state)
            await store.set_vote_record("g", 2, record)
            return (
                await store.get_story_graph("g"),
                await store.get_round_state("g"),
                await store.get_vote_record("g", 2),
            )

    loaded_graph, loaded_state, loaded_record = asyncio.run(main())
    assert loaded_graph == graph
    assert loaded_state == state
    assert loaded_record == record


def test_records_survive_reopen(tmp_path, graph, clock):
    path = tmp_path / "games.db"
    state = RoundStateMachine(graph, clock=clock).start()

    async def main():
        async with SqliteGameStore(path) as store:
            await store.set_round_state("g", state)
            await store.set_round_state("g", state)
        async with SqliteGameStore(path) as store:
            return await store.get_round_state("g")

    assert asyncio.run(main()) == state


def test_delete_and_clear(tmp_path, graph, clock):
    state = RoundStateMachine(graph, clock=clock).start()
    record = VoteRecord.for_round(graph.start_node, state)

    async def main():
        async with SqliteGameStore(tmp_path / "games.db") as store:
            await store.set_round_state("g", state)
            await store.set_vote_record("g", 1, record)
            await store.set_vote_record("g", 2, record)
            await store.set_vote_record("other", 1, record)
            await store.delete_round_state("g")
            await store.clear_vote_records("g")
            return (
                await store.get_round_state("g"),
                await store.get_vote_record("g", 1),
                await store.get_vote_record("g", 2),
                await store.get_vote_record("other", 1),
            )

    state_after, first, second, other = asyncio.run(main())
    assert state_after is None
    assert first is None and second is None
    assert other == record


def test_corrupt_round_state_raises_store_error(tmp_path):
    path = tmp_path / "games.db"

    async def main():
        async with SqliteGameStore(path) as store:
            async with aiosqlite.connect(str(path)) as db:
                await db.execute(
                    "INSERT INTO round_state (game_id, payload) VALUES (?, ?)", ("g", '{"currentNodeId": "x"}')
                )
                await db.execute("INSERT INTO round_state (game_id, payload) VALUES (?, ?)", ("h", "{nope"))
                await db.commit()
            errors = []
            for game_id in ("g", "h"):
                try:
                    await store.get_round_state(game_id)
                except StoreError as exc:
                    errors.append(str(exc))
            return errors

    errors = asyncio.run(main())
    assert len(errors) == 2
    assert "roundStartTime" in errors[0]
    assert "Corrupt record" in errors[1]


def test_unopened_store_raises(tmp_path):
    store = SqliteGameStore(tmp_path / "games.db")
    with pytest.raises(StoreError, match="not open"):
        asyncio.run(store.get_round_state("g"))
