"""Persistent storage for games: round state, story graph, vote records.

Each record is one JSON document written as a unit, so a RoundState is
never partially updated.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from story.graph import StoryGraph, StoryValidationError, parse_story

from .errors import StoreError
from .state import RoundState
from .tally import VoteRecord

logger = logging.getLogger(__name__)


class GameStore(Protocol):
    async def get_round_state(self, game_id: str) -> RoundState | None: ...

    async def set_round_state(self, game_id: str, state: RoundState) -> None: ...

    async def delete_round_state(self, game_id: str) -> None: ...

    async def get_story_graph(self, game_id: str) -> StoryGraph | None: ...

    async def set_story_graph(self, game_id: str, graph: StoryGraph) -> None: ...

    async def get_vote_record(self, game_id: str, round_number: int) -> VoteRecord | None: ...

    async def set_vote_record(self, game_id: str, round_number: int, record: VoteRecord) -> None: ...

    async def clear_vote_records(self, game_id: str) -> None: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_SCHEMA = """
CREATE TABLE IF NOT EXISTS round_state (
    game_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,        -- RoundState JSON
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS story_graph (
    game_id TEXT PRIMARY KEY,
    payload TEXT NOT NULL,        -- story JSON
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS vote_records (
    game_id TEXT NOT NULL,
    round_number INTEGER NOT NULL,
    payload TEXT NOT NULL,        -- VoteRecord JSON
    updated_at TEXT,
    PRIMARY KEY (game_id, round_number)
);
"""


class SqliteGameStore:
    """SQLite-backed :class:`GameStore`.

    Usage::

        async with SqliteGameStore("data/games.db") as store:
            state = await store.get_round_state("main")
    """

    def __init__(self, db_path: str | Path):
        self._path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(str(self._path))
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Could not open game store at {self._path}: {exc}") from exc
        logger.debug("Game store ready at %s", self._path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteGameStore:
        await self.open()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # ── Helpers ─────────────────────────────────────────────────

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Game store is not open")
        return self._db

    async def _fetch_payload(self, query: str, params: tuple) -> dict | None:
        try:
            cursor = await self._conn().execute(query, params)
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise StoreError(f"Read failed: {exc}") from exc
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError as exc:
            raise StoreError(f"Corrupt record: {exc}") from exc

    async def _write(self, query: str, params: tuple) -> None:
        db = self._conn()
        try:
            await db.execute(query, params)
            await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"Write failed: {exc}") from exc

    # ── Round state ─────────────────────────────────────────────

    async def get_round_state(self, game_id: str) -> RoundState | None:
        data = await self._fetch_payload(
            "SELECT payload FROM round_state WHERE game_id = ?", (game_id,)
        )
        if data is None:
            return None
        try:
            state = RoundState.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Corrupt round state for game {game_id}: {exc}") from exc
        logger.debug(
            "Loaded state for %s: round %d, node %s, active=%s",
            game_id, state.round_number, state.current_node_id, state.active,
        )
        return state

    async def set_round_state(self, game_id: str, state: RoundState) -> None:
        await self._write(
            "INSERT INTO round_state (game_id, payload, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(game_id) DO UPDATE SET payload=excluded.payload, updated_at=excluded.updated_at",
            (game_id, json.dumps(state.to_dict()), _now_iso()),
        )
        logger.debug(
            "Saved state for %s: round %d, node %s", game_id, state.round_number, state.current_node_id,
        )

    async def delete_round_state(self, game_id: str) -> None:
        await self._write("DELETE FROM round_state WHERE game_id = ?", (game_id,))

    # ── Story graph ─────────────────────────────────────────────

    async def get_story_graph(self, game_id: str) -> StoryGraph | None:
        data = await self._fetch_payload(
            "SELECT payload FROM story_graph WHERE game_id = ?", (game_id,)
        )
        if data is None:
            return None
        try:
            return parse_story(data)
        except StoryValidationError as exc:
            raise StoreError(f"Stored story for game {game_id} no longer validates: {exc}") from exc

    async def set_story_graph(self, game_id: str, graph: StoryGraph) -> None:
        await self._write(
            "INSERT INTO story_graph (game_id, payload, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(game_id) DO UPDATE SET payload=excluded.payload, updated_at=excluded.updated_at",
            (game_id, json.dumps(graph.to_dict()), _now_iso()),
        )
        logger.debug("Saved story %r for %s (%d nodes)", graph.title, game_id, len(graph.nodes))

    # ── Vote records ────────────────────────────────────────────

    async def get_vote_record(self, game_id: str, round_number: int) -> VoteRecord | None:
        data = await self._fetch_payload(
            "SELECT payload FROM vote_records WHERE game_id = ? AND round_number = ?",
            (game_id, round_number),
        )
        if data is None:
            return None
        try:
            return VoteRecord.from_dict(data)
        except (KeyError, ValueError, TypeError) as exc:
            raise StoreError(f"Corrupt vote record for {game_id} round {round_number}: {exc}") from exc

    async def set_vote_record(self, game_id: str, round_number: int, record: VoteRecord) -> None:
        await self._write(
            "INSERT INTO vote_records (game_id, round_number, payload, updated_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(game_id, round_number) DO UPDATE SET payload=excluded.payload, "
            "updated_at=excluded.updated_at",
            (game_id, round_number, json.dumps(record.to_dict()), _now_iso()),
        )
        logger.debug(
            "Saved vote record for %s round %d: %d choices", game_id, round_number, len(record.choices),
        )

    async def clear_vote_records(self, game_id: str) -> None:
        await self._write("DELETE FROM vote_records WHERE game_id = ?", (game_id,))


class MemoryGameStore:
    """In-process :class:`GameStore` for dry runs and tests.

    Records are kept as JSON-ready dicts so reads never alias a caller's
    objects, matching what a real store would return.
    """

    def __init__(self) -> None:
        self._states: dict[str, dict] = {}
        self._graphs: dict[str, dict] = {}
        self._votes: dict[tuple[str, int], dict] = {}

    async def get_round_state(self, game_id: str) -> RoundState | None:
        data = self._states.get(game_id)
        return RoundState.from_dict(json.loads(json.dumps(data))) if data is not None else None

    async def set_round_state(self, game_id: str, state: RoundState) -> None:
        self._states[game_id] = state.to_dict()

    async def delete_round_state(self, game_id: str) -> None:
        self._states.pop(game_id, None)

    async def get_story_graph(self, game_id: str) -> StoryGraph | None:
        data = self._graphs.get(game_id)
        return parse_story(data) if data is not None else None

    async def set_story_graph(self, game_id: str, graph: StoryGraph) -> None:
        self._graphs[game_id] = graph.to_dict()

    async def get_vote_record(self, game_id: str, round_number: int) -> VoteRecord | None:
        data = self._votes.get((game_id, round_number))
        return VoteRecord.from_dict(json.loads(json.dumps(data))) if data is not None else None

    async def set_vote_record(self, game_id: str, round_number: int, record: VoteRecord) -> None:
        self._votes[(game_id, round_number)] = record.to_dict()

    async def clear_vote_records(self, game_id: str) -> None:
        for key in [k for k in self._votes if k[0] == game_id]:
            del self._votes[key]
