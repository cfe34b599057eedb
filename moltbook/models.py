"""Data models for Moltbook API responses."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _extract_entity_id(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = _as_text(data.get(key, ""))
        if value:
            return value

    url = _as_text(data.get("url", ""))
    if url:
        match = re.search(r"/posts/([^/?#]+)", url)
        if match:
            return match.group(1)
    return ""


@dataclass
class Post:
    id: str
    title: str
    content: str = ""
    url: str = ""

    @classmethod
    def from_api(cls, data: dict) -> Post:
        return cls(
            id=_extract_entity_id(data, "id", "post_id", "uuid"),
            title=_as_text(data.get("title", "")),
            content=_as_text(data.get("content", "")),
            url=_as_text(data.get("url", "")),
        )


@dataclass
class Comment:
    id: str
    post_id: str
    content: str = ""
    upvotes: int = 0
    downvotes: int = 0

    @property
    def score(self) -> int:
        """Net votes, never below zero. This is what a round tally counts."""
        return max(0, self.upvotes - self.downvotes)

    @classmethod
    def from_api(cls, data: dict) -> Comment:
        upvotes = data.get("upvotes")
        if upvotes is None:
            # Some responses only carry the net score
            upvotes = data.get("score", 0)
        return cls(
            id=_extract_entity_id(data, "id", "comment_id", "uuid"),
            post_id=_extract_entity_id(data, "post_id", "postId"),
            content=_as_text(data.get("content", "")),
            upvotes=_as_int(upvotes),
            downvotes=_as_int(data.get("downvotes", 0)),
        )
