"""Round publication on Moltbook.

A round is one post for the current node plus one comment per choice.
Comment scores are the votes; the comment ids become the round's
VoteRecord.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from moltbook.client import MoltbookClient, MoltbookError
from story.graph import StoryGraph, StoryNode

from .retry import Sleep
from .state import RoundState, RoundStateMachine
from .tally import VoteRecord

logger = logging.getLogger(__name__)

DEFAULT_CHOICE_LABELS = ("A", "B", "C", "D", "E")


@dataclass
class PublishResult:
    success: bool
    post_id: str = ""
    error: str = ""
    vote_record: VoteRecord | None = None


class RoundPublisher(Protocol):
    async def publish_next_round(
        self, graph: StoryGraph, node: StoryNode, state: RoundState
    ) -> PublishResult: ...

    async def publish_recap(self, graph: StoryGraph, state: RoundState) -> PublishResult: ...


class MoltbookVoteSource:
    """Reads a choice comment's score."""

    def __init__(self, client: MoltbookClient):
        self._client = client

    async def get_score(self, reference_id: str) -> int:
        comment = await self._client.get_comment(reference_id)
        return comment.score


class MoltbookPublisher:
    """Publishes rounds and the final recap to a submolt."""

    def __init__(
        self,
        client: MoltbookClient,
        submolt: str = "general",
        title_prefix: str = "SubQuest",
        comment_delay: float = 6.0,
        choice_labels: tuple[str, ...] = DEFAULT_CHOICE_LABELS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self._submolt = submolt
        self._title_prefix = title_prefix
        self._comment_delay = comment_delay
        self._labels = choice_labels
        self._sleep = sleep

    def _label(self, idx: int) -> str:
        return self._labels[idx] if idx < len(self._labels) else str(idx + 1)

    async def publish_next_round(
        self, graph: StoryGraph, node: StoryNode, state: RoundState
    ) -> PublishResult:
        title = f"{self._title_prefix} - Round {state.round_number} - {graph.title}: {node.title}"
        lines = [node.content]
        if node.image_url:
            lines += ["", node.image_url]
        lines += ["", "Upvote the comment with your choice. The top comment decides what happens next."]

        try:
            post = await self._client.create_post(
                title=title, submolt=self._submolt, content="\n".join(lines)
            )
            if not post.id:
                return PublishResult(success=False, error="Moltbook returned a post without an id")

            record = VoteRecord.for_round(node, state)
            for idx, choice in enumerate(node.choices):
                if idx:
                    # Comment creation is rate limited
                    await self._sleep(self._comment_delay)
                comment = await self._client.create_comment(
                    post.id, f"Option {self._label(idx)}: {choice.text}"
                )
                if not comment.id:
                    return PublishResult(
                        success=False, post_id=post.id,
                        error=f"Moltbook returned no comment id for choice {choice.id}",
                    )
                record.track(node, choice.id, comment.id)
        except (MoltbookError, httpx.HTTPError) as exc:
            logger.warning("Publishing round %d failed: %s", state.round_number, exc)
            return PublishResult(success=False, error=f"Round post failed: {exc}")

        logger.info(
            "Published round %d (%s) as post %s with %d choices",
            state.round_number, node.id, post.id, len(record.choices),
        )
        return PublishResult(success=True, post_id=post.id, vote_record=record)

    async def publish_recap(self, graph: StoryGraph, state: RoundState) -> PublishResult:
        steps = RoundStateMachine(graph).path_details(state)
        final = graph.get_node(state.current_node_id)
        title = f"{self._title_prefix} - FINALE: {graph.title} ({state.round_number} rounds)"

        lines: list[str] = []
        if final is not None:
            lines += [final.title, "", final.content, ""]
        lines.append("The path we chose:")
        for number, step in enumerate(steps, start=1):
            lines.append(f"Round {number}: {step.title}")
            if step.choice_made:
                lines.append(f"  -> {step.choice_made}")

        try:
            post = await self._client.create_post(
                title=title, submolt=self._submolt, content="\n".join(lines)
            )
        except (MoltbookError, httpx.HTTPError) as exc:
            logger.warning("Publishing recap failed: %s", exc)
            return PublishResult(success=False, error=f"Recap post failed: {exc}")

        logger.info("Published recap for %r as post %s", graph.title, post.id)
        return PublishResult(success=True, post_id=post.id)
