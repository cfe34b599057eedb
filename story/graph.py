"""Story graph model, validation and loading.

A story is a directed graph of nodes joined by labeled choices. Graphs are
validated once when a game starts and are read-only afterwards.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Choice:
    id: str
    text: str
    next_node_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "text": self.text, "nextNodeId": self.next_node_id}


@dataclass(frozen=True)
class StoryNode:
    id: str
    title: str
    content: str
    image_url: str | None = None
    choices: tuple[Choice, ...] = ()
    is_end: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.is_end

    def get_choice(self, choice_id: str) -> Choice | None:
        for choice in self.choices:
            if choice.id == choice_id:
                return choice
        return None

    def choice_index(self, choice_id: str) -> int | None:
        for idx, choice in enumerate(self.choices):
            if choice.id == choice_id:
                return idx
        return None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
        }
        if self.image_url is not None:
            data["imageUrl"] = self.image_url
        if self.is_end:
            data["isEnd"] = True
        if self.choices:
            data["choices"] = [c.to_dict() for c in self.choices]
        return data


@dataclass(frozen=True)
class StoryGraph:
    """Validated story. Build it with :func:`parse_story`, not directly."""

    title: str
    start_node_id: str
    nodes: Mapping[str, StoryNode]
    description: str = ""

    def get_node(self, node_id: str) -> StoryNode | None:
        return self.nodes.get(node_id)

    @property
    def start_node(self) -> StoryNode:
        return self.nodes[self.start_node_id]

    def terminal_node_ids(self) -> list[str]:
        return [node_id for node_id, node in self.nodes.items() if node.is_terminal]

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "startNodeId": self.start_node_id,
            "nodes": {node_id: node.to_dict() for node_id, node in self.nodes.items()},
        }


# ── Validation ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    code: str  # "structure" | "start_node" | "terminal_choices" | "dangling_choice" | "no_terminal" | "json"
    message: str
    node_id: str | None = None
    choice_id: str | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class ValidationReport:
    """Outcome of :func:`validate_story`.

    ``graph`` is only populated when ``errors`` is empty. Unreachable nodes
    are reported as warnings and never block a game from starting.
    """

    graph: StoryGraph | None = None
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    unreachable_node_ids: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, node_id: str | None = None, choice_id: str | None = None) -> None:
        self.errors.append(ValidationIssue(code, message, node_id=node_id, choice_id=choice_id))


class StoryValidationError(Exception):
    """Raised when a story cannot be used. Carries every finding, not just the first."""

    def __init__(self, issues: list[ValidationIssue], warnings: list[str] | None = None):
        self.issues = list(issues)
        self.warnings = list(warnings or [])
        summary = "; ".join(issue.message for issue in self.issues) or "invalid story"
        super().__init__(f"Story validation failed ({len(self.issues)} error(s)): {summary}")


_MISSING = object()


def _field(data: Mapping[str, Any], *keys: str, default: Any = _MISSING) -> Any:
    """Return the first present key. Story files may use camelCase or snake_case."""
    for key in keys:
        if key in data:
            return data[key]
    return default


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def _check_choice(raw: Any, node_id: str, idx: int, report: ValidationReport) -> Choice | None:
    where = f"Node {node_id} choice {idx}"
    if not isinstance(raw, Mapping):
        report.error("structure", f"{where} must be an object", node_id=node_id)
        return None

    choice_id = _field(raw, "id", default=None)
    text = _field(raw, "text", "label", default=None)
    next_node_id = _field(raw, "nextNodeId", "next_node_id", default=None)

    valid = True
    if not _is_text(choice_id):
        report.error("structure", f"{where} must have a non-empty id string", node_id=node_id)
        valid = False
    if not _is_text(text):
        report.error("structure", f"{where} must have a non-empty text string", node_id=node_id,
                     choice_id=choice_id if isinstance(choice_id, str) else None)
        valid = False
    if not _is_text(next_node_id):
        report.error("structure", f"{where} must have a non-empty nextNodeId string", node_id=node_id,
                     choice_id=choice_id if isinstance(choice_id, str) else None)
        valid = False
    if not valid:
        return None
    return Choice(id=choice_id, text=text, next_node_id=next_node_id)


def _check_node(node_id: str, raw: Any, report: ValidationReport) -> StoryNode | None:
    if not isinstance(raw, Mapping):
        report.error("structure", f"Node {node_id} must be an object", node_id=node_id)
        return None

    valid = True
    declared_id = _field(raw, "id", default=None)
    if declared_id != node_id:
        report.error("structure", f"Node {node_id} has mismatched id: {declared_id!r}", node_id=node_id)
        valid = False

    title = _field(raw, "title", default=None)
    if not _is_text(title):
        report.error("structure", f"Node {node_id} must have a non-empty title string", node_id=node_id)
        valid = False

    content = _field(raw, "content", "body", default=None)
    if not _is_text(content):
        report.error("structure", f"Node {node_id} must have a non-empty content string", node_id=node_id)
        valid = False

    image_url = _field(raw, "imageUrl", "image_url", default=None)
    if image_url is not None and not isinstance(image_url, str):
        report.error("structure", f"Node {node_id} imageUrl must be a string if provided", node_id=node_id)
        valid = False

    is_end = _field(raw, "isEnd", "is_end", default=False)
    if not isinstance(is_end, bool):
        report.error("structure", f"Node {node_id} isEnd must be a boolean if provided", node_id=node_id)
        valid = False

    raw_choices = _field(raw, "choices", default=None)
    choices: list[Choice] = []
    if raw_choices is not None:
        if not isinstance(raw_choices, list):
            report.error("structure", f"Node {node_id} choices must be a list if provided", node_id=node_id)
            valid = False
        else:
            seen: set[str] = set()
            for idx, raw_choice in enumerate(raw_choices):
                choice = _check_choice(raw_choice, node_id, idx, report)
                if choice is None:
                    valid = False
                    continue
                if choice.id in seen:
                    report.error("structure", f"Node {node_id} has duplicate choice id {choice.id!r}",
                                 node_id=node_id, choice_id=choice.id)
                    valid = False
                    continue
                seen.add(choice.id)
                choices.append(choice)

    if not valid:
        return None
    return StoryNode(
        id=node_id,
        title=title,
        content=content,
        image_url=image_url,
        choices=tuple(choices),
        is_end=is_end,
    )


def _reachable_from(start_node_id: str, nodes: Mapping[str, StoryNode]) -> set[str]:
    reached: set[str] = set()
    to_visit = [start_node_id]
    while to_visit:
        node_id = to_visit.pop()
        if node_id in reached or node_id not in nodes:
            continue
        reached.add(node_id)
        for choice in nodes[node_id].choices:
            if choice.next_node_id not in reached:
                to_visit.append(choice.next_node_id)
    return reached


def validate_story(data: Any) -> ValidationReport:
    """Validate raw story data and collect every problem found.

    Checks run in a fixed order: structure, start node, terminal/choice
    exclusivity, choice references, reachability (warnings only), and the
    presence of at least one ending.
    """
    report = ValidationReport()

    # (a) structure
    if not isinstance(data, Mapping):
        report.error("structure", "Story must be an object")
        return report

    title = _field(data, "title", default=None)
    if not _is_text(title):
        report.error("structure", "Story must have a non-empty title string")
    description = _field(data, "description", default="")
    if not isinstance(description, str):
        report.error("structure", "Story description must be a string if provided")
    start_node_id = _field(data, "startNodeId", "start_node_id", default=None)
    if not _is_text(start_node_id):
        report.error("structure", "Story must have a non-empty startNodeId string")
        start_node_id = None

    raw_nodes = _field(data, "nodes", default=None)
    if not isinstance(raw_nodes, Mapping):
        report.error("structure", "Story must have a nodes object")
        return report
    if not raw_nodes:
        report.error("structure", "Story must contain at least one node")
        return report

    nodes: dict[str, StoryNode] = {}
    for node_id, raw_node in raw_nodes.items():
        node = _check_node(str(node_id), raw_node, report)
        if node is not None:
            nodes[node.id] = node

    # (b) start node
    if start_node_id is not None and start_node_id not in raw_nodes:
        report.error("start_node", f"Start node {start_node_id} not found in story nodes", node_id=start_node_id)

    # (c) endings carry no choices, everything else carries at least one
    for node in nodes.values():
        if node.is_end and node.choices:
            report.error("terminal_choices", f"Node {node.id} is marked as end but has choices", node_id=node.id)
        elif not node.is_end and not node.choices:
            report.error("terminal_choices", f"Node {node.id} is not marked as end but has no choices",
                         node_id=node.id)

    # (d) referential integrity
    for node in nodes.values():
        for choice in node.choices:
            if choice.next_node_id not in raw_nodes:
                report.error(
                    "dangling_choice",
                    f"Node {node.id} choice {choice.id!r} references non-existent node {choice.next_node_id}",
                    node_id=node.id,
                    choice_id=choice.id,
                )

    # (e) reachability
    if start_node_id is not None and start_node_id in nodes:
        reached = _reachable_from(start_node_id, nodes)
        report.unreachable_node_ids = [node_id for node_id in nodes if node_id not in reached]
        if report.unreachable_node_ids:
            report.warnings.append(
                f"Found {len(report.unreachable_node_ids)} unreachable node(s): "
                + ", ".join(report.unreachable_node_ids)
            )

    # (f) at least one ending
    has_end = any(
        isinstance(raw, Mapping) and _field(raw, "isEnd", "is_end", default=False) is True
        for raw in raw_nodes.values()
    )
    if not has_end:
        report.error("no_terminal", "Story must contain at least one end node (isEnd: true)")

    if report.ok:
        report.graph = StoryGraph(
            title=title,
            description=description,
            start_node_id=start_node_id,
            nodes=MappingProxyType(nodes),
        )
        logger.debug(
            "Story %r validated: %d nodes, %d endings",
            title, len(nodes), len(report.graph.terminal_node_ids()),
        )
    for warning in report.warnings:
        logger.warning("Story %r: %s", title, warning)
    return report


# ── Loading ─────────────────────────────────────────────────────


def parse_story(data: Any) -> StoryGraph:
    """Validate ``data`` and return the graph, or raise with the full report."""
    report = validate_story(data)
    if not report.ok:
        raise StoryValidationError(report.errors, report.warnings)
    return report.graph


def parse_story_json(text: str) -> StoryGraph:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise StoryValidationError([ValidationIssue("json", f"Invalid JSON format: {exc}")]) from exc
    return parse_story(data)


def load_story_file(path: str | Path) -> StoryGraph:
    path = Path(path)
    graph = parse_story_json(path.read_text(encoding="utf-8"))
    logger.info("Loaded story %r from %s (%d nodes)", graph.title, path, len(graph.nodes))
    return graph
