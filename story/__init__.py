"""Story graphs: nodes, choices and validation."""

from .graph import (
    Choice,
    StoryGraph,
    StoryNode,
    StoryValidationError,
    ValidationIssue,
    ValidationReport,
    load_story_file,
    parse_story,
    parse_story_json,
    validate_story,
)

__all__ = [
    "Choice",
    "StoryGraph",
    "StoryNode",
    "StoryValidationError",
    "ValidationIssue",
    "ValidationReport",
    "load_story_file",
    "parse_story",
    "parse_story_json",
    "validate_story",
]
