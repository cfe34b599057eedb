"""Errors raised by the round engine."""

from __future__ import annotations


class GameError(Exception):
    """Base class for round engine errors."""


class GameInactiveError(GameError):
    """Raised when a transition is requested on a game that is not active."""


class NodeNotFoundError(GameError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Story node {node_id} not found")


class UnknownChoiceError(GameError):
    """Raised when a choice id is not one of the current node's choices."""

    def __init__(self, node_id: str, choice_id: str):
        self.node_id = node_id
        self.choice_id = choice_id
        super().__init__(f"Choice {choice_id!r} not found in node {node_id}")


class InvalidWinningChoiceError(GameError):
    """The tally picked a choice whose edge does not resolve.

    This points at a graph/state inconsistency. Retrying reproduces it.
    """

    def __init__(self, node_id: str, choice_id: str, reason: str):
        self.node_id = node_id
        self.choice_id = choice_id
        super().__init__(f"Invalid winning choice {choice_id!r} at node {node_id}: {reason}")


class StoreError(GameError):
    """Raised when the persistent store cannot complete an operation."""


class PublishError(GameError):
    """Raised when a round or recap could not be published."""


class RollbackError(GameError):
    """Restoring the pre-transition state failed. Needs an operator."""

    def __init__(self, message: str, game_id: str, round_number: int):
        self.game_id = game_id
        self.round_number = round_number
        super().__init__(message)
