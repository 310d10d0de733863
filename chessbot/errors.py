"""Typed, recoverable errors raised by the tournament core.

Calling layers (bot commands, API handlers) catch ``ChessBotError`` and
render ``error.message`` to the user.
"""

from typing import Any, Dict, Optional


class ChessBotError(Exception):
    """Base class for every recoverable domain error."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value}" for key, value in self.context.items())
        return f"{self.message} ({details})"


class NotFoundError(ChessBotError):
    """Unknown tournament, competitor or match."""

    def __init__(self, entity: str, entity_id: Optional[Any] = None):
        super().__init__(f"{entity.capitalize()} not found", entity=entity, id=entity_id)
        self.entity = entity
        self.entity_id = entity_id


class InvalidStateError(ChessBotError):
    """Operation is illegal for the current lifecycle state."""


class TournamentFullError(ChessBotError):
    """Participant cap reached."""


class InsufficientParticipantsError(ChessBotError):
    """Fewer than two participants registered at start time."""


class InvalidArgumentError(ChessBotError, ValueError):
    """Malformed outcome value, out-of-range target score, bad settings."""
