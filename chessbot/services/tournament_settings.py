"""Closed, versioned tournament configuration.

Every supported option is enumerated here; unknown or misspelled keys are
rejected instead of being silently ignored.
"""

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from chessbot.errors import InvalidArgumentError
from chessbot.services.bracket import TournamentFormat, parse_format

SETTINGS_VERSION = 1
MIN_PARTICIPANTS = 2


@dataclass(frozen=True)
class TournamentSettings:
    """
    Options attached to a tournament.

    Attributes:
        max_participants: Registration cap
        format: Bracket format
        time_control: Clock, e.g. "10+5"
        is_rated: Whether games move ratings
        auto_start: Start as soon as the cap is reached or start time passes
        auto_advance: Advance rounds automatically when a round finishes
        rounds: Swiss only; None means ceil(log2(n))
        version: Structure version
    """
    max_participants: int = 16
    format: TournamentFormat = TournamentFormat.SINGLE_ELIMINATION
    time_control: str = "10+5"
    is_rated: bool = True
    auto_start: bool = False
    auto_advance: bool = True
    rounds: Optional[int] = None
    version: int = SETTINGS_VERSION

    def __post_init__(self):
        object.__setattr__(self, "format", parse_format(self.format))
        if not isinstance(self.max_participants, int) or self.max_participants < MIN_PARTICIPANTS:
            raise InvalidArgumentError(
                f"max_participants must be an integer >= {MIN_PARTICIPANTS}",
                max_participants=self.max_participants,
            )
        if self.rounds is not None and (not isinstance(self.rounds, int) or self.rounds < 1):
            raise InvalidArgumentError("rounds must be a positive integer", rounds=self.rounds)
        if self.version != SETTINGS_VERSION:
            raise InvalidArgumentError(
                f"Unsupported settings version: {self.version}", version=self.version
            )

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "TournamentSettings":
        """
        Build settings from a plain mapping (bot command, API body, JSON column).

        Raises:
            InvalidArgumentError: On unknown keys or invalid values
        """
        data = dict(data or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidArgumentError(
                f"Unknown tournament options: {', '.join(unknown)}", options=unknown
            )
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["format"] = self.format.value
        return data
