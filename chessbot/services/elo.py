"""
ELO Rating Calculator for rated chess games.

Implements the standard ELO formula with an adaptive K-factor:
provisional players move fast, strong players move slowly.
All methods are pure; nothing here touches storage.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from chessbot.errors import InvalidArgumentError


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards +infinity (2.5 -> 3, -2.5 -> -2)."""
    return math.floor(value + 0.5)


class MatchOutcome(str, Enum):
    """Result of a game from the point of view of the pairing."""
    PLAYER1_WINS = "player1_wins"
    PLAYER2_WINS = "player2_wins"
    DRAW = "draw"


class GameResult(str, Enum):
    """Result of a game from one player's point of view."""
    WIN = "win"
    LOSS = "loss"
    DRAW = "draw"


class ReliabilityCategory(str, Enum):
    PROVISIONAL = "provisional"
    ESTABLISHED = "established"
    RELIABLE = "reliable"
    HIGHLY_RELIABLE = "highly_reliable"


# Aliases accepted from bot commands and older clients
OUTCOME_ALIASES = {
    "player1_wins": MatchOutcome.PLAYER1_WINS,
    "white_wins": MatchOutcome.PLAYER1_WINS,
    "1-0": MatchOutcome.PLAYER1_WINS,
    "player2_wins": MatchOutcome.PLAYER2_WINS,
    "black_wins": MatchOutcome.PLAYER2_WINS,
    "0-1": MatchOutcome.PLAYER2_WINS,
    "draw": MatchOutcome.DRAW,
    "1/2-1/2": MatchOutcome.DRAW,
}

ACTUAL_SCORES = {
    MatchOutcome.PLAYER1_WINS: (1.0, 0.0),
    MatchOutcome.PLAYER2_WINS: (0.0, 1.0),
    MatchOutcome.DRAW: (0.5, 0.5),
}

RESULT_SCORES = {
    GameResult.WIN: 1.0,
    GameResult.DRAW: 0.5,
    GameResult.LOSS: 0.0,
}


def parse_outcome(value: Union[str, MatchOutcome]) -> MatchOutcome:
    """
    Convert a raw outcome value to MatchOutcome.

    Raises:
        InvalidArgumentError: If the value is not a known outcome
    """
    if isinstance(value, MatchOutcome):
        return value
    outcome = OUTCOME_ALIASES.get(str(value).strip().lower())
    if outcome is None:
        raise InvalidArgumentError(f"Invalid game result: {value}", outcome=value)
    return outcome


def parse_result(value: Union[str, GameResult]) -> GameResult:
    if isinstance(value, GameResult):
        return value
    try:
        return GameResult(str(value).strip().lower())
    except ValueError:
        raise InvalidArgumentError(f"Invalid result: {value}", result=value) from None


@dataclass(frozen=True)
class EloOptions:
    """
    Per-call overrides. ``None`` means "use the calculator default".

    Attributes:
        k_factor: Fixed K-factor for both players
        provisional_threshold: Games below which a player is provisional
        rating_floor: Lowest reachable rating
        rating_ceiling: Highest reachable rating
    """
    k_factor: Optional[int] = None
    provisional_threshold: Optional[int] = None
    rating_floor: Optional[int] = None
    rating_ceiling: Optional[int] = None


@dataclass(frozen=True)
class RatingChange:
    """Result of applying one game to two ratings."""
    new_rating_a: int
    new_rating_b: int
    delta_a: int
    delta_b: int


@dataclass(frozen=True)
class PerformanceGame:
    opponent_rating: int
    result: GameResult


@dataclass(frozen=True)
class RatingReliability:
    reliability: float  # 0..1
    category: ReliabilityCategory


class EloCalculator:
    """
    ELO rating calculator.

    K-factor selection, in order of precedence:
    - explicit override
    - provisional players (fewer than PROVISIONAL_GAMES_THRESHOLD games)
    - rating bands: >= 2400, >= 2100, below
    """

    PROVISIONAL_K_FACTOR = 40
    LOW_RATING_K_FACTOR = 32
    MEDIUM_RATING_K_FACTOR = 24
    HIGH_RATING_K_FACTOR = 16
    MEDIUM_RATING_THRESHOLD = 2100
    HIGH_RATING_THRESHOLD = 2400
    PROVISIONAL_GAMES_THRESHOLD = 30
    RATING_FLOOR = 100
    RATING_CEILING = 3000

    def __init__(
        self,
        rating_floor: Optional[int] = None,
        rating_ceiling: Optional[int] = None,
        provisional_threshold: Optional[int] = None,
    ):
        self.rating_floor = self.RATING_FLOOR if rating_floor is None else rating_floor
        self.rating_ceiling = self.RATING_CEILING if rating_ceiling is None else rating_ceiling
        self.provisional_threshold = (
            self.PROVISIONAL_GAMES_THRESHOLD if provisional_threshold is None else provisional_threshold
        )
        if self.rating_floor >= self.rating_ceiling:
            raise InvalidArgumentError(
                "Rating floor must be below rating ceiling",
                floor=self.rating_floor,
                ceiling=self.rating_ceiling,
            )

    def expected_score(self, rating_a: int, rating_b: int) -> float:
        """
        Expected score of player A against player B.

        E = 1 / (1 + 10^((R_b - R_a) / 400))

        Returns:
            Expected score strictly between 0 and 1
        """
        return 1.0 / (1.0 + 10 ** ((rating_b - rating_a) / 400.0))

    def k_factor(self, rating: int, games_played: int, options: Optional[EloOptions] = None) -> int:
        """
        Pick the K-factor for a player.

        Args:
            rating: Current rating
            games_played: Rated games played so far
            options: Optional overrides

        Returns:
            K-factor (integer)
        """
        if options is not None and options.k_factor is not None:
            return options.k_factor

        threshold = self.provisional_threshold
        if options is not None and options.provisional_threshold is not None:
            threshold = options.provisional_threshold

        if games_played < threshold:
            return self.PROVISIONAL_K_FACTOR
        if rating >= self.HIGH_RATING_THRESHOLD:
            return self.HIGH_RATING_K_FACTOR
        if rating >= self.MEDIUM_RATING_THRESHOLD:
            return self.MEDIUM_RATING_K_FACTOR
        return self.LOW_RATING_K_FACTOR

    def clamp(self, rating: int, options: Optional[EloOptions] = None) -> int:
        floor = self.rating_floor
        ceiling = self.rating_ceiling
        if options is not None:
            if options.rating_floor is not None:
                floor = options.rating_floor
            if options.rating_ceiling is not None:
                ceiling = options.rating_ceiling
        return max(floor, min(ceiling, rating))

    def apply_result(
        self,
        rating_a: int,
        rating_b: int,
        games_played_a: int,
        games_played_b: int,
        outcome: Union[str, MatchOutcome],
        options: Optional[EloOptions] = None,
    ) -> RatingChange:
        """
        Calculate both new ratings after a game.

        Each side uses its own K-factor and is clamped independently, so
        delta_a and delta_b are not necessarily exact negatives.

        Args:
            rating_a: Rating of player 1
            rating_b: Rating of player 2
            games_played_a: Games played by player 1
            games_played_b: Games played by player 2
            outcome: player1_wins, player2_wins or draw
            options: Optional overrides

        Returns:
            RatingChange with new ratings and the applied deltas

        Raises:
            InvalidArgumentError: If outcome is not recognised
        """
        outcome = parse_outcome(outcome)
        actual_a, actual_b = ACTUAL_SCORES[outcome]

        expected_a = self.expected_score(rating_a, rating_b)
        expected_b = self.expected_score(rating_b, rating_a)

        k_a = self.k_factor(rating_a, games_played_a, options)
        k_b = self.k_factor(rating_b, games_played_b, options)

        new_a = self.clamp(rating_a + round_half_up(k_a * (actual_a - expected_a)), options)
        new_b = self.clamp(rating_b + round_half_up(k_b * (actual_b - expected_b)), options)

        return RatingChange(
            new_rating_a=new_a,
            new_rating_b=new_b,
            delta_a=new_a - rating_a,
            delta_b=new_b - rating_b,
        )

    def rating_change(
        self,
        rating: int,
        opponent_rating: int,
        result: Union[str, GameResult],
        games_played: int = 50,
    ) -> int:
        """Unclamped rating change for a single player ("what if I win?")."""
        actual = RESULT_SCORES[parse_result(result)]
        expected = self.expected_score(rating, opponent_rating)
        return round_half_up(self.k_factor(rating, games_played) * (actual - expected))

    def performance_rating(self, games: Iterable[PerformanceGame]) -> int:
        """
        Rating implied by a series of results.

        Average opponent rating plus 400 * log10(p / (1 - p)), with fixed
        +400 / -400 offsets for a perfect or zero score.

        Returns:
            Performance rating, 0 for an empty series
        """
        games = list(games)
        if not games:
            return 0

        total = sum(RESULT_SCORES[parse_result(game.result)] for game in games)
        average_opponent = sum(game.opponent_rating for game in games) / len(games)
        p = total / len(games)

        if p == 1:
            difference = 400.0
        elif p == 0:
            difference = -400.0
        else:
            difference = 400 * math.log10(p / (1 - p))

        return round_half_up(average_opponent + difference)

    def required_rating(self, opponent_rating: int, target_score: float) -> int:
        """
        Rating needed to expect ``target_score`` against an opponent.

        Raises:
            InvalidArgumentError: If target_score is not inside (0, 1)
        """
        if not 0 < target_score < 1:
            raise InvalidArgumentError(
                "Target score must be between 0 and 1", target_score=target_score
            )
        return opponent_rating + round_half_up(400 * math.log10(target_score / (1 - target_score)))

    def rating_reliability(
        self, games_played: int, recent_variance: Optional[float] = None
    ) -> RatingReliability:
        """
        How far a rating can be trusted.

        Base reliability is games/100 capped at 1, discounted by up to 30%
        proportionally to recent_variance / 200.
        """
        reliability = min(1.0, games_played / 100)
        if recent_variance is not None:
            penalty = max(0.0, min(0.3, recent_variance / 200))
            reliability *= 1 - penalty

        if games_played < 10:
            category = ReliabilityCategory.PROVISIONAL
        elif games_played < 50:
            category = ReliabilityCategory.ESTABLISHED
        elif games_played < 100:
            category = ReliabilityCategory.RELIABLE
        else:
            category = ReliabilityCategory.HIGHLY_RELIABLE

        return RatingReliability(reliability=reliability, category=category)


# Default instance for ad-hoc rating queries
elo_calculator = EloCalculator()
