"""
Bracket generation - pairings for one tournament round.

Pure functions: given participant ids (and, for formats that need it,
their running records) produce the pairings of a single round. Input order
is significant only as a tiebreak; callers shuffle beforehand when they want
random draws (see ``shuffle_participants``).
"""

import math
import random
from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Union

from chessbot.errors import InvalidArgumentError
from chessbot.services.elo import MatchOutcome


class TournamentFormat(str, Enum):
    SINGLE_ELIMINATION = "single_elimination"
    DOUBLE_ELIMINATION = "double_elimination"
    SWISS = "swiss"
    ROUND_ROBIN = "round_robin"


# Losses after which a competitor is out
ELIMINATION_LOSSES = {
    TournamentFormat.SINGLE_ELIMINATION: 1,
    TournamentFormat.DOUBLE_ELIMINATION: 2,
}


def parse_format(value: Union[str, TournamentFormat]) -> TournamentFormat:
    if isinstance(value, TournamentFormat):
        return value
    try:
        return TournamentFormat(str(value).strip().lower())
    except ValueError:
        raise InvalidArgumentError(f"Unsupported tournament format: {value}", format=value) from None


@dataclass(frozen=True)
class Pairing:
    """Two-player match, or a bye when player2_id is None."""
    player1_id: int
    player2_id: Optional[int] = None

    @property
    def is_bye(self) -> bool:
        return self.player2_id is None


@dataclass
class PlayerRecord:
    """
    Running record of a competitor inside one tournament.

    Attributes:
        score: Points (win or bye 1, draw 0.5)
        wins: Games won (byes excluded)
        draws: Games drawn
        losses: Games lost
        opponents: Ids already faced
        byes: Number of byes received
    """
    score: float = 0.0
    wins: int = 0
    draws: int = 0
    losses: int = 0
    opponents: Set[int] = field(default_factory=set)
    byes: int = 0


def build_records(matches: Iterable, participant_ids: Iterable[int] = ()) -> Dict[int, PlayerRecord]:
    """
    Aggregate completed matches into per-competitor records.

    Args:
        matches: Objects with player1_id, player2_id, outcome, is_complete, is_bye
        participant_ids: Ids that get an empty record even without games

    Returns:
        Dict mapping competitor id to PlayerRecord
    """
    records: Dict[int, PlayerRecord] = {pid: PlayerRecord() for pid in participant_ids}

    for match in matches:
        if not match.is_complete:
            continue
        first = records.setdefault(match.player1_id, PlayerRecord())
        if match.is_bye or match.player2_id is None:
            first.byes += 1
            first.score += 1
            continue

        second = records.setdefault(match.player2_id, PlayerRecord())
        first.opponents.add(match.player2_id)
        second.opponents.add(match.player1_id)

        outcome = MatchOutcome(match.outcome)
        if outcome == MatchOutcome.PLAYER1_WINS:
            winner, loser = first, second
        elif outcome == MatchOutcome.PLAYER2_WINS:
            winner, loser = second, first
        else:
            first.draws += 1
            second.draws += 1
            first.score += 0.5
            second.score += 0.5
            continue
        winner.wins += 1
        winner.score += 1
        loser.losses += 1

    return records


def shuffle_participants(participants: Sequence[int], rng: Optional[random.Random] = None) -> List[int]:
    """Return a shuffled copy; pass a seeded Random for reproducible draws."""
    shuffled = list(participants)
    (rng or random.Random()).shuffle(shuffled)
    return shuffled


def swiss_rounds(participant_count: int, requested: Optional[int] = None) -> int:
    """Number of Swiss rounds: the requested count, else ceil(log2(n))."""
    if requested:
        return requested
    if participant_count < 2:
        return 0
    return math.ceil(math.log2(participant_count))


def generate_pairings(
    participants: Sequence[int],
    fmt: Union[str, TournamentFormat],
    records: Optional[Mapping[int, PlayerRecord]] = None,
) -> List[Pairing]:
    """
    Produce the pairings for one round.

    Args:
        participants: Competitor ids still in contention
        fmt: Tournament format
        records: Running records (used by double elimination and Swiss)

    Returns:
        List of pairings; at most one bye

    Raises:
        InvalidArgumentError: If the format is unknown or ids repeat
    """
    fmt = parse_format(fmt)
    if len(set(participants)) != len(participants):
        raise InvalidArgumentError("Duplicate participant in pairing input")
    records = records or {}

    if fmt == TournamentFormat.SINGLE_ELIMINATION:
        return _pair_sequential(participants)
    if fmt == TournamentFormat.ROUND_ROBIN:
        return [Pairing(a, b) for a, b in combinations(participants, 2)]
    if fmt == TournamentFormat.DOUBLE_ELIMINATION:
        return _pair_double_elimination(participants, records)
    return _pair_swiss(participants, records)


def _pair_sequential(participants: Sequence[int]) -> List[Pairing]:
    pairings = [
        Pairing(participants[i], participants[i + 1])
        for i in range(0, len(participants) - 1, 2)
    ]
    if len(participants) % 2 == 1:
        pairings.append(Pairing(participants[-1]))
    return pairings


def _pair_double_elimination(
    participants: Sequence[int], records: Mapping[int, PlayerRecord]
) -> List[Pairing]:
    """
    Pair inside the winners bracket (no losses) and the losers bracket.

    An odd player out of the winners bracket meets the first player of the
    losers bracket, so a grand final and its reset fall out naturally.
    """
    winners = [p for p in participants if records.get(p, PlayerRecord()).losses == 0]
    losers = [p for p in participants if records.get(p, PlayerRecord()).losses > 0]

    pairings: List[Pairing] = []
    crossover: Optional[Pairing] = None
    if len(winners) % 2 == 1 and losers:
        crossover = Pairing(winners.pop(), losers.pop(0))

    pairings.extend(_pair_sequential(winners))
    if crossover is not None:
        pairings.append(crossover)
    pairings.extend(_pair_sequential(losers))
    # keep the single bye, if any, at the end
    pairings.sort(key=lambda pairing: pairing.is_bye)
    return pairings


def _pair_swiss(participants: Sequence[int], records: Mapping[int, PlayerRecord]) -> List[Pairing]:
    """
    Pair by descending score, avoiding rematches where possible.

    Ties keep input order. The bye goes to the lowest-ranked player
    who has not had one yet.
    """
    def record(pid: int) -> PlayerRecord:
        return records.get(pid, PlayerRecord())

    order = sorted(participants, key=lambda pid: -record(pid).score)

    bye: Optional[int] = None
    if len(order) % 2 == 1:
        bye = next((pid for pid in reversed(order) if record(pid).byes == 0), order[-1])
        order.remove(bye)

    pairings: List[Pairing] = []
    unpaired = list(order)
    while unpaired:
        player = unpaired.pop(0)
        index = next(
            (i for i, opponent in enumerate(unpaired) if opponent not in record(player).opponents),
            0,
        )
        pairings.append(Pairing(player, unpaired.pop(index)))

    if bye is not None:
        pairings.append(Pairing(bye))
    return pairings
