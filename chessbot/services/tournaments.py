"""Tournament Service - bracket tournaments for rated chess.

The orchestrator owns the tournament lifecycle:
upcoming -> active -> completed, with cancellation from upcoming or active.
It combines the pure pieces (ELO calculator, bracket generator, settings)
with the injected storage and notifier collaborators.

All mutations of one tournament are serialized through a per-tournament
``asyncio.Lock``; storage adds conditional writes on top, so two processes
sharing a database still cannot overfill a tournament or record a result twice.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from chessbot.database.models import Competitor, Match, Tournament
from chessbot.errors import (
    InsufficientParticipantsError,
    InvalidArgumentError,
    InvalidStateError,
    NotFoundError,
    TournamentFullError,
)
from chessbot.services.bracket import (
    ELIMINATION_LOSSES,
    Pairing,
    PlayerRecord,
    TournamentFormat,
    build_records,
    generate_pairings,
    shuffle_participants,
    swiss_rounds,
)
from chessbot.services.elo import (
    EloCalculator,
    GameResult,
    MatchOutcome,
    RatingChange,
    elo_calculator,
    parse_outcome,
)
from chessbot.services.notifications import NotificationType, Notifier, render_notification
from chessbot.services.storage import RatingUpdate, TournamentStorage
from chessbot.services.tournament_settings import MIN_PARTICIPANTS, TournamentSettings
from chessbot.utils import as_utc, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# Status and result types
# ============================================================================

class TournamentStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (TournamentStatus.COMPLETED.value, TournamentStatus.CANCELLED.value)


class RoundProgress(str, Enum):
    """What ``check_round_completion`` did."""
    INACTIVE = "inactive"      # tournament not active
    PENDING = "pending"        # matches still outstanding
    ADVANCED = "advanced"      # next round generated
    COMPLETED = "completed"    # tournament finished


OUTCOME_LABELS = {
    MatchOutcome.PLAYER1_WINS: "1-0",
    MatchOutcome.PLAYER2_WINS: "0-1",
    MatchOutcome.DRAW: "½-½",
}


@dataclass
class Standing:
    """
    A single standing entry in tournament rankings.

    Attributes:
        competitor_id: Competitor database ID
        name: Display name
        rating: Current rating
        score: Points (win or bye 1, draw 0.5)
        wins: Games won
        draws: Games drawn
        losses: Games lost
        eliminated: Knocked out (elimination formats)
        rank: Position in rankings (1-based)
        final_rank: Rank recorded at completion, if any
    """
    competitor_id: int
    name: str
    rating: int
    score: float
    wins: int
    draws: int
    losses: int
    eliminated: bool
    rank: int
    final_rank: Optional[int] = None


@dataclass
class MatchReport:
    """Outcome of ``record_match_outcome``."""
    match_id: int
    outcome: MatchOutcome
    rating_change: Optional[RatingChange] = None
    eliminated: List[int] = field(default_factory=list)


# ============================================================================
# Orchestrator
# ============================================================================

class TournamentOrchestrator:
    """
    Tournament lifecycle service.

    Args:
        storage: Persistence collaborator
        notifier: Messaging collaborator
        elo: Rating calculator (defaults to the shared instance)
        rng: Random source for draws; pass a seeded Random in tests
        default_rating: Rating given to newly registered competitors
    """

    def __init__(
        self,
        storage: TournamentStorage,
        notifier: Notifier,
        elo: Optional[EloCalculator] = None,
        rng: Optional[random.Random] = None,
        default_rating: int = 1200,
    ):
        self.storage = storage
        self.notifier = notifier
        self.elo = elo or elo_calculator
        self.rng = rng or random.Random()
        self.default_rating = default_rating
        self._locks: Dict[int, asyncio.Lock] = {}

    def _lock(self, tournament_id: int) -> asyncio.Lock:
        return self._locks.setdefault(tournament_id, asyncio.Lock())

    def _forget_lock(self, tournament_id: int) -> None:
        # finished tournaments accept no further mutations
        self._locks.pop(tournament_id, None)

    # =========================================================================
    # Lookups
    # =========================================================================

    async def _get_tournament(self, tournament_id: int) -> Tournament:
        tournament = await self.storage.get_tournament(tournament_id)
        if tournament is None:
            raise NotFoundError("tournament", tournament_id)
        return tournament

    async def _get_competitor(self, competitor_id: int) -> Competitor:
        competitor = await self.storage.get_competitor(competitor_id)
        if competitor is None:
            raise NotFoundError("competitor", competitor_id)
        return competitor

    async def _names(self, competitor_ids: Iterable[int]) -> Dict[int, str]:
        names = {}
        for competitor_id in set(competitor_ids):
            competitor = await self.storage.get_competitor(competitor_id)
            names[competitor_id] = competitor.display_name if competitor else f"#{competitor_id}"
        return names

    @staticmethod
    def settings_of(tournament: Tournament) -> TournamentSettings:
        return TournamentSettings.from_dict(tournament.settings)

    # =========================================================================
    # Competitors
    # =========================================================================

    async def register_competitor(
        self,
        username: str,
        telegram_id: Optional[int] = None,
        nickname: Optional[str] = None,
        rating: Optional[int] = None,
    ) -> Competitor:
        """
        Create a competitor, or return the existing one for a Telegram id.

        Raises:
            InvalidArgumentError: If the username is empty
        """
        username = (username or "").strip()
        if not username:
            raise InvalidArgumentError("Username is required")

        if telegram_id is not None:
            existing = await self.storage.get_competitor_by_telegram_id(telegram_id)
            if existing is not None:
                return existing

        competitor = await self.storage.create_competitor(
            username=username,
            telegram_id=telegram_id,
            nickname=nickname,
            rating=self.elo.clamp(self.default_rating if rating is None else rating),
        )
        logger.info(f"Registered competitor {competitor.id} ({competitor.username})")
        return competitor

    async def leaderboard(self, limit: int = 10) -> List[Competitor]:
        return await self.storage.get_top_competitors(limit)

    async def preview_rating_change(
        self, competitor_id: int, opponent_id: int, result: Union[str, GameResult]
    ) -> int:
        """Rating change a competitor would get for ``result`` against an opponent."""
        competitor = await self._get_competitor(competitor_id)
        opponent = await self._get_competitor(opponent_id)
        return self.elo.rating_change(
            competitor.rating, opponent.rating, result, competitor.games_played
        )

    # =========================================================================
    # Creation and registration
    # =========================================================================

    async def create_tournament(
        self,
        name: str,
        settings: Union[TournamentSettings, Mapping[str, Any], None] = None,
        created_by: Optional[int] = None,
        start_time=None,
        description: Optional[str] = None,
        is_automated: bool = False,
    ) -> Tournament:
        """
        Create an upcoming tournament.

        With auto_start and a start time that is already due (or no start
        time at all) an immediate start is attempted; lacking players the
        tournament simply stays upcoming.

        Args:
            name: Tournament name
            settings: TournamentSettings or a plain mapping of options
            created_by: Creating competitor id, None for the system
            start_time: Planned start (naive values are taken as UTC)
            description: Free text
            is_automated: Created by the scheduler

        Returns:
            The created (or already started) tournament

        Raises:
            InvalidArgumentError: On an empty name or invalid settings
        """
        name = (name or "").strip()
        if not name:
            raise InvalidArgumentError("Tournament name is required")
        if not isinstance(settings, TournamentSettings):
            settings = TournamentSettings.from_dict(settings)
        if created_by is not None:
            await self._get_competitor(created_by)
        if start_time is not None:
            start_time = as_utc(start_time)

        tournament = await self.storage.create_tournament(
            name=name,
            description=description,
            status=TournamentStatus.UPCOMING.value,
            format=settings.format.value,
            max_participants=settings.max_participants,
            current_participants=0,
            current_round=0,
            settings=settings.to_dict(),
            is_automated=is_automated,
            start_time=start_time,
            created_by=created_by,
        )
        logger.info(
            f"Created tournament {tournament.id} '{name}' "
            f"({settings.format.value}, max {settings.max_participants})"
        )

        start_line = f"🕐 Starts at {start_time:%Y-%m-%d %H:%M} UTC" if start_time else ""
        notification = render_notification(
            NotificationType.TOURNAMENT_CREATED,
            {"tournament_id": tournament.id},
            name=name,
            max_participants=settings.max_participants,
            time_control=settings.time_control,
            format=settings.format.value.replace("_", " "),
            start_line=start_line,
        )
        await self._broadcast(notification.title, notification.message)

        if settings.auto_start and (start_time is None or start_time <= utc_now()):
            try:
                return await self.start_tournament(tournament.id)
            except InsufficientParticipantsError:
                logger.info(f"Tournament {tournament.id} waits for players before starting")
        return tournament

    async def join_tournament(self, tournament_id: int, competitor_id: int) -> Tournament:
        """
        Register a competitor.

        Starts the tournament when auto_start is set and the cap is reached.

        Raises:
            NotFoundError: Unknown tournament or competitor
            InvalidStateError: Registration closed or already registered
            TournamentFullError: No free slot
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            await self._get_competitor(competitor_id)
            self._require_status(tournament, TournamentStatus.UPCOMING, "Registration is closed")
            if tournament.current_participants >= tournament.max_participants:
                logger.warning(f"Tournament {tournament_id} is full, competitor {competitor_id} rejected")
                raise TournamentFullError(
                    "Tournament is full",
                    tournament_id=tournament_id,
                    max_participants=tournament.max_participants,
                )

            updated = await self.storage.join_tournament(tournament_id, competitor_id)
            if updated is None:
                # another writer changed the tournament in between
                latest = await self._get_tournament(tournament_id)
                self._require_status(latest, TournamentStatus.UPCOMING, "Registration is closed")
                raise TournamentFullError(
                    "Tournament is full",
                    tournament_id=tournament_id,
                    max_participants=latest.max_participants,
                )

            logger.info(
                f"Competitor {competitor_id} joined tournament {tournament_id} "
                f"({updated.current_participants}/{updated.max_participants})"
            )
            should_start = (
                self.settings_of(updated).auto_start
                and updated.current_participants >= updated.max_participants
            )

        if should_start:
            return await self.start_tournament(tournament_id)
        return updated

    async def leave_tournament(self, tournament_id: int, competitor_id: int) -> Tournament:
        """
        Withdraw a registration before the start.

        Raises:
            NotFoundError: Unknown tournament or not registered
            InvalidStateError: Tournament already started
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            self._require_status(tournament, TournamentStatus.UPCOMING, "Tournament already started")
            if not await self.storage.leave_tournament(tournament_id, competitor_id):
                raise NotFoundError("participant", competitor_id)
            logger.info(f"Competitor {competitor_id} left tournament {tournament_id}")
            return await self._get_tournament(tournament_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start_tournament(self, tournament_id: int) -> Tournament:
        """
        Move an upcoming tournament to active and generate round 1.

        Raises:
            NotFoundError: Unknown tournament
            InvalidStateError: Not upcoming
            InsufficientParticipantsError: Fewer than two participants
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            self._require_status(
                tournament, TournamentStatus.UPCOMING, "Tournament already started or finished"
            )
            participants = await self.storage.list_participants(tournament_id)
            if len(participants) < MIN_PARTICIPANTS:
                logger.warning(f"Tournament {tournament_id} cannot start with {len(participants)} participants")
                raise InsufficientParticipantsError(
                    "Not enough participants to start",
                    tournament_id=tournament_id,
                    participants=len(participants),
                )

            started = await self.storage.update_tournament(
                tournament_id,
                expected_status=[TournamentStatus.UPCOMING.value],
                status=TournamentStatus.ACTIVE.value,
                start_time=utc_now(),
                current_round=0,
            )
            if started is None:
                raise InvalidStateError(
                    "Tournament already started or finished", tournament_id=tournament_id
                )

            competitor_ids = [p.competitor_id for p in participants]
            logger.info(f"Tournament {tournament_id} started with {len(competitor_ids)} players")
            notification = render_notification(
                NotificationType.TOURNAMENT_START,
                {"tournament_id": tournament_id},
                name=started.name,
                participants=len(competitor_ids),
            )
            await self._notify(competitor_ids, notification)

            await self._advance(started, competitor_ids)
            return await self._get_tournament(tournament_id)

    async def check_round_completion(self, tournament_id: int) -> RoundProgress:
        """
        Advance an active tournament whose current round is finished.

        Generates the next round, or completes the tournament when a single
        competitor survives (elimination), every pairing was played (round
        robin) or the configured number of rounds is done (Swiss).
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            if tournament.status != TournamentStatus.ACTIVE.value:
                if tournament.status in FINISHED_STATUSES:
                    self._forget_lock(tournament_id)
                return RoundProgress.INACTIVE
            if await self.storage.list_incomplete_matches(tournament_id):
                return RoundProgress.PENDING

            settings = self.settings_of(tournament)
            participants = await self.storage.list_participants(tournament_id)

            if settings.format in ELIMINATION_LOSSES:
                survivors = [p.competitor_id for p in participants if not p.eliminated]
                if len(survivors) <= 1:
                    await self._complete(tournament, survivors[0] if survivors else None)
                    return RoundProgress.COMPLETED
            elif settings.format == TournamentFormat.ROUND_ROBIN:
                await self._complete(tournament)
                return RoundProgress.COMPLETED
            else:
                survivors = [p.competitor_id for p in participants]
                if tournament.current_round >= swiss_rounds(len(survivors), settings.rounds):
                    await self._complete(tournament)
                    return RoundProgress.COMPLETED

            return await self._advance(tournament, survivors)

    async def complete_tournament(
        self, tournament_id: int, winner_id: Optional[int] = None
    ) -> Tournament:
        """
        Finish an active tournament.

        Args:
            tournament_id: Tournament to finish
            winner_id: Explicit winner; defaults to the standings leader

        Raises:
            NotFoundError: Unknown tournament or competitor
            InvalidStateError: Not active, or winner is not a participant
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            return await self._complete(tournament, winner_id)

    async def cancel_tournament(self, tournament_id: int, reason: str = "") -> Tournament:
        """
        Cancel an upcoming or active tournament.

        Unplayed matches stay incomplete and can no longer be recorded.

        Raises:
            NotFoundError: Unknown tournament
            InvalidStateError: Already completed or cancelled
        """
        async with self._lock(tournament_id):
            tournament = await self._get_tournament(tournament_id)
            open_statuses = [TournamentStatus.UPCOMING.value, TournamentStatus.ACTIVE.value]
            cancelled = await self.storage.update_tournament(
                tournament_id,
                expected_status=open_statuses,
                status=TournamentStatus.CANCELLED.value,
                end_time=utc_now(),
            )
            if cancelled is None:
                raise InvalidStateError(
                    "Tournament already finished",
                    tournament_id=tournament_id,
                    status=tournament.status,
                )

            logger.info(f"Tournament {tournament_id} cancelled: {reason or 'no reason given'}")
            self._forget_lock(tournament_id)
            participants = await self.storage.list_participants(tournament_id)
            notification = render_notification(
                NotificationType.TOURNAMENT_CANCELLED,
                {"tournament_id": tournament_id},
                name=cancelled.name,
                reason=reason,
            )
            await self._notify([p.competitor_id for p in participants], notification)
            return cancelled

    async def start_due_tournaments(
        self, now=None, cancel_after: timedelta = timedelta(0)
    ) -> List[int]:
        """
        Start auto-start tournaments whose start time has passed.

        A due tournament still short of players once ``cancel_after`` has
        also elapsed is cancelled.

        Args:
            now: Reference time (defaults to the current UTC time)
            cancel_after: Extra wait past the start time before cancelling

        Returns:
            Ids of the tournaments that were started
        """
        now = as_utc(now) if now is not None else utc_now()
        started = []

        for tournament in await self.storage.list_tournaments(TournamentStatus.UPCOMING.value):
            if tournament.start_time is None:
                continue
            start_time = as_utc(tournament.start_time)
            if start_time > now or not self.settings_of(tournament).auto_start:
                continue
            try:
                await self.start_tournament(tournament.id)
                started.append(tournament.id)
            except InsufficientParticipantsError:
                if now - start_time >= cancel_after:
                    await self.cancel_tournament(tournament.id, "Not enough players registered.")
            except InvalidStateError as e:
                logger.debug(f"Tournament {tournament.id} not started: {e}")

        return started

    # =========================================================================
    # Matches
    # =========================================================================

    async def create_casual_match(
        self,
        player1_id: int,
        player2_id: int,
        is_rated: bool = True,
        time_control: Optional[str] = None,
    ) -> Match:
        """
        Create a match outside any tournament.

        Raises:
            InvalidArgumentError: If both ids are the same
            NotFoundError: Unknown competitor
        """
        if player1_id == player2_id:
            raise InvalidArgumentError("A competitor cannot play themselves", competitor_id=player1_id)
        await self._get_competitor(player1_id)
        await self._get_competitor(player2_id)
        match = await self.storage.create_match(
            tournament_id=None,
            player1_id=player1_id,
            player2_id=player2_id,
            is_rated=is_rated,
            time_control=time_control,
        )
        logger.info(f"Created casual match {match.id}: {player1_id} vs {player2_id}")
        return match

    async def record_match_outcome(
        self, match_id: int, outcome: Union[str, MatchOutcome]
    ) -> MatchReport:
        """
        Record the result of a match.

        Completion, rating updates and eliminations are written in one
        transaction. Then, if the tournament has auto_advance, the round is
        checked for completion.

        Raises:
            InvalidArgumentError: Unknown outcome
            NotFoundError: Unknown match or competitor
            InvalidStateError: Result already recorded, match is a bye,
                or tournament not active
        """
        outcome = parse_outcome(outcome)
        match = await self.storage.get_match(match_id)
        if match is None:
            raise NotFoundError("match", match_id)

        if match.tournament_id is None:
            return await self._record(match_id, outcome)

        async with self._lock(match.tournament_id):
            tournament = await self._get_tournament(match.tournament_id)
            self._require_status(tournament, TournamentStatus.ACTIVE, "Tournament is not active")
            report = await self._record(match_id, outcome, tournament)

        if self.settings_of(tournament).auto_advance:
            await self.check_round_completion(tournament.id)
        return report

    async def _record(
        self,
        match_id: int,
        outcome: MatchOutcome,
        tournament: Optional[Tournament] = None,
    ) -> MatchReport:
        match = await self.storage.get_match(match_id)
        if match is None:
            raise NotFoundError("match", match_id)
        if match.is_complete:
            raise InvalidStateError("Match result already recorded", match_id=match_id)
        if match.is_bye or match.player2_id is None:
            raise InvalidStateError("A bye has no result to record", match_id=match_id)

        player1 = await self._get_competitor(match.player1_id)
        player2 = await self._get_competitor(match.player2_id)

        change = None
        rating_updates: List[RatingUpdate] = []
        if match.is_rated:
            change = self.elo.apply_result(
                player1.rating, player2.rating,
                player1.games_played, player2.games_played,
                outcome,
            )
            rating_updates = [
                RatingUpdate(
                    player1.id, player1.rating, change.new_rating_a,
                    won=outcome == MatchOutcome.PLAYER1_WINS,
                    lost=outcome == MatchOutcome.PLAYER2_WINS,
                    drawn=outcome == MatchOutcome.DRAW,
                ),
                RatingUpdate(
                    player2.id, player2.rating, change.new_rating_b,
                    won=outcome == MatchOutcome.PLAYER2_WINS,
                    lost=outcome == MatchOutcome.PLAYER1_WINS,
                    drawn=outcome == MatchOutcome.DRAW,
                ),
            ]

        eliminated = await self._eliminated_by(match, outcome, tournament)
        if not await self.storage.complete_match(match.id, outcome.value, rating_updates, eliminated):
            raise InvalidStateError("Match result already recorded", match_id=match_id)

        logger.info(
            f"Match {match.id} recorded: {outcome.value}"
            + (f" ({change.delta_a:+d}/{change.delta_b:+d})" if change else "")
            + (f", eliminated {eliminated}" if eliminated else "")
        )

        if change:
            rating_line = (
                f"{player1.display_name}: {change.new_rating_a} ({change.delta_a:+d}), "
                f"{player2.display_name}: {change.new_rating_b} ({change.delta_b:+d})"
            )
        else:
            rating_line = "Unrated game."
        notification = render_notification(
            NotificationType.MATCH_RESULT,
            {"match_id": match.id, "tournament_id": match.tournament_id},
            player1=player1.display_name,
            player2=player2.display_name,
            result=OUTCOME_LABELS[outcome],
            rating_line=rating_line,
        )
        await self._notify([player1.id, player2.id], notification)

        return MatchReport(match.id, outcome, change, eliminated)

    async def _eliminated_by(
        self, match: Match, outcome: MatchOutcome, tournament: Optional[Tournament]
    ) -> List[int]:
        if tournament is None or outcome == MatchOutcome.DRAW:
            return []
        losses_allowed = ELIMINATION_LOSSES.get(self.settings_of(tournament).format)
        if losses_allowed is None:
            return []

        loser = match.player2_id if outcome == MatchOutcome.PLAYER1_WINS else match.player1_id
        if losses_allowed > 1:
            records = build_records(await self.storage.list_matches(tournament.id))
            if records.get(loser, PlayerRecord()).losses + 1 < losses_allowed:
                return []
        return [loser]

    # =========================================================================
    # Standings
    # =========================================================================

    async def get_standings(self, tournament_id: int) -> List[Standing]:
        """
        Current standings of a tournament.

        The recorded winner comes first, then elimination status and games
        survived (elimination formats), score, wins and rating. Once final
        ranks are written they decide the order, so a finished tournament
        keeps the ranking it was completed with.
        """
        tournament = await self._get_tournament(tournament_id)
        return await self._standings(tournament, tournament.winner_id)

    async def _standings(
        self, tournament: Tournament, winner_id: Optional[int] = None
    ) -> List[Standing]:
        participants = await self.storage.list_participants(tournament.id)
        ids = [p.competitor_id for p in participants]
        records = build_records(await self.storage.list_matches(tournament.id), ids)
        elimination = self.settings_of(tournament).format in ELIMINATION_LOSSES

        rows = []
        for participant in participants:
            competitor = await self._get_competitor(participant.competitor_id)
            record = records[participant.competitor_id]
            rows.append((participant, competitor, record))

        def sort_key(row):
            participant, competitor, record = row
            played = record.wins + record.draws + record.losses + record.byes
            return (
                participant.final_rank is None,
                participant.final_rank or 0,
                participant.competitor_id != winner_id,
                participant.eliminated if elimination else False,
                -played if elimination else 0,
                -record.score,
                -record.wins,
                -competitor.rating,
                competitor.id,
            )

        standings = []
        for rank, (participant, competitor, record) in enumerate(sorted(rows, key=sort_key), start=1):
            standings.append(Standing(
                competitor_id=competitor.id,
                name=competitor.display_name,
                rating=competitor.rating,
                score=record.score,
                wins=record.wins,
                draws=record.draws,
                losses=record.losses,
                eliminated=participant.eliminated,
                rank=rank,
                final_rank=participant.final_rank,
            ))
        return standings

    # =========================================================================
    # Internals (callers hold the tournament lock)
    # =========================================================================

    @staticmethod
    def _require_status(tournament: Tournament, status: TournamentStatus, message: str) -> None:
        if tournament.status != status.value:
            logger.warning(f"Tournament {tournament.id}: {message} (status {tournament.status})")
            raise InvalidStateError(message, tournament_id=tournament.id, status=tournament.status)

    def _plan_round(
        self, tournament: Tournament, competitor_ids: Sequence[int], matches: Sequence[Match]
    ) -> List[Pairing]:
        fmt = self.settings_of(tournament).format
        records = build_records(matches, competitor_ids)
        if fmt == TournamentFormat.ROUND_ROBIN:
            ordered = list(competitor_ids)
        else:
            ordered = shuffle_participants(competitor_ids, self.rng)
        return generate_pairings(ordered, fmt, records)

    async def _advance(self, tournament: Tournament, competitor_ids: Sequence[int]) -> RoundProgress:
        """Generate and persist the next round, or finish if nothing is left to play."""
        matches = await self.storage.list_matches(tournament.id)
        pairings = self._plan_round(tournament, competitor_ids, matches)
        if not any(not pairing.is_bye for pairing in pairings):
            logger.info(f"Tournament {tournament.id}: no games left to pair, finishing")
            await self._complete(tournament)
            return RoundProgress.COMPLETED

        settings = self.settings_of(tournament)
        round_number = tournament.current_round + 1
        rows = []
        for pairing in pairings:
            if pairing.is_bye:
                rows.append({
                    "player1_id": pairing.player1_id,
                    "player2_id": None,
                    "is_bye": True,
                    "is_rated": False,
                    "is_complete": True,
                    "outcome": MatchOutcome.PLAYER1_WINS.value,
                    "completed_at": utc_now(),
                    "time_control": settings.time_control,
                })
            else:
                rows.append({
                    "player1_id": pairing.player1_id,
                    "player2_id": pairing.player2_id,
                    "is_rated": settings.is_rated,
                    "time_control": settings.time_control,
                })
        await self.storage.create_round(tournament.id, round_number, rows)
        logger.info(f"Tournament {tournament.id}: round {round_number} with {len(rows)} pairings")

        names = await self._names(competitor_ids)
        lines = []
        for pairing in pairings:
            if pairing.is_bye:
                lines.append(f"{names[pairing.player1_id]}: bye")
            else:
                lines.append(f"{names[pairing.player1_id]} vs {names[pairing.player2_id]}")
        notification = render_notification(
            NotificationType.ROUND_START,
            {"tournament_id": tournament.id, "round_number": round_number},
            name=tournament.name,
            round_number=round_number,
            pairings="\n".join(lines),
        )
        await self._notify(list(competitor_ids), notification)
        return RoundProgress.ADVANCED

    async def _complete(self, tournament: Tournament, winner_id: Optional[int] = None) -> Tournament:
        self._require_status(tournament, TournamentStatus.ACTIVE, "Only active tournaments can be completed")
        if winner_id is not None:
            participants = await self.storage.list_participants(tournament.id)
            if winner_id not in {p.competitor_id for p in participants}:
                raise InvalidStateError(
                    "Winner is not a participant",
                    tournament_id=tournament.id,
                    competitor_id=winner_id,
                )

        standings = await self._standings(tournament, winner_id)
        if winner_id is None and standings:
            winner_id = standings[0].competitor_id

        completed = await self.storage.update_tournament(
            tournament.id,
            expected_status=[TournamentStatus.ACTIVE.value],
            status=TournamentStatus.COMPLETED.value,
            end_time=utc_now(),
            winner_id=winner_id,
        )
        if completed is None:
            raise InvalidStateError("Tournament is no longer active", tournament_id=tournament.id)
        await self.storage.set_final_ranks(
            tournament.id, {standing.competitor_id: standing.rank for standing in standings}
        )
        self._forget_lock(tournament.id)

        winner_name = standings[0].name if standings else "nobody"
        logger.info(f"Tournament {tournament.id} completed, winner: {winner_id}")
        notification = render_notification(
            NotificationType.TOURNAMENT_COMPLETE,
            {"tournament_id": tournament.id, "winner_id": winner_id},
            name=tournament.name,
            winner=winner_name,
        )
        await self._notify([s.competitor_id for s in standings], notification)
        await self._broadcast(notification.title, notification.message)
        return completed

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _notify(self, competitor_ids: Sequence[int], notification) -> None:
        """Deliver after the state change is committed; delivery errors are logged only."""
        metadata = {"type": notification.notification_type.value, **notification.data}
        try:
            await self.notifier.notify(competitor_ids, notification.title, notification.message, metadata)
        except Exception as e:
            logger.error(f"Failed to deliver '{notification.title}': {e}", exc_info=True)

    async def _broadcast(self, title: str, body: str) -> None:
        try:
            await self.notifier.broadcast(title, body)
        except Exception as e:
            logger.error(f"Failed to broadcast '{title}': {e}", exc_info=True)
