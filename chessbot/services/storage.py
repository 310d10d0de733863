"""Persistence collaborator for the tournament core.

``TournamentStorage`` is the narrow interface the orchestrator depends on;
``SqlAlchemyStorage`` implements it over an async SQLAlchemy session
factory. Every method opens its own short session, so returned ORM objects
are detached snapshots (the session factory uses expire_on_commit=False).
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chessbot.database.models import Competitor, Match, Notification, Tournament, TournamentParticipant
from chessbot.database.session import get_session
from chessbot.errors import InvalidStateError, NotFoundError
from chessbot.utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RatingUpdate:
    """
    Rating write for one competitor after a game.

    ``old_rating`` is the value the new rating was computed from; the write
    is refused if the stored rating no longer matches.
    """
    competitor_id: int
    old_rating: int
    new_rating: int
    won: bool = False
    lost: bool = False
    drawn: bool = False


@runtime_checkable
class TournamentStorage(Protocol):
    """Operations the orchestrator needs from persistence."""

    async def get_tournament(self, tournament_id: int) -> Optional[Tournament]: ...

    async def create_tournament(self, **fields: Any) -> Tournament: ...

    async def update_tournament(
        self, tournament_id: int, expected_status: Optional[Sequence[str]] = None, **patch: Any
    ) -> Optional[Tournament]: ...

    async def list_tournaments(self, status: Optional[str] = None) -> List[Tournament]: ...

    async def join_tournament(self, tournament_id: int, competitor_id: int) -> Optional[Tournament]: ...

    async def leave_tournament(self, tournament_id: int, competitor_id: int) -> bool: ...

    async def list_participants(self, tournament_id: int) -> List[TournamentParticipant]: ...

    async def set_final_ranks(self, tournament_id: int, ranks: Mapping[int, int]) -> None: ...

    async def create_match(self, **fields: Any) -> Match: ...

    async def create_round(
        self, tournament_id: int, round_number: int, matches: Sequence[Mapping[str, Any]]
    ) -> List[Match]: ...

    async def get_match(self, match_id: int) -> Optional[Match]: ...

    async def update_match(self, match_id: int, **patch: Any) -> Match: ...

    async def list_matches(self, tournament_id: int) -> List[Match]: ...

    async def list_incomplete_matches(self, tournament_id: int) -> List[Match]: ...

    async def complete_match(
        self,
        match_id: int,
        outcome: str,
        rating_updates: Sequence[RatingUpdate],
        eliminated: Sequence[int] = (),
    ) -> bool: ...

    async def get_competitor(self, competitor_id: int) -> Optional[Competitor]: ...

    async def get_competitor_by_telegram_id(self, telegram_id: int) -> Optional[Competitor]: ...

    async def create_competitor(self, **fields: Any) -> Competitor: ...

    async def update_competitor(self, competitor_id: int, **patch: Any) -> Competitor: ...

    async def get_top_competitors(self, limit: int = 10) -> List[Competitor]: ...


class SqlAlchemyStorage:
    """TournamentStorage over async SQLAlchemy."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session()

    # =========================================================================
    # Tournaments
    # =========================================================================

    async def get_tournament(self, tournament_id: int) -> Optional[Tournament]:
        async with self._sessions()() as session:
            return await session.get(Tournament, tournament_id)

    async def create_tournament(self, **fields: Any) -> Tournament:
        async with self._sessions()() as session:
            tournament = Tournament(**fields)
            session.add(tournament)
            await session.commit()
            await session.refresh(tournament)
            return tournament

    async def update_tournament(
        self, tournament_id: int, expected_status: Optional[Sequence[str]] = None, **patch: Any
    ) -> Optional[Tournament]:
        """
        Patch a tournament.

        Args:
            tournament_id: Tournament to update
            expected_status: If given, only update while status is one of these
            **patch: Column values

        Returns:
            Updated tournament, or None if expected_status did not match

        Raises:
            NotFoundError: If the tournament does not exist
        """
        async with self._sessions()() as session:
            async with session.begin():
                stmt = update(Tournament).where(Tournament.id == tournament_id)
                if expected_status is not None:
                    stmt = stmt.where(Tournament.status.in_(list(expected_status)))
                result = await session.execute(
                    stmt.values(updated_at=utc_now(), **patch)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    if await session.get(Tournament, tournament_id) is None:
                        raise NotFoundError("tournament", tournament_id)
                    return None
        return await self.get_tournament(tournament_id)

    async def list_tournaments(self, status: Optional[str] = None) -> List[Tournament]:
        async with self._sessions()() as session:
            stmt = select(Tournament).order_by(Tournament.id)
            if status is not None:
                stmt = stmt.filter(Tournament.status == status)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def join_tournament(self, tournament_id: int, competitor_id: int) -> Optional[Tournament]:
        """
        Register a competitor and bump the counter in one transaction.

        The increment is a conditional UPDATE guarded by status and capacity,
        so concurrent joins can never overrun max_participants.

        Returns:
            Updated tournament, or None if it is no longer open or is full

        Raises:
            InvalidStateError: If the competitor is already registered
        """
        async with self._sessions()() as session:
            async with session.begin():
                existing = await session.execute(
                    select(TournamentParticipant.id).filter_by(
                        tournament_id=tournament_id, competitor_id=competitor_id
                    )
                )
                if existing.scalar_one_or_none() is not None:
                    raise InvalidStateError(
                        "Already registered for this tournament",
                        tournament_id=tournament_id,
                        competitor_id=competitor_id,
                    )

                result = await session.execute(
                    update(Tournament)
                    .where(
                        Tournament.id == tournament_id,
                        Tournament.status == 'upcoming',
                        Tournament.current_participants < Tournament.max_participants,
                    )
                    .values(
                        current_participants=Tournament.current_participants + 1,
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
                session.add(TournamentParticipant(tournament_id=tournament_id, competitor_id=competitor_id))
        return await self.get_tournament(tournament_id)

    async def leave_tournament(self, tournament_id: int, competitor_id: int) -> bool:
        async with self._sessions()() as session:
            async with session.begin():
                result = await session.execute(
                    select(TournamentParticipant).filter_by(
                        tournament_id=tournament_id, competitor_id=competitor_id
                    )
                )
                participant = result.scalar_one_or_none()
                if participant is None:
                    return False
                decremented = await session.execute(
                    update(Tournament)
                    .where(
                        Tournament.id == tournament_id,
                        Tournament.status == 'upcoming',
                        Tournament.current_participants > 0,
                    )
                    .values(
                        current_participants=Tournament.current_participants - 1,
                        updated_at=utc_now(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if decremented.rowcount == 0:
                    return False
                await session.delete(participant)
        return True

    async def list_participants(self, tournament_id: int) -> List[TournamentParticipant]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(TournamentParticipant)
                .filter_by(tournament_id=tournament_id)
                .order_by(TournamentParticipant.joined_at, TournamentParticipant.id)
            )
            return list(result.scalars().all())

    async def set_final_ranks(self, tournament_id: int, ranks: Mapping[int, int]) -> None:
        async with self._sessions()() as session:
            async with session.begin():
                for competitor_id, rank in ranks.items():
                    await session.execute(
                        update(TournamentParticipant)
                        .where(
                            TournamentParticipant.tournament_id == tournament_id,
                            TournamentParticipant.competitor_id == competitor_id,
                        )
                        .values(final_rank=rank)
                        .execution_options(synchronize_session=False)
                    )

    # =========================================================================
    # Matches
    # =========================================================================

    async def create_match(self, **fields: Any) -> Match:
        async with self._sessions()() as session:
            match = Match(**fields)
            session.add(match)
            await session.commit()
            await session.refresh(match)
            return match

    async def create_round(
        self, tournament_id: int, round_number: int, matches: Sequence[Mapping[str, Any]]
    ) -> List[Match]:
        """
        Insert the matches of a round and move current_round forward together.

        Args:
            tournament_id: Tournament the round belongs to
            round_number: New round number
            matches: Column values for each match

        Returns:
            The created matches, in input order

        Raises:
            InvalidStateError: If the round already exists
        """
        async with self._sessions()() as session:
            async with session.begin():
                advanced = await session.execute(
                    update(Tournament)
                    .where(
                        Tournament.id == tournament_id,
                        Tournament.status == 'active',
                        Tournament.current_round == round_number - 1,
                    )
                    .values(current_round=round_number, updated_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                if advanced.rowcount == 0:
                    raise InvalidStateError(
                        "Round already generated or tournament not active",
                        tournament_id=tournament_id,
                        round_number=round_number,
                    )
                created = [
                    Match(tournament_id=tournament_id, round_number=round_number, **fields)
                    for fields in matches
                ]
                session.add_all(created)
            for match in created:
                await session.refresh(match)
            return created

    async def get_match(self, match_id: int) -> Optional[Match]:
        async with self._sessions()() as session:
            return await session.get(Match, match_id)

    async def update_match(self, match_id: int, **patch: Any) -> Match:
        async with self._sessions()() as session:
            match = await session.get(Match, match_id)
            if match is None:
                raise NotFoundError("match", match_id)
            for key, value in patch.items():
                setattr(match, key, value)
            await session.commit()
            return match

    async def list_matches(self, tournament_id: int) -> List[Match]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(Match).filter_by(tournament_id=tournament_id).order_by(Match.round_number, Match.id)
            )
            return list(result.scalars().all())

    async def list_incomplete_matches(self, tournament_id: int) -> List[Match]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(Match)
                .filter_by(tournament_id=tournament_id, is_complete=False)
                .order_by(Match.id)
            )
            return list(result.scalars().all())

    async def complete_match(
        self,
        match_id: int,
        outcome: str,
        rating_updates: Sequence[RatingUpdate],
        eliminated: Sequence[int] = (),
    ) -> bool:
        """
        Write a game result atomically.

        Match completion, rating deltas, game counters and elimination flags
        commit together or not at all.

        Returns:
            False if the match was already complete (nothing written)

        Raises:
            NotFoundError: If the match does not exist
            InvalidStateError: If a rating changed since it was read
        """
        deltas: Dict[int, int] = {u.competitor_id: u.new_rating - u.old_rating for u in rating_updates}

        async with self._sessions()() as session:
            async with session.begin():
                match = await session.get(Match, match_id)
                if match is None:
                    raise NotFoundError("match", match_id)

                result = await session.execute(
                    update(Match)
                    .where(Match.id == match_id, Match.is_complete.is_(False))
                    .values(
                        is_complete=True,
                        outcome=outcome,
                        completed_at=utc_now(),
                        player1_rating_change=deltas.get(match.player1_id, 0),
                        player2_rating_change=deltas.get(match.player2_id, 0),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return False

                for rating_update in rating_updates:
                    written = await session.execute(
                        update(Competitor)
                        .where(
                            Competitor.id == rating_update.competitor_id,
                            Competitor.rating == rating_update.old_rating,
                        )
                        .values(
                            rating=rating_update.new_rating,
                            games_played=Competitor.games_played + 1,
                            games_won=Competitor.games_won + int(rating_update.won),
                            games_lost=Competitor.games_lost + int(rating_update.lost),
                            games_drawn=Competitor.games_drawn + int(rating_update.drawn),
                            updated_at=utc_now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if written.rowcount == 0:
                        raise InvalidStateError(
                            "Rating changed while the result was being recorded",
                            competitor_id=rating_update.competitor_id,
                            match_id=match_id,
                        )

                if eliminated and match.tournament_id is not None:
                    await session.execute(
                        update(TournamentParticipant)
                        .where(
                            TournamentParticipant.tournament_id == match.tournament_id,
                            TournamentParticipant.competitor_id.in_(list(eliminated)),
                        )
                        .values(eliminated=True)
                        .execution_options(synchronize_session=False)
                    )
        return True

    # =========================================================================
    # Competitors
    # =========================================================================

    async def get_competitor(self, competitor_id: int) -> Optional[Competitor]:
        async with self._sessions()() as session:
            return await session.get(Competitor, competitor_id)

    async def get_competitor_by_telegram_id(self, telegram_id: int) -> Optional[Competitor]:
        async with self._sessions()() as session:
            result = await session.execute(select(Competitor).filter_by(telegram_id=telegram_id))
            return result.scalar_one_or_none()

    async def create_competitor(self, **fields: Any) -> Competitor:
        async with self._sessions()() as session:
            competitor = Competitor(**fields)
            session.add(competitor)
            await session.commit()
            await session.refresh(competitor)
            return competitor

    async def update_competitor(self, competitor_id: int, **patch: Any) -> Competitor:
        async with self._sessions()() as session:
            competitor = await session.get(Competitor, competitor_id)
            if competitor is None:
                raise NotFoundError("competitor", competitor_id)
            for key, value in patch.items():
                setattr(competitor, key, value)
            await session.commit()
            return competitor

    async def get_top_competitors(self, limit: int = 10) -> List[Competitor]:
        async with self._sessions()() as session:
            result = await session.execute(
                select(Competitor).order_by(Competitor.rating.desc(), Competitor.id).limit(limit)
            )
            return list(result.scalars().all())

    # =========================================================================
    # Notifications
    # =========================================================================

    async def add_notification(
        self,
        competitor_id: int,
        notification_type: str,
        title: str,
        message: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Notification:
        async with self._sessions()() as session:
            notification = Notification(
                competitor_id=competitor_id,
                type=notification_type,
                title=title,
                message=message,
                data=dict(data) if data else None,
            )
            session.add(notification)
            await session.commit()
            return notification

    async def list_notifications(self, competitor_id: int, unread_only: bool = False) -> List[Notification]:
        async with self._sessions()() as session:
            stmt = select(Notification).filter_by(competitor_id=competitor_id)
            if unread_only:
                stmt = stmt.filter(Notification.is_read.is_(False))
            result = await session.execute(stmt.order_by(Notification.created_at.desc(), Notification.id.desc()))
            return list(result.scalars().all())
