from datetime import datetime
from typing import Optional
from sqlalchemy import BigInteger, Integer, String, DateTime, Boolean, ForeignKey, Text, UniqueConstraint, CheckConstraint, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .session import Base
from chessbot.utils import utc_now


class Competitor(Base):
    """Rating record of a player; never deleted."""
    __tablename__ = "competitors"
    __table_args__ = (
        CheckConstraint("games_played >= 0", name="ck_competitors_games_played"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    telegram_id: Mapped[Optional[int]] = mapped_column(BigInteger, index=True, unique=True, nullable=True)
    username: Mapped[str] = mapped_column(String(64), unique=True)
    nickname: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rating: Mapped[int] = mapped_column(Integer, default=1200, index=True)
    games_played: Mapped[int] = mapped_column(Integer, default=0)
    games_won: Mapped[int] = mapped_column(Integer, default=0)
    games_lost: Mapped[int] = mapped_column(Integer, default=0)
    games_drawn: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    @property
    def display_name(self) -> str:
        return self.nickname or self.username


class Tournament(Base):
    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint("current_participants <= max_participants", name="ck_tournaments_capacity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default='upcoming', index=True)  # upcoming, active, completed, cancelled
    format: Mapped[str] = mapped_column(String(32), default='single_elimination')
    max_participants: Mapped[int] = mapped_column(Integer, default=16)
    current_participants: Mapped[int] = mapped_column(Integer, default=0)
    current_round: Mapped[int] = mapped_column(Integer, default=0)
    settings: Mapped[dict] = mapped_column(JSON, default=dict)
    is_automated: Mapped[bool] = mapped_column(Boolean, default=False)
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    winner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("competitors.id"), nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(ForeignKey("competitors.id"), nullable=True)  # None = system
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    participants: Mapped[list["TournamentParticipant"]] = relationship(back_populates="tournament")


class TournamentParticipant(Base):
    __tablename__ = "tournament_participants"
    __table_args__ = (
        UniqueConstraint("tournament_id", "competitor_id", name="uq_tournament_participant"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id"), index=True)
    competitor_id: Mapped[int] = mapped_column(ForeignKey("competitors.id"), index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    eliminated: Mapped[bool] = mapped_column(Boolean, default=False)
    final_rank: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    tournament: Mapped["Tournament"] = relationship(back_populates="participants")


class Match(Base):
    """A game between two competitors, or a bye when player2_id is empty."""
    __tablename__ = "matches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tournament_id: Mapped[Optional[int]] = mapped_column(ForeignKey("tournaments.id"), nullable=True, index=True)
    round_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    player1_id: Mapped[int] = mapped_column(ForeignKey("competitors.id"), index=True)
    player2_id: Mapped[Optional[int]] = mapped_column(ForeignKey("competitors.id"), nullable=True, index=True)
    outcome: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # player1_wins, player2_wins, draw
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    is_rated: Mapped[bool] = mapped_column(Boolean, default=True)
    is_bye: Mapped[bool] = mapped_column(Boolean, default=False)
    time_control: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    player1_rating_change: Mapped[int] = mapped_column(Integer, default=0)
    player2_rating_change: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Notification(Base):
    """Delivered notification history."""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    competitor_id: Mapped[int] = mapped_column(ForeignKey("competitors.id"), index=True)
    type: Mapped[str] = mapped_column(String(32))
    title: Mapped[str] = mapped_column(String(128))
    message: Mapped[str] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, index=True)
