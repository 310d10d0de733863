"""Pytest configuration and fixtures."""

import itertools
import random
from typing import Any, Dict, List

import pytest

from chessbot.database.session import create_engine_and_sessionmaker, create_tables
from chessbot.services.storage import SqlAlchemyStorage
from chessbot.services.tournaments import TournamentOrchestrator


class RecordingNotifier:
    """Notifier that keeps everything it was asked to deliver."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.broadcasts: List[Dict[str, str]] = []

    async def notify(self, competitor_ids, title, body, metadata=None):
        self.sent.append({
            "competitor_ids": list(competitor_ids),
            "title": title,
            "body": body,
            "metadata": dict(metadata or {}),
        })

    async def broadcast(self, title, body):
        self.broadcasts.append({"title": title, "body": body})

    def of_type(self, notification_type: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["metadata"].get("type") == notification_type]


@pytest.fixture
async def test_db():
    """In-memory database with all tables."""
    engine, session_maker = create_engine_and_sessionmaker("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield session_maker
    await engine.dispose()


@pytest.fixture
def storage(test_db):
    return SqlAlchemyStorage(test_db)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(storage, notifier):
    return TournamentOrchestrator(storage, notifier, rng=random.Random(42))


@pytest.fixture
def make_competitors(orchestrator, storage):
    """Factory: register ``count`` competitors, optionally with games already played."""

    numbers = itertools.count(1)

    async def _make(count: int, rating: int = 1200, games_played: int = 0):
        competitors = []
        for _ in range(count):
            competitor = await orchestrator.register_competitor(
                f"player{next(numbers)}",
                rating=rating,
            )
            if games_played:
                competitor = await storage.update_competitor(competitor.id, games_played=games_played)
            competitors.append(competitor)
        return competitors

    return _make
