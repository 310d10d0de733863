"""Tests for the game session store."""

from datetime import datetime, timedelta, timezone

import pytest

from chessbot.services.engine import START_FEN
from chessbot.services.game_sessions import GameSessionStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return GameSessionStore(timeout=600, clock=clock)


def test_start_and_get(store):
    session = store.start(competitor_id=1, chat_id=100)
    assert session.fen == START_FEN
    assert store.get(session.session_id) is session
    assert store.find(1, 100) is session
    assert len(store) == 1


def test_one_game_per_competitor_and_chat(store):
    assert store.start(1, 100) is not None
    assert store.start(1, 100) is None
    assert store.start(1, 200) is not None
    assert store.start(2, 100) is not None


def test_session_ids_are_unique(store):
    ids = {store.start(competitor_id, 1).session_id for competitor_id in range(10)}
    assert len(ids) == 10


def test_update_refreshes_activity(store, clock):
    session = store.start(1, 100)
    clock.advance(minutes=9)
    store.update(session.session_id, fen="8/8/8/8/8/8/8/K6k w - - 0 1", player_to_move=False)
    clock.advance(minutes=9)

    live = store.get(session.session_id)
    assert live is not None
    assert live.player_to_move is False
    assert live.last_activity == clock.now - timedelta(minutes=9)


def test_update_rejects_unknown_field(store):
    session = store.start(1, 100)
    with pytest.raises(AttributeError):
        store.update(session.session_id, board="x")
    with pytest.raises(AttributeError):
        store.update(session.session_id, session_id="other")
    with pytest.raises(AttributeError):
        store.update(session.session_id, started_at=None)
    assert store.get(session.session_id).session_id == session.session_id


def test_expired_session_is_dropped(store, clock):
    session = store.start(1, 100)
    clock.advance(minutes=11)
    assert store.get(session.session_id) is None
    assert store.update(session.session_id, fen=START_FEN) is None
    assert len(store) == 0
    # the competitor can start again
    assert store.start(1, 100) is not None


def test_end(store):
    session = store.start(1, 100)
    assert store.end(session.session_id) is True
    assert store.end(session.session_id) is False
    assert store.find(1, 100) is None


def test_purge_expired(store, clock):
    old = store.start(1, 100)
    clock.advance(minutes=8)
    fresh = store.start(2, 100)
    clock.advance(minutes=3)

    assert store.purge_expired() == [old.session_id]
    assert store.get(fresh.session_id) is fresh


def test_stores_are_independent(clock):
    first = GameSessionStore(clock=clock)
    second = GameSessionStore(clock=clock)
    first.start(1, 100)
    assert second.find(1, 100) is None
