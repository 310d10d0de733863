"""Tests for service wiring."""

import logging

import pytest

from chessbot.config import Settings
from chessbot.main import build_engine, build_orchestrator, check_engine
from chessbot.services.engine import EngineError
from chessbot.services.notifications import LogNotifier


def test_build_engine_uses_settings():
    engine = build_engine(Settings(
        engine_path="/opt/engines/stockfish",
        engine_depth=9,
        engine_movetime_ms=250,
        engine_timeout=3.5,
    ))
    assert engine.path == "/opt/engines/stockfish"
    assert engine.depth == 9
    assert engine.movetime_ms == 250
    assert engine.timeout == 3.5


def test_build_orchestrator_without_bot(storage):
    orchestrator = build_orchestrator(storage, Settings(default_rating=1500, rating_ceiling=2800))
    assert isinstance(orchestrator.notifier, LogNotifier)
    assert orchestrator.default_rating == 1500
    assert orchestrator.elo.rating_ceiling == 2800


class FakeEngine:
    path = "fake-engine"

    def __init__(self, error=None):
        self.error = error

    async def evaluate(self, fen=None):
        if self.error:
            raise self.error
        return 0.25


@pytest.mark.asyncio
async def test_check_engine_ready(caplog):
    with caplog.at_level(logging.INFO, logger="chessbot.main"):
        assert await check_engine(FakeEngine()) is True
    assert "+0.25" in caplog.text


@pytest.mark.asyncio
async def test_check_engine_missing_binary(tmp_path, caplog):
    engine = build_engine(Settings(engine_path=str(tmp_path / "no-engine"), engine_timeout=1))
    assert await check_engine(engine) is False
    assert "Analysis engine unavailable" in caplog.text


@pytest.mark.asyncio
async def test_check_engine_reports_engine_errors():
    assert await check_engine(FakeEngine(EngineError("engine timed out"))) is False
