import asyncio
import logging

from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode

from chessbot.config import Settings, settings
from chessbot.database.session import close_db, init_db
from chessbot.jobs.scheduler import setup_scheduler, shutdown_scheduler
from chessbot.logger import setup_logging
from chessbot.services.elo import EloCalculator
from chessbot.services.engine import EngineError, UciEngine
from chessbot.services.game_sessions import GameSessionStore
from chessbot.services.notifications import LogNotifier, TelegramNotifier
from chessbot.services.storage import SqlAlchemyStorage
from chessbot.services.tournaments import TournamentOrchestrator

# Configured in main()
logger = logging.getLogger(__name__)


def build_orchestrator(
    storage: SqlAlchemyStorage, app_settings: Settings, bot: Bot | None = None
) -> TournamentOrchestrator:
    """Wire the orchestrator with the configured rating bounds and notifier."""
    if bot is not None:
        notifier = TelegramNotifier(bot, storage, app_settings.announce_chat_id)
    else:
        notifier = LogNotifier()
    elo = EloCalculator(
        rating_floor=app_settings.rating_floor,
        rating_ceiling=app_settings.rating_ceiling,
        provisional_threshold=app_settings.provisional_games,
    )
    return TournamentOrchestrator(
        storage, notifier, elo=elo, default_rating=app_settings.default_rating
    )


def build_engine(app_settings: Settings) -> UciEngine:
    return UciEngine(
        app_settings.engine_path,
        depth=app_settings.engine_depth,
        movetime_ms=app_settings.engine_movetime_ms,
        timeout=app_settings.engine_timeout,
    )


async def check_engine(engine: UciEngine) -> bool:
    """Ask the engine for one evaluation of the start position."""
    try:
        evaluation = await engine.evaluate()
    except EngineError as e:
        logger.warning(f"Analysis engine unavailable, analysis disabled: {e}")
        return False
    logger.info(f"Analysis engine ready: {engine.path} (start position {evaluation:+.2f})")
    return True


async def main():
    """Run the tournament service until cancelled."""
    settings.validate()
    logger.info("=" * 60)
    logger.info("CHESSBOT TOURNAMENT SERVICE")
    logger.info("=" * 60)
    logger.info(f"Database: {settings.database_url}")
    logger.info(f"Log level: {settings.log_level}")

    logger.info("Initializing database...")
    await init_db()
    logger.info("Database ready")

    bot = None
    if settings.bot_token:
        bot = Bot(token=settings.bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    else:
        logger.warning("TELEGRAM_BOT_TOKEN is not set, notifications go to the log only")

    engine = build_engine(settings)
    await check_engine(engine)

    orchestrator = build_orchestrator(SqlAlchemyStorage(), settings, bot)
    session_store = GameSessionStore()
    setup_scheduler(orchestrator, settings, session_store)

    try:
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down...")
        shutdown_scheduler()
        await close_db()
        if bot is not None:
            await bot.session.close()
        logger.info("Stopped")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
