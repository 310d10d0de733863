from datetime import timedelta
import logging

import pytz
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from chessbot.config import Settings, settings
from chessbot.services.bracket import TournamentFormat
from chessbot.services.game_sessions import GameSessionStore
from chessbot.services.tournament_settings import TournamentSettings
from chessbot.services.tournaments import RoundProgress, TournamentOrchestrator, TournamentStatus
from chessbot.utils import utc_now

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None

# Presets for scheduler-created tournaments
AUTOMATED_TOURNAMENTS = {
    "daily": {"name": "Daily Blitz", "max_participants": 16},
    "weekly": {"name": "Weekly Championship", "max_participants": 32},
}


def automated_settings(kind: str) -> TournamentSettings:
    preset = AUTOMATED_TOURNAMENTS[kind]
    return TournamentSettings(
        max_participants=preset["max_participants"],
        format=TournamentFormat.SINGLE_ELIMINATION,
        time_control="10+5",
        is_rated=True,
        auto_start=True,
        auto_advance=True,
    )


async def job_create_automated_tournament(
    orchestrator: TournamentOrchestrator, kind: str, registration_minutes: int
):
    """
    Create the daily or weekly tournament.

    Registration stays open for ``registration_minutes``; the start-due job
    then starts it (or cancels it without players).
    """
    try:
        start_time = utc_now() + timedelta(minutes=registration_minutes)
        tournament = await orchestrator.create_tournament(
            name=f"{AUTOMATED_TOURNAMENTS[kind]['name']} {start_time:%Y-%m-%d}",
            settings=automated_settings(kind),
            start_time=start_time,
            description=f"Automated {kind} tournament",
            is_automated=True,
        )
        logger.info(f"Created {kind} tournament {tournament.id}, starts at {start_time:%H:%M} UTC")
    except Exception as e:
        logger.error(f"Error in {kind} tournament job: {e}", exc_info=True)


async def job_check_rounds(orchestrator: TournamentOrchestrator):
    """
    Fallback sweep: advance active auto-advancing tournaments whose round is over.

    A failing tournament is logged and skipped.
    """
    try:
        tournaments = await orchestrator.storage.list_tournaments(TournamentStatus.ACTIVE.value)
    except Exception as e:
        logger.error(f"Error listing active tournaments: {e}", exc_info=True)
        return

    for tournament in tournaments:
        try:
            if not orchestrator.settings_of(tournament).auto_advance:
                continue
            progress = await orchestrator.check_round_completion(tournament.id)
            if progress in (RoundProgress.ADVANCED, RoundProgress.COMPLETED):
                logger.info(f"Round sweep: tournament {tournament.id} {progress.value}")
        except Exception as e:
            logger.error(f"Error checking rounds of tournament {tournament.id}: {e}", exc_info=True)


async def job_start_due_tournaments(orchestrator: TournamentOrchestrator, cancel_after_minutes: int):
    try:
        started = await orchestrator.start_due_tournaments(
            cancel_after=timedelta(minutes=cancel_after_minutes)
        )
        if started:
            logger.info(f"Started due tournaments: {started}")
    except Exception as e:
        logger.error(f"Error starting due tournaments: {e}", exc_info=True)


async def job_purge_game_sessions(session_store: GameSessionStore):
    session_store.purge_expired()


def build_scheduler(
    orchestrator: TournamentOrchestrator,
    app_settings: Settings = settings,
    session_store: GameSessionStore | None = None,
) -> AsyncIOScheduler:
    """Create a scheduler with every job registered; the caller starts it."""
    tz = pytz.timezone(app_settings.timezone)
    scheduler = AsyncIOScheduler(timezone=tz)

    scheduler.add_job(
        job_check_rounds,
        IntervalTrigger(seconds=app_settings.round_check_interval),
        args=[orchestrator],
        id="check_rounds",
    )
    scheduler.add_job(
        job_start_due_tournaments,
        IntervalTrigger(minutes=1),
        args=[orchestrator, app_settings.registration_window_minutes],
        id="start_due_tournaments",
    )

    if app_settings.automated_tournaments_enabled:
        # Daily tournament: registration opens at the configured hour
        scheduler.add_job(
            job_create_automated_tournament,
            CronTrigger(hour=app_settings.daily_tournament_hour, minute=0, timezone=tz),
            args=[orchestrator, "daily", app_settings.registration_window_minutes],
            id="create_daily_tournament",
        )
        # Weekly tournament
        scheduler.add_job(
            job_create_automated_tournament,
            CronTrigger(
                day_of_week=app_settings.weekly_tournament_day,
                hour=app_settings.weekly_tournament_hour,
                minute=0,
                timezone=tz,
            ),
            args=[orchestrator, "weekly", app_settings.registration_window_minutes],
            id="create_weekly_tournament",
        )

    if session_store is not None:
        scheduler.add_job(
            job_purge_game_sessions,
            IntervalTrigger(minutes=5),
            args=[session_store],
            id="purge_game_sessions",
        )

    return scheduler


def setup_scheduler(
    orchestrator: TournamentOrchestrator,
    app_settings: Settings = settings,
    session_store: GameSessionStore | None = None,
) -> AsyncIOScheduler:
    global _scheduler
    if _scheduler:
        return _scheduler
    _scheduler = build_scheduler(orchestrator, app_settings, session_store)
    _scheduler.start()
    logger.info(f"Scheduler started with jobs: {', '.join(job.id for job in _scheduler.get_jobs())}")
    return _scheduler


def shutdown_scheduler():
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    _scheduler = None
