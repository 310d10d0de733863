"""Store for live games played through the bot.

One ``GameSessionStore`` is created by the calling layer (the bot process)
and passed to whatever needs it. Sessions expire after ``timeout`` seconds
without activity.
"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from chessbot.services.engine import START_FEN
from chessbot.utils import utc_now

logger = logging.getLogger(__name__)

# Session timeout in seconds (30 minutes)
SESSION_TIMEOUT = 1800


@dataclass
class GameSession:
    """
    An in-progress game against the engine or another player.

    Attributes:
        session_id: Store-assigned id
        competitor_id: Competitor who started the game
        chat_id: Telegram chat the board lives in
        fen: Current position
        match_id: Stored match, if the game is recorded
        player_to_move: Whether the competitor is on move
        state: Free-form UI state (message ids, pending offers)
        started_at: Creation time
        last_activity: Last update time, drives expiry
    """
    session_id: str
    competitor_id: int
    chat_id: int
    fen: str = START_FEN
    match_id: Optional[int] = None
    player_to_move: bool = True
    state: Dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=utc_now)
    last_activity: datetime = field(default_factory=utc_now)


class GameSessionStore:
    """
    In-memory session store keyed by session id.

    Args:
        timeout: Inactivity timeout in seconds
        clock: Time source, replaceable in tests
    """

    def __init__(self, timeout: int = SESSION_TIMEOUT, clock: Callable[[], datetime] = utc_now):
        self.timeout = timedelta(seconds=timeout)
        self._clock = clock
        self._sessions: Dict[str, GameSession] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._sessions)

    def _expired(self, session: GameSession) -> bool:
        return self._clock() - session.last_activity > self.timeout

    def start(
        self,
        competitor_id: int,
        chat_id: int,
        fen: str = START_FEN,
        match_id: Optional[int] = None,
    ) -> Optional[GameSession]:
        """
        Open a session.

        Returns:
            The new session, or None if the competitor already plays in this chat
        """
        if self.find(competitor_id, chat_id) is not None:
            logger.warning(f"Competitor {competitor_id} already playing in chat {chat_id}")
            return None

        now = self._clock()
        session = GameSession(
            session_id=f"game-{next(self._ids)}",
            competitor_id=competitor_id,
            chat_id=chat_id,
            fen=fen,
            match_id=match_id,
            started_at=now,
            last_activity=now,
        )
        self._sessions[session.session_id] = session
        logger.info(f"Started session {session.session_id} for competitor {competitor_id} in chat {chat_id}")
        return session

    def get(self, session_id: str) -> Optional[GameSession]:
        """Return a live session; an expired one is dropped and None returned."""
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._expired(session):
            del self._sessions[session_id]
            logger.info(f"Auto-expired session {session_id}")
            return None
        return session

    def find(self, competitor_id: int, chat_id: int) -> Optional[GameSession]:
        for session_id, session in list(self._sessions.items()):
            if session.competitor_id == competitor_id and session.chat_id == chat_id:
                return self.get(session_id)
        return None

    def update(self, session_id: str, /, **changes: Any) -> Optional[GameSession]:
        """
        Change fields of a live session and refresh its activity time.

        Returns:
            Updated session, or None if it does not exist or has expired

        Raises:
            AttributeError: On an unknown field
        """
        session = self.get(session_id)
        if session is None:
            return None
        for name, value in changes.items():
            if name in ("session_id", "started_at") or not hasattr(session, name):
                raise AttributeError(f"GameSession has no writable field '{name}'")
            setattr(session, name, value)
        session.last_activity = self._clock()
        return session

    def end(self, session_id: str) -> bool:
        if self._sessions.pop(session_id, None) is None:
            return False
        logger.info(f"Ended session {session_id}")
        return True

    def purge_expired(self) -> List[str]:
        """Drop every expired session and return their ids."""
        expired = [sid for sid, session in self._sessions.items() if self._expired(session)]
        for session_id in expired:
            del self._sessions[session_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired game sessions")
        return expired
