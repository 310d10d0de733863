"""Notification Service - tournament announcements.

The orchestrator decides *what* to announce and *to whom*; a ``Notifier``
delivers it. ``TelegramNotifier`` sends through an aiogram Bot,
``LogNotifier`` only writes to the log.
"""

import html
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, runtime_checkable

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

logger = logging.getLogger(__name__)


# ============================================================================
# Notification Types
# ============================================================================

class NotificationType(str, Enum):
    """Kinds of messages the tournament core sends."""
    TOURNAMENT_CREATED = "tournament_created"
    TOURNAMENT_START = "tournament_start"
    ROUND_START = "round_start"
    MATCH_RESULT = "match_result"
    TOURNAMENT_COMPLETE = "tournament_complete"
    TOURNAMENT_CANCELLED = "tournament_cancelled"


@dataclass
class NotificationData:
    """
    A rendered notification ready for delivery.

    Attributes:
        notification_type: Type of notification
        title: Short headline
        message: Body text
        data: Extra metadata (tournament id, round, ...)
    """
    notification_type: NotificationType
    title: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


# ============================================================================
# Notification Templates
# ============================================================================

NOTIFICATION_TEMPLATES = {
    NotificationType.TOURNAMENT_CREATED: {
        "title": "🏆 New tournament: {name}",
        "template": (
            "Registration is open!\n"
            "👥 Up to {max_participants} players\n"
            "⏰ Time control: {time_control}\n"
            "🏁 Format: {format}\n"
            "{start_line}"
        ),
    },
    NotificationType.TOURNAMENT_START: {
        "title": "🏁 Tournament started: {name}",
        "template": (
            "The tournament has started with {participants} players. "
            "Good luck to everyone!"
        ),
    },
    NotificationType.ROUND_START: {
        "title": "♟ {name}: round {round_number}",
        "template": "Pairings for round {round_number}:\n{pairings}",
    },
    NotificationType.MATCH_RESULT: {
        "title": "📊 Result recorded",
        "template": "{player1} vs {player2}: {result}\n{rating_line}",
    },
    NotificationType.TOURNAMENT_COMPLETE: {
        "title": "🏆 Tournament finished: {name}",
        "template": "Congratulations to {winner} on winning the tournament!",
    },
    NotificationType.TOURNAMENT_CANCELLED: {
        "title": "❌ Tournament cancelled: {name}",
        "template": "The tournament was cancelled. {reason}",
    },
}


def render_notification(
    notification_type: NotificationType,
    data: Optional[Mapping[str, Any]] = None,
    **values: Any,
) -> NotificationData:
    """
    Fill a template.

    Args:
        notification_type: Which template to use
        data: Metadata attached to the notification
        **values: Template placeholders

    Returns:
        NotificationData with title and message filled in

    Raises:
        KeyError: If a placeholder is missing
    """
    template = NOTIFICATION_TEMPLATES[notification_type]
    return NotificationData(
        notification_type=notification_type,
        title=template["title"].format(**values),
        message=template["template"].format(**values).strip(),
        data=dict(data or {}),
    )


# ============================================================================
# Notifiers
# ============================================================================

@runtime_checkable
class Notifier(Protocol):
    """Messaging collaborator."""

    async def notify(
        self,
        competitor_ids: Sequence[int],
        title: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    async def broadcast(self, title: str, body: str) -> None: ...


class LogNotifier:
    """Notifier that only logs; used when no bot token is configured."""

    async def notify(
        self,
        competitor_ids: Sequence[int],
        title: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        logger.info(f"[NOTIFY] {title} -> {list(competitor_ids)}: {body}")

    async def broadcast(self, title: str, body: str) -> None:
        logger.info(f"[BROADCAST] {title}: {body}")


class TelegramNotifier:
    """
    Delivers notifications as Telegram messages.

    Recipients are resolved to Telegram ids through storage; each delivered
    message is also stored as a Notification row. A failure for one recipient
    is logged and does not stop delivery to the others.
    """

    def __init__(self, bot: Bot, storage, announce_chat_id: Optional[int] = None):
        self.bot = bot
        self.storage = storage
        self.announce_chat_id = announce_chat_id

    @staticmethod
    def format_message(title: str, body: str) -> str:
        return f"<b>{html.escape(title)}</b>\n\n{html.escape(body)}"

    async def notify(
        self,
        competitor_ids: Sequence[int],
        title: str,
        body: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        metadata = dict(metadata or {})
        notification_type = metadata.get("type", "system")
        text = self.format_message(title, body)
        sent = 0

        for competitor_id in competitor_ids:
            competitor = await self.storage.get_competitor(competitor_id)
            if competitor is None:
                logger.warning(f"Notification skipped: competitor {competitor_id} not found")
                continue

            await self.storage.add_notification(
                competitor_id, notification_type, title, body, metadata
            )
            if not competitor.telegram_id:
                continue

            try:
                await self.bot.send_message(chat_id=competitor.telegram_id, text=text)
                sent += 1
            except TelegramAPIError as e:
                logger.error(f"Failed to notify competitor {competitor_id}: {e}")

        logger.debug(f"Notification '{title}' delivered to {sent}/{len(competitor_ids)} recipients")

    async def broadcast(self, title: str, body: str) -> None:
        if self.announce_chat_id is None:
            logger.debug(f"No announce chat configured, broadcast skipped: {title}")
            return
        try:
            await self.bot.send_message(
                chat_id=self.announce_chat_id,
                text=self.format_message(title, body),
            )
        except TelegramAPIError as e:
            logger.error(f"Broadcast to {self.announce_chat_id} failed: {e}")
