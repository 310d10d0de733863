import logging
import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class Settings:
    """Application configuration read from environment variables."""

    # Telegram
    bot_token: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    announce_chat_id: int | None = (
        int(os.getenv("ANNOUNCE_CHAT_ID"))
        if os.getenv("ANNOUNCE_CHAT_ID")
        else None
    )

    # Database
    database_url: str = os.getenv(
        "DATABASE_URL", "sqlite+aiosqlite:///./data/chessbot.db"
    )

    # Timezone
    timezone: str = os.getenv("TIMEZONE", "UTC")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir: str = os.getenv("LOG_DIR", "logs")

    # Ratings
    default_rating: int = int(os.getenv("DEFAULT_RATING", "1200"))
    rating_floor: int = int(os.getenv("RATING_FLOOR", "100"))
    rating_ceiling: int = int(os.getenv("RATING_CEILING", "3000"))
    provisional_games: int = int(os.getenv("PROVISIONAL_GAMES", "30"))

    # Automated tournaments
    automated_tournaments_enabled: bool = _env_bool("ENABLE_AUTOMATED_TOURNAMENTS", "false")
    daily_tournament_hour: int = int(os.getenv("DAILY_TOURNAMENT_HOUR", "20"))
    weekly_tournament_day: str = os.getenv("WEEKLY_TOURNAMENT_DAY", "sun").lower()
    weekly_tournament_hour: int = int(os.getenv("WEEKLY_TOURNAMENT_HOUR", "15"))
    round_check_interval: int = int(os.getenv("ROUND_CHECK_INTERVAL", "60"))  # seconds
    registration_window_minutes: int = int(os.getenv("REGISTRATION_WINDOW_MINUTES", "30"))

    # Analysis engine (UCI)
    engine_path: str = os.getenv("ENGINE_PATH", "stockfish")
    engine_depth: int = int(os.getenv("ENGINE_DEPTH", "15"))
    engine_movetime_ms: int = int(os.getenv("ENGINE_MOVETIME_MS", "1000"))
    engine_timeout: float = float(os.getenv("ENGINE_TIMEOUT", "10"))

    def validate(self) -> "Settings":
        """
        Check option values that would otherwise fail late.

        Returns:
            self, for chaining

        Raises:
            ValueError: If any option is out of range
        """
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {self.log_level}")
        if self.rating_floor >= self.rating_ceiling:
            raise ValueError(
                f"Rating floor {self.rating_floor} must be below ceiling {self.rating_ceiling}"
            )
        if not self.rating_floor <= self.default_rating <= self.rating_ceiling:
            raise ValueError(f"Default rating {self.default_rating} is outside the rating bounds")
        if self.provisional_games < 0:
            raise ValueError("PROVISIONAL_GAMES must not be negative")
        if self.round_check_interval <= 0:
            raise ValueError("ROUND_CHECK_INTERVAL must be positive")
        if self.registration_window_minutes < 0:
            raise ValueError("REGISTRATION_WINDOW_MINUTES must not be negative")
        if self.weekly_tournament_day not in WEEKDAYS:
            raise ValueError(f"Unknown weekday: {self.weekly_tournament_day}")
        for name in ("daily_tournament_hour", "weekly_tournament_hour"):
            if not 0 <= getattr(self, name) <= 23:
                raise ValueError(f"{name} must be between 0 and 23")
        if self.engine_timeout <= 0:
            raise ValueError("ENGINE_TIMEOUT must be positive")
        return self

    @property
    def log_level_value(self) -> int:
        return getattr(logging, self.log_level)


settings = Settings()
