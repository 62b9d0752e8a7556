"""Configuration settings for vocabook."""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Define base directory
BASE_DIR = Path(__file__).parent.parent.parent

# Load environment variables from .env file
env_file = ".env.test" if os.getenv("ENV") == "test" else ".env"
load_dotenv(env_file)


# Define data directories from environment variables
DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
LOG_DIR_DEFAULT = DATA_DIR / "logs"

CARD_DIRECTIONS = ("term_first", "meaning_first", "random")
NEW_CARD_POSITIONS = ("after", "before", "interleave")


def ensure_directories() -> None:
    """Ensure all required directories exist."""
    directories = [
        DATA_DIR,
    ]

    for directory in directories:
        directory.mkdir(parents=True, exist_ok=True)


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "")
    return int(value) if value else None


@dataclass
class PathSettings:
    """Path configuration settings."""
    base_dir: Path = BASE_DIR
    data_dir: Path = DATA_DIR


@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    url: str = os.getenv("DATABASE_URL", "sqlite:///vocabook.db")
    local_url: str = os.getenv("LOCAL_DATABASE_URL", "sqlite:///vocabook-local.db")
    echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = os.getenv("LOG_LEVEL", "INFO")
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    dir: Optional[str] = os.getenv("LOG_DIR", None)
    rotation: str = os.getenv("LOG_ROTATION", "midnight")
    interval: int = int(os.getenv("LOG_INTERVAL", "1"))
    backup_count: int = int(os.getenv("LOG_BACKUP_COUNT", "7"))


@dataclass
class QuizDefaults:
    """Default quiz settings for users without a stored override."""
    new_per_day: int = int(os.getenv("NEW_PER_DAY", "20"))
    max_reviews_per_day: int = int(os.getenv("MAX_REVIEWS_PER_DAY", "100"))
    jlpt_filter: Optional[int] = field(default_factory=lambda: _optional_int("JLPT_FILTER"))
    priority_filter: Optional[int] = field(default_factory=lambda: _optional_int("PRIORITY_FILTER"))
    card_direction: str = os.getenv("CARD_DIRECTION", "term_first")
    session_size: int = int(os.getenv("SESSION_SIZE", "20"))
    leech_threshold: int = int(os.getenv("LEECH_THRESHOLD", "8"))
    new_card_position: str = os.getenv("NEW_CARD_POSITION", "after")
    interleave_every: int = int(os.getenv("INTERLEAVE_EVERY", "4"))
    learning_steps: int = int(os.getenv("LEARNING_STEPS", "2"))
    timezone: str = os.getenv("TIMEZONE", "")


@dataclass
class DueCountSettings:
    """Due-count refresh and polling settings."""
    refresh_seconds: float = float(os.getenv("DUE_COUNT_REFRESH_SECONDS", "30"))
    poll_seconds: float = float(os.getenv("DUE_COUNT_POLL_SECONDS", "60"))


@dataclass
class MonitoringSettings:
    """Prometheus exporter settings."""
    enabled: bool = os.getenv("METRICS_ENABLED", "false").lower() == "true"
    port: int = int(os.getenv("METRICS_PORT", "9090"))


def get_path_settings() -> PathSettings:
    """Get path settings."""
    return PathSettings()


def get_database_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()


def get_logging_settings() -> LoggingSettings:
    """Get logging settings."""
    return LoggingSettings()


def get_quiz_defaults() -> QuizDefaults:
    """Get quiz defaults."""
    return QuizDefaults()


def get_due_count_settings() -> DueCountSettings:
    """Get due-count settings."""
    return DueCountSettings()


def get_monitoring_settings() -> MonitoringSettings:
    """Get monitoring settings."""
    return MonitoringSettings()


@dataclass
class Settings:
    """Main settings class that combines all configuration settings."""
    paths: PathSettings = field(default_factory=get_path_settings)
    database: DatabaseSettings = field(default_factory=get_database_settings)
    logging: LoggingSettings = field(default_factory=get_logging_settings)
    quiz: QuizDefaults = field(default_factory=get_quiz_defaults)
    due_count: DueCountSettings = field(default_factory=get_due_count_settings)
    monitoring: MonitoringSettings = field(default_factory=get_monitoring_settings)

    def validate(self) -> None:
        """Validate settings and raise ValueError if invalid."""
        if self.quiz.new_per_day < 0:
            raise ValueError("NEW_PER_DAY cannot be negative")

        if self.quiz.max_reviews_per_day < 0:
            raise ValueError("MAX_REVIEWS_PER_DAY cannot be negative")

        if self.quiz.session_size < 1:
            raise ValueError("SESSION_SIZE must be positive")

        if self.quiz.leech_threshold < 1:
            raise ValueError("LEECH_THRESHOLD must be positive")

        if self.quiz.learning_steps < 1:
            raise ValueError("LEARNING_STEPS must be positive")

        if self.quiz.card_direction not in CARD_DIRECTIONS:
            raise ValueError(f"CARD_DIRECTION must be one of {', '.join(CARD_DIRECTIONS)}")

        if self.quiz.new_card_position not in NEW_CARD_POSITIONS:
            raise ValueError(f"NEW_CARD_POSITION must be one of {', '.join(NEW_CARD_POSITIONS)}")

        if self.quiz.timezone:
            try:
                ZoneInfo(self.quiz.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown TIMEZONE: {self.quiz.timezone}") from e

        if self.due_count.refresh_seconds < 0:
            raise ValueError("DUE_COUNT_REFRESH_SECONDS cannot be negative")


# Create global settings instance
settings = Settings()
settings.validate()
