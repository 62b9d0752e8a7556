"""Achievement rules and the service that persists unlocks."""
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vocabook import monitoring
from vocabook.models.models import Achievement, owned_by
from vocabook.models.quiz_models import SessionStats, StatsSnapshot
from vocabook.services.study_service import StudyService
from vocabook.utils.dates import as_utc, get_local_date_string, now_local

logger = logging.getLogger(__name__)

# Per-rating weights for the rolling accuracy score
ACCURACY_WEIGHTS = {
    "again": 0,
    "hard": 20,
    "good": 50,
    "easy": 80,
    "mastered": 100,
}

ACCURACY_WINDOW_DAYS = 7


def compute_weighted_accuracy(counts: Dict[str, int]) -> int:
    """Weighted 0-100 score of a rating distribution; 100 when nothing was rated."""
    total = sum(counts.get(key, 0) for key in ACCURACY_WEIGHTS)
    if total == 0:
        return 100
    weighted = sum(counts.get(key, 0) * weight for key, weight in ACCURACY_WEIGHTS.items())
    return int(math.floor(weighted / total + 0.5))


def _week_has_ratings(stats: StatsSnapshot) -> bool:
    return sum(stats.week_counts.get(key, 0) for key in ACCURACY_WEIGHTS) > 0


def _perfect_session(stats: StatsSnapshot) -> bool:
    session = stats.session_stats
    return session is not None and session.total_reviewed > 0 and session.again_count == 0


@dataclass(frozen=True)
class AchievementDef:
    """One achievement: a type, its category and a single threshold condition."""
    type: str
    category: str
    condition: Callable[[StatsSnapshot], bool]
    threshold: Optional[int] = None


def _at_least(statistic: Callable[[StatsSnapshot], int], threshold: int) -> Callable[[StatsSnapshot], bool]:
    return lambda stats: statistic(stats) >= threshold


def _mastered(stats: StatsSnapshot) -> int:
    return stats.mastered_count


def _streak(stats: StatsSnapshot) -> int:
    return stats.streak_days


def _total_reviews(stats: StatsSnapshot) -> int:
    return stats.total_reviews


def _today_reviews(stats: StatsSnapshot) -> int:
    return stats.today_reviews


ACHIEVEMENT_DEFS: List[AchievementDef] = [
    AchievementDef("first_quiz", "special", _at_least(_total_reviews, 1)),
    *[
        AchievementDef(f"words_{n}", "milestone", _at_least(_mastered, n), n)
        for n in (50, 100, 250, 500, 1000, 2000, 5000)
    ],
    *[
        AchievementDef(f"streak_{n}", "streak", _at_least(_streak, n), n)
        for n in (3, 7, 14, 30, 60, 100, 365)
    ],
    *[
        AchievementDef(f"reviews_{n}", "volume", _at_least(_total_reviews, n), n)
        for n in (500, 1000, 5000)
    ],
    AchievementDef("perfect_session", "accuracy", _perfect_session),
    AchievementDef(
        "accuracy_week_80",
        "accuracy",
        lambda stats: _week_has_ratings(stats) and compute_weighted_accuracy(stats.week_counts) >= 80,
        80,
    ),
    AchievementDef("daily_50", "volume", _at_least(_today_reviews, 50), 50),
    AchievementDef("daily_100", "volume", _at_least(_today_reviews, 100), 100),
]


def evaluate(stats: StatsSnapshot, unlocked: Iterable[str]) -> List[str]:
    """Get the achievement types newly earned by `stats`, in catalogue order.

    Pure: already unlocked types are never reported again, so calling this
    repeatedly with the same inputs gives the same answer.
    """
    unlocked = set(unlocked)
    return [
        definition.type
        for definition in ACHIEVEMENT_DEFS
        if definition.type not in unlocked and definition.condition(stats)
    ]


class AchievementService:
    """Service for checking and unlocking achievements."""

    def __init__(self, db: Session, user_id: Optional[int] = None):
        """Initialize the service with a database session and owner."""
        self.db = db
        self.user_id = user_id
        self.study_service = StudyService(db, user_id)

    def get_unlocked(self) -> Set[str]:
        """Get the achievement types already unlocked."""
        rows = self.db.query(Achievement.type).filter(owned_by(Achievement, self.user_id)).all()
        return {achievement_type for (achievement_type,) in rows}

    def get_achievements(self) -> List[Achievement]:
        """Get unlocked achievements, most recent first."""
        return (
            self.db.query(Achievement)
            .filter(owned_by(Achievement, self.user_id))
            .order_by(Achievement.unlocked_at.desc())
            .all()
        )

    def build_stats(
        self, session_stats: Optional[SessionStats] = None, now: Optional[datetime] = None
    ) -> StatsSnapshot:
        """Collect the aggregate statistics the rules are evaluated against."""
        now = now or now_local(self.study_service.tz)
        today = get_local_date_string(now, self.study_service.tz)
        week_start = (date.fromisoformat(today) - timedelta(days=ACCURACY_WINDOW_DAYS - 1)).isoformat()

        week = self.study_service.get_daily_stats_range(week_start, today)
        week_counts = {
            "again": sum(day.again_count for day in week),
            "hard": sum(day.hard_count for day in week),
            "good": sum(day.good_count for day in week),
            "easy": sum(day.easy_count for day in week),
            "mastered": sum(day.mastered_in_session_count for day in week),
        }
        today_stats = self.study_service.get_daily_stats(today)

        return StatsSnapshot(
            mastered_count=self.study_service.get_mastered_count(),
            streak_days=self.study_service.get_streak_days(today),
            total_reviews=self.study_service.get_total_reviews(),
            today_reviews=today_stats.review_count if today_stats else 0,
            week_counts=week_counts,
            session_stats=session_stats,
        )

    def unlock(self, achievement_type: str, now: Optional[datetime] = None) -> bool:
        """Store one unlock. Returns False if it was already unlocked."""
        # NULL user ids are distinct under the unique constraint, so check first
        if achievement_type in self.get_unlocked():
            return False
        now = now or now_local(self.study_service.tz)
        self.db.add(Achievement(user_id=self.user_id, type=achievement_type, unlocked_at=as_utc(now)))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.debug(f"Achievement {achievement_type} already unlocked for user {self.user_id}")
            return False
        return True

    def check_and_unlock(
        self, session_stats: Optional[SessionStats] = None, now: Optional[datetime] = None
    ) -> List[str]:
        """Evaluate the rules and persist newly earned achievements."""
        stats = self.build_stats(session_stats, now)
        newly_unlocked = []
        for achievement_type in evaluate(stats, self.get_unlocked()):
            if self.unlock(achievement_type, now):
                newly_unlocked.append(achievement_type)
                monitoring.achievements_unlocked.labels(type=achievement_type).inc()
                logger.info(f"User {self.user_id} unlocked achievement {achievement_type}")
        return newly_unlocked
