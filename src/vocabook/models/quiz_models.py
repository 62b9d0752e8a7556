"""Value types shared by the scheduler, session builder and session store."""
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from vocabook.config import CARD_DIRECTIONS, NEW_CARD_POSITIONS, QuizDefaults
from vocabook.exceptions import InvalidInput
from vocabook.utils.dates import as_utc


class Rating(IntEnum):
    """Recall rating given by the learner."""
    AGAIN = 0
    HARD = 1
    GOOD = 2
    EASY = 3

    @property
    def quality(self) -> int:
        """SM-2 quality grade (0-5) for this rating."""
        return {Rating.AGAIN: 0, Rating.HARD: 3, Rating.GOOD: 4, Rating.EASY: 5}[self]

    @property
    def is_success(self) -> bool:
        return self is not Rating.AGAIN

    @classmethod
    def parse(cls, value: Any) -> "Rating":
        """Coerce a rating from an enum member, an int 0-3 or a name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise InvalidInput(f"Invalid rating: {value!r}", field="rating")
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InvalidInput(f"Invalid rating: {value!r}", field="rating") from None
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise InvalidInput(f"Invalid rating: {value!r}", field="rating") from None
        raise InvalidInput(f"Invalid rating: {value!r}", field="rating")


class CardState(IntEnum):
    """Lifecycle state of a card."""
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class QuizMode(Enum):
    """Session namespaces. Only the general SRS review survives a reload."""
    GENERAL = "general"
    QUICKSTART = "quickstart"

    @property
    def persistent(self) -> bool:
        return self is QuizMode.GENERAL


@dataclass(frozen=True)
class ProgressState:
    """Scheduling parameters for one card."""
    next_review: datetime
    interval_days: int = 0
    ease_factor: float = 2.5
    review_count: int = 0
    last_reviewed_at: Optional[datetime] = None
    lapses: int = 0
    card_state: CardState = CardState.NEW
    learning_step: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "ProgressState":
        """Create a state from a StudyProgress row."""
        return cls(
            next_review=row.next_review,
            interval_days=row.interval_days,
            ease_factor=row.ease_factor,
            review_count=row.review_count,
            last_reviewed_at=row.last_reviewed_at,
            lapses=row.lapses or 0,
            card_state=CardState(row.card_state or 0),
            learning_step=row.learning_step or 0,
        )

    def apply_to(self, row: Any) -> None:
        """Copy this state onto a StudyProgress row."""
        row.next_review = as_utc(self.next_review)
        row.interval_days = self.interval_days
        row.ease_factor = self.ease_factor
        row.review_count = self.review_count
        row.last_reviewed_at = as_utc(self.last_reviewed_at)
        row.lapses = self.lapses
        row.card_state = int(self.card_state)
        row.learning_step = self.learning_step


@dataclass
class QuizSettings:
    """Effective quiz settings for one user or the local store."""
    new_per_day: int = 20
    max_reviews_per_day: int = 100
    jlpt_filter: Optional[int] = None
    priority_filter: Optional[int] = None
    card_direction: str = "term_first"
    session_size: int = 20
    leech_threshold: int = 8
    new_card_position: str = "after"
    interleave_every: int = 4

    @classmethod
    def from_defaults(cls, defaults: QuizDefaults) -> "QuizSettings":
        return cls(
            new_per_day=defaults.new_per_day,
            max_reviews_per_day=defaults.max_reviews_per_day,
            jlpt_filter=defaults.jlpt_filter,
            priority_filter=defaults.priority_filter,
            card_direction=defaults.card_direction,
            session_size=defaults.session_size,
            leech_threshold=defaults.leech_threshold,
            new_card_position=defaults.new_card_position,
            interleave_every=defaults.interleave_every,
        )

    def validate(self) -> "QuizSettings":
        """Raise InvalidInput for malformed settings."""
        for name in ("new_per_day", "max_reviews_per_day"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidInput(f"{name} must be a non-negative integer", field=name)
        for name in ("session_size", "leech_threshold", "interleave_every"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise InvalidInput(f"{name} must be a positive integer", field=name)
        if self.jlpt_filter is not None and self.jlpt_filter not in range(1, 6):
            raise InvalidInput("jlpt_filter must be between 1 and 5", field="jlpt_filter")
        if self.priority_filter is not None and self.priority_filter not in (1, 2, 3):
            raise InvalidInput("priority_filter must be 1, 2 or 3", field="priority_filter")
        if self.card_direction not in CARD_DIRECTIONS:
            raise InvalidInput(f"Unknown card direction: {self.card_direction}", field="card_direction")
        if self.new_card_position not in NEW_CARD_POSITIONS:
            raise InvalidInput(
                f"Unknown new card position: {self.new_card_position}", field="new_card_position"
            )
        return self


@dataclass
class DayStats:
    """Counters of one DailyStats row."""
    date: str
    new_count: int = 0
    review_count: int = 0
    again_count: int = 0
    review_again_count: int = 0
    new_again_count: int = 0
    hard_count: int = 0
    good_count: int = 0
    easy_count: int = 0
    mastered_in_session_count: int = 0
    practice_count: int = 0
    practice_known_count: int = 0

    @classmethod
    def from_row(cls, row: Any) -> "DayStats":
        counters = {f.name: getattr(row, f.name) or 0 for f in fields(cls) if f.name != "date"}
        return cls(date=row.date, **counters)

    @property
    def has_activity(self) -> bool:
        return self.review_count > 0 or self.new_count > 0


@dataclass
class Candidate:
    """A non-mastered word considered for a review session."""
    word_id: int
    priority: int = 2
    jlpt_level: Optional[int] = None
    created_at: Optional[datetime] = None
    progress: Optional[ProgressState] = None

    @property
    def is_new(self) -> bool:
        return self.progress is None


@dataclass
class SessionQueue:
    """Ordered word ids for a session plus non-blocking leech flags."""
    word_ids: List[int] = field(default_factory=list)
    leech_ids: List[int] = field(default_factory=list)
    due_count: int = 0
    new_count: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.word_ids


# Serialized snapshot keys -> SessionStats attribute names
_STATS_KEYS = {
    "totalReviewed": "total_reviewed",
    "newCards": "new_cards",
    "againCount": "again_count",
    "reviewAgainCount": "review_again_count",
    "newAgainCount": "new_again_count",
    "hardCount": "hard_count",
    "goodCount": "good_count",
    "easyCount": "easy_count",
    "masteredCount": "mastered_count",
}


@dataclass
class SessionStats:
    """Running counters for the session in progress."""
    total_reviewed: int = 0
    new_cards: int = 0
    again_count: int = 0
    review_again_count: int = 0
    new_again_count: int = 0
    hard_count: int = 0
    good_count: int = 0
    easy_count: int = 0
    mastered_count: int = 0

    def record(self, rating: Rating, was_new: bool) -> None:
        self.total_reviewed += 1
        if was_new:
            self.new_cards += 1
        if rating is Rating.AGAIN:
            self.again_count += 1
            if was_new:
                self.new_again_count += 1
            else:
                self.review_again_count += 1
        elif rating is Rating.HARD:
            self.hard_count += 1
        elif rating is Rating.GOOD:
            self.good_count += 1
        else:
            self.easy_count += 1

    def to_dict(self) -> Dict[str, int]:
        return {key: getattr(self, attr) for key, attr in _STATS_KEYS.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionStats":
        return cls(**{attr: int(data.get(key, 0) or 0) for key, attr in _STATS_KEYS.items()})


@dataclass
class QuizSessionSnapshot:
    """Persisted shape of an in-progress session (current schema)."""
    mode: QuizMode
    date: str
    updated_at: int  # epoch milliseconds
    word_ids: List[int]
    current_index: int = 0
    completed: int = 0
    total_session_size: int = 0
    session_stats: SessionStats = field(default_factory=SessionStats)
    version: int = 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "mode": self.mode.value,
            "date": self.date,
            "updatedAt": self.updated_at,
            "wordIds": list(self.word_ids),
            "currentIndex": self.current_index,
            "completed": self.completed,
            "totalSessionSize": self.total_session_size,
            "sessionStats": self.session_stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QuizSessionSnapshot":
        return cls(
            version=int(data["version"]),
            mode=QuizMode(data["mode"]),
            date=str(data["date"]),
            updated_at=int(data.get("updatedAt", 0)),
            word_ids=[int(word_id) for word_id in data["wordIds"]],
            current_index=int(data.get("currentIndex", 0)),
            completed=int(data.get("completed", 0)),
            total_session_size=int(data.get("totalSessionSize", 0)),
            session_stats=SessionStats.from_dict(data.get("sessionStats") or {}),
        )


@dataclass
class StatsSnapshot:
    """Aggregate statistics the achievement rules are evaluated against."""
    mastered_count: int = 0
    streak_days: int = 0
    total_reviews: int = 0
    today_reviews: int = 0
    week_counts: Dict[str, int] = field(default_factory=dict)
    session_stats: Optional[SessionStats] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MigrationResult:
    """Counts reported by a local-to-remote migration."""
    word_count: int = 0
    progress_count: int = 0
    wordbook_count: int = 0
    item_count: int = 0
    deduplicated_count: int = 0
    failures: List[Any] = field(default_factory=list)  # PartialMigrationFailure

    @property
    def is_complete(self) -> bool:
        return not self.failures
