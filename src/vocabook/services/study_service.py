"""Service for recording reviews and keeping the per-day study counters."""
import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vocabook import monitoring
from vocabook.config import settings
from vocabook.exceptions import InvalidInput
from vocabook.models.models import DailyStats, QuizSettingsRow, StudyProgress, Word, owned_by
from vocabook.models.quiz_models import DayStats, ProgressState, QuizSettings, Rating
from vocabook.services.srs_scheduler import is_new_card, schedule
from vocabook.utils.dates import as_utc, compute_streak, get_local_date_string, get_timezone, now_local

logger = logging.getLogger(__name__)

_RATING_COLUMNS = {
    Rating.HARD: "hard_count",
    Rating.GOOD: "good_count",
    Rating.EASY: "easy_count",
}


@dataclass
class ReviewOutcome:
    """Result of recording one rating."""
    word_id: int
    rating: Rating
    state: ProgressState
    was_new: bool
    became_leech: bool = False


class StudyService:
    """Service for review bookkeeping of one user, or of the local store."""

    def __init__(self, db: Session, user_id: Optional[int] = None):
        """Initialize the service with a database session and owner."""
        self.db = db
        self.user_id = user_id
        self.tz = get_timezone()

    def _get_word(self, word_id: int) -> Word:
        word = (
            self.db.query(Word)
            .filter(Word.id == word_id)
            .filter(owned_by(Word, self.user_id))
            .first()
        )
        if word is None:
            raise InvalidInput(f"Word {word_id} not found", field="word_id")
        return word

    def _get_or_create_daily_row(self, date_str: str) -> DailyStats:
        row = (
            self.db.query(DailyStats)
            .filter(owned_by(DailyStats, self.user_id))
            .filter(DailyStats.date == date_str)
            .first()
        )
        if row is None:
            row = DailyStats(user_id=self.user_id, date=date_str)
            for column in fields(DayStats):
                if column.name != "date":
                    setattr(row, column.name, 0)
            self.db.add(row)
        return row

    def record_review(self, word_id: int, rating, now: Optional[datetime] = None) -> ReviewOutcome:
        """Schedule the next review of a word and update today's counters.

        A word rated for the first time gets its progress row here. Again
        bumps the word to high priority and flags it as a leech once its
        lapses reach the threshold; leeches stay in rotation.

        Raises:
            InvalidInput: for an unknown rating or a word the owner does not have.
        """
        rating = Rating.parse(rating)
        now = now or now_local(self.tz)
        word = self._get_word(word_id)

        row = word.progress
        current = ProgressState.from_row(row) if row is not None else None
        was_new = is_new_card(current)
        state = schedule(current, rating, now, self.tz)

        if row is None:
            row = StudyProgress(user_id=self.user_id, word_id=word.id)
            self.db.add(row)
        state.apply_to(row)

        self._increment_review_counters(get_local_date_string(now, self.tz), rating, was_new)

        became_leech = False
        if rating is Rating.AGAIN:
            word.priority = 1
            threshold = self.get_quiz_settings().leech_threshold
            if state.lapses >= threshold and not word.is_leech:
                word.is_leech = True
                word.leech_at = as_utc(now)
                became_leech = True

        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error(f"Failed to record review of word {word_id}", exc_info=True)
            monitoring.error_count.labels(error_type="record_review").inc()
            raise

        monitoring.reviews_recorded.labels(rating=rating.name.lower()).inc()
        if became_leech:
            monitoring.leeches_flagged.inc()
            logger.info(f"Word {word_id} flagged as leech after {state.lapses} lapses")
        logger.debug(
            f"Reviewed word {word_id} as {rating.name}: next in {state.interval_days} days "
            f"({state.card_state.name})"
        )
        return ReviewOutcome(word.id, rating, state, was_new, became_leech)

    def _increment_review_counters(self, date_str: str, rating: Rating, was_new: bool) -> None:
        row = self._get_or_create_daily_row(date_str)
        row.review_count += 1
        if was_new:
            row.new_count += 1
        if rating is Rating.AGAIN:
            row.again_count += 1
            if was_new:
                row.new_again_count += 1
            else:
                row.review_again_count += 1
        else:
            column = _RATING_COLUMNS[rating]
            setattr(row, column, getattr(row, column) + 1)

    def increment_daily_stats(self, rating, was_new: bool, now: Optional[datetime] = None) -> DayStats:
        """Count a rating in today's stats without touching any schedule."""
        rating = Rating.parse(rating)
        date_str = get_local_date_string(now or now_local(self.tz), self.tz)
        self._increment_review_counters(date_str, rating, was_new)
        self.db.commit()
        return self.get_daily_stats(date_str)

    def increment_mastered_stats(self, now: Optional[datetime] = None) -> DayStats:
        """Count a word marked mastered during today's session."""
        date_str = get_local_date_string(now or now_local(self.tz), self.tz)
        row = self._get_or_create_daily_row(date_str)
        row.mastered_in_session_count += 1
        self.db.commit()
        return DayStats.from_row(row)

    def increment_practice_stats(self, known: bool, now: Optional[datetime] = None) -> DayStats:
        """Count a quick-start practice answer. Practice never touches SRS state."""
        date_str = get_local_date_string(now or now_local(self.tz), self.tz)
        row = self._get_or_create_daily_row(date_str)
        row.practice_count += 1
        if known:
            row.practice_known_count += 1
        self.db.commit()
        return DayStats.from_row(row)

    def get_daily_stats(self, date_str: str) -> Optional[DayStats]:
        """Get the counters of one local day, if anything was recorded."""
        row = (
            self.db.query(DailyStats)
            .filter(owned_by(DailyStats, self.user_id))
            .filter(DailyStats.date == date_str)
            .first()
        )
        return DayStats.from_row(row) if row is not None else None

    def get_daily_stats_range(self, start: str, end: str) -> List[DayStats]:
        """Get the recorded days between two dates, inclusive, oldest first."""
        rows = (
            self.db.query(DailyStats)
            .filter(owned_by(DailyStats, self.user_id))
            .filter(DailyStats.date >= start, DailyStats.date <= end)
            .order_by(DailyStats.date)
            .all()
        )
        return [DayStats.from_row(row) for row in rows]

    def get_streak_days(self, today: Optional[str] = None) -> int:
        """Get the number of consecutive days with at least one review."""
        today = today or get_local_date_string(tz=self.tz)
        dates = (
            self.db.query(DailyStats.date)
            .filter(owned_by(DailyStats, self.user_id))
            .filter(DailyStats.review_count > 0)
            .filter(DailyStats.date <= today)
            .all()
        )
        return compute_streak((d for (d,) in dates), today)

    def get_total_reviews(self) -> int:
        """Get the lifetime number of ratings."""
        total = (
            self.db.query(func.coalesce(func.sum(DailyStats.review_count), 0))
            .filter(owned_by(DailyStats, self.user_id))
            .scalar()
        )
        return int(total or 0)

    def get_mastered_count(self) -> int:
        """Get the number of mastered words."""
        return (
            self.db.query(Word)
            .filter(owned_by(Word, self.user_id))
            .filter(Word.mastered.is_(True))
            .count()
        )

    def _get_settings_row(self) -> Optional[QuizSettingsRow]:
        return self.db.query(QuizSettingsRow).filter(owned_by(QuizSettingsRow, self.user_id)).first()

    def get_quiz_settings(self) -> QuizSettings:
        """Get the stored quiz settings, or the configured defaults."""
        defaults = QuizSettings.from_defaults(settings.quiz)
        row = self._get_settings_row()
        if row is None:
            return defaults
        return replace(
            defaults,
            new_per_day=row.new_per_day,
            max_reviews_per_day=row.max_reviews_per_day,
            jlpt_filter=row.jlpt_filter,
            priority_filter=row.priority_filter,
            card_direction=row.card_direction,
            session_size=row.session_size,
            leech_threshold=row.leech_threshold,
            new_card_position=row.new_card_position,
        )

    def update_quiz_settings(self, **changes) -> QuizSettings:
        """Validate and store changed quiz settings.

        Raises:
            InvalidInput: for an unknown setting or an invalid value.
        """
        known = {f.name for f in fields(QuizSettings)} - {"interleave_every"}
        for name in changes:
            if name not in known:
                raise InvalidInput(f"Unknown quiz setting: {name}", field=name)

        updated = replace(self.get_quiz_settings(), **changes).validate()

        row = self._get_settings_row()
        if row is None:
            row = QuizSettingsRow(user_id=self.user_id)
            self.db.add(row)
        for name in known:
            setattr(row, name, getattr(updated, name))
        self.db.commit()

        logger.info(f"Updated quiz settings for user {self.user_id}: {sorted(changes)}")
        return updated
