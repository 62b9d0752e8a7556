"""Due-card counting for badges and polling.

The aggregator keeps an in-memory index of (next_review, word_id) sorted with
`bisect`, so a count is a binary search rather than a scan. The index is
reloaded from the store when it is older than the refresh window, and it is
updated in place by every rating it observes.
"""
import asyncio
import bisect
import logging
import math
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from vocabook import monitoring
from vocabook.config import settings
from vocabook.exceptions import RemoteUnavailable
from vocabook.models.models import StudyProgress, Word, owned_by
from vocabook.models.quiz_models import DayStats, QuizSettings
from vocabook.utils.dates import as_aware, as_utc, now_local

logger = logging.getLogger(__name__)

DueEntry = Tuple[int, datetime]
DueLoader = Callable[[], Iterable[DueEntry]]


class DueIndex:
    """Sorted (next_review, word_id) keys with per-word lookup."""

    def __init__(self, entries: Iterable[DueEntry] = ()):
        self._keys: List[Tuple[float, int]] = []
        self._by_word: Dict[int, float] = {}
        self.load(entries)

    def __len__(self) -> int:
        return len(self._keys)

    def load(self, entries: Iterable[DueEntry]) -> None:
        """Replace the whole index."""
        self._by_word = {word_id: as_aware(next_review).timestamp() for word_id, next_review in entries}
        self._keys = sorted((ts, word_id) for word_id, ts in self._by_word.items())

    def update(self, word_id: int, next_review: datetime) -> None:
        """Insert or move one word."""
        self.remove(word_id)
        ts = as_aware(next_review).timestamp()
        self._by_word[word_id] = ts
        bisect.insort(self._keys, (ts, word_id))

    def remove(self, word_id: int) -> None:
        ts = self._by_word.pop(word_id, None)
        if ts is None:
            return
        position = bisect.bisect_left(self._keys, (ts, word_id))
        if position < len(self._keys) and self._keys[position] == (ts, word_id):
            del self._keys[position]

    def count_due(self, now: datetime) -> int:
        """Count words with next_review <= now."""
        return bisect.bisect_right(self._keys, (as_aware(now).timestamp(), math.inf))


def sql_due_loader(db: Session, user_id: Optional[int] = None) -> DueLoader:
    """Loader reading every scheduled, non-mastered word of one owner."""
    def load() -> List[DueEntry]:
        rows = (
            db.query(StudyProgress.word_id, StudyProgress.next_review)
            .join(Word, Word.id == StudyProgress.word_id)
            .filter(owned_by(StudyProgress, user_id))
            .filter(Word.mastered.is_(False))
            .all()
        )
        return [(word_id, next_review) for word_id, next_review in rows]
    return load


def count_due_sql(db: Session, user_id: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """One-off due count straight from the indexed next_review column."""
    now = now or now_local()
    return (
        db.query(StudyProgress)
        .join(Word, Word.id == StudyProgress.word_id)
        .filter(owned_by(StudyProgress, user_id))
        .filter(Word.mastered.is_(False))
        .filter(StudyProgress.next_review <= as_utc(now))
        .count()
    )


def badge_count(
    due_count: int,
    today_stats: Optional[DayStats],
    quiz_settings: QuizSettings,
    new_available: int = 0,
) -> int:
    """Cards a session would offer right now: due plus new, within today's budgets."""
    reviewed_today = today_stats.review_count if today_stats else 0
    new_today = today_stats.new_count if today_stats else 0
    remaining_reviews = max(0, quiz_settings.max_reviews_per_day - reviewed_today)
    remaining_new = max(0, quiz_settings.new_per_day - new_today)

    due = min(due_count, remaining_reviews)
    new = min(new_available, remaining_new, remaining_reviews - due)
    return due + new


class DueCountAggregator:
    """Cached due count for one owner, refreshed at most every `refresh_seconds`.

    Register an instance as a rating observer on the quiz session so each
    newly scheduled card moves in the index straight away.
    """

    def __init__(
        self,
        loader: DueLoader,
        refresh_seconds: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.loader = loader
        if refresh_seconds is None:
            refresh_seconds = settings.due_count.refresh_seconds
        self.refresh_seconds = refresh_seconds
        self.clock = clock or now_local
        self.timer = timer
        self.index = DueIndex()
        self._loaded_at: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        return self._loaded_at is None or self.timer() - self._loaded_at >= self.refresh_seconds

    def _load(self) -> List[DueEntry]:
        try:
            return list(self.loader())
        except DBAPIError as e:
            monitoring.error_count.labels(error_type="due_count_load").inc()
            raise RemoteUnavailable(f"Could not load due cards: {e}") from e

    def _install(self, entries: List[DueEntry]) -> None:
        self.index.load(entries)
        self._loaded_at = self.timer()
        logger.debug(f"Due index reloaded with {len(entries)} scheduled cards")

    def refresh(self) -> None:
        """Reload the index now.

        Raises:
            RemoteUnavailable: if the store cannot be read; the old index is kept.
        """
        self._install(self._load())

    def invalidate(self) -> None:
        """Force a reload on the next count."""
        self._loaded_at = None

    def _count(self, now: Optional[datetime], source: str) -> int:
        count = self.index.count_due(now or self.clock())
        monitoring.due_count_queries.labels(source=source).inc()
        monitoring.due_count_current.set(count)
        return count

    def get_due_count(self, now: Optional[datetime] = None) -> int:
        """Count due cards, reloading first if the index is stale."""
        if self.is_stale:
            self.refresh()
        return self._count(now, "sync")

    async def get_due_count_async(self, now: Optional[datetime] = None) -> int:
        """Like get_due_count, loading in a worker thread.

        If the caller is cancelled while the load is in flight, its result is
        dropped and the index is left as it was.
        """
        if self.is_stale:
            entries = await asyncio.to_thread(self._load)
            self._install(entries)
        return self._count(now, "async")

    def badge_count(
        self,
        today_stats: Optional[DayStats],
        quiz_settings: QuizSettings,
        new_available: int = 0,
        now: Optional[datetime] = None,
    ) -> int:
        return badge_count(self.get_due_count(now), today_stats, quiz_settings, new_available)

    def remove(self, word_id: int) -> None:
        """Forget a word, e.g. once it is mastered or deleted."""
        self.index.remove(word_id)

    def attach(self, session) -> None:
        """Keep the index in step with a quiz session's ratings and masteries."""
        session.add_observer(self)
        session.add_mastery_listener(self.remove)

    def __call__(self, event) -> None:
        """Rating observer hook."""
        if event.state is not None:
            self.index.update(event.word_id, event.state.next_review)
