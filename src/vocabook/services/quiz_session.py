"""The in-progress quiz session for one mode."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Union

from vocabook import monitoring
from vocabook.exceptions import InvalidInput
from vocabook.models.quiz_models import (
    ProgressState,
    QuizMode,
    QuizSessionSnapshot,
    Rating,
    SessionQueue,
    SessionStats,
)
from vocabook.services.achievement_service import AchievementService
from vocabook.services.session_store import SnapshotStore
from vocabook.services.study_service import StudyService
from vocabook.services.word_service import WordService

logger = logging.getLogger(__name__)


@dataclass
class RatingEvent:
    """What observers are told after each rating."""
    mode: QuizMode
    word_id: int
    rating: Rating
    was_new: bool
    state: Optional[ProgressState]  # None for practice ratings
    session_stats: SessionStats


RatingObserver = Callable[[RatingEvent], None]
MasteryListener = Callable[[int], None]


class QuizSession:
    """Queue position, counters and snapshotting of one session.

    Construct one per mode and pass it to whatever needs the current session.
    General sessions schedule every rating and survive reloads through the
    snapshot store. Quick-start sessions only count practice answers.
    """

    def __init__(
        self,
        mode: QuizMode,
        store: SnapshotStore,
        study_service: StudyService,
        word_service: Optional[WordService] = None,
        achievement_service: Optional[AchievementService] = None,
        observers: Optional[Sequence[RatingObserver]] = None,
        mastery_listeners: Optional[Sequence[MasteryListener]] = None,
    ):
        self.mode = mode
        self.store = store
        self.study_service = study_service
        self.word_service = word_service or WordService(study_service.db, study_service.user_id)
        self.achievement_service = achievement_service
        self.observers: List[RatingObserver] = list(observers or [])
        self.mastery_listeners: List[MasteryListener] = list(mastery_listeners or [])
        self._reset()

    def _reset(self) -> None:
        self.word_ids: List[int] = []
        self.current_index = 0
        self.completed = 0
        self.total_session_size = 0
        self.stats = SessionStats()

    def add_observer(self, observer: RatingObserver) -> None:
        """Register a callback run after every rating, in registration order."""
        self.observers.append(observer)

    def add_mastery_listener(self, listener: MasteryListener) -> None:
        """Register a callback run with the id of every word mastered mid-session."""
        self.mastery_listeners.append(listener)

    @property
    def is_finished(self) -> bool:
        return self.current_index >= len(self.word_ids)

    @property
    def remaining(self) -> int:
        return max(0, len(self.word_ids) - self.current_index)

    def current_word_id(self) -> Optional[int]:
        """Get the word to show next, or None when the queue is exhausted."""
        if self.is_finished:
            return None
        return self.word_ids[self.current_index]

    def to_snapshot(self) -> QuizSessionSnapshot:
        return self.store.make_snapshot(
            self.mode,
            self.word_ids,
            current_index=self.current_index,
            completed=self.completed,
            total_session_size=self.total_session_size,
            session_stats=self.stats,
        )

    def _persist(self) -> bool:
        return self.store.write(self.to_snapshot())

    def start(self, queue: Union[SessionQueue, Sequence[int]]) -> bool:
        """Begin a new session; returns whether the first snapshot was stored."""
        word_ids = queue.word_ids if isinstance(queue, SessionQueue) else queue
        self._reset()
        self.word_ids = list(word_ids)
        self.total_session_size = len(self.word_ids)
        monitoring.sessions_started.labels(mode=self.mode.value).inc()
        logger.info(f"Started {self.mode.value} session with {self.total_session_size} cards")
        if not self.word_ids:
            self.store.clear(self.mode)
            return True
        return self._persist()

    def resume(self) -> bool:
        """Restore today's session from its snapshot, if there is one."""
        snapshot = self.store.read(self.mode)
        if snapshot is None:
            return False
        self.word_ids = list(snapshot.word_ids)
        self.current_index = min(max(0, snapshot.current_index), len(self.word_ids))
        self.completed = snapshot.completed
        self.total_session_size = snapshot.total_session_size or len(self.word_ids)
        self.stats = snapshot.session_stats
        logger.info(
            f"Resumed {self.mode.value} session at card {self.current_index + 1} of {len(self.word_ids)}"
        )
        return True

    def _notify(self, callbacks, payload, error_type: str) -> None:
        for callback in callbacks:
            try:
                callback(payload)
            except Exception as e:
                logger.error(f"Session callback {callback!r} failed: {e}", exc_info=True)
                monitoring.error_count.labels(error_type=error_type).inc()

    def rate(self, rating, now: Optional[datetime] = None) -> RatingEvent:
        """Apply a rating to the current card and move to the next one.

        Raises:
            InvalidInput: for an unknown rating, or when no card is left.
        """
        rating = Rating.parse(rating)
        word_id = self.current_word_id()
        if word_id is None:
            raise InvalidInput("Session has no card left to rate", field="rating")

        if self.mode.persistent:
            outcome = self.study_service.record_review(word_id, rating, now)
            was_new, state = outcome.was_new, outcome.state
        else:
            self.study_service.increment_practice_stats(rating.is_success, now)
            was_new, state = False, None

        self.stats.record(rating, was_new)
        self.completed += 1
        self.current_index += 1
        self._persist()

        event = RatingEvent(self.mode, word_id, rating, was_new, state, self.stats)
        self._notify(self.observers, event, "rating_observer")
        return event

    def master_current(self, now: Optional[datetime] = None) -> Optional[int]:
        """Mark the current word mastered and drop it from the queue."""
        word_id = self.current_word_id()
        if word_id is None:
            return None

        self.word_service.set_mastered(word_id, True, now)
        self.study_service.increment_mastered_stats(now)
        self.stats.mastered_count += 1
        self.completed += 1
        del self.word_ids[self.current_index]
        if self.word_ids:
            self._persist()
        else:
            self.store.clear(self.mode)
        self._notify(self.mastery_listeners, word_id, "mastery_listener")
        return word_id

    def abandon(self) -> None:
        """Drop the session and its snapshot."""
        self.store.clear(self.mode)
        self._reset()

    def finish(self, now: Optional[datetime] = None) -> List[str]:
        """End the session; returns achievement types it unlocked."""
        self.store.clear(self.mode)
        monitoring.sessions_completed.labels(mode=self.mode.value).inc()
        logger.info(
            f"Finished {self.mode.value} session: {self.stats.total_reviewed} reviewed, "
            f"{self.stats.again_count} again, {self.stats.mastered_count} mastered"
        )
        if self.achievement_service is None or not self.mode.persistent:
            return []
        return self.achievement_service.check_and_unlock(self.stats, now)
