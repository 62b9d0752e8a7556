"""Service for selecting and ordering the cards of a review session."""
import logging
import random
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from vocabook import monitoring
from vocabook.models.models import StudyProgress, Word, owned_by
from vocabook.models.quiz_models import Candidate, DayStats, ProgressState, QuizSettings, SessionQueue
from vocabook.services.study_service import StudyService
from vocabook.utils.dates import as_aware, get_local_date_string, now_local

logger = logging.getLogger(__name__)


def _passes_filters(candidate: Candidate, settings: QuizSettings) -> bool:
    if settings.jlpt_filter is not None and candidate.jlpt_level != settings.jlpt_filter:
        return False
    if settings.priority_filter is not None and candidate.priority != settings.priority_filter:
        return False
    return True


def _merge(due: List[Candidate], new: List[Candidate], settings: QuizSettings) -> List[Candidate]:
    """Combine due and new cards in the configured order."""
    if settings.new_card_position == "before":
        return new + due
    if settings.new_card_position == "after":
        return due + new

    # Interleave: one new card after every `interleave_every` due cards
    merged: List[Candidate] = []
    new_iter = iter(new)
    for index, candidate in enumerate(due, start=1):
        merged.append(candidate)
        if index % settings.interleave_every == 0:
            next_new = next(new_iter, None)
            if next_new is not None:
                merged.append(next_new)
    merged.extend(new_iter)
    return merged


def build_session(
    candidates: Iterable[Candidate],
    settings: QuizSettings,
    today_stats: Optional[DayStats] = None,
    now: Optional[datetime] = None,
) -> SessionQueue:
    """Select and order word ids for a review session.

    Due cards (progress with next_review <= now) and new cards (no progress)
    are filtered, capped against what is left of today's budgets, ordered
    deterministically and truncated to the session size. Words whose lapses
    reach the leech threshold are flagged but stay in the queue.

    Raises:
        InvalidInput: if the settings are malformed.
    """
    settings.validate()
    now = now or now_local()

    due: List[Candidate] = []
    new: List[Candidate] = []
    for candidate in candidates:
        if not _passes_filters(candidate, settings):
            continue
        if candidate.progress is None:
            new.append(candidate)
        elif as_aware(candidate.progress.next_review) <= now:
            due.append(candidate)

    reviewed_today = today_stats.review_count if today_stats else 0
    new_today = today_stats.new_count if today_stats else 0
    remaining_reviews = max(0, settings.max_reviews_per_day - reviewed_today)
    remaining_new = max(0, settings.new_per_day - new_today)

    due.sort(key=lambda c: (as_aware(c.progress.next_review), c.word_id))
    new.sort(key=lambda c: (c.priority, c.word_id))

    # Every rating counts against the review budget, new cards included
    due = due[:remaining_reviews]
    new = new[:min(remaining_new, remaining_reviews - len(due))]

    ordered = _merge(due, new, settings)[:settings.session_size]

    queue = SessionQueue(
        word_ids=[c.word_id for c in ordered],
        leech_ids=[
            c.word_id for c in ordered
            if c.progress is not None and c.progress.lapses >= settings.leech_threshold
        ],
        due_count=sum(1 for c in ordered if c.progress is not None),
        new_count=sum(1 for c in ordered if c.progress is None),
    )
    monitoring.session_size.observe(len(queue.word_ids))
    return queue


def priority_weight(priority: int) -> float:
    """Weight based on priority: 1 (high) = 1.0, 2 (mid) = 0.7, 3 (low) = 0.4"""
    return {1: 1.0, 2: 0.7, 3: 0.4}.get(priority, 0.7)


def jlpt_weight(user_jlpt: Optional[int], word_jlpt: Optional[int]) -> float:
    """Weight based on how close a word's JLPT level is to the learner's."""
    if user_jlpt is None or word_jlpt is None:
        return 0.7
    diff = word_jlpt - user_jlpt
    if diff == 0:
        return 1.0
    if diff == 1:
        return 0.9
    if diff == -1:
        return 0.8
    if diff > 1:
        return 0.6
    return 0.5


def select_practice_words(
    candidates: Iterable[Candidate],
    limit: int,
    user_jlpt: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """Weighted random pick for quick-start practice (no SRS ordering)."""
    rng = rng or random.Random()
    scored = [
        (priority_weight(c.priority) * jlpt_weight(user_jlpt, c.jlpt_level) * (0.5 + rng.random()), c.word_id)
        for c in candidates
    ]
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [word_id for _, word_id in scored[:max(0, limit)]]


class SessionBuilderService:
    """Loads candidates from the database and builds session queues."""

    def __init__(self, db: Session, user_id: Optional[int] = None):
        """Initialize the service with a database session and owner."""
        self.db = db
        self.user_id = user_id
        self.study_service = StudyService(db, user_id)

    def load_candidates(self) -> List[Candidate]:
        """Get all non-mastered words with their progress, if any."""
        rows = (
            self.db.query(Word, StudyProgress)
            .outerjoin(StudyProgress, StudyProgress.word_id == Word.id)
            .filter(owned_by(Word, self.user_id))
            .filter(Word.mastered.is_(False))
            .all()
        )
        return [
            Candidate(
                word_id=word.id,
                priority=word.priority,
                jlpt_level=word.jlpt_level,
                created_at=word.created_at,
                progress=ProgressState.from_row(progress) if progress is not None else None,
            )
            for word, progress in rows
        ]

    def build(self, now: Optional[datetime] = None) -> SessionQueue:
        """Build today's SRS review queue."""
        now = now or now_local()
        settings = self.study_service.get_quiz_settings()
        today_stats = self.study_service.get_daily_stats(get_local_date_string(now))
        queue = build_session(self.load_candidates(), settings, today_stats, now)
        logger.info(
            f"Built session for user {self.user_id}: {queue.due_count} due, "
            f"{queue.new_count} new, {len(queue.leech_ids)} leeches"
        )
        return queue

    def build_quickstart(self, rng: Optional[random.Random] = None) -> SessionQueue:
        """Build a transient practice queue of up to new_per_day words."""
        settings = self.study_service.get_quiz_settings()
        candidates = self.load_candidates()
        word_ids = select_practice_words(candidates, settings.new_per_day, settings.jlpt_filter, rng)
        by_id = {c.word_id: c for c in candidates}
        return SessionQueue(
            word_ids=word_ids,
            leech_ids=[],
            due_count=sum(1 for word_id in word_ids if by_id[word_id].progress is not None),
            new_count=sum(1 for word_id in word_ids if by_id[word_id].progress is None),
        )
