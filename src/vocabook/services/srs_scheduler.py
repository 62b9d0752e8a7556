"""SM-2 scheduling with a New/Learning/Review/Relearning card-state layer.

Maintains per card:
  - interval_days – current inter-repetition interval in days
  - ease_factor   – E-Factor (minimum 1.3, default 2.5)
  - review_count  – consecutive successful reviews (n)

Ratings map onto SM-2 quality grades: Again=0, Hard=3, Good=4, Easy=5.

Algorithm (per https://super-memory.com/english/ol/sm2.htm):
  1. If the rating is Again: reset review_count to 0 and interval to 1.
     Otherwise compute the interval from the current E-Factor:
       n == 0  -> 1 day
       n == 1  -> 6 days
       n >= 2  -> previous interval x E-Factor (rounded, never shorter)
     and increment review_count.
  2. Update the E-Factor, floored at 1.3.
  3. Next review is local midnight `interval` days after today's local date.

Every function here is pure: inputs are never mutated.
"""
import math
from dataclasses import replace
from datetime import datetime, tzinfo
from typing import Any, Dict, Optional, Tuple

from vocabook.config import settings
from vocabook.exceptions import InvalidInput
from vocabook.models.quiz_models import CardState, ProgressState, Rating
from vocabook.utils.dates import add_local_days, now_local

MIN_EASE_FACTOR = 1.3
DEFAULT_EASE_FACTOR = 2.5
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
LAPSE_INTERVAL_DAYS = 1


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def next_ease_factor(ease_factor: float, rating: Rating) -> float:
    """Apply the SM-2 E-Factor update for a rating, floored at 1.3."""
    q = rating.quality
    new_ef = ease_factor + (0.1 - (5 - q) * (0.08 + (5 - q) * 0.02))
    return max(MIN_EASE_FACTOR, new_ef)


def _next_card_state(
    state: CardState, step: int, rating: Rating, learning_steps: int
) -> Tuple[CardState, int]:
    """Return the (state, learning_step) that follows a rating."""
    if state is CardState.NEW:
        state, step = CardState.LEARNING, 0

    if state is CardState.LEARNING:
        if not rating.is_success:
            return CardState.LEARNING, 0
        step += 1
        if step >= learning_steps:
            return CardState.REVIEW, 0
        return CardState.LEARNING, step

    if state is CardState.REVIEW:
        if rating.is_success:
            return CardState.REVIEW, 0
        return CardState.RELEARNING, 0

    # Relearning
    if rating.is_success:
        return CardState.REVIEW, 0
    return CardState.RELEARNING, 0


def initial_progress(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> ProgressState:
    """Create the state a word has before its first rating."""
    return ProgressState(
        next_review=now or now_local(tz),
        interval_days=0,
        ease_factor=DEFAULT_EASE_FACTOR,
        review_count=0,
        last_reviewed_at=None,
        lapses=0,
        card_state=CardState.NEW,
        learning_step=0,
    )


def is_new_card(progress: Optional[ProgressState]) -> bool:
    """Check if a card has never been reviewed."""
    if progress is None:
        return True
    return progress.card_state == CardState.NEW and progress.review_count == 0


def schedule(
    progress: Optional[ProgressState],
    rating: Any,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
    learning_steps: Optional[int] = None,
) -> ProgressState:
    """Return the state that follows `rating` on `progress`.

    Raises:
        InvalidInput: if `rating` is not a recognised rating value, or
            `learning_steps` is below 1.
    """
    rating = Rating.parse(rating)
    now = now or now_local(tz)
    if learning_steps is None:
        learning_steps = settings.quiz.learning_steps
    if isinstance(learning_steps, bool) or not isinstance(learning_steps, int) or learning_steps < 1:
        raise InvalidInput(
            f"learning_steps must be a positive integer, got {learning_steps!r}", field="learning_steps"
        )
    if progress is None:
        progress = initial_progress(now, tz)

    ease = max(MIN_EASE_FACTOR, progress.ease_factor or DEFAULT_EASE_FACTOR)
    interval = max(0, progress.interval_days)
    lapses = progress.lapses

    if rating.is_success:
        if progress.review_count <= 0:
            new_interval = FIRST_INTERVAL_DAYS
        elif progress.review_count == 1:
            new_interval = SECOND_INTERVAL_DAYS
        else:
            new_interval = max(1, interval, _round_half_up(interval * ease))
        new_reviews = progress.review_count + 1
    else:
        new_interval = LAPSE_INTERVAL_DAYS
        new_reviews = 0
        if progress.card_state != CardState.NEW:
            lapses += 1

    state, step = _next_card_state(
        CardState(progress.card_state), progress.learning_step, rating, learning_steps
    )

    return replace(
        progress,
        next_review=add_local_days(now, new_interval, tz),
        interval_days=new_interval,
        ease_factor=next_ease_factor(ease, rating),
        review_count=new_reviews,
        last_reviewed_at=now,
        lapses=lapses,
        card_state=state,
        learning_step=step,
    )


def preview_intervals(
    progress: Optional[ProgressState],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[Rating, int]:
    """Get the interval in days each rating would produce."""
    return {rating: schedule(progress, rating, now, tz).interval_days for rating in Rating}
