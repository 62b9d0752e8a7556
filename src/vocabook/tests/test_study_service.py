"""Tests for study service."""
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from vocabook.exceptions import InvalidInput
from vocabook.models.models import DailyStats, StudyProgress
from vocabook.models.quiz_models import CardState, Rating
from vocabook.services.study_service import StudyService
from vocabook.utils.dates import as_aware, compute_streak


@pytest.fixture
def study_service(db) -> StudyService:
    """Create a study service for the local store."""
    return StudyService(db)


def test_first_review_creates_progress(db, study_service, make_word, now, tz):
    """Test that rating a new word creates its progress row."""
    word = make_word()
    outcome = study_service.record_review(word.id, Rating.GOOD, now)

    assert outcome.was_new is True
    assert outcome.state.interval_days == 1
    progress = db.query(StudyProgress).filter_by(word_id=word.id).one()
    assert progress.review_count == 1
    assert progress.card_state == CardState.LEARNING
    assert as_aware(progress.next_review) == (now + timedelta(days=1)).replace(hour=0, minute=0)


def test_second_review_is_not_new(study_service, make_word, now):
    """Test that a word with progress is a review."""
    word = make_word()
    study_service.record_review(word.id, Rating.GOOD, now)
    outcome = study_service.record_review(word.id, Rating.GOOD, now + timedelta(days=1))
    assert outcome.was_new is False
    assert outcome.state.interval_days == 6


def test_daily_stats_counters(study_service, make_word, now):
    """Test per-rating counters and the again split by new and review."""
    first, second, third = make_word(), make_word(), make_word()
    study_service.record_review(first.id, Rating.AGAIN, now)
    study_service.record_review(first.id, Rating.AGAIN, now)
    study_service.record_review(second.id, Rating.EASY, now)
    study_service.record_review(third.id, Rating.HARD, now)

    stats = study_service.get_daily_stats("2026-03-10")
    assert stats.review_count == 4
    assert stats.new_count == 3
    assert stats.again_count == 2
    assert stats.new_again_count == 1
    assert stats.review_again_count == 1
    assert stats.easy_count == 1
    assert stats.hard_count == 1
    assert stats.good_count == 0


def test_stats_use_local_day(study_service, make_word, tz):
    """Test that a late-evening UTC review lands on the next local day."""
    word = make_word()
    study_service.record_review(word.id, Rating.GOOD, datetime(2026, 3, 10, 16, 0, tzinfo=ZoneInfo("UTC")))
    assert study_service.get_daily_stats("2026-03-10") is None
    assert study_service.get_daily_stats("2026-03-11").review_count == 1


def test_again_bumps_priority(db, study_service, make_word, now):
    """Test that Again moves a word to high priority."""
    word = make_word(priority=3)
    study_service.record_review(word.id, Rating.AGAIN, now)
    db.refresh(word)
    assert word.priority == 1


def test_leech_flagged_once_at_threshold(db, study_service, make_word, now):
    """Test that a word is flagged as leech when its lapses reach the threshold."""
    study_service.update_quiz_settings(leech_threshold=2)
    word = make_word()
    study_service.record_review(word.id, Rating.GOOD, now)

    assert study_service.record_review(word.id, Rating.AGAIN, now).became_leech is False
    outcome = study_service.record_review(word.id, Rating.AGAIN, now)
    assert outcome.became_leech is True
    assert outcome.state.lapses == 2
    assert study_service.record_review(word.id, Rating.AGAIN, now).became_leech is False

    db.refresh(word)
    assert word.is_leech is True
    assert word.leech_at is not None


def test_invalid_rating_changes_nothing(db, study_service, make_word, now):
    """Test that an unknown rating is rejected before anything is written."""
    word = make_word()
    with pytest.raises(InvalidInput):
        study_service.record_review(word.id, 7, now)
    assert db.query(StudyProgress).count() == 0
    assert db.query(DailyStats).count() == 0


def test_unknown_word_raises(study_service, now):
    """Test that rating a missing word is an input error."""
    with pytest.raises(InvalidInput) as exc_info:
        study_service.record_review(424242, Rating.GOOD, now)
    assert exc_info.value.field == "word_id"


def test_words_are_scoped_by_owner(db, test_user, make_word, now):
    """Test that a user cannot rate a local-store word."""
    word = make_word()
    with pytest.raises(InvalidInput):
        StudyService(db, test_user.id).record_review(word.id, Rating.GOOD, now)

    user_word = make_word(user_id=test_user.id)
    StudyService(db, test_user.id).record_review(user_word.id, Rating.GOOD, now)
    assert StudyService(db).get_daily_stats("2026-03-10") is None
    assert StudyService(db, test_user.id).get_daily_stats("2026-03-10").review_count == 1


def test_practice_and_mastered_counters(study_service, now):
    """Test practice and mastered-in-session counters."""
    study_service.increment_practice_stats(True, now)
    study_service.increment_practice_stats(False, now)
    stats = study_service.increment_mastered_stats(now)
    assert stats.practice_count == 2
    assert stats.practice_known_count == 1
    assert stats.mastered_in_session_count == 1
    assert stats.review_count == 0


def test_increment_daily_stats(study_service, now):
    """Test counting a rating without scheduling."""
    stats = study_service.increment_daily_stats("good", False, now)
    assert stats.review_count == 1
    assert stats.good_count == 1
    assert stats.new_count == 0


def test_daily_stats_range(db, study_service):
    """Test the inclusive date range, oldest first."""
    for date in ("2026-03-01", "2026-03-05", "2026-03-07", "2026-03-09"):
        db.add(DailyStats(date=date, review_count=1))
    db.commit()
    days = study_service.get_daily_stats_range("2026-03-05", "2026-03-09")
    assert [day.date for day in days] == ["2026-03-05", "2026-03-07", "2026-03-09"]


def test_streak_days(db, study_service):
    """Test that the streak counts back from today, or from yesterday."""
    for date in ("2026-03-06", "2026-03-07", "2026-03-08", "2026-03-09"):
        db.add(DailyStats(date=date, review_count=3))
    db.add(DailyStats(date="2026-03-05", review_count=0, practice_count=4))
    db.commit()

    assert study_service.get_streak_days("2026-03-09") == 4
    assert study_service.get_streak_days("2026-03-10") == 4
    assert study_service.get_streak_days("2026-03-11") == 0


@pytest.mark.parametrize(
    "dates,today,expected",
    [
        ([], "2026-03-10", 0),
        (["2026-03-10"], "2026-03-10", 1),
        (["2026-03-09", "2026-03-10"], "2026-03-10", 2),
        (["2026-03-08", "2026-03-10"], "2026-03-10", 1),
        (["2026-03-08", "2026-03-09"], "2026-03-10", 2),
        (["2026-02-28", "2026-03-01"], "2026-03-01", 2),
    ],
)
def test_compute_streak(dates, today, expected):
    """Test streak counting with gaps and month boundaries."""
    assert compute_streak(dates, today) == expected


def test_totals(db, study_service, make_word, now):
    """Test lifetime review and mastered counts."""
    make_word(mastered=True)
    word = make_word()
    study_service.record_review(word.id, Rating.GOOD, now)
    study_service.record_review(word.id, Rating.GOOD, now + timedelta(days=1))
    assert study_service.get_total_reviews() == 2
    assert study_service.get_mastered_count() == 1


def test_quiz_settings_defaults_and_update(study_service):
    """Test default settings and validated updates."""
    settings = study_service.get_quiz_settings()
    assert settings.new_per_day == 20
    assert settings.max_reviews_per_day == 100

    updated = study_service.update_quiz_settings(new_per_day=5, jlpt_filter=3, new_card_position="before")
    assert updated.new_per_day == 5
    stored = study_service.get_quiz_settings()
    assert stored.jlpt_filter == 3
    assert stored.new_card_position == "before"
    assert stored.max_reviews_per_day == 100


@pytest.mark.parametrize(
    "changes",
    [{"new_per_day": -1}, {"session_size": 0}, {"card_direction": "upside"}, {"colour": "blue"}],
)
def test_quiz_settings_update_rejects_invalid(study_service, changes):
    """Test that invalid settings updates raise and are not stored."""
    with pytest.raises(InvalidInput):
        study_service.update_quiz_settings(**changes)
    assert study_service.get_quiz_settings().new_per_day == 20

