"""Tests for due counting and the due-count poller."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from vocabook.exceptions import RemoteUnavailable
from vocabook.models.models import StudyProgress
from vocabook.models.quiz_models import DayStats, ProgressState, QuizMode, Rating, SessionStats
from vocabook.services.due_count import (
    DueCountAggregator,
    DueIndex,
    badge_count,
    count_due_sql,
    sql_due_loader,
)
from vocabook.services.kv_store import MemoryKeyValueStore
from vocabook.services.polling_service import DueCountPoller
from vocabook.services.quiz_session import QuizSession, RatingEvent
from vocabook.services.session_store import SnapshotStore
from vocabook.services.study_service import StudyService
from vocabook.utils.dates import as_utc


class FakeTimer:
    """Monotonic timer the test advances by hand."""

    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class ListLoader:
    """Loader returning whatever entries it currently holds."""

    def __init__(self, entries):
        self.entries = list(entries)
        self.calls = 0
        self.error = None

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entries)


def schedule_word(db, word, next_review, **values):
    db.add(StudyProgress(word_id=word.id, user_id=word.user_id, next_review=as_utc(next_review), **values))
    db.commit()


def test_due_index_counts_with_bisect(now):
    """Test counting, moving and removing entries."""
    index = DueIndex([(1, now - timedelta(days=1)), (2, now), (3, now + timedelta(hours=1))])
    assert len(index) == 3
    assert index.count_due(now) == 2
    assert index.count_due(now - timedelta(days=2)) == 0

    index.update(3, now - timedelta(minutes=5))
    assert index.count_due(now) == 3
    assert len(index) == 3

    index.update(1, now + timedelta(days=6))
    index.remove(2)
    index.remove(42)
    assert index.count_due(now) == 1
    assert len(index) == 2


def test_aggregator_refresh_window(now):
    """Test that counts are served from the index until it goes stale."""
    loader = ListLoader([(1, now - timedelta(days=1))])
    timer = FakeTimer()
    aggregator = DueCountAggregator(loader, refresh_seconds=60, clock=lambda: now, timer=timer)

    assert aggregator.get_due_count() == 1
    loader.entries.append((2, now - timedelta(hours=1)))
    timer.value += 30
    assert aggregator.get_due_count() == 1
    assert loader.calls == 1

    timer.value += 30
    assert aggregator.get_due_count() == 2
    assert loader.calls == 2


def test_invalidate_forces_reload(now):
    """Test that invalidate makes the next count reload."""
    loader = ListLoader([])
    aggregator = DueCountAggregator(loader, refresh_seconds=3600, timer=FakeTimer())
    aggregator.get_due_count(now)
    loader.entries.append((5, now))
    aggregator.invalidate()
    assert aggregator.get_due_count(now) == 1


def test_observed_ratings_move_cards(now):
    """Test that a rating event reschedules the word in the index."""
    loader = ListLoader([(1, now - timedelta(days=1)), (2, now - timedelta(days=1))])
    aggregator = DueCountAggregator(loader, refresh_seconds=3600, timer=FakeTimer())
    assert aggregator.get_due_count(now) == 2

    state = ProgressState(next_review=now + timedelta(days=1), interval_days=1, review_count=1)
    aggregator(RatingEvent(QuizMode.GENERAL, 1, Rating.GOOD, False, state, SessionStats()))
    assert aggregator.get_due_count(now) == 1

    # Practice ratings carry no schedule
    aggregator(RatingEvent(QuizMode.QUICKSTART, 2, Rating.GOOD, False, None, SessionStats()))
    assert aggregator.get_due_count(now) == 1

    aggregator.remove(2)
    assert aggregator.get_due_count(now) == 0


def test_attached_session_keeps_index_current(db, make_word, now, tz):
    """Test that rated and mastered words leave the due count without a reload."""
    words = [make_word() for _ in range(3)]
    for word in words:
        schedule_word(db, word, now - timedelta(days=1), interval_days=1, review_count=1)
    aggregator = DueCountAggregator(sql_due_loader(db), refresh_seconds=3600, timer=FakeTimer())
    assert aggregator.get_due_count(now) == 3

    store = SnapshotStore(MemoryKeyValueStore(), clock=lambda: now, tz=tz)
    session = QuizSession(QuizMode.GENERAL, store, StudyService(db))
    aggregator.attach(session)
    session.start([w.id for w in words])

    session.rate(Rating.GOOD, now)
    assert aggregator.get_due_count(now) == 2
    session.master_current(now)
    assert aggregator.get_due_count(now) == 1


def test_load_failure_raises_and_keeps_index(now):
    """Test that a store failure surfaces as RemoteUnavailable and the old index survives."""
    loader = ListLoader([(1, now - timedelta(days=1))])
    timer = FakeTimer()
    aggregator = DueCountAggregator(loader, refresh_seconds=60, timer=timer)
    assert aggregator.get_due_count(now) == 1

    loader.error = OperationalError("SELECT 1", {}, Exception("down"))
    aggregator.invalidate()
    with pytest.raises(RemoteUnavailable):
        aggregator.get_due_count(now)
    assert len(aggregator.index) == 1


@pytest.mark.parametrize(
    "due,today,new_available,expected",
    [
        (5, None, 10, 15),
        (5, DayStats(date="2026-03-10", review_count=95), 10, 5),
        (5, DayStats(date="2026-03-10", review_count=90, new_count=18), 10, 7),
        (150, None, 10, 100),
        (0, DayStats(date="2026-03-10", new_count=20), 10, 0),
    ],
)
def test_badge_count(due, today, new_available, expected, quiz_settings):
    """Test the badge number against today's budgets."""
    assert badge_count(due, today, quiz_settings, new_available) == expected


def test_sql_loader_and_count(db, make_word, test_user, now):
    """Test that SQL counting skips mastered words and other owners."""
    due = make_word()
    later = make_word()
    mastered = make_word(mastered=True)
    other = make_word(user_id=test_user.id)
    schedule_word(db, due, now - timedelta(days=1))
    schedule_word(db, later, now + timedelta(days=2))
    schedule_word(db, mastered, now - timedelta(days=1))
    schedule_word(db, other, now - timedelta(days=1))

    entries = dict(sql_due_loader(db)())
    assert set(entries) == {due.id, later.id}
    assert count_due_sql(db, None, now) == 1
    assert count_due_sql(db, test_user.id, now) == 1
    assert count_due_sql(db, None, now + timedelta(days=3)) == 2

    aggregator = DueCountAggregator(sql_due_loader(db), refresh_seconds=60, timer=FakeTimer())
    assert aggregator.get_due_count(now) == 1


@pytest.mark.asyncio
async def test_async_count(now):
    """Test the async count path."""
    loader = ListLoader([(1, now - timedelta(days=1)), (2, now + timedelta(days=1))])
    aggregator = DueCountAggregator(loader, refresh_seconds=60, timer=FakeTimer())
    assert await aggregator.get_due_count_async(now) == 1
    assert loader.calls == 1


@pytest.mark.asyncio
async def test_poll_once_notifies_listeners(now):
    """Test that a poll reloads and passes the count to every listener."""
    loader = ListLoader([(1, now - timedelta(days=1))])
    aggregator = DueCountAggregator(loader, refresh_seconds=3600, clock=lambda: now, timer=FakeTimer())
    seen = []

    def broken(count: int) -> None:
        raise RuntimeError("listener down")

    poller = DueCountPoller(aggregator, poll_seconds=60, listeners=[broken, seen.append])
    assert await poller.poll_once() == 1

    loader.entries.append((2, now))
    assert await poller.poll_once() == 2
    assert seen == [1, 2]
    assert poller.last_count == 2
    assert loader.calls == 2


@pytest.mark.asyncio
async def test_poller_start_and_stop(now):
    """Test that the poller runs in the background and stops cleanly."""
    loader = ListLoader([(1, now - timedelta(days=1))])
    aggregator = DueCountAggregator(loader, refresh_seconds=3600, clock=lambda: now, timer=FakeTimer())
    poller = DueCountPoller(aggregator, poll_seconds=0.01)

    await poller.start()
    assert poller.running
    assert "due_count" in poller.tasks
    await asyncio.sleep(0.05)
    await poller.stop()

    assert not poller.running
    assert poller.tasks == {}
    assert poller.last_count == 1
    assert loader.calls >= 1


@pytest.mark.asyncio
async def test_poller_survives_remote_failure(now):
    """Test that a failing poll keeps the last count and the loop alive."""
    loader = ListLoader([(1, now - timedelta(days=1))])
    aggregator = DueCountAggregator(loader, refresh_seconds=3600, clock=lambda: now, timer=FakeTimer())
    poller = DueCountPoller(aggregator, poll_seconds=0.01)
    await poller.poll_once()

    loader.error = OperationalError("SELECT 1", {}, Exception("down"))
    await poller.start()
    await asyncio.sleep(0.05)
    assert poller.running
    await poller.stop()
    assert poller.last_count == 1
