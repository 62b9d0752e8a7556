"""Tests for session snapshot persistence."""
import json
from datetime import datetime, timedelta

import pytest

from vocabook.models.quiz_models import QuizMode, SessionStats
from vocabook.services.kv_store import MemoryKeyValueStore, SqlKeyValueStore
from vocabook.services.session_store import (
    LEGACY_CLEANUP_MARKER,
    SnapshotStore,
    session_key,
    upgrade_v1_to_v2,
)

GENERAL_KEY = "quiz:session:general"


class Clock:
    """Settable clock."""

    def __init__(self, moment: datetime):
        self.moment = moment

    def __call__(self) -> datetime:
        return self.moment


@pytest.fixture
def clock(now) -> Clock:
    return Clock(now)


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv, clock, tz) -> SnapshotStore:
    return SnapshotStore(kv, clock=clock, tz=tz)


def v1_payload(date: str, **changes) -> dict:
    payload = {
        "version": 1,
        "mode": "general",
        "date": date,
        "updatedAt": 1773118800000,
        "wordIds": [4, 8, 15],
        "currentIndex": 1,
        "completed": 1,
        "sessionStats": {"totalReviewed": 1, "newCards": 1, "againCount": 0},
    }
    payload.update(changes)
    return payload


def test_session_key():
    """Test that snapshots are namespaced by mode."""
    assert session_key(QuizMode.GENERAL) == GENERAL_KEY
    assert session_key(QuizMode.QUICKSTART) == "quiz:session:quickstart"


def test_round_trip_same_day(store, kv):
    """Test that a snapshot read back on the same day equals what was written."""
    stats = SessionStats(total_reviewed=3, new_cards=1, again_count=1, review_again_count=1, good_count=2)
    snapshot = store.make_snapshot(QuizMode.GENERAL, [3, 1, 2], current_index=3, completed=3, session_stats=stats)

    assert store.write(snapshot) is True
    assert GENERAL_KEY in kv.keys()
    assert store.read(QuizMode.GENERAL) == snapshot


def test_snapshot_json_shape(store, kv):
    """Test the stored field names."""
    store.write(store.make_snapshot(QuizMode.GENERAL, [1, 2]))
    data = json.loads(kv.get(GENERAL_KEY))
    assert set(data) == {
        "version", "mode", "date", "updatedAt", "wordIds", "currentIndex",
        "completed", "totalSessionSize", "sessionStats",
    }
    assert data["version"] == 2
    assert data["date"] == "2026-03-10"
    assert data["totalSessionSize"] == 2
    assert set(data["sessionStats"]) == {
        "totalReviewed", "newCards", "againCount", "reviewAgainCount", "newAgainCount",
        "hardCount", "goodCount", "easyCount", "masteredCount",
    }


def test_next_day_read_discards(store, kv, clock):
    """Test that a snapshot from another local day is removed and read as absent."""
    store.write(store.make_snapshot(QuizMode.GENERAL, [1, 2, 3]))
    clock.moment = clock.moment + timedelta(days=1)

    assert store.read(QuizMode.GENERAL) is None
    assert kv.get(GENERAL_KEY) is None


def test_local_midnight_is_the_day_boundary(store, kv, clock, tz):
    """Test that expiry follows the local calendar day."""
    clock.moment = datetime(2026, 3, 10, 23, 59, tzinfo=tz)
    store.write(store.make_snapshot(QuizMode.GENERAL, [1]))
    clock.moment = datetime(2026, 3, 11, 0, 1, tzinfo=tz)
    assert store.read(QuizMode.GENERAL) is None


@pytest.mark.parametrize(
    "raw",
    [
        "{not json",
        "[1, 2, 3]",
        json.dumps({"version": 99, "mode": "general", "date": "2026-03-10", "wordIds": [1]}),
        json.dumps({"mode": "general", "date": "2026-03-10", "wordIds": [1]}),
        json.dumps({"version": 2, "mode": "general", "date": "2026-03-10", "wordIds": []}),
        json.dumps({"version": 2, "mode": "general", "date": "2026-03-10", "wordIds": "1,2"}),
        json.dumps({"version": 2, "mode": "general", "date": "2026-03-10", "wordIds": ["x"]}),
        json.dumps({"version": 2, "mode": "general", "date": "2026-03-10", "wordIds": [1], "sessionStats": [1]}),
        json.dumps({"version": 1, "mode": "general", "date": "2026-03-10", "wordIds": [1], "sessionStats": "x"}),
        json.dumps({"version": 1, "mode": "general", "date": "2026-03-10", "wordIds": 5}),
    ],
)
def test_unusable_snapshots_are_discarded(raw, store, kv):
    """Test that corrupt, unknown-version or empty snapshots read as absent."""
    kv.set(GENERAL_KEY, raw)
    assert store.read(QuizMode.GENERAL) is None
    assert kv.get(GENERAL_KEY) is None


def test_v1_snapshot_is_upgraded(store, kv):
    """Test that a version 1 snapshot is backfilled to the current shape."""
    kv.set(GENERAL_KEY, json.dumps(v1_payload("2026-03-10")))
    snapshot = store.read(QuizMode.GENERAL)

    assert snapshot is not None
    assert snapshot.version == 2
    assert snapshot.word_ids == [4, 8, 15]
    assert snapshot.current_index == 1
    assert snapshot.total_session_size == 3
    assert snapshot.session_stats == SessionStats(total_reviewed=1, new_cards=1)


def test_v1_legacy_date_field(store, kv):
    """Test that the legacy `kstDate` field is accepted as the day."""
    payload = v1_payload("2026-03-10")
    payload["kstDate"] = payload.pop("date")
    kv.set(GENERAL_KEY, json.dumps(payload))
    snapshot = store.read(QuizMode.GENERAL)
    assert snapshot is not None
    assert snapshot.date == "2026-03-10"


def test_v1_snapshot_from_another_day_is_discarded(store, kv):
    """Test that upgrading does not bypass the day check."""
    kv.set(GENERAL_KEY, json.dumps(v1_payload("2026-03-09")))
    assert store.read(QuizMode.GENERAL) is None
    assert kv.get(GENERAL_KEY) is None


def test_upgrade_keeps_existing_counters():
    """Test that the upgrader only adds missing fields."""
    payload = v1_payload("2026-03-10", sessionStats={"totalReviewed": 5, "reviewAgainCount": 2, "newAgainCount": 1})
    upgraded = upgrade_v1_to_v2(payload)
    assert upgraded["sessionStats"]["reviewAgainCount"] == 2
    assert upgraded["sessionStats"]["easyCount"] == 0
    assert payload["version"] == 1


def test_write_failure_is_not_raised(kv, clock, tz):
    """Test that a full store makes write return False without raising."""
    store = SnapshotStore(MemoryKeyValueStore(capacity=10), clock=clock, tz=tz)
    snapshot = store.make_snapshot(QuizMode.GENERAL, list(range(100)))
    assert store.write(snapshot) is False
    assert store.read(QuizMode.GENERAL) is None


def test_quickstart_is_never_persisted(store, kv):
    """Test that quick-start sessions live only in memory."""
    snapshot = store.make_snapshot(QuizMode.QUICKSTART, [7, 9])
    assert store.write(snapshot) is True
    assert kv.keys() == []
    assert store.read(QuizMode.QUICKSTART) == snapshot

    # A fresh store (a reload) has nothing
    assert SnapshotStore(kv).read(QuizMode.QUICKSTART) is None


def test_clear_and_clear_all(store, kv):
    """Test clearing one mode and all modes."""
    store.write(store.make_snapshot(QuizMode.GENERAL, [1]))
    store.write(store.make_snapshot(QuizMode.QUICKSTART, [2]))

    store.clear(QuizMode.GENERAL)
    assert store.read(QuizMode.GENERAL) is None
    assert store.read(QuizMode.QUICKSTART) is not None

    store.write(store.make_snapshot(QuizMode.GENERAL, [1]))
    store.clear_all()
    assert store.read(QuizMode.GENERAL) is None
    assert store.read(QuizMode.QUICKSTART) is None


def test_cleanup_legacy_keys_runs_once(store, kv):
    """Test that old-style keys are removed once and the marker is set."""
    kv.set("quiz:srs-session:abc", "{}")
    kv.set("quiz:srs-session:def", "{}")
    kv.set("other", "keep")

    assert store.cleanup_legacy_keys() == 2
    assert kv.keys("quiz:srs-session:") == []
    assert kv.get("other") == "keep"
    assert kv.get(LEGACY_CLEANUP_MARKER) == "1"

    kv.set("quiz:srs-session:late", "{}")
    assert store.cleanup_legacy_keys() == 0
    assert kv.get("quiz:srs-session:late") == "{}"


def test_sql_key_value_store(db, clock, tz):
    """Test snapshots through the local database table."""
    kv = SqlKeyValueStore(db)
    store = SnapshotStore(kv, clock=clock, tz=tz)
    snapshot = store.make_snapshot(QuizMode.GENERAL, [5, 6], current_index=1, completed=1)

    assert store.write(snapshot) is True
    assert store.read(QuizMode.GENERAL) == snapshot
    assert kv.keys("quiz:") == [GENERAL_KEY]

    store.clear(QuizMode.GENERAL)
    assert kv.get(GENERAL_KEY) is None
