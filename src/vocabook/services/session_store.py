"""Versioned persistence of the in-progress quiz session.

A snapshot lives under `quiz:session:<mode>` as JSON. Reads only ever return
the current schema: older versions are upgraded through `UPGRADERS`, and
anything unusable (bad JSON, unknown version, empty queue, another day) is
removed and reported as absent. Quick-start sessions are never written to the
key/value store; they are kept in memory for the lifetime of this object.
"""
import json
import logging
from datetime import datetime, tzinfo
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from vocabook import monitoring
from vocabook.exceptions import TransientStorageFailure
from vocabook.models.quiz_models import QuizMode, QuizSessionSnapshot, SessionStats
from vocabook.services.kv_store import KeyValueStore
from vocabook.utils.dates import get_local_date_string, now_local

logger = logging.getLogger(__name__)

CURRENT_VERSION = 2
KEY_PREFIX = "quiz:session:"
LEGACY_KEY_PREFIX = "quiz:srs-session:"
LEGACY_CLEANUP_MARKER = "quiz:legacy-cleanup-done"


def session_key(mode: QuizMode) -> str:
    return f"{KEY_PREFIX}{mode.value}"


def upgrade_v1_to_v2(data: Dict[str, Any]) -> Dict[str, Any]:
    """Backfill the fields version 2 added.

    Version 1 may keep the day under `kstDate`, may lack the split again
    counters, and has no per-rating counters or total session size.
    """
    upgraded = dict(data)
    if "date" not in upgraded and "kstDate" in upgraded:
        upgraded["date"] = upgraded["kstDate"]
    upgraded.pop("kstDate", None)

    stats = SessionStats().to_dict()
    stats.update(upgraded.get("sessionStats") or {})
    upgraded["sessionStats"] = stats

    upgraded.setdefault("totalSessionSize", len(upgraded.get("wordIds") or []))
    upgraded["version"] = 2
    return upgraded


# version -> upgrader producing version + 1
UPGRADERS: Dict[int, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    1: upgrade_v1_to_v2,
}


class SnapshotStore:
    """Read, write and clear session snapshots for each quiz mode."""

    def __init__(
        self,
        kv_store: KeyValueStore,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
    ):
        self.kv_store = kv_store
        self.tz = tz
        self.clock = clock or (lambda: now_local(self.tz))
        self._transient: Dict[QuizMode, QuizSessionSnapshot] = {}

    def today(self) -> str:
        return get_local_date_string(self.clock(), self.tz)

    def make_snapshot(
        self,
        mode: QuizMode,
        word_ids: List[int],
        current_index: int = 0,
        completed: int = 0,
        total_session_size: Optional[int] = None,
        session_stats: Optional[SessionStats] = None,
    ) -> QuizSessionSnapshot:
        """Create a current-version snapshot stamped with today and now."""
        return QuizSessionSnapshot(
            mode=mode,
            date=self.today(),
            updated_at=int(self.clock().timestamp() * 1000),
            word_ids=list(word_ids),
            current_index=current_index,
            completed=completed,
            total_session_size=len(word_ids) if total_session_size is None else total_session_size,
            session_stats=session_stats or SessionStats(),
            version=CURRENT_VERSION,
        )

    def _discard(self, mode: QuizMode, reason: str) -> None:
        logger.info(f"Discarding {mode.value} session snapshot: {reason}")
        monitoring.snapshot_discards.labels(reason=reason).inc()
        self.clear(mode)

    def _upgrade(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        version = data.get("version")
        while version != CURRENT_VERSION:
            if isinstance(version, bool) or version not in UPGRADERS:
                return None
            data = UPGRADERS[version](data)
            version = data.get("version")
        return data

    def read(self, mode: QuizMode) -> Optional[QuizSessionSnapshot]:
        """Get today's snapshot for `mode`, or None."""
        if not mode.persistent:
            snapshot = self._transient.get(mode)
            if snapshot is not None and snapshot.date != self.today():
                self._transient.pop(mode, None)
                return None
            return snapshot

        raw = self.kv_store.get(session_key(mode))
        if raw is None:
            return None

        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            self._discard(mode, "unparseable")
            return None
        if not isinstance(data, dict):
            self._discard(mode, "unparseable")
            return None

        try:
            data = self._upgrade(data)
        except (AttributeError, TypeError, ValueError):
            self._discard(mode, "invalid")
            return None
        if data is None:
            self._discard(mode, "unknown_version")
            return None

        word_ids = data.get("wordIds")
        if not isinstance(word_ids, list) or not word_ids:
            self._discard(mode, "empty_queue")
            return None

        if data.get("date") != self.today():
            self._discard(mode, "expired")
            return None

        try:
            snapshot = QuizSessionSnapshot.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError):
            self._discard(mode, "invalid")
            return None
        if snapshot.mode is not mode:
            self._discard(mode, "invalid")
            return None
        return snapshot

    def write(self, snapshot: QuizSessionSnapshot) -> bool:
        """Persist a snapshot. Returns False if it could not be stored."""
        if not snapshot.mode.persistent:
            self._transient[snapshot.mode] = snapshot
            return True

        key = session_key(snapshot.mode)
        try:
            self.kv_store.set(key, json.dumps(snapshot.to_dict()))
        except (TransientStorageFailure, OSError, SQLAlchemyError) as e:
            logger.warning(f"Could not persist session snapshot {key}: {e}")
            monitoring.snapshot_write_failures.inc()
            return False
        return True

    def clear(self, mode: QuizMode) -> None:
        """Remove the snapshot for `mode`."""
        self._transient.pop(mode, None)
        if mode.persistent:
            self.kv_store.delete(session_key(mode))

    def clear_all(self) -> None:
        """Remove the snapshots of every mode."""
        for mode in QuizMode:
            self.clear(mode)

    def cleanup_legacy_keys(self) -> int:
        """Remove pre-namespace `quiz:srs-session:*` entries once."""
        if self.kv_store.get(LEGACY_CLEANUP_MARKER):
            return 0

        keys = self.kv_store.keys(LEGACY_KEY_PREFIX)
        for key in keys:
            self.kv_store.delete(key)
        try:
            self.kv_store.set(LEGACY_CLEANUP_MARKER, "1")
        except TransientStorageFailure as e:
            logger.warning(f"Could not record legacy cleanup: {e}")

        if keys:
            logger.info(f"Removed {len(keys)} legacy session keys")
        return len(keys)
