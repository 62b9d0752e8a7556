"""String-keyed blob storage backing the session snapshots."""
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vocabook.exceptions import TransientStorageFailure
from vocabook.models.models import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Minimal local key/value contract."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Get the stored value, or None."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value.

        Raises:
            TransientStorageFailure: if the value could not be persisted.
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key if present."""
        pass

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        """List stored keys starting with `prefix`."""
        pass


class MemoryKeyValueStore(KeyValueStore):
    """Dict-backed store, optionally limited to `capacity` characters."""

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.capacity is not None:
            used = sum(len(v) for k, v in self._data.items() if k != key)
            if used + len(value) > self.capacity:
                raise TransientStorageFailure(key, "Storage quota exceeded")
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> List[str]:
        return [key for key in self._data if key.startswith(prefix)]


class SqlKeyValueStore(KeyValueStore):
    """Store backed by the local database's `local_kv` table."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, key: str) -> Optional[str]:
        entry = self.db.get(KeyValueEntry, key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: str) -> None:
        try:
            entry = self.db.get(KeyValueEntry, key)
            if entry is None:
                self.db.add(KeyValueEntry(key=key, value=value))
            else:
                entry.value = value
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise TransientStorageFailure(key, str(e)) from e

    def delete(self, key: str) -> None:
        try:
            self.db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete()
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning(f"Could not delete key {key}", exc_info=True)

    def keys(self, prefix: str = "") -> List[str]:
        query = self.db.query(KeyValueEntry.key)
        if prefix:
            query = query.filter(KeyValueEntry.key.startswith(prefix, autoescape=True))
        return [key for (key,) in query.all()]
