"""Local and remote stores used by the migration."""
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from vocabook.exceptions import DuplicateKey, RemoteUnavailable
from vocabook.models.models import StudyProgress, Word, Wordbook, WordbookItem

logger = logging.getLogger(__name__)

WORD_FIELDS = (
    "term", "reading", "meaning", "notes", "tags", "jlpt_level", "priority",
    "mastered", "mastered_at", "is_leech", "leech_at",
)
PROGRESS_FIELDS = (
    "next_review", "interval_days", "ease_factor", "review_count",
    "last_reviewed_at", "lapses", "card_state", "learning_step",
)


def row_values(row: Any, names: Iterable[str]) -> Dict[str, Any]:
    return {name: getattr(row, name) for name in names}


class LocalStore:
    """Anonymous (user_id IS NULL) rows of the local database."""

    def __init__(self, db: Session):
        self.db = db

    def count_words(self) -> int:
        return self.db.query(Word).filter(Word.user_id.is_(None)).count()

    def get_words(self) -> List[Word]:
        return self.db.query(Word).filter(Word.user_id.is_(None)).order_by(Word.id).all()

    def get_progress(self) -> List[StudyProgress]:
        return (
            self.db.query(StudyProgress)
            .filter(StudyProgress.user_id.is_(None))
            .order_by(StudyProgress.id)
            .all()
        )

    def get_wordbooks(self) -> List[Wordbook]:
        return self.db.query(Wordbook).filter(Wordbook.user_id.is_(None)).order_by(Wordbook.id).all()

    def get_wordbook_items(self) -> List[WordbookItem]:
        return (
            self.db.query(WordbookItem)
            .join(Wordbook, Wordbook.id == WordbookItem.wordbook_id)
            .filter(Wordbook.user_id.is_(None))
            .order_by(WordbookItem.id)
            .all()
        )

    def delete_rows(
        self,
        word_ids: Iterable[int],
        progress_ids: Iterable[int],
        wordbook_ids: Iterable[int],
        item_ids: Iterable[int],
    ) -> None:
        """Delete the given local rows in one transaction, children first."""
        word_ids, progress_ids = list(word_ids), list(progress_ids)
        wordbook_ids, item_ids = list(wordbook_ids), list(item_ids)
        try:
            if item_ids:
                self.db.query(WordbookItem).filter(WordbookItem.id.in_(item_ids)).delete(synchronize_session=False)
            if wordbook_ids:
                self.db.query(Wordbook).filter(Wordbook.id.in_(wordbook_ids)).delete(synchronize_session=False)
            if progress_ids:
                self.db.query(StudyProgress).filter(StudyProgress.id.in_(progress_ids)).delete(synchronize_session=False)
            if word_ids:
                self.db.query(Word).filter(Word.id.in_(word_ids)).delete(synchronize_session=False)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.expire_all()


class RemoteStore(ABC):
    """CRUD contract of the account store, scoped to one user.

    Implementations raise RemoteUnavailable when the store cannot be reached
    and DuplicateKey when an insert hits an existing natural key.
    """

    @abstractmethod
    def find_word(self, term: str, reading: str) -> Optional[int]:
        pass

    @abstractmethod
    def insert_word(self, values: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def has_progress(self, word_id: int) -> bool:
        pass

    @abstractmethod
    def insert_progress(self, word_id: int, values: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def find_wordbook(self, name: str) -> Optional[int]:
        pass

    @abstractmethod
    def insert_wordbook(self, values: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def has_wordbook_item(self, wordbook_id: int, word_id: int) -> bool:
        pass

    @abstractmethod
    def insert_wordbook_item(self, wordbook_id: int, word_id: int) -> int:
        pass


class SqlRemoteStore(RemoteStore):
    """Remote store over a SQLAlchemy session."""

    def __init__(self, db: Session, user_id: int):
        self.db = db
        self.user_id = user_id

    @contextmanager
    def _guard(self, entity: str, key: str) -> Iterator[None]:
        try:
            yield
        except IntegrityError as e:
            self.db.rollback()
            raise DuplicateKey(entity, key) from e
        except DBAPIError as e:
            self.db.rollback()
            raise RemoteUnavailable(f"Remote store unavailable while writing {entity} {key}: {e}") from e
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _insert(self, entity: str, key: str, row: Any) -> int:
        with self._guard(entity, key):
            self.db.add(row)
            self.db.commit()
            return row.id

    def find_word(self, term: str, reading: str) -> Optional[int]:
        with self._guard("word", term):
            row = (
                self.db.query(Word.id)
                .filter(Word.user_id == self.user_id, Word.term == term, Word.reading == reading)
                .first()
            )
        return row[0] if row else None

    def insert_word(self, values: Dict[str, Any]) -> int:
        return self._insert("word", values.get("term", ""), Word(user_id=self.user_id, **values))

    def has_progress(self, word_id: int) -> bool:
        with self._guard("progress", str(word_id)):
            return self.db.query(StudyProgress.id).filter(StudyProgress.word_id == word_id).first() is not None

    def insert_progress(self, word_id: int, values: Dict[str, Any]) -> int:
        row = StudyProgress(user_id=self.user_id, word_id=word_id, **values)
        return self._insert("progress", str(word_id), row)

    def find_wordbook(self, name: str) -> Optional[int]:
        with self._guard("wordbook", name):
            row = (
                self.db.query(Wordbook.id)
                .filter(Wordbook.user_id == self.user_id, Wordbook.name == name)
                .first()
            )
        return row[0] if row else None

    def insert_wordbook(self, values: Dict[str, Any]) -> int:
        return self._insert("wordbook", values.get("name", ""), Wordbook(user_id=self.user_id, **values))

    def has_wordbook_item(self, wordbook_id: int, word_id: int) -> bool:
        with self._guard("wordbook_item", f"{wordbook_id}:{word_id}"):
            row = (
                self.db.query(WordbookItem.id)
                .filter(WordbookItem.wordbook_id == wordbook_id, WordbookItem.word_id == word_id)
                .first()
            )
        return row is not None

    def insert_wordbook_item(self, wordbook_id: int, word_id: int) -> int:
        row = WordbookItem(wordbook_id=wordbook_id, word_id=word_id)
        return self._insert("wordbook_item", f"{wordbook_id}:{word_id}", row)
