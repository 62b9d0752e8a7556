"""Service for managing words and wordbooks."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from vocabook.exceptions import InvalidInput
from vocabook.models.models import StudyProgress, Word, Wordbook, WordbookItem, owned_by
from vocabook.utils.dates import as_utc, now_local

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = ("term", "reading", "meaning", "notes", "tags", "jlpt_level", "priority")


def _validate_word_fields(values: Dict[str, Any]) -> None:
    if "term" in values and not (values["term"] or "").strip():
        raise InvalidInput("Term cannot be empty", field="term")
    if "priority" in values and values["priority"] not in (1, 2, 3):
        raise InvalidInput("Priority must be 1, 2 or 3", field="priority")
    jlpt_level = values.get("jlpt_level")
    if jlpt_level is not None and jlpt_level not in range(1, 6):
        raise InvalidInput("JLPT level must be between 1 and 5", field="jlpt_level")


class WordService:
    """Service for managing the words of one user, or of the local store."""

    def __init__(self, db: Session, user_id: Optional[int] = None):
        """Initialize the service with a database session and owner."""
        self.db = db
        self.user_id = user_id

    def _words(self):
        return self.db.query(Word).filter(owned_by(Word, self.user_id))

    def get_word(self, word_id: int) -> Optional[Word]:
        """Get a word by its ID."""
        return self._words().filter(Word.id == word_id).first()

    def get_word_by_term(self, term: str, reading: str = "") -> Optional[Word]:
        """Get a word by its natural key."""
        return self._words().filter(Word.term == term, Word.reading == reading).first()

    def get_words(
        self,
        mastered: Optional[bool] = None,
        priority: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Word]:
        """Get words with optional filtering."""
        query = self._words()
        if mastered is not None:
            query = query.filter(Word.mastered.is_(mastered))
        if priority is not None:
            query = query.filter(Word.priority == priority)
        query = query.order_by(Word.id)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def search_words(self, text: str, limit: int = 50) -> List[Word]:
        """Search words by term, reading or meaning."""
        pattern = f"%{text}%"
        return (
            self._words()
            .filter(or_(Word.term.ilike(pattern), Word.reading.ilike(pattern), Word.meaning.ilike(pattern)))
            .order_by(Word.id)
            .limit(limit)
            .all()
        )

    def create_word(
        self,
        term: str,
        reading: str = "",
        meaning: str = "",
        jlpt_level: Optional[int] = None,
        priority: int = 2,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
    ) -> Word:
        """Create a word, or return the existing one with the same term and reading.

        Raises:
            InvalidInput: for an empty term, or an out-of-range priority or JLPT level.
        """
        _validate_word_fields({"term": term, "priority": priority, "jlpt_level": jlpt_level})
        term = term.strip()
        reading = (reading or "").strip()

        existing_word = self.get_word_by_term(term, reading)
        if existing_word:
            return existing_word

        word = Word(
            user_id=self.user_id,
            term=term,
            reading=reading,
            meaning=meaning,
            jlpt_level=jlpt_level,
            priority=priority,
            tags=tags or [],
            notes=notes,
        )
        self.db.add(word)
        self.db.commit()
        self.db.refresh(word)
        logger.info(f"Created word {word.id} ({term}) for user {self.user_id}")
        return word

    def create_words(self, entries: List[Dict[str, Any]]) -> List[Word]:
        """Create multiple words at once."""
        return [self.create_word(**entry) for entry in entries]

    def update_word(self, word_id: int, **changes) -> Optional[Word]:
        """Update editable fields of a word."""
        unknown = set(changes) - set(_EDITABLE_FIELDS)
        if unknown:
            raise InvalidInput(f"Unknown word fields: {sorted(unknown)}", field=sorted(unknown)[0])
        _validate_word_fields(changes)

        word = self.get_word(word_id)
        if not word:
            return None
        for name, value in changes.items():
            setattr(word, name, value)
        self.db.commit()
        return word

    def set_priority(self, word_id: int, priority: int) -> Optional[Word]:
        """Set a word's priority (1 high, 2 mid, 3 low)."""
        return self.update_word(word_id, priority=priority)

    def set_mastered(self, word_id: int, mastered: bool = True, now: Optional[datetime] = None) -> Optional[Word]:
        """Mark a word mastered, which takes it out of review sessions."""
        word = self.get_word(word_id)
        if not word:
            return None
        word.mastered = mastered
        word.mastered_at = as_utc(now or now_local()) if mastered else None
        self.db.commit()
        logger.info(f"Word {word_id} {'mastered' if mastered else 'returned to review'}")
        return word

    def reset_progress(self, word_id: int) -> bool:
        """Forget the scheduling state of a word so it becomes new again."""
        deleted = (
            self.db.query(StudyProgress)
            .filter(StudyProgress.word_id == word_id)
            .filter(owned_by(StudyProgress, self.user_id))
            .delete()
        )
        self.db.commit()
        return deleted > 0

    def delete_word(self, word_id: int) -> bool:
        """Delete a word together with its progress and wordbook links."""
        word = self.get_word(word_id)
        if not word:
            return False
        self.db.delete(word)
        self.db.commit()
        logger.info(f"Deleted word {word_id}")
        return True

    def get_wordbooks(self) -> List[Wordbook]:
        """Get all wordbooks."""
        return self.db.query(Wordbook).filter(owned_by(Wordbook, self.user_id)).order_by(Wordbook.id).all()

    def create_wordbook(self, name: str, description: Optional[str] = None) -> Wordbook:
        """Create a wordbook."""
        if not (name or "").strip():
            raise InvalidInput("Wordbook name cannot be empty", field="name")
        wordbook = Wordbook(user_id=self.user_id, name=name.strip(), description=description)
        self.db.add(wordbook)
        self.db.commit()
        self.db.refresh(wordbook)
        return wordbook

    def add_to_wordbook(self, wordbook_id: int, word_id: int) -> WordbookItem:
        """Add a word to a wordbook; adding it twice is a no-op."""
        item = (
            self.db.query(WordbookItem)
            .filter(WordbookItem.wordbook_id == wordbook_id, WordbookItem.word_id == word_id)
            .first()
        )
        if item:
            return item
        item = WordbookItem(wordbook_id=wordbook_id, word_id=word_id)
        self.db.add(item)
        self.db.commit()
        return item

    def remove_from_wordbook(self, wordbook_id: int, word_id: int) -> bool:
        """Remove a word from a wordbook."""
        deleted = (
            self.db.query(WordbookItem)
            .filter(WordbookItem.wordbook_id == wordbook_id, WordbookItem.word_id == word_id)
            .delete()
        )
        self.db.commit()
        return deleted > 0

    def get_wordbook_words(self, wordbook_id: int) -> List[Word]:
        """Get the words of a wordbook."""
        return (
            self._words()
            .join(WordbookItem, WordbookItem.word_id == Word.id)
            .filter(WordbookItem.wordbook_id == wordbook_id)
            .order_by(Word.id)
            .all()
        )
