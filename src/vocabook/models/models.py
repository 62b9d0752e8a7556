"""Database models for vocabook."""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from vocabook.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Account owning remote rows. Local (anonymous) rows have no user."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=True)
    display_name = Column(String, nullable=True)

    # Relationships
    words = relationship("Word", back_populates="user")
    wordbooks = relationship("Wordbook", back_populates="user")


class Word(Base, TimestampMixin):
    """Vocabulary word."""

    __tablename__ = "words"
    __table_args__ = (
        Index("ix_words_user_term_reading", "user_id", "term", "reading"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    term = Column(String, nullable=False)
    reading = Column(String, nullable=False, default="")
    meaning = Column(Text, nullable=False, default="")
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    jlpt_level = Column(Integer, nullable=True)  # 1 (N1) .. 5 (N5)
    priority = Column(Integer, nullable=False, default=2)  # 1 high, 2 mid, 3 low
    mastered = Column(Boolean, nullable=False, default=False)
    mastered_at = Column(DateTime(timezone=True), nullable=True)
    is_leech = Column(Boolean, nullable=False, default=False)
    leech_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    user = relationship("User", back_populates="words")
    progress = relationship(
        "StudyProgress",
        back_populates="word",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    wordbook_items = relationship(
        "WordbookItem",
        back_populates="word",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class StudyProgress(Base):
    """Scheduling state for one word. Absent until the word is first rated."""

    __tablename__ = "study_progress"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    word_id = Column(Integer, ForeignKey("words.id", ondelete="CASCADE"), nullable=False, unique=True)
    next_review = Column(DateTime(timezone=True), nullable=False, index=True)
    interval_days = Column(Integer, nullable=False, default=0)
    ease_factor = Column(Float, nullable=False, default=2.5)
    review_count = Column(Integer, nullable=False, default=0)
    last_reviewed_at = Column(DateTime(timezone=True), nullable=True)
    lapses = Column(Integer, nullable=False, default=0)
    card_state = Column(Integer, nullable=False, default=0)  # CardState
    learning_step = Column(Integer, nullable=False, default=0)

    # Relationships
    word = relationship("Word", back_populates="progress")


class Wordbook(Base, TimestampMixin):
    """Named collection of words."""

    __tablename__ = "wordbooks"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    # Relationships
    user = relationship("User", back_populates="wordbooks")
    items = relationship(
        "WordbookItem",
        back_populates="wordbook",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class WordbookItem(Base):
    """Wordbook membership."""

    __tablename__ = "wordbook_items"
    __table_args__ = (
        UniqueConstraint("wordbook_id", "word_id", name="uq_wordbook_item"),
    )

    id = Column(Integer, primary_key=True)
    wordbook_id = Column(Integer, ForeignKey("wordbooks.id", ondelete="CASCADE"), nullable=False)
    word_id = Column(Integer, ForeignKey("words.id", ondelete="CASCADE"), nullable=False)

    # Relationships
    wordbook = relationship("Wordbook", back_populates="items")
    word = relationship("Word", back_populates="wordbook_items")


class DailyStats(Base):
    """Per-day review counters. Read-only once the day has passed."""

    __tablename__ = "daily_stats"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_stats_user_date"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD, local day
    new_count = Column(Integer, nullable=False, default=0)
    review_count = Column(Integer, nullable=False, default=0)
    again_count = Column(Integer, nullable=False, default=0)
    review_again_count = Column(Integer, nullable=False, default=0)
    new_again_count = Column(Integer, nullable=False, default=0)
    hard_count = Column(Integer, nullable=False, default=0)
    good_count = Column(Integer, nullable=False, default=0)
    easy_count = Column(Integer, nullable=False, default=0)
    mastered_in_session_count = Column(Integer, nullable=False, default=0)
    practice_count = Column(Integer, nullable=False, default=0)
    practice_known_count = Column(Integer, nullable=False, default=0)


class Achievement(Base):
    """Unlocked achievement. Append-only, one per type per user."""

    __tablename__ = "achievements"
    __table_args__ = (
        UniqueConstraint("user_id", "type", name="uq_achievement_user_type"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    type = Column(String, nullable=False)
    unlocked_at = Column(DateTime(timezone=True), nullable=False)


class QuizSettingsRow(Base, TimestampMixin):
    """Per-user quiz settings overriding the configured defaults."""

    __tablename__ = "quiz_settings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, unique=True)
    new_per_day = Column(Integer, nullable=False)
    max_reviews_per_day = Column(Integer, nullable=False)
    jlpt_filter = Column(Integer, nullable=True)
    priority_filter = Column(Integer, nullable=True)
    card_direction = Column(String, nullable=False)
    session_size = Column(Integer, nullable=False)
    leech_threshold = Column(Integer, nullable=False)
    new_card_position = Column(String, nullable=False, default="after")


class KeyValueEntry(Base):
    """Local string-keyed blob storage (session snapshots)."""

    __tablename__ = "local_kv"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)


def owned_by(model, user_id):
    """Filter clause scoping a model to one user, or to the anonymous local store."""
    if user_id is None:
        return model.user_id.is_(None)
    return model.user_id == user_id
