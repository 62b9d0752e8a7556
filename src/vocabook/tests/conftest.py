"""Test configuration."""
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Generator
from zoneinfo import ZoneInfo

import pytest
from dotenv import load_dotenv
from faker import Faker

# Set test environment before any imports
os.environ["ENV"] = "test"

# Load test environment variables
test_env_path = Path(__file__).parent.parent.parent.parent / ".env.test"
load_dotenv(test_env_path)
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOCAL_DATABASE_URL", "sqlite://")
os.environ.setdefault("TIMEZONE", "Asia/Seoul")

# Import after environment setup
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from vocabook.config import ensure_directories
from vocabook.models.base import init_db, make_engine
from vocabook.models.models import User, Word
from vocabook.models.quiz_models import QuizSettings

fake = Faker()

SEOUL = ZoneInfo("Asia/Seoul")


@pytest.fixture(autouse=True)
def setup_test_environment():
    """Set up test environment before each test."""
    ensure_directories()
    yield


@pytest.fixture
def tz() -> ZoneInfo:
    """Timezone every test runs in."""
    return SEOUL


@pytest.fixture
def now() -> datetime:
    """A fixed afternoon in Seoul."""
    return datetime(2026, 3, 10, 14, 0, tzinfo=SEOUL)


def _session_for(engine: Engine) -> Session:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory database."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(db_engine: Engine) -> Generator[Session, None, None]:
    """Create a fresh database session for each test."""
    db = _session_for(db_engine)
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def remote_engine() -> Generator[Engine, None, None]:
    """Second in-memory database standing in for the account store."""
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def remote_db(remote_engine: Engine) -> Generator[Session, None, None]:
    db = _session_for(remote_engine)
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def test_user(db: Session) -> User:
    """Create a test user."""
    user = User(email=fake.unique.email(), display_name=fake.name())
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def make_word(db: Session) -> Callable[..., Word]:
    """Factory for words in the local store (or a user's, with user_id)."""
    def factory(**values) -> Word:
        n = fake.unique.random_int(min=1, max=10**7)
        values.setdefault("term", f"{fake.word()}{n}")
        values.setdefault("reading", f"r{n}")
        values.setdefault("meaning", fake.sentence(nb_words=3))
        word = Word(**values)
        db.add(word)
        db.commit()
        return word
    return factory


@pytest.fixture
def quiz_settings() -> QuizSettings:
    """Settings with generous caps."""
    return QuizSettings(new_per_day=20, max_reviews_per_day=100, session_size=50, leech_threshold=3)
