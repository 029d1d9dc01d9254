import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("DATABASE_URL", "sqlite:///./data/ledgerly.db")
os.environ.setdefault("SECRET_KEY", "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ledgerly import models  # noqa: E402,F401
from ledgerly.clock import FrozenClock  # noqa: E402
from ledgerly.config import Settings  # noqa: E402
from ledgerly.database import Base  # noqa: E402
from ledgerly.models.user import User  # noqa: E402
from ledgerly.services.otp import OtpService  # noqa: E402
from ledgerly.services.sessions import SessionManager  # noqa: E402
from ledgerly.services.tokens import TokenIssuer  # noqa: E402

TEST_SECRET = "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"


class RecordingNotifier:
    """Captures delivered codes instead of sending them."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []

    def send_code(self, channel: str, target: str, code: str) -> None:
        self.sent.append((channel, target, code))

    @property
    def last_code(self) -> str:
        return self.sent[-1][2]


def make_settings(**overrides) -> Settings:
    values = {"secret_key": TEST_SECRET, "bcrypt_rounds": 4}
    values.update(overrides)
    return Settings(**values)


def make_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def make_file_session_factory(path):
    """Separate connections per session, for interleaving two units of work."""
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def db():
    session = make_session_factory()()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock)


@pytest.fixture
def manager(db, settings, issuer, clock):
    return SessionManager(db, settings, issuer=issuer, clock=clock)


@pytest.fixture
def otp_service(db, settings, notifier, issuer, clock):
    return OtpService(db, settings, notifier, issuer=issuer, clock=clock)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make_user(**fields) -> User:
        counter["n"] += 1
        values = {
            "user_id": f"TST{counter['n']:06d}",
            "phone_number": f"+1555000{counter['n']:04d}",
            "is_active": True,
        }
        values.update(fields)
        user = User(**values)
        db.add(user)
        db.commit()
        return user

    return _make_user
