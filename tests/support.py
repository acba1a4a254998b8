"""Shared fixtures: in-memory SQLite credential store and app wiring for tests."""

import unittest
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from threatpulse.core import security
from threatpulse.core.config import get_settings
from threatpulse.core.database import get_db
from threatpulse.core.security import TokenCodec, get_token_codec
from threatpulse.models import Account, Base
from threatpulse.services import accounts

# Minimum bcrypt cost keeps the suite fast; production cost is unchanged.
security.BCRYPT_ROUNDS = 4

TEST_SECRET = "test-signing-secret"
PASSWORD = "Passw0rd!"


def make_engine(path: str | None = None) -> Engine:
    """In-memory SQLite on one shared connection, or a file database with a real pool when path is given."""
    if path is not None:
        engine = create_engine(
            f"sqlite+pysqlite:///{path}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    else:
        engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    Base.metadata.create_all(engine)
    return engine


def make_codec() -> TokenCodec:
    return TokenCodec(TEST_SECRET)


class DatabaseTestCase(unittest.TestCase):
    """Fresh schema per test; self.db is an open session."""

    def setUp(self) -> None:
        self.engine = make_engine()
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self.db: Session = self.SessionLocal()
        self.settings = get_settings()
        self.codec = make_codec()

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def create_account(
        self,
        email: str = "analyst@co.test",
        password: str = PASSWORD,
        name: str = "Ana",
        role: str = "analyst",
    ) -> Account:
        return accounts.create_account(self.db, email, password, name, role=role)


class AppTestCase(DatabaseTestCase):
    """DatabaseTestCase plus the FastAPI app wired to the test database and codec."""

    def setUp(self) -> None:
        super().setUp()
        from threatpulse.main import app

        def override_get_db() -> Generator[Session, None, None]:
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()

        self.app = app
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_token_codec] = lambda: self.codec

    def tearDown(self) -> None:
        self.app.dependency_overrides.clear()
        super().tearDown()
