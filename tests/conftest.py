"""
StudioSign - Shared pytest fixtures.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generator, List, Optional, Sequence, Tuple

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# ─── Environment setup (before any app imports) ───────────────────────────────

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", secrets.token_hex(32))
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("PUBLIC_URL", "https://sign.studio.test")

# ─── App imports (after env is set) ───────────────────────────────────────────

import app.models.users  # noqa: E402,F401
from app.config import get_settings  # noqa: E402
from app.core.tokens import FrozenClock, SecretsRandomSource  # noqa: E402
from app.database import Base, configure_sqlite, install_sqlite_triggers  # noqa: E402
from app.models.envelopes import Envelope  # noqa: E402
from app.repositories.envelopes import EnvelopeRepositories  # noqa: E402
from app.services.envelope_store import EnvelopeStore  # noqa: E402
from app.services.lifecycle import EnvelopeLifecycle  # noqa: E402
from app.services.magic_link import MagicLinkService  # noqa: E402
from app.services.notifications import NotificationDispatcher  # noqa: E402

STUDIO_OWNER = "owner_001"
T0 = datetime(2026, 3, 2, 9, 0, 0)


# ─────────────────────────────────────────────────────────────────────────────
# DATABASE FIXTURES
# ─────────────────────────────────────────────────────────────────────────────


def _make_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    configure_sqlite(engine, journal_mode="MEMORY")
    Base.metadata.create_all(engine)
    install_sqlite_triggers(engine)
    return engine


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """In-memory SQLite session, fresh for every test function."""
    engine = _make_engine()
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


# ─────────────────────────────────────────────────────────────────────────────
# COLLABORATORS
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class SentEmail:
    to: str
    subject: str
    html: str
    text: str
    template: str
    metadata: Dict[str, Any]


@dataclass
class RecordingEmailSender:
    """EmailSender that keeps every message in memory."""

    outbox: List[SentEmail] = field(default_factory=list)
    fail: bool = False

    def send(self, to, subject, html, text, template, metadata) -> None:
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.outbox.append(SentEmail(to, subject, html, text, template, dict(metadata)))

    def by_template(self, template: str) -> List[SentEmail]:
        return [m for m in self.outbox if m.template == template]


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0)


@pytest.fixture
def mail() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def repos(db_session: Session) -> EnvelopeRepositories:
    return EnvelopeRepositories.from_session(db_session)


@pytest.fixture
def notifier(mail: RecordingEmailSender) -> NotificationDispatcher:
    return NotificationDispatcher(mail, owner_email_lookup=lambda user_id: f"{user_id}@studio.test")


@pytest.fixture
def links(repos, notifier, clock, settings) -> MagicLinkService:
    return MagicLinkService(repos, notifier, clock, SecretsRandomSource(), settings)


@pytest.fixture
def store(repos, clock) -> EnvelopeStore:
    return EnvelopeStore(repos, clock)


@pytest.fixture
def lifecycle(repos, links, notifier, clock, settings) -> EnvelopeLifecycle:
    return EnvelopeLifecycle(repos, links, notifier, clock, settings)


# ─────────────────────────────────────────────────────────────────────────────
# ENVELOPE FACTORY
# ─────────────────────────────────────────────────────────────────────────────

SignerSpec = Tuple[str, str, Optional[int]]

DEFAULT_SIGNERS: Sequence[SignerSpec] = (
    ("Bride", "bride@example.com", 1),
    ("Groom", "groom@example.com", 2),
    ("Studio Owner", "owner@studio.test", 3),
)


@pytest.fixture
def make_envelope(store: EnvelopeStore) -> Callable[..., Envelope]:
    """Build a DRAFT envelope with one document and the given signers."""

    def _make(
        workflow: str = "SEQUENTIAL",
        signers: Sequence[SignerSpec] = DEFAULT_SIGNERS,
        name: str = "Wedding Contract - Smith",
        expires_at: Optional[datetime] = None,
        with_document: bool = True,
    ) -> Envelope:
        envelope = store.create_envelope(
            name=name,
            created_by=STUDIO_OWNER,
            signing_workflow=workflow,
            expires_at=expires_at,
        )
        if with_document:
            store.add_document(
                envelope.id,
                name="Photography Agreement",
                file_name="agreement.pdf",
                file_path="envelopes/agreement.pdf",
                actor=STUDIO_OWNER,
                content=b"%PDF-1.7 agreement",
            )
        for signer_name, email, seq in signers:
            store.add_signer(
                envelope.id,
                name=signer_name,
                email=email,
                actor=STUDIO_OWNER,
                sequence_number=seq,
            )
        return envelope

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# FASTAPI CLIENT FIXTURE
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(scope="function")
def client(db_session: Session, clock: FrozenClock, mail: RecordingEmailSender) -> Generator[TestClient, None, None]:
    """FastAPI TestClient with overridden DB, clock and e-mail dependencies."""
    from app.api.deps import get_clock, get_email_sender
    from app.database import get_db
    from app.main import app

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_email_sender] = lambda: mail

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────────────────────────
# JWT TOKEN FIXTURES
# ─────────────────────────────────────────────────────────────────────────────


def auth_headers(user_id: str, role: str) -> Dict[str, str]:
    from app.core.security import create_access_token

    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture(scope="session")
def admin_headers() -> Dict[str, str]:
    return auth_headers("admin_001", "studio_admin")


@pytest.fixture(scope="session")
def staff_headers() -> Dict[str, str]:
    return auth_headers(STUDIO_OWNER, "studio_staff")


@pytest.fixture(scope="session")
def auditor_headers() -> Dict[str, str]:
    return auth_headers("auditor_001", "auditor")
