"""
StudioSign - Request-scoped service wiring.

Each request gets its own repositories bundle over the request's Session.
Clock, random source and e-mail sender are separate dependencies so tests
can override them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from app.config import Settings, get_settings
from app.core.tokens import Clock, RandomSource, SecretsRandomSource, SystemClock
from app.database import get_db
from app.repositories.envelopes import EnvelopeRepositories
from app.services.auth import get_user_email
from app.services.envelope_store import EnvelopeStore
from app.services.lifecycle import EnvelopeLifecycle
from app.services.magic_link import MagicLinkService
from app.services.notifications import EmailSender, NotificationDispatcher, build_email_sender


def get_clock() -> Clock:
    return SystemClock()


def get_random_source() -> RandomSource:
    return SecretsRandomSource()


def get_email_sender(settings: Settings = Depends(get_settings)) -> EmailSender:
    return build_email_sender(settings)


def get_repos(db: Session = Depends(get_db)) -> EnvelopeRepositories:
    return EnvelopeRepositories.from_session(db)


def get_notifier(
    db: Session = Depends(get_db),
    sender: EmailSender = Depends(get_email_sender),
) -> NotificationDispatcher:
    return NotificationDispatcher(sender, owner_email_lookup=lambda user_id: get_user_email(db, user_id))


def get_store(
    repos: EnvelopeRepositories = Depends(get_repos),
    clock: Clock = Depends(get_clock),
) -> EnvelopeStore:
    return EnvelopeStore(repos, clock)


def get_magic_links(
    repos: EnvelopeRepositories = Depends(get_repos),
    notifier: NotificationDispatcher = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
    rng: RandomSource = Depends(get_random_source),
    settings: Settings = Depends(get_settings),
) -> MagicLinkService:
    return MagicLinkService(repos, notifier, clock, rng, settings)


def get_lifecycle(
    repos: EnvelopeRepositories = Depends(get_repos),
    links: MagicLinkService = Depends(get_magic_links),
    notifier: NotificationDispatcher = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
) -> EnvelopeLifecycle:
    return EnvelopeLifecycle(repos, links, notifier, clock, settings)
