"""
StudioSign - Staff authentication service (email + password).
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.core.logging import fingerprint
from app.core.security import hash_password, verify_password
from app.models.users import ROLES, User

logger = logging.getLogger(__name__)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email.lower().strip()).first()


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_email(db: Session, user_id: str) -> Optional[str]:
    """Owner lookup for envelope notices; None for unknown or inactive users."""
    user = get_user(db, user_id)
    if user is None or not user.is_active:
        return None
    return user.email


def authenticate(db: Session, email: str, password: str) -> Optional[User]:
    user = get_user_by_email(db, email)
    if not user or not user.is_active:
        logger.info("Login rejected: email=%s", fingerprint(email.lower().strip()))
        return None
    if not verify_password(password, user.hashed_password):
        logger.info("Login rejected: email=%s", fingerprint(user.email))
        return None
    user.last_login = datetime.now(timezone.utc)
    db.commit()
    return user


def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: str = "",
    role: str = "studio_staff",
) -> User:
    if role not in ROLES:
        raise ValueError(f"Unknown role {role!r}; expected one of {', '.join(ROLES)}")
    user = User(
        email=email.lower().strip(),
        hashed_password=hash_password(password),
        full_name=full_name,
        role=role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
