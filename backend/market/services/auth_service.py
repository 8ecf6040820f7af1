# Overview: Bearer-token principal lookup for API routes.

"""
Principal Resolution

Identity management (signup, passwords, profiles) lives outside this
service. Here a user is identified by an opaque API token whose SHA-256
hash is stored on the users row.

WHY SHA-256 not bcrypt: Tokens are already high-entropy (unlike passwords).
"""

from __future__ import annotations

import hashlib
import secrets

from ..extensions import db
from ..models import User, Store
from ..models.auth import VALID_ROLES, ROLE_SELLER


class UserValidationError(ValueError):
    pass


def generate_token() -> str:
    """64-character hex string (32 bytes of entropy). Never stored."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_api_token(user: User) -> str:
    """Rotate the user's API token and return the plaintext once."""
    token = generate_token()
    user.api_token_hash = hash_token(token)
    db.session.commit()
    return token


def resolve_principal(token: str | None) -> User | None:
    """Active user owning `token`, or None."""
    if not token:
        return None
    return (
        db.session.query(User)
        .filter_by(api_token_hash=hash_token(token), is_active=True)
        .first()
    )


def create_user(*, name: str, email: str, role: str, store_name: str | None = None) -> User:
    """
    Create a user; sellers get a store named `store_name`.
    """
    if role not in VALID_ROLES:
        raise UserValidationError(f"Invalid role '{role}'. Must be one of: {', '.join(sorted(VALID_ROLES))}")
    if db.session.query(User).filter_by(email=email).first():
        raise UserValidationError(f"Email {email} already registered")

    user = User(name=name, email=email, role=role)
    db.session.add(user)
    db.session.flush()

    if role == ROLE_SELLER:
        db.session.add(Store(name=store_name or f"{name}'s Store", owner_user_id=user.id, is_verified=True))

    db.session.commit()
    return user
