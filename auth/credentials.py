"""
auth/credentials.py -- Login + password check against the user directory.

attempt() answers one question: do these credentials belong to a user? It
returns the Principal whether or not that user is active. Whether a disabled
account may proceed is the session service's decision, made after the
credential gate so that a correct password on a disabled account still
counts as a failed attempt.

Timing equalization: bcrypt always runs, against DUMMY_HASH when the identity
is unknown or has no local password, so response time does not reveal which
identities exist.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.models import Principal, User
from auth.store import UserStore, redact_identity
from auth.tokens import DUMMY_HASH, verify_password

logger = logging.getLogger("authgate.auth.credentials")


def principal_from_user(user: User) -> Principal:
    return Principal(id=user.id, email=user.email, full_name=user.full_name, is_active=user.is_active)


class CredentialVerifier:
    def __init__(self, directory: UserStore) -> None:
        self.directory = directory

    def attempt(self, identity: str, secret: str | None) -> Principal | None:
        """Return the matching Principal, or None on any mismatch.

        A directory outage is logged and treated as a mismatch.
        """
        try:
            user = self.directory.get_by_email(identity)
        except SQLAlchemyError:
            logger.exception("User directory lookup failed for %s", redact_identity(identity))
            verify_password(secret or "", DUMMY_HASH)
            return None
        if user is None or not user.hashed_password:
            verify_password(secret or "", DUMMY_HASH)
            return None
        if not verify_password(secret or "", user.hashed_password) or not secret:
            return None
        return principal_from_user(user)
