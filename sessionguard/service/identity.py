from __future__ import annotations

import hmac
import threading
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from sessionguard.storage.models import User

Credentials = Mapping[str, Any]


class IdentityProvider(Protocol):
    """External collaborator that owns users and their credentials."""

    async def verify_credentials(self, credentials: Credentials) -> Optional[User]: ...

    async def get_user(self, user_id: str) -> Optional[User]: ...


class StaticIdentityProvider:
    """In-process provider holding ``email -> (user, password)`` pairs.

    Intended for tests and single-node demos; it does not hash passwords.
    Unknown emails and wrong passwords both return None.
    """

    def __init__(self) -> None:
        self._users: Dict[str, Tuple[User, str]] = {}
        self._lock = threading.Lock()

    def add_user(self, user: User, password: str) -> User:
        if not user.email:
            raise ValueError("static identities are looked up by email")
        with self._lock:
            self._users[user.email.lower()] = (user, password)
        return user

    async def verify_credentials(self, credentials: Credentials) -> Optional[User]:
        email = str(credentials.get("email") or "").lower()
        password = str(credentials.get("password") or "")
        with self._lock:
            record = self._users.get(email)
        # Compare against a dummy secret for unknown users to keep timing uniform
        expected = record[1] if record else "\x00" * max(len(password), 1)
        matches = hmac.compare_digest(expected.encode(), password.encode())
        if record is None or not matches:
            return None
        user = record[0]
        return user if user.is_active else None

    async def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            for user, _ in self._users.values():
                if user.id == user_id:
                    return user
        return None


__all__ = ["Credentials", "IdentityProvider", "StaticIdentityProvider"]
