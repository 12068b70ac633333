from __future__ import annotations

import os
import threading
from typing import Any

import bcrypt


def _hash_password(plain: str) -> str:
    return bcrypt.hashpw(plain.encode(), bcrypt.gensalt()).decode()


def _verify_password(plain: str, hashed: str) -> bool:
    return bcrypt.checkpw(plain.encode(), hashed.encode())


class UserDirectory:
    """Accounts for the HTTP surface, with bcrypt-hashed passwords.

    Each account maps to the ``user_id`` its preference profile is stored under.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._users: dict[str, dict[str, Any]] = {}

    def add_user(self, username: str, password: str, role: str = "user", user_id: str | None = None) -> None:
        record = {
            "password_hash": _hash_password(password),
            "role": role,
            "user_id": user_id or username,
        }
        with self._lock:
            self._users[username] = record

    def authenticate(self, username: str, password: str) -> dict[str, Any] | None:
        """Verify credentials. Returns ``{username, user_id, role}`` or ``None``."""
        with self._lock:
            record = self._users.get(username)
        if record and _verify_password(password, record["password_hash"]):
            return {"username": username, "user_id": record["user_id"], "role": record["role"]}
        return None


def demo_directory() -> UserDirectory:
    """Directory seeded with one regular and one admin account."""
    directory = UserDirectory()
    directory.add_user("user", os.getenv("DEMO_USER_PASSWORD", "user123"), user_id="demo-user")
    directory.add_user("admin", os.getenv("DEMO_ADMIN_PASSWORD", "admin123"), role="admin", user_id="demo-admin")
    return directory
