from __future__ import annotations

import logging
import re

import bcrypt

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
_SPECIAL_RE = re.compile(r"[^A-Za-z0-9]")


class PasswordHasher:
    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        if not password:
            raise ValueError("Password cannot be empty")
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, password_hash: str | None) -> bool:
        if not password or not password_hash:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("Stored password hash is malformed")
            return False


def password_policy_errors(password: str | None) -> list[str]:
    """Return the list of policy violations; empty means the password is acceptable."""
    if not password:
        return ["Password is required"]
    errors: list[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must be at most {MAX_PASSWORD_LENGTH} characters long")
    if not any(ch.isupper() for ch in password):
        errors.append("Password must contain at least one uppercase letter")
    if not any(ch.islower() for ch in password):
        errors.append("Password must contain at least one lowercase letter")
    if not any(ch.isdigit() for ch in password):
        errors.append("Password must contain at least one digit")
    if not _SPECIAL_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors
