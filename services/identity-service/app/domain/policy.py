"""Security policy values handed to the account aggregate."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

DEFAULT_DENY_LIST: frozenset[str] = frozenset(
    {
        "password123!",
        "admin123!",
        "welcome123!",
        "passw0rd!",
        "p@ssw0rd",
        "p@ssword1",
        "qwerty123!",
        "letmein123!",
        "changeme1!",
    }
)


@dataclass(frozen=True)
class LockoutPolicy:
    """Failed-login threshold and lock duration applied by ``Account.verify_password``."""

    max_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=30)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.lock_duration <= timedelta(0):
            raise ValueError("lock_duration must be positive")


@dataclass(frozen=True)
class PasswordPolicy:
    """Strength rules and hashing cost used when creating credentials."""

    min_length: int = 8
    max_length: int = 128
    bcrypt_rounds: int = 12
    deny_list: frozenset[str] = field(default=DEFAULT_DENY_LIST)

    def __post_init__(self) -> None:
        if self.min_length < 1 or self.max_length < self.min_length:
            raise ValueError("invalid password length bounds")
        # bcrypt.gensalt accepts 4..31
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
