"""Password credential value object backed by bcrypt."""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field

import bcrypt

from .errors import (
    CredentialCorruptedError,
    RequiredFieldMissingError,
    SecretTooLongError,
    SecretTooShortError,
    WeakSecretError,
)
from .policy import PasswordPolicy

DEFAULT_PASSWORD_POLICY = PasswordPolicy()


def _prepare(plaintext: str) -> bytes:
    """Pre-hash the secret so bcrypt never sees more than its 72-byte input limit."""
    digest = hashlib.sha256(plaintext.encode("utf-8")).digest()
    return base64.b64encode(digest)


def validate_strength(plaintext: str, policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY) -> None:
    """Raise a ``WeakSecretError`` subclass when ``plaintext`` violates ``policy``."""
    if len(plaintext) < policy.min_length:
        raise SecretTooShortError(policy.min_length)
    if len(plaintext) > policy.max_length:
        raise SecretTooLongError(policy.max_length)

    missing = []
    if not any(ch.isupper() for ch in plaintext):
        missing.append("an uppercase letter")
    if not any(ch.islower() for ch in plaintext):
        missing.append("a lowercase letter")
    if not any(ch.isdigit() for ch in plaintext):
        missing.append("a digit")
    if not any(not ch.isalnum() and not ch.isspace() for ch in plaintext):
        missing.append("a symbol")
    if missing:
        raise WeakSecretError("password must contain " + ", ".join(missing), missing=missing)

    if plaintext.lower() in policy.deny_list:
        raise WeakSecretError("password is too common")


@dataclass(frozen=True, slots=True)
class Credential:
    """Salted one-way hash of an account password.

    The plaintext is only ever seen by :meth:`create` and :meth:`verify`; the
    instance holds nothing but the bcrypt hash string. Credentials are replaced
    wholesale on password change or reset.
    """

    password_hash: str = field(repr=False)

    @classmethod
    def create(cls, plaintext: str, policy: PasswordPolicy = DEFAULT_PASSWORD_POLICY) -> "Credential":
        """Validate ``plaintext`` against ``policy`` and hash it.

        Raises
        ------
        RequiredFieldMissingError
            When the plaintext is empty.
        WeakSecretError
            When the plaintext is too short, too long, lacks a character class
            or appears on the deny-list.
        """
        if not plaintext:
            raise RequiredFieldMissingError("password")
        validate_strength(plaintext, policy)
        hashed = bcrypt.hashpw(_prepare(plaintext), bcrypt.gensalt(rounds=policy.bcrypt_rounds))
        return cls(password_hash=hashed.decode("utf-8"))

    @classmethod
    def from_hash(cls, password_hash: str) -> "Credential":
        """Wrap a hash loaded from storage without re-validating strength."""
        if not password_hash:
            raise RequiredFieldMissingError("password_hash")
        return cls(password_hash=password_hash)

    def verify(self, plaintext: str) -> bool:
        """Return ``True`` when ``plaintext`` matches the stored hash.

        A mismatch is reported as ``False``; only a malformed stored hash raises
        ``CredentialCorruptedError``.
        """
        try:
            return bcrypt.checkpw(_prepare(plaintext or ""), self.password_hash.encode("utf-8"))
        except ValueError as exc:
            raise CredentialCorruptedError() from exc
