from __future__ import annotations

import pytest

from app.domain.credential import Credential, validate_strength
from app.domain.errors import (
    CredentialCorruptedError,
    RequiredFieldMissingError,
    SecretTooLongError,
    SecretTooShortError,
    WeakSecretError,
)
from app.domain.policy import PasswordPolicy

from conftest import FAST_PASSWORD_POLICY, PASSWORD


def test_create_then_verify_matches_only_same_plaintext():
    credential = Credential.create(PASSWORD, FAST_PASSWORD_POLICY)

    assert credential.verify(PASSWORD)
    assert not credential.verify("Aa1!aaab")
    assert not credential.verify("")


def test_from_hash_round_trip():
    stored = Credential.create(PASSWORD, FAST_PASSWORD_POLICY).password_hash

    assert Credential.from_hash(stored).verify(PASSWORD)


def test_hash_is_salted():
    first = Credential.create(PASSWORD, FAST_PASSWORD_POLICY)
    second = Credential.create(PASSWORD, FAST_PASSWORD_POLICY)

    assert first.password_hash != second.password_hash
    assert PASSWORD not in first.password_hash


def test_hash_uses_configured_cost_factor():
    credential = Credential.create(PASSWORD, FAST_PASSWORD_POLICY)

    assert credential.password_hash.startswith("$2b$04$")


def test_repr_does_not_leak_hash():
    credential = Credential.create(PASSWORD, FAST_PASSWORD_POLICY)

    assert credential.password_hash not in repr(credential)


def test_secrets_longer_than_bcrypt_input_limit_are_distinguished():
    long_secret = "Aa1!" + "x" * 100
    credential = Credential.create(long_secret, FAST_PASSWORD_POLICY)

    assert credential.verify(long_secret)
    assert not credential.verify(long_secret[:-1] + "y")


@pytest.mark.parametrize(
    "plaintext,error",
    [
        ("Aa1!aaa", SecretTooShortError),
        ("Aa1!" + "a" * 125, SecretTooLongError),
        ("aa1!aaaa", WeakSecretError),
        ("AA1!AAAA", WeakSecretError),
        ("Aa!aaaaa", WeakSecretError),
        ("Aa1aaaaa", WeakSecretError),
        ("Password123!", WeakSecretError),
        ("ADMIN123!", WeakSecretError),
    ],
)
def test_create_rejects_weak_secrets(plaintext, error):
    with pytest.raises(error):
        Credential.create(plaintext, FAST_PASSWORD_POLICY)


def test_length_errors_are_weak_secret_errors():
    with pytest.raises(WeakSecretError) as excinfo:
        validate_strength("Aa1!", PasswordPolicy())

    assert excinfo.value.error_code == "SECRET_TOO_SHORT"
    assert excinfo.value.to_dict()["min_length"] == 8


def test_weak_secret_reports_missing_classes():
    with pytest.raises(WeakSecretError) as excinfo:
        validate_strength("abcdefgh")

    assert excinfo.value.details["missing"] == ["an uppercase letter", "a digit", "a symbol"]


def test_policy_bounds_are_configurable():
    policy = PasswordPolicy(min_length=12, max_length=16, bcrypt_rounds=4)

    with pytest.raises(SecretTooShortError):
        Credential.create(PASSWORD, policy)
    assert Credential.create("Aa1!aaaaaaaa", policy).verify("Aa1!aaaaaaaa")


def test_empty_plaintext_is_missing_field():
    with pytest.raises(RequiredFieldMissingError):
        Credential.create("", FAST_PASSWORD_POLICY)


def test_empty_hash_is_rejected():
    with pytest.raises(RequiredFieldMissingError):
        Credential.from_hash("")


def test_malformed_hash_is_fatal_on_verify():
    credential = Credential.from_hash("not-a-bcrypt-hash")

    with pytest.raises(CredentialCorruptedError) as excinfo:
        credential.verify(PASSWORD)

    assert excinfo.value.fatal


def test_policy_rejects_invalid_cost():
    with pytest.raises(ValueError):
        PasswordPolicy(bcrypt_rounds=3)
