"""
Tests for password hashing, the password policy and token fingerprints.
"""

import pytest

from ticketflow.core.exceptions import ValidationFailed
from ticketflow.core.security import (
    fingerprint_token,
    hash_password,
    validate_password_complexity,
    verify_password,
)


def test_hash_and_verify():
    hashed = hash_password("ValidPass123!")
    assert hashed != "ValidPass123!"
    assert verify_password("ValidPass123!", hashed)
    assert not verify_password("ValidPass123?", hashed)


def test_verify_against_garbage_hash_is_false():
    assert not verify_password("ValidPass123!", "not-a-bcrypt-hash")


def test_valid_password_passes():
    validate_password_complexity("ValidPass123!")


@pytest.mark.parametrize(
    "password, reason",
    [
        ("Weak1!", "min_length"),
        ("A1!" + "a" * 80, "max_length"),
        ("validpass123!", "missing_uppercase"),
        ("VALIDPASS123!", "missing_lowercase"),
        ("NoDigitsHere!", "missing_digit"),
        ("ValidPass1234", "missing_special"),
    ],
)
def test_password_policy_reports_first_failed_rule(password, reason):
    with pytest.raises(ValidationFailed) as exc_info:
        validate_password_complexity(password)
    assert exc_info.value.reason == reason


def test_fingerprint_is_keyed_and_stable():
    token = "header.payload.signature"
    assert fingerprint_token(token, "k1") == fingerprint_token(token, "k1")
    assert fingerprint_token(token, "k1") != fingerprint_token(token, "k2")
    assert len(fingerprint_token(token, "k1")) == 64
