"""
Tests for signed bearer tokens.
"""

from datetime import timedelta

from jose import jwt

from ticketflow.models.user import User
from ticketflow.services.token_service import DurationClass


def make_user(**overrides) -> User:
    fields = dict(
        id=7,
        email="user@example.com",
        first_name="Test",
        last_name="User",
        email_verified=True,
    )
    fields.update(overrides)
    return User(**fields)


def test_issue_and_decode(issuer, settings):
    user = make_user()
    issued = issuer.issue(user)

    claims = issuer.decode(issued.token)
    assert claims["sub"] == "7"
    assert claims["email"] == "user@example.com"
    assert claims["token_type"] == "access"
    assert claims["iss"] == settings.TOKEN_ISSUER
    assert claims["aud"] == settings.TOKEN_AUDIENCE
    assert issued.expires_in == settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60


def test_remember_me_uses_long_lifetime(issuer, settings):
    issued = issuer.issue(make_user(), DurationClass.LONG)
    assert issued.expires_in == settings.REMEMBER_ME_EXPIRE_DAYS * 24 * 3600


def test_two_tokens_for_same_user_differ(issuer):
    user = make_user()
    assert issuer.issue(user).token != issuer.issue(user).token


def test_expired_token_is_rejected(issuer, clock):
    issued = issuer.issue(make_user())
    assert issuer.validate_structure(issued.token)

    clock.advance(minutes=61)
    assert not issuer.validate_structure(issued.token)
    assert issuer.extract_user_id(issued.token) is None


def test_wrong_signature_is_rejected(issuer, settings):
    claims = issuer.decode(issuer.issue(make_user()).token)
    forged = jwt.encode(claims, "another-key", algorithm=settings.ALGORITHM)
    assert not issuer.validate_structure(forged)


def test_wrong_audience_is_rejected(issuer, settings):
    claims = issuer.decode(issuer.issue(make_user()).token)
    claims["aud"] = "someone-else"
    forged = jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    assert not issuer.validate_structure(forged)


def test_garbage_is_rejected(issuer):
    assert not issuer.validate_structure("not-a-token")
    assert issuer.extract_user_id("not-a-token") is None


def test_validate_against_user(issuer):
    user = make_user()
    token = issuer.issue(user).token

    assert issuer.validate_against_user(token, user)
    assert not issuer.validate_against_user(token, make_user(id=8))
    assert not issuer.validate_against_user(token, make_user(email="changed@example.com"))


def test_lifetimes(issuer):
    assert issuer.lifetime(DurationClass.SHORT) == timedelta(minutes=60)
    assert issuer.lifetime(DurationClass.LONG) == timedelta(days=30)
