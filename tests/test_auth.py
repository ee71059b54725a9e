"""Test suite for identity and session tokens."""

from datetime import timedelta

import pytest

from sagespark_chat.domain.errors import (
    InvalidCredentialsError,
    UserExistsError,
    ValidationError,
)
from sagespark_chat.domain.models import Identity
from sagespark_chat.repositories.json_file import JsonFileRepository
from sagespark_chat.services.auth import (
    AuthService,
    SessionTokens,
    get_password_hash,
    verify_password,
)


@pytest.fixture
def auth(tmp_path):
    return AuthService(JsonFileRepository(tmp_path / "db.json"))


def test_password_hashing():
    hashed = get_password_hash("secret1")
    assert hashed != "secret1"
    assert verify_password("secret1", hashed)
    assert not verify_password("secret2", hashed)


def test_guest_token_round_trip():
    tokens = SessionTokens("s3cret")
    identity = Identity()
    decoded = tokens.decode(tokens.encode(identity))

    assert decoded.session_id == identity.session_id
    assert decoded.is_guest


def test_user_token_round_trip():
    tokens = SessionTokens("s3cret")
    identity = Identity(user_id="u1", username="alice")
    decoded = tokens.decode(tokens.encode(identity))

    assert decoded.user_id == "u1"
    assert decoded.username == "alice"
    assert not decoded.is_guest


def test_invalid_tokens_resolve_to_nobody():
    tokens = SessionTokens("s3cret")
    forged = SessionTokens("other-secret").encode(Identity(user_id="u1", username="alice"))
    expired = SessionTokens("s3cret", max_age=timedelta(seconds=-60)).encode(Identity())

    assert tokens.decode(None) is None
    assert tokens.decode("not-a-token") is None
    assert tokens.decode(forged) is None
    assert tokens.decode(expired) is None


@pytest.mark.asyncio
async def test_signup_then_login(auth):
    created = await auth.signup("alice", "secret1")
    assert created.username == "alice"

    logged_in = await auth.login("ALICE", "secret1")
    assert logged_in.user_id == created.user_id
    assert logged_in.session_id != created.session_id


@pytest.mark.asyncio
async def test_signup_rules(auth):
    with pytest.raises(ValidationError):
        await auth.signup("al", "secret1")
    with pytest.raises(ValidationError):
        await auth.signup("alice", "12345")
    await auth.signup("alice", "secret1")
    with pytest.raises(UserExistsError):
        await auth.signup("Alice", "another1")


@pytest.mark.asyncio
async def test_login_rejects_bad_credentials(auth):
    await auth.signup("alice", "secret1")
    with pytest.raises(InvalidCredentialsError):
        await auth.login("alice", "wrong-password")
    with pytest.raises(InvalidCredentialsError):
        await auth.login("nobody", "secret1")
