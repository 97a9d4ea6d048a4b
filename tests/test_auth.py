"""Tests for JWT issuance and token-to-user resolution."""

import uuid

import pytest
from jose import jwt

from src.config import settings
from src.exceptions import UnauthorizedException
from src.modules.auth.auth import authenticate_token, create_access_token, decode_token


def test_token_round_trip():
    user_id = uuid.uuid4()

    payload = decode_token(create_access_token(user_id))

    assert payload["sub"] == str(user_id)


def test_expired_token_is_rejected():
    token = create_access_token(uuid.uuid4(), expires_minutes=-1)

    with pytest.raises(UnauthorizedException):
        decode_token(token)


def test_token_signed_with_other_key_is_rejected():
    token = jwt.encode({"sub": str(uuid.uuid4())}, "not-the-key", algorithm=settings.jwt_algorithm)

    with pytest.raises(UnauthorizedException):
        decode_token(token)


@pytest.mark.asyncio
async def test_authenticate_resolves_identity(db, people):
    user = await authenticate_token(db, create_access_token(people.consultant.id))

    assert user.id == people.consultant.id
    assert user.role == "consultant"
    assert user.office_id == people.office.id
    assert user.is_admin is False


@pytest.mark.asyncio
async def test_inactive_user_is_rejected(db, people):
    people.receptionist.is_active = False
    await db.commit()

    with pytest.raises(UnauthorizedException, match="inactive"):
        await authenticate_token(db, create_access_token(people.receptionist.id))


@pytest.mark.asyncio
async def test_missing_or_malformed_claims(db):
    with pytest.raises(UnauthorizedException, match="Authentication required"):
        await authenticate_token(db, None)

    token = jwt.encode({"sub": "not-a-uuid"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(UnauthorizedException, match="claims"):
        await authenticate_token(db, token)
