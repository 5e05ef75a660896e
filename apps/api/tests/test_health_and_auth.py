import time

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt

from config import settings
from main import app
from routers.auth_scope import (
    SESSION_TOKEN_AUDIENCE,
    SESSION_TOKEN_TYPE,
    create_session_token,
    decode_session_token,
)


def _in_an_hour():
    return int(time.time()) + 3600


@pytest.mark.asyncio
async def test_liveness_and_readiness_endpoints():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        live = await client.get("/health/live")
        ready = await client.get("/health/ready")

    assert live.json() == {"alive": True}
    # The queue is started by the lifespan, which the test transport does not run.
    assert ready.status_code == 503
    assert ready.json()["missing"] == ["video_queue"]


def test_session_token_round_trip_and_rejections():
    token = create_session_token("caller-1", email="caller@example.com")["token"]

    caller = decode_session_token(token)
    assert caller.subject == "caller-1"
    assert caller.email == "caller@example.com"

    wrong_type = jwt.encode(
        {"sub": "caller-1", "aud": SESSION_TOKEN_AUDIENCE, "type": "refresh", "exp": _in_an_hour()},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    with pytest.raises(ValueError, match="type"):
        decode_session_token(wrong_type)
    with pytest.raises(ValueError, match="Invalid or expired"):
        decode_session_token(token + "tampered")


def test_tokens_for_other_audiences_or_without_expiry_are_rejected():
    other_service = jwt.encode(
        {"sub": "caller-1", "aud": "analytics-dashboard", "type": SESSION_TOKEN_TYPE, "exp": _in_an_hour()},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    no_audience = jwt.encode(
        {"sub": "caller-1", "type": SESSION_TOKEN_TYPE, "exp": _in_an_hour()},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    never_expires = jwt.encode(
        {"sub": "caller-1", "aud": SESSION_TOKEN_AUDIENCE, "type": SESSION_TOKEN_TYPE},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    expired = jwt.encode(
        {"sub": "caller-1", "aud": SESSION_TOKEN_AUDIENCE, "type": SESSION_TOKEN_TYPE, "exp": _in_an_hour() - 7200},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )

    for token in (other_service, no_audience, never_expires, expired):
        with pytest.raises(ValueError, match="Invalid or expired"):
            decode_session_token(token)


@pytest.mark.asyncio
async def test_invalid_bearer_token_is_rejected():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        resp = await client.get("/media/stats", headers={"Authorization": "Bearer not-a-token"})

    assert resp.status_code == 401
