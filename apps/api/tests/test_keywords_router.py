import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from routers.auth_scope import create_session_token
from services.keyword_pool import get_keyword_pool_manager


AUTH_HEADER = {"Authorization": f"Bearer {create_session_token('keyword-tester')['token']}"}


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.mark.asyncio
async def test_seed_rotate_and_read_active_keywords(client):
    seed_resp = await client.post(
        "/keywords/seed",
        json={"keywords": ["meal prep", "desk setup", "Meal Prep", "study with me"]},
        headers=AUTH_HEADER,
    )
    assert seed_resp.status_code == 200
    assert seed_resp.json() == {"added": 3, "keywords": ["meal prep", "desk setup", "study with me"], "category": None}

    missing = await client.get("/keywords/active", params={"date": "2025-03-10"}, headers=AUTH_HEADER)
    assert missing.status_code == 404

    rotate_resp = await client.post(
        "/keywords/rotate", json={"count": 2, "date": "2025-03-10"}, headers=AUTH_HEADER
    )
    assert rotate_resp.status_code == 200
    rotation = rotate_resp.json()
    assert rotation["date"] == "2025-03-10"
    assert rotation["keywords"] == ["meal prep", "desk setup"]
    assert rotation["new_count"] == 2
    assert rotation["from_cache"] is False

    again = await client.post("/keywords/rotate", json={"count": 2, "date": "2025-03-10"}, headers=AUTH_HEADER)
    assert again.json()["keywords"] == rotation["keywords"]
    assert again.json()["from_cache"] is True

    active = await client.get("/keywords/active", params={"date": "2025-03-10"}, headers=AUTH_HEADER)
    assert active.status_code == 200
    assert active.json() == {"date": "2025-03-10", "category": None, "keywords": ["meal prep", "desk setup"]}


@pytest.mark.asyncio
async def test_category_seeding_and_defaults(client):
    seeded = await client.post(
        "/keywords/seed",
        json={"keywords": ["pricing strategy"], "category": "biz"},
        headers=AUTH_HEADER,
    )
    assert seeded.status_code == 200
    assert seeded.json()["added"] == 1

    defaults = await client.post("/keywords/seed/defaults", json={"category": "productivity"}, headers=AUTH_HEADER)
    assert defaults.status_code == 200
    assert defaults.json()["added"] > 0

    unknown = await client.post(
        "/keywords/seed/defaults", json={"category": "underwater basket weaving"}, headers=AUTH_HEADER
    )
    assert unknown.status_code == 404

    rotated = await client.post(
        "/keywords/rotate", json={"count": 3, "date": "2025-03-10", "category": "business"}, headers=AUTH_HEADER
    )
    assert rotated.json()["category"] == "business"
    assert rotated.json()["keywords"] == ["pricing strategy"]


@pytest.mark.asyncio
async def test_seed_from_search_history(client):
    manager = get_keyword_pool_manager()
    for term in ["cats", "dogs", "cats"]:
        await manager.record_search(term)

    resp = await client.post("/keywords/seed/history", json={"limit": 10}, headers=AUTH_HEADER)

    assert resp.status_code == 200
    assert resp.json()["added"] == 2
    assert sorted(resp.json()["keywords"]) == ["cats", "dogs"]

    too_many = await client.post("/keywords/seed/history", json={"limit": 501}, headers=AUTH_HEADER)
    assert too_many.status_code == 422


@pytest.mark.asyncio
async def test_keyword_routes_validate_input(client):
    bad_date = await client.post("/keywords/rotate", json={"date": "next tuesday"}, headers=AUTH_HEADER)
    assert bad_date.status_code == 422

    empty = await client.post("/keywords/seed", json={"keywords": []}, headers=AUTH_HEADER)
    assert empty.status_code == 422

    unauthenticated = await client.post("/keywords/rotate", json={})
    assert unauthenticated.status_code == 401
