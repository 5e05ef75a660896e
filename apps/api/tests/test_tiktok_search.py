import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from services.errors import SearchFailure, ValidationFailure
from services.manifest import Rendition
from services.tiktok_search import (
    CandidateVideo,
    FilterOptions,
    TikTokSearchClient,
    filter_candidates,
    parse_bitrate_info,
    pick_rendition,
    search_tiktok_videos_service,
)


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _bitrate(gear: str, bitrate: int, height: int, url: str):
    return {
        "GearName": gear,
        "Bitrate": bitrate,
        "PlayAddr": {"UrlList": [url], "Height": height, "Width": int(height * 9 / 16), "DataSize": bitrate // 8},
    }


def _item(item_id: str, views: int = 100, likes: int = 10, duration: int = 30, age_days: int = 1):
    return {
        "item": {
            "id": item_id,
            "desc": f"video {item_id} #fyp",
            "createTime": int((NOW - timedelta(days=age_days)).timestamp()),
            "author": {"uniqueId": "creator"},
            "stats": {"playCount": views, "diggCount": likes},
            "video": {
                "duration": duration,
                "cover": f"https://p16.tiktokcdn.com/{item_id}.jpeg",
                "bitrateInfo": [
                    _bitrate("normal_720_0", 1_400_000, 1280, f"https://v16.tiktokcdn.com/{item_id}/720.mp4"),
                    _bitrate("normal_540_0", 800_000, 960, f"http://v16.tiktokcdn.com/{item_id}/540.mp4"),
                    _bitrate("lower_360_0", 300_000, 0, f"https://v16.tiktokcdn.com/{item_id}/360.mp4"),
                ],
            },
        }
    }


def _candidate(item_id: str, views: int, likes: int = 0, duration: int = 10, published_at=NOW):
    return CandidateVideo(
        id=item_id,
        url=f"https://www.tiktok.com/@creator/video/{item_id}",
        view_count=views,
        like_count=likes,
        duration_seconds=duration,
        published_at=published_at,
    )


def _client(handler) -> TikTokSearchClient:
    return TikTokSearchClient(api_key="test-key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_search_normalizes_items_and_paging():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["headers"] = request.headers
        return httpx.Response(
            200,
            json={
                "status_code": 0,
                "data": [_item("111"), {"type": 4}, _item("222", views=5000)],
                "cursor": 12,
                "has_more": 1,
                "log_pb": {"impr_id": "session-abc"},
            },
        )

    page = await _client(handler).search("dance", cursor=0, search_session_id="0")

    assert seen["url"].path == "/api/search/general"
    assert seen["url"].params["keyword"] == "dance"
    assert seen["url"].params["search_id"] == "0"
    assert seen["headers"]["x-rapidapi-key"] == "test-key"
    assert seen["headers"]["x-rapidapi-host"] == "tiktok-api23.p.rapidapi.com"

    assert [item.id for item in page.items] == ["111", "222"]
    assert page.next_cursor == 12
    assert page.has_more is True
    assert page.search_session_id == "session-abc"

    first = page.items[0]
    assert first.url == "https://www.tiktok.com/@creator/video/111"
    assert first.duration_seconds == 30
    assert len(first.renditions) == 3
    assert first.selected_rendition.quality_label == "normal_540_0"
    assert first.selected_rendition.url == "https://v16.tiktokcdn.com/111/540.mp4"


@pytest.mark.asyncio
async def test_search_http_error_carries_keyword_and_cursor():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="busy")

    with pytest.raises(SearchFailure) as exc_info:
        await _client(handler).search("cooking", cursor=24)

    failure = exc_info.value
    assert failure.keyword == "cooking"
    assert failure.cursor == 24
    assert failure.status_code == 503
    assert failure.transient is True
    assert "cooking" in str(failure)


@pytest.mark.asyncio
async def test_search_timeout_is_flagged():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow upstream", request=request)

    with pytest.raises(SearchFailure) as exc_info:
        await _client(handler).search("travel")

    assert exc_info.value.timeout is True
    assert exc_info.value.error_code == "timeout"


@pytest.mark.asyncio
async def test_search_rejects_bad_payloads():
    def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>captcha</html>")

    def upstream_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status_code": 10201, "data": []})

    def wrong_shape(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"items": []}})

    for handler in (not_json, upstream_error, wrong_shape):
        with pytest.raises(SearchFailure):
            await _client(handler).search("gym")


@pytest.mark.asyncio
async def test_search_tolerates_out_of_range_numbers():
    entry = _item("333")
    entry["item"]["createTime"] = 10**20
    entry["item"]["stats"]["playCount"] = "Infinity"
    payload = {"status_code": 0, "data": [entry], "cursor": 1e400, "has_more": 0}
    # 1e400 decodes to float infinity.
    body = json.dumps(payload).replace('"Bitrate": 1400000', '"Bitrate": 1e400').replace("Infinity", "1e400")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=body.encode(), headers={"content-type": "application/json"})

    page = await _client(handler).search("dance", cursor=0)

    assert [item.id for item in page.items] == ["333"]
    candidate = page.items[0]
    assert candidate.published_at is None
    assert candidate.view_count == 0
    assert [r.quality_label for r in candidate.renditions] == ["normal_540_0", "lower_360_0"]
    assert page.next_cursor == 1
    assert page.has_more is False


@pytest.mark.asyncio
async def test_blank_keyword_fails_before_any_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    with pytest.raises(ValidationFailure):
        await _client(handler).search("   ")
    assert calls == []


@pytest.mark.asyncio
async def test_search_service_applies_filters():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": [_item("1", views=50), _item("2", views=2000), _item("3", views=9000)], "cursor": 3},
        )

    payload = await search_tiktok_videos_service(
        _client(handler),
        keyword=" fitness ",
        filters=FilterOptions(min_views=1000),
    )

    assert payload["keyword"] == "fitness"
    assert payload["count"] == 2
    assert [video["id"] for video in payload["videos"]] == ["2", "3"]
    assert payload["videos"][0]["video_url"].endswith("/2/540.mp4")


def test_min_views_filter_keeps_matching_subset_in_order():
    views = [10, 5000, 999, 1000, 20, 70000, 1001, 0, 3000, 1]
    items = [_candidate(str(i), v) for i, v in enumerate(views)]

    result = filter_candidates(items, FilterOptions(min_views=1000))

    assert [item.id for item in result] == ["1", "3", "5", "6", "8"]


def test_filters_combine_with_and_semantics():
    items = [
        _candidate("a", views=5000, likes=100, duration=20),
        _candidate("b", views=5000, likes=5, duration=20),
        _candidate("c", views=50000, likes=100, duration=20),
        _candidate("d", views=5000, likes=100, duration=120),
        _candidate("e", views=5000, likes=100, duration=20, published_at=NOW - timedelta(days=30)),
        _candidate("f", views=5000, likes=100, duration=20, published_at=None),
    ]
    options = FilterOptions(min_views=1000, max_views=10000, min_likes=50, max_duration_sec=60, within_days=7)

    result = filter_candidates(items, options, now=NOW)

    assert [item.id for item in result] == ["a"]
    assert filter_candidates(items, None) == items


def test_pick_rendition_prefers_best_under_height_ceiling():
    renditions = [
        Rendition(bandwidth=1_400_000, url="https://x/720.mp4", height=1280),
        Rendition(bandwidth=300_000, url="https://x/360.mp4", quality_label="lower_360_0"),
        Rendition(bandwidth=800_000, url="https://x/540.mp4", height=540),
    ]

    assert pick_rendition(renditions, max_height=540).url == "https://x/540.mp4"
    assert pick_rendition(renditions, max_height=400).url == "https://x/360.mp4"


def test_pick_rendition_falls_back_to_lowest_bandwidth():
    renditions = [
        Rendition(bandwidth=2_000_000, url="https://x/1080.mp4", height=1920),
        Rendition(bandwidth=1_200_000, url="https://x/720.mp4", height=1280),
    ]

    assert pick_rendition(renditions, max_height=540).url == "https://x/720.mp4"


def test_parse_bitrate_info_upgrades_http_and_skips_broken_entries():
    renditions = parse_bitrate_info(
        [
            {"GearName": "a", "Bitrate": 100, "PlayAddr": {"UrlList": ["http://cdn/a.mp4"]}},
            {"GearName": "b", "Bitrate": 0, "PlayAddr": {"UrlList": ["https://cdn/b.mp4"]}},
            {"GearName": "c", "Bitrate": 200, "PlayAddr": {"UrlList": []}},
            "garbage",
        ]
    )

    assert [r.url for r in renditions] == ["https://cdn/a.mp4"]
    assert parse_bitrate_info(None) == []
