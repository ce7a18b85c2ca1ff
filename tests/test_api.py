import pytest
from sqlalchemy.exc import OperationalError

from memorial_feed.database import get_db
from memorial_feed.main import app
from tests.conftest import make_post, utc

DONATION_PAYLOAD = {
    "actor": {"id": "u1", "displayName": "Grace"},
    "donation": {"id": "d1", "amountCents": 500, "currency": "USD"},
    "target": {"id": "m1", "displayName": "Ada Lovelace"},
}


async def _create_memorial(client, **overrides):
    body = {
        "display_name": "Ada Lovelace",
        "owner_user_id": "owner-1",
        "theme": "sunrise",
        "tags": ["poetry"],
        "lat": 51.5007,
        "lng": -0.1246,
        "country": "gb",
    }
    body.update(overrides)
    resp = await client.post("/memorials/", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _create_post(client, memorial_id, **overrides):
    body = {"author_id": "author-1", "memorial_id": memorial_id, "caption": "We miss you"}
    body.update(overrides)
    resp = await client.post("/posts/", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(api_client):
    resp = await api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_memorial_announces_it_nearby(api_client):
    memorial = await _create_memorial(api_client)

    resp = await api_client.get(
        "/feed/activity/community", params={"lat": 51.5011, "lng": -0.1249}
    )
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert len(items) == 1
    assert items[0]["type"] == "MEMORIAL_UPDATE"
    assert items[0]["memorial_id"] == memorial["id"]
    assert items[0]["memorial_display_name"] == "Ada Lovelace"
    assert items[0]["geo_bucket"] == "51.50,-0.12"
    assert items[0]["country"] == "GB"
    assert [p["text"] for p in items[0]["parts"]][-1] == "Memorial created"


@pytest.mark.asyncio
async def test_new_post_is_appended_to_memorial_lane(api_client, fake_redis):
    memorial = await _create_memorial(api_client)
    post = await _create_post(api_client, memorial["id"], tags=["garden"])
    assert post["status"] == "PUBLISHED"
    assert f"feed:memorial:{memorial['id']}" in fake_redis.store

    resp = await api_client.get(f"/feed/memorial/{memorial['id']}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["lane"] == f"MEMORIAL:{memorial['id']}"
    assert [e["post"]["id"] for e in body["entries"]] == [post["id"]]
    assert body["entries"][0]["reasons"] == ["NEW_TRIBUTE"]
    assert body["entries"][0]["post"]["theme"] == "sunrise"


@pytest.mark.asyncio
async def test_draft_enters_lane_only_when_published(api_client):
    memorial = await _create_memorial(api_client)
    draft = await _create_post(api_client, memorial["id"], publish=False)
    assert draft["status"] == "DRAFT"

    lane = await api_client.get(f"/feed/memorial/{memorial['id']}")
    assert lane.json()["entries"] == []

    published = await api_client.post(f"/posts/{draft['id']}/publish")
    assert published.status_code == 200
    assert published.json()["status"] == "PUBLISHED"

    lane = await api_client.get(f"/feed/memorial/{memorial['id']}")
    entries = lane.json()["entries"]
    assert [e["post"]["id"] for e in entries] == [draft["id"]]
    assert entries[0]["reasons"] == ["TRIBUTE_PUBLISHED"]


@pytest.mark.asyncio
async def test_post_for_unknown_memorial_is_rejected(api_client):
    resp = await api_client.post("/posts/", json={"author_id": "a1", "memorial_id": "missing"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_likes_and_impressions_update_metrics(api_client):
    memorial = await _create_memorial(api_client)
    post = await _create_post(api_client, memorial["id"])
    post_id = post["id"]

    for _ in range(2):
        resp = await api_client.post(f"/posts/{post_id}/like", json={"user_id": "u1"})
        assert resp.status_code == 204
    await api_client.post(f"/posts/{post_id}/like", json={"user_id": "u2"})
    metrics = (await api_client.get(f"/posts/{post_id}")).json()["metrics"]
    assert metrics["likes"] == 2

    for _ in range(2):
        await api_client.post(f"/posts/{post_id}/unlike", json={"user_id": "u1"})
    metrics = (await api_client.get(f"/posts/{post_id}")).json()["metrics"]
    assert metrics["likes"] == 1

    resp = await api_client.post(
        "/posts/impressions", json={"user_id": "u1", "post_ids": [post_id, post_id]}
    )
    assert resp.status_code == 204
    metrics = (await api_client.get(f"/posts/{post_id}")).json()["metrics"]
    assert metrics["impressions"] == 1


@pytest.mark.asyncio
async def test_global_lane_over_http(api_client, session_maker):
    async with session_maker() as session:
        hot = await make_post(session, media_type="video", likes=10, impressions=500)
        await make_post(session, media_type="video", likes=0, impressions=10)
        await session.commit()

    resp = await api_client.get("/feed/global")
    assert resp.status_code == 200
    body = resp.json()
    assert body["lane"] == "GLOBAL"
    assert [e["post"]["id"] for e in body["entries"]] == [hot.id]


@pytest.mark.asyncio
async def test_fallback_lane_pages_with_cursor(api_client, session_maker):
    async with session_maker() as session:
        posts = [await make_post(session, published_at=utc(hours_ago=i)) for i in range(3)]
        await session.commit()

    first = (await api_client.get("/feed/fallback", params={"limit": 2})).json()
    assert len(first["entries"]) == 2
    assert first["next_cursor"]

    second = (
        await api_client.get("/feed/fallback", params={"limit": 2, "cursor": first["next_cursor"]})
    ).json()
    assert [e["post"]["id"] for e in first["entries"] + second["entries"]] == [p.id for p in posts]
    assert second["next_cursor"] is None


@pytest.mark.asyncio
async def test_record_donation_statement(api_client):
    memorial = await _create_memorial(api_client)
    resp = await api_client.post(
        "/activity/",
        json={
            "type": "DONATION",
            "memorial_id": memorial["id"],
            "actor_user_id": "u1",
            "template_payload": DONATION_PAYLOAD,
            "audience_tags": ["FOLLOWING"],
        },
    )
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert [p["text"] for p in body["parts"]] == ["Grace", " donated ", "$5.00", " to ", "Ada Lovelace"]
    assert body["parts"][0] == {"text": "Grace", "source_id": "user:u1", "kind": "RECORD"}
    assert body["metadata"] == {"theme": "sunrise"}


@pytest.mark.asyncio
async def test_statement_with_missing_fields_returns_422(api_client):
    resp = await api_client.post(
        "/activity/",
        json={"type": "DONATION", "template_payload": {"actor": {"id": "u1"}}},
    )
    assert resp.status_code == 422
    body = resp.json()
    assert "donation.amountCents" in body["missing_paths"]
    assert "target.id" in body["missing_paths"]


@pytest.mark.asyncio
async def test_follow_feeds_personal_lane(api_client):
    memorial = await _create_memorial(api_client, owner_user_id="owner-2")
    resp = await api_client.post(f"/memorials/{memorial['id']}/follow", json={"user_id": "u9"})
    assert resp.status_code == 204
    resp = await api_client.post(f"/memorials/{memorial['id']}/follow", json={"user_id": "u9"})
    assert resp.status_code == 204

    page = (await api_client.get("/feed/activity/personal", params={"user_id": "u9"})).json()
    assert [i["memorial_id"] for i in page["items"]] == [memorial["id"]]

    await api_client.post(f"/memorials/{memorial['id']}/unfollow", json={"user_id": "u9"})
    page = (await api_client.get("/feed/activity/personal", params={"user_id": "u9"})).json()
    assert page["items"] == []


@pytest.mark.asyncio
async def test_rebuild_endpoint(api_client):
    memorial = await _create_memorial(api_client)
    await _create_post(api_client, memorial["id"])
    await _create_post(api_client, memorial["id"])

    resp = await api_client.post(f"/feed/memorial/{memorial['id']}/rebuild")
    assert resp.status_code == 200
    assert resp.json() == {"memorial_id": memorial["id"], "entries": 2}


@pytest.mark.asyncio
async def test_error_mapping(api_client):
    assert (await api_client.get("/feed/memorial/missing")).status_code == 404
    assert (await api_client.post("/feed/memorial/missing/rebuild")).status_code == 404
    assert (await api_client.get("/feed/activity/personal")).status_code == 422
    resp = await api_client.get("/feed/activity/community", params={"lat": 10.0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_lanes_survive_cache_outage(api_client, fake_redis):
    memorial = await _create_memorial(api_client)
    post = await _create_post(api_client, memorial["id"])
    fake_redis.fail = True

    resp = await api_client.get(f"/feed/memorial/{memorial['id']}")
    assert resp.status_code == 200
    assert [e["post"]["id"] for e in resp.json()["entries"]] == [post["id"]]

    resp = await api_client.post(f"/feed/memorial/{memorial['id']}/rebuild")
    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "1"


@pytest.mark.asyncio
async def test_database_outage_returns_503(api_client, session_maker):
    async def broken_db():
        async with session_maker() as session:
            async def broken_execute(*args, **kwargs):
                raise OperationalError("SELECT 1", {}, Exception("server has gone away"))

            session.execute = broken_execute
            yield session

    app.dependency_overrides[get_db] = broken_db

    resp = await api_client.get("/feed/fallback")
    assert resp.status_code == 503
    assert resp.headers["retry-after"] == "1"
    assert "persistence" in resp.json()["detail"]
