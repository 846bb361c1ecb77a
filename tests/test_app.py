import asyncio
import locale

import pytest

from hytale_top import app, config, latency, servers
from hytale_top.store import open_db


@pytest.fixture
def listed(add_server):
    add_server(name="Arena One", category="pvp", isOnline=True, votes=30)
    add_server(name="Arena Two", category="pvp", isOnline=True, votes=50)
    add_server(name="Arena Closed", category="pvp", isOnline=False, votes=90)
    add_server(name="Builders", category="creative", isOnline=True, votes=10)
    add_server(name="Quiet Fields", category="survival", isOnline=False, votes=0)


@pytest.mark.asyncio
async def test_list_servers(client, listed):
    resp = await client.get("/api/servers", params={"category": "pvp", "onlineOnly": "true"})
    body = await resp.json()

    assert resp.status == 200
    assert body["success"] is True
    assert [s["name"] for s in body["servers"]] == ["Arena Two", "Arena One"]
    assert body["stats"]["totalServers"] == 2
    assert body["pagination"]["total"] == 2


@pytest.mark.asyncio
async def test_list_servers_pagination(client, add_server):
    for i in range(25):
        add_server(name=f"Server {i:02d}", votes=100 - i)

    resp = await client.get("/api/servers", params={"page": "2", "pageSize": "10"})
    body = await resp.json()

    assert [s["name"] for s in body["servers"]] == [f"Server {i:02d}" for i in range(10, 20)]
    assert body["pagination"]["totalPages"] == 3


@pytest.mark.asyncio
async def test_list_servers_failure_message(client, monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(servers, "list_servers", broken)

    resp = await client.get("/api/servers")

    assert resp.status == 500
    assert await resp.json() == {"success": False, "error": "Failed to fetch servers"}


@pytest.mark.asyncio
async def test_get_server(client, listed):
    resp = await client.get("/api/servers/arena-one")
    assert (await resp.json())["server"]["name"] == "Arena One"

    resp = await client.get("/api/servers/1")
    assert (await resp.json())["server"]["slug"] == "arena-one"

    resp = await client.get("/api/servers/nothing-here")
    assert resp.status == 404
    assert (await resp.json())["error"] == "Server not found"


@pytest.mark.asyncio
async def test_submit_and_manage_server(client):
    submission = {"userId": "owner", "name": "Hy Town", "ip": "play.hytown.net"}

    resp = await client.post("/api/servers", json=submission)
    assert resp.status == 201
    server = (await resp.json())["server"]
    assert server["slug"] == "hy-town"

    resp = await client.post("/api/servers", json=submission)
    assert resp.status == 400

    resp = await client.put(
        "/api/servers/hy-town/manage", json={"userId": "intruder", "updates": {"name": "x"}}
    )
    assert resp.status == 403

    resp = await client.put(
        "/api/servers/hy-town/manage",
        json={"userId": "owner", "updates": {"description": "Towns and jobs"}},
    )
    assert (await resp.json())["server"]["description"] == "Towns and jobs"

    resp = await client.get("/api/my-servers", params={"userId": "owner"})
    assert (await resp.json())["count"] == 1

    resp = await client.delete("/api/servers/hy-town/manage")
    assert resp.status == 401

    resp = await client.delete("/api/servers/hy-town/manage", params={"userId": "owner"})
    assert resp.status == 200
    resp = await client.get("/api/servers/hy-town")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_invalid_json_body(client):
    resp = await client.post(
        "/api/vote", data="{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status == 400
    assert (await resp.json())["error"] == "Invalid JSON body"


@pytest.mark.asyncio
async def test_vote_flow(client, listed):
    resp = await client.post("/api/vote", json={"serverId": "1"})
    assert resp.status == 401
    assert (await resp.json())["success"] is False

    resp = await client.post("/api/vote", json={"serverId": "1", "userId": "u1"})
    body = await resp.json()
    assert resp.status == 200
    assert body["newVoteCount"] == 31

    resp = await client.post("/api/vote", json={"serverId": "1", "userId": "u1"})
    assert resp.status == 429

    resp = await client.get("/api/vote", params={"serverId": "1"})
    body = await resp.json()
    assert body["totalVotes"] == 1
    assert body["votes"][0]["username"] == "Anonymous"


@pytest.mark.asyncio
async def test_simultaneous_votes(client, listed):
    vote = {"serverId": "2", "userId": "u1"}

    responses = await asyncio.gather(
        client.post("/api/vote", json=vote), client.post("/api/vote", json=vote)
    )

    assert sorted(resp.status for resp in responses) == [200, 429]
    resp = await client.get("/api/servers/2")
    assert (await resp.json())["server"]["votes"] == 51


@pytest.mark.asyncio
async def test_reviews_flow(client, listed):
    review = {
        "serverId": "1",
        "userId": "u1",
        "username": "steve",
        "rating": 4,
        "title": "Fun",
        "content": "Good fights",
    }
    resp = await client.post("/api/reviews", json=review)
    review_id = (await resp.json())["review"]["id"]

    resp = await client.patch("/api/reviews", json={"reviewId": review_id, "helpful": True})
    assert resp.status == 200

    resp = await client.get("/api/reviews", params={"serverId": "1", "sortBy": "helpful"})
    data = (await resp.json())["data"]
    assert data["reviews"][0]["helpful"] == 1
    assert data["stats"]["averageRating"] == 4

    resp = await client.delete("/api/reviews", json={"reviewId": review_id, "userId": "u2"})
    assert resp.status == 403
    resp = await client.delete("/api/reviews", json={"reviewId": review_id, "userId": "u1"})
    assert resp.status == 200


@pytest.mark.asyncio
async def test_categories(client, listed):
    resp = await client.get("/api/categories")
    categories = {c["category"]: c for c in (await resp.json())["categories"]}

    assert categories["pvp"]["totalServers"] == 3
    assert categories["pvp"]["onlineServers"] == 2


@pytest.mark.asyncio
async def test_user_ping_echo(client):
    resp = await client.get("/api/user-ping", headers={"cf-ipcountry": "NL"})
    body = await resp.json()

    assert body["echo"] is True
    assert body["location"]["country"] == "NL"
    assert resp.headers["Cache-Control"].startswith("no-store")


@pytest.mark.asyncio
async def test_user_ping_requires_address(client):
    resp = await client.post("/api/user-ping", json={})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_query_is_cached(client, fake_query):
    fake_query.answers["play.example.net"] = {"players": 3}

    for _ in range(2):
        resp = await client.get("/api/query", params={"ip": "play.example.net"})
        body = await resp.json()
        assert body["online"] is True
        assert body["players"] == 3

    assert fake_query.calls == [("play.example.net", 5520)]


@pytest.mark.asyncio
@pytest.mark.parametrize("ip", ["", "not a host", "host:5520", "-bad.example"])
async def test_query_rejects_bad_hosts(client, fake_query, ip):
    resp = await client.get("/api/query", params={"ip": ip})
    assert resp.status == 400
    assert fake_query.calls == []


@pytest.mark.asyncio
async def test_uptime_route(client):
    resp = await client.get("/api/uptime")
    assert resp.status == 400

    resp = await client.get("/api/uptime", params={"serverId": "1", "hours": "6"})
    data = (await resp.json())["data"]
    assert data["totalChecks"] == 0
    assert len(data["chartData"]) == 6


@pytest.mark.asyncio
async def test_admin_jobs_need_key(admin_client):
    resp = await admin_client.post("/api/seed")
    assert resp.status == 401

    resp = await admin_client.post("/api/seed", headers={"Authorization": "Bearer wrong"})
    assert resp.status == 401

    resp = await admin_client.post("/api/seed", headers={"Authorization": "Bearer secret"})
    assert (await resp.json())["successful"] == 20

    resp = await admin_client.get("/api/seed")
    assert (await resp.json())["count"] == 20


@pytest.mark.asyncio
async def test_admin_jobs(client, fake_query):
    resp = await client.post("/api/ping")
    assert resp.status == 404

    await client.post("/api/seed")
    fake_query.answers["pvpht.example.net"] = {"players": 17}

    resp = await client.post("/api/ping")
    body = await resp.json()
    assert body["summary"]["online"] == 1
    assert body["summary"]["totalPlayers"] == 17

    resp = await client.get("/api/ping")
    assert (await resp.json())["summary"]["online"] == 1

    resp = await client.put("/api/update-categories")
    assert len((await resp.json())["results"]) == 20

    resp = await client.put("/api/reset-votes")
    assert (await resp.json())["count"] == 20

    resp = await client.delete("/api/seed")
    assert (await resp.json())["deleted"] == 20


@pytest.mark.asyncio
async def test_sitemap_and_robots(client, listed):
    resp = await client.get("/sitemap.xml")
    xml = await resp.text()

    assert resp.content_type == "application/xml"
    assert "https://hytale.test/servers/arena-one" in xml

    resp = await client.get("/robots.txt")
    assert "Sitemap: https://hytale.test/sitemap.xml" in await resp.text()


@pytest.mark.asyncio
@pytest.mark.parametrize("bad", [{"description": 123}, {"tags": 7}])
async def test_bad_submission_leaves_listing_readable(client, listed, bad):
    submission = {"userId": "owner-1", "name": "Poison", "ip": "1.2.3.4", **bad}

    resp = await client.post("/api/servers", json=submission)
    assert resp.status == 400

    resp = await client.get("/api/servers", params={"search": "zzz"})
    assert resp.status == 200
    resp = await client.get("/sitemap.xml")
    assert resp.status == 200
    resp = await client.get("/api/servers/poison")
    assert resp.status == 404


@pytest.mark.asyncio
async def test_bad_edit_is_rejected(client):
    await client.post("/api/servers", json={"userId": "owner", "name": "Hy Town", "ip": "a.b"})

    resp = await client.put(
        "/api/servers/hy-town/manage", json={"userId": "owner", "updates": {"tags": "pvp"}}
    )
    assert resp.status == 400

    resp = await client.get("/api/servers")
    assert (await resp.json())["servers"][0]["tags"] == []


@pytest.mark.asyncio
async def test_numeric_owner_id_can_delete(client):
    resp = await client.post("/api/servers", json={"userId": 42, "name": "Hy Town", "ip": "a.b"})
    assert resp.status == 201

    resp = await client.get("/api/my-servers", params={"userId": "42"})
    assert (await resp.json())["count"] == 1

    resp = await client.delete("/api/servers/hy-town/manage", params={"userId": "42"})
    assert resp.status == 200


@pytest.mark.asyncio
async def test_sitemap_follows_listing_changes(client):
    resp = await client.get("/sitemap.xml")
    assert "/servers/hy-town" not in await resp.text()

    await client.post("/api/servers", json={"userId": "owner", "name": "Hy Town", "ip": "a.b"})
    resp = await client.get("/sitemap.xml")
    assert "/servers/hy-town" in await resp.text()

    await client.delete("/api/servers/hy-town/manage", params={"userId": "owner"})
    resp = await client.get("/sitemap.xml")
    assert "/servers/hy-town" not in await resp.text()


def test_start_sets_collation_locale(monkeypatch, capsys):
    calls = []

    def setlocale(category, name):
        calls.append((category, name))
        raise locale.Error("unsupported locale setting")

    monkeypatch.setattr(locale, "setlocale", setlocale)
    monkeypatch.setattr(latency, "open_geoip", lambda path: None)
    monkeypatch.setattr(app, "open_db", lambda path=None: open_db())
    monkeypatch.setattr(app.web, "run_app", lambda application, host, port: calls.append(port))

    app.start()

    assert calls == [(locale.LC_COLLATE, ""), config.PORT]
    assert "code point" in capsys.readouterr().out
