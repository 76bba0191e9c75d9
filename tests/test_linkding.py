import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import BookmarkServiceError, ConfigurationError, is_transient
from linkding import LinkdingClient, matches_tags
from models import Bookmark

TOKEN = "secret-token-123"


def _bookmark(i, tags):
    return {
        "id": i,
        "url": f"https://site{i}.example/",
        "title": f"Site {i}",
        "description": "",
        "tag_names": tags,
    }


STORED = [
    _bookmark(1, ["Blog", "tech"]),
    _bookmark(2, ["tech"]),
    _bookmark(3, ["blog"]),
    _bookmark(4, ["blog", "TECH", "misc"]),
    _bookmark(5, []),
]


def _app(received):
    app = web.Application()

    @web.middleware
    async def require_token(request, handler):
        if request.headers.get("Authorization") != f"Token {TOKEN}":
            return web.json_response({"detail": "Invalid token."}, status=401)
        return await handler(request)

    app.middlewares.append(require_token)

    async def list_bookmarks(request):
        limit = 2
        offset = int(request.query.get("offset", 0))
        page = STORED[offset:offset + limit]
        next_url = None
        if offset + limit < len(STORED):
            next_url = str(request.url.with_query({"limit": limit, "offset": offset + limit}))
        return web.json_response({"count": len(STORED), "next": next_url, "results": page})

    async def check(request):
        url = request.query["url"]
        match = next((b for b in STORED if b["url"] == url), None)
        return web.json_response({"bookmark": match, "metadata": {}})

    async def create(request):
        payload = await request.json()
        received.append(("POST", payload))
        return web.json_response(dict(payload, id=42), status=201)

    async def update(request):
        payload = await request.json()
        received.append(("PUT", int(request.match_info["id"]), payload))
        if request.match_info["id"] == "404":
            raise web.HTTPNotFound()
        return web.json_response(dict(payload, id=int(request.match_info["id"])))

    async def broken(request):
        raise web.HTTPBadGateway()

    app.router.add_get("/api/bookmarks/", list_bookmarks)
    app.router.add_get("/api/bookmarks/check/", check)
    app.router.add_post("/api/bookmarks/", create)
    app.router.add_put("/api/bookmarks/{id}/", update)
    app.router.add_get("/broken/api/bookmarks/", broken)
    return app


@pytest_asyncio.fixture
async def linkding_server():
    received = []
    async with TestServer(_app(received)) as server:
        server.received = received
        yield server


@pytest.mark.asyncio
async def test_fetch_bookmarks_follows_pagination(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), TOKEN) as client:
        bookmarks = await client.fetch_bookmarks()

    assert [b.id for b in bookmarks] == [1, 2, 3, 4, 5]
    assert bookmarks[0].tags == ["Blog", "tech"]


@pytest.mark.asyncio
async def test_fetch_bookmarks_requires_all_tags_case_insensitively(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), TOKEN) as client:
        bookmarks = await client.fetch_bookmarks(["blog", "Tech"])

    assert [b.id for b in bookmarks] == [1, 4]


@pytest.mark.asyncio
async def test_get_bookmark_by_url(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), TOKEN) as client:
        found = await client.get_bookmark_by_url("https://site3.example/")
        missing = await client.get_bookmark_by_url("https://unknown.example/")

    assert found.id == 3
    assert missing is None


@pytest.mark.asyncio
async def test_create_and_update_send_expected_payloads(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), TOKEN) as client:
        created = await client.create_bookmark("https://new.example/", "New", "Desc", ["a", "b"])
        await client.update_bookmark(3, "https://site3.example/", "Renamed", "", ["blog"])

    assert created.id == 42
    method, payload = linkding_server.received[0]
    assert method == "POST"
    assert payload["url"] == "https://new.example/"
    assert payload["tag_names"] == ["a", "b"]
    assert payload["is_archived"] is False
    assert payload["unread"] is False
    assert payload["shared"] is False
    assert linkding_server.received[1][:2] == ("PUT", 3)
    assert linkding_server.received[1][2]["title"] == "Renamed"


@pytest.mark.asyncio
async def test_client_error_is_not_transient(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), TOKEN) as client:
        with pytest.raises(BookmarkServiceError) as excinfo:
            await client.update_bookmark(404, "https://gone.example/", "Gone", "", [])

    assert excinfo.value.status == 404
    assert not is_transient(excinfo.value)


@pytest.mark.asyncio
async def test_bad_token_is_reported(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/")), "wrong") as client:
        with pytest.raises(BookmarkServiceError) as excinfo:
            await client.fetch_bookmarks()

    assert excinfo.value.status == 401
    assert "Invalid token" in str(excinfo.value)


@pytest.mark.asyncio
async def test_server_error_is_transient(linkding_server):
    async with LinkdingClient(str(linkding_server.make_url("/broken/")), TOKEN) as client:
        with pytest.raises(BookmarkServiceError) as excinfo:
            await client.fetch_bookmarks()

    assert excinfo.value.status == 502
    assert is_transient(excinfo.value)


@pytest.mark.asyncio
async def test_unreachable_server_is_transient():
    async with LinkdingClient("http://127.0.0.1:1/", TOKEN, timeout=2) as client:
        with pytest.raises(BookmarkServiceError) as excinfo:
            await client.get_bookmark_by_url("https://x.example/")

    assert excinfo.value.status is None
    assert is_transient(excinfo.value)


@pytest.mark.parametrize("url, token", [("https://links.example.com", ""), ("", TOKEN)])
def test_missing_url_or_token_is_a_configuration_error(url, token):
    with pytest.raises(ConfigurationError):
        LinkdingClient(url, token)


def test_matches_tags_without_filter_accepts_everything():
    assert matches_tags(Bookmark(id=1, url="https://x.example/"), [])
