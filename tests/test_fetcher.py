import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from artifacts import parse_artifact
from config import PollerSettings
from errors import ArtifactWriteError, TransportError
from fetcher import FeedFetcher
from models import NO_ETAG
from validators import format_http_date


def _feed_app(routes):
    app = web.Application()
    for path, handler in routes.items():
        app.router.add_get(path, handler)
    return app


def _read(store, feed_id, status):
    return parse_artifact(store.path_for(feed_id, status).read_bytes(), feed_id, status)


@pytest.mark.asyncio
async def test_not_modified_keeps_cached_validators(settings, store):
    seen = {}

    async def handler(request):
        seen.update(request.headers)
        return web.Response(status=304)

    async with TestServer(_feed_app({"/feed": handler})) as server:
        url = str(server.make_url("/feed"))
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(7, url, 1700000000, "abc")

    assert seen["If-Modified-Since"] == "Tue, 14 Nov 2023 22:13:20 GMT"
    assert seen["If-None-Match"] == "abc"
    assert seen["User-Agent"] == "FeedPollerTest/1.0"
    assert result.updated is False
    artifact = _read(store, 7, 304)
    assert artifact.last_modified == 1700000000
    assert artifact.etag == "abc"
    assert artifact.effective_url == url
    assert artifact.body == ""


@pytest.mark.asyncio
async def test_ok_response_writes_body_and_validators(settings, store):
    seen = {}

    async def handler(request):
        seen.update(request.headers)
        return web.Response(
            body=b"0123456789",
            headers={"ETag": '"xyz"', "Last-Modified": format_http_date(1700000500)},
            content_type="application/rss+xml",
        )

    async with TestServer(_feed_app({"/feed": handler})) as server:
        url = str(server.make_url("/feed"))
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(1, url)

    assert "If-Modified-Since" not in seen
    assert "If-None-Match" not in seen
    assert result.updated is True
    assert result.outcome.status_code == 200
    artifact = _read(store, 1, 200)
    assert artifact.body == "0123456789"
    assert artifact.etag == '"xyz"'
    assert artifact.last_modified == 1700000500
    assert artifact.effective_url == url
    assert artifact.fetched_at > 0


@pytest.mark.asyncio
@pytest.mark.parametrize("status, updated", [
    (204, True),
    (404, False),
    (410, False),
    (500, False),
    (503, False),
    (202, False),
])
async def test_status_classification(settings, store, status, updated):
    async def handler(request):
        return web.Response(status=status)

    async with TestServer(_feed_app({"/feed": handler})) as server:
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(5, str(server.make_url("/feed")))

    assert result.updated is updated
    assert result.persisted is True
    artifact = _read(store, 5, status)
    assert artifact.etag == NO_ETAG
    assert artifact.body == ""


@pytest.mark.asyncio
async def test_body_at_limit_is_accepted(store):
    settings = PollerSettings(user_agent="t", max_body_length=10)

    async def handler(request):
        return web.Response(body=b"x" * 10)

    async with TestServer(_feed_app({"/feed": handler})) as server:
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(2, str(server.make_url("/feed")))

    assert result.updated is True
    assert _read(store, 2, 200).body == "x" * 10


@pytest.mark.asyncio
async def test_body_over_limit_is_dropped(store):
    settings = PollerSettings(user_agent="t", max_body_length=10)

    async def handler(request):
        return web.Response(body=b"x" * 11, headers={"ETag": '"big"'})

    async with TestServer(_feed_app({"/feed": handler})) as server:
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(3, str(server.make_url("/feed")))

    assert result.updated is False
    assert result.outcome.status_code == 668
    assert not store.path_for(3, 200).exists()
    artifact = _read(store, 3, 668)
    assert artifact.body == ""
    assert artifact.etag == '"big"'


@pytest.mark.asyncio
async def test_chunked_body_over_limit_is_dropped(store):
    settings = PollerSettings(user_agent="t", max_body_length=10)

    async def handler(request):
        resp = web.StreamResponse()
        resp.enable_chunked_encoding()
        await resp.prepare(request)
        await resp.write(b"x" * 6)
        await resp.write(b"x" * 6)
        await resp.write_eof()
        return resp

    async with TestServer(_feed_app({"/feed": handler})) as server:
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(4, str(server.make_url("/feed")))

    assert result.updated is False
    assert _read(store, 4, 668).body == ""


def _redirect_chain_app(counter):
    async def hop(request):
        counter.append(request.path)
        n = int(request.match_info["n"])
        if n == 0:
            return web.Response(text="done")
        raise web.HTTPFound(f"/r/{n - 1}")

    return _feed_app({"/r/{n}": hop})


@pytest.mark.asyncio
async def test_nine_redirects_are_followed(settings, store):
    requests = []
    async with TestServer(_redirect_chain_app(requests)) as server:
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(9, str(server.make_url("/r/9")))

    assert result.updated is True
    assert len(requests) == 10
    assert result.outcome.effective_url.endswith("/r/0")
    assert _read(store, 9, 200).body == "done"


@pytest.mark.asyncio
async def test_tenth_redirect_fails(settings, store):
    requests = []
    async with TestServer(_redirect_chain_app(requests)) as server:
        url = str(server.make_url("/r/10"))
        async with FeedFetcher(settings, store) as fetcher:
            with pytest.raises(TransportError):
                await fetcher.fetch(10, url)

    assert len(requests) == 10
    assert "/r/0" not in requests
    artifact = _read(store, 10, 666)
    assert artifact.effective_url == url
    assert artifact.etag == NO_ETAG


@pytest.mark.asyncio
async def test_permanent_redirect_stub_survives_failed_target(settings, store):
    async def moved(request):
        raise web.HTTPMovedPermanently("/gone")

    async def gone(request):
        return web.Response(status=404)

    async with TestServer(_feed_app({"/moved": moved, "/gone": gone})) as server:
        target = str(server.make_url("/gone"))
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(11, str(server.make_url("/moved")))

    assert result.updated is False
    assert await store.list_keys("redirects") == ["redirects/11_301.txt"]
    stub = _read(store, 11, 301)
    assert stub.effective_url == target
    assert (stub.last_modified, stub.etag, stub.body) == (0, "", "")
    assert _read(store, 11, 404).effective_url == target


@pytest.mark.asyncio
async def test_temporary_redirect_writes_no_stub(settings, store):
    async def moved(request):
        raise web.HTTPFound("/final")

    async def final(request):
        return web.Response(text="<rss/>")

    async with TestServer(_feed_app({"/moved": moved, "/final": final})) as server:
        target = str(server.make_url("/final"))
        async with FeedFetcher(settings, store) as fetcher:
            result = await fetcher.fetch(12, str(server.make_url("/moved")))

    assert result.updated is True
    assert await store.list_keys("redirects") == []
    assert _read(store, 12, 200).effective_url == target


@pytest.mark.asyncio
async def test_connection_refused(settings, store, unused_port):
    url = f"http://127.0.0.1:{unused_port}/feed"
    async with FeedFetcher(settings, store) as fetcher:
        with pytest.raises(TransportError) as excinfo:
            await fetcher.fetch(13, url, 1700000000, '"old"')

    assert excinfo.value.feed_id == 13
    artifact = _read(store, 13, 666)
    assert artifact.effective_url == url
    assert artifact.last_modified == 1700000000
    assert artifact.etag == '"old"'


class FailingStore:
    def __init__(self):
        self.attempts = 0

    async def write(self, outcome):
        self.attempts += 1
        raise ArtifactWriteError("disk full")


@pytest.mark.asyncio
async def test_write_failure_keeps_verdict(settings):
    writer = FailingStore()

    async def handler(request):
        return web.Response(text="hello")

    async with TestServer(_feed_app({"/feed": handler})) as server:
        async with FeedFetcher(settings, writer) as fetcher:
            result = await fetcher.fetch(14, str(server.make_url("/feed")))

    assert writer.attempts == 1
    assert result.updated is True
    assert result.persisted is False


@pytest.mark.asyncio
async def test_permanent_redirect_stub_survives_transport_failure(settings, store, unused_port):
    target = f"http://127.0.0.1:{unused_port}/feed"

    async def moved(request):
        raise web.HTTPPermanentRedirect(target)

    async with TestServer(_feed_app({"/moved": moved})) as server:
        url = str(server.make_url("/moved"))
        async with FeedFetcher(settings, store) as fetcher:
            with pytest.raises(TransportError):
                await fetcher.fetch(15, url)

    assert await store.list_keys("redirects") == ["redirects/15_308.txt"]
    assert _read(store, 15, 308).effective_url == target
    assert await store.list_keys("feeds") == ["feeds/15_666.txt"]
    assert _read(store, 15, 666).effective_url == url
