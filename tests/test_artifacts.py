import pytest

from artifacts import (
    FileArtifactStore,
    artifact_key,
    create_artifact_store,
    parse_artifact,
    serialize_outcome,
)
from config import config
from errors import ArtifactWriteError
from models import FetchOutcome, NO_ETAG


def _outcome(feed_id=1, status=200, body="<rss/>", etag='"e1"', url="http://example.com/feed"):
    return FetchOutcome(feed_id=feed_id, effective_url=url, status_code=status,
                        last_modified=1700000000, etag=etag, body=body, fetched_at=1700000100)


def test_keys_by_namespace():
    assert artifact_key(42, 200) == "feeds/42_200.txt"
    assert artifact_key(42, 666) == "feeds/42_666.txt"
    assert artifact_key(42, 301) == "redirects/42_301.txt"
    assert artifact_key(42, 308) == "redirects/42_308.txt"
    assert artifact_key(42, 302) == "feeds/42_302.txt"


def test_serialized_layout():
    data = serialize_outcome(_outcome(body="line one\nline two\n"))
    assert data == (
        b"1700000000\n"
        b'"e1"\n'
        b"http://example.com/feed\n"
        b"1700000100\n"
        b"line one\nline two\n"
    )


def test_size_exceeded_omits_body():
    data = serialize_outcome(_outcome(status=668, body="should not appear"))
    assert data.endswith(b"1700000100\n")
    assert b"should not appear" not in data


def test_parse_rejects_truncated_metadata():
    with pytest.raises(ValueError):
        parse_artifact(b"0\netag\n", 1, 200)


@pytest.mark.asyncio
async def test_write_and_read_back(store):
    await store.write(_outcome(feed_id=3, body="café"))

    artifact = store.read(3, 200)
    assert artifact.body == "café"
    assert artifact.etag == '"e1"'
    assert artifact.effective_url == "http://example.com/feed"
    assert await store.list_keys() == ["feeds/3_200.txt"]


@pytest.mark.asyncio
async def test_same_key_is_replaced(store):
    await store.write(_outcome(feed_id=4, body="old", etag='"a"'))
    await store.write(_outcome(feed_id=4, body="new", etag='"b"'))

    artifact = store.read(4, 200)
    assert (artifact.body, artifact.etag) == ("new", '"b"')
    assert await store.list_keys() == ["feeds/4_200.txt"]


@pytest.mark.asyncio
async def test_distinct_statuses_coexist(store):
    await store.write(_outcome(feed_id=5, status=200))
    await store.write(FetchOutcome.failure(5, "http://example.com/feed", 667))
    await store.write(FetchOutcome.redirect_stub(5, "http://new.example.com/feed", 301))

    assert await store.list_keys("feeds") == ["feeds/5_200.txt", "feeds/5_667.txt"]
    assert await store.list_keys("redirects") == ["redirects/5_301.txt"]
    assert store.read(5, 301).effective_url == "http://new.example.com/feed"


@pytest.mark.asyncio
async def test_no_etag_placeholder_is_written_verbatim(store):
    await store.write(_outcome(feed_id=6, etag=NO_ETAG, body=""))
    assert store.path_for(6, 200).read_bytes().split(b"\n")[1] == b"[[NO_ETAG]]"


@pytest.mark.asyncio
async def test_unwritable_location_raises(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    store = FileArtifactStore(str(blocker))
    try:
        with pytest.raises(ArtifactWriteError) as excinfo:
            await store.write(_outcome())
        assert excinfo.value.key.endswith("feeds/1_200.txt")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_azure_without_credentials_uses_files(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "ARTIFACT_BACKEND", "azure")
    monkeypatch.setattr(config, "AZURE_STORAGE_ACCOUNT", None)
    monkeypatch.setattr(config, "AZURE_STORAGE_KEY", None)

    store = create_artifact_store(config, base_dir=str(tmp_path / "out"))
    try:
        assert isinstance(store, FileArtifactStore)
        assert (tmp_path / "out" / "redirects").is_dir()
    finally:
        await store.close()
