import os
import socket
from sqlite3 import connect

import pytest

# Must be set before any poller module is imported
os.environ.setdefault("DISABLE_TELEMETRY", "true")
os.environ.setdefault("LOG_TIMESTAMPS", "false")

from artifacts import FileArtifactStore  # noqa: E402
from config import PollerSettings  # noqa: E402


@pytest.fixture
def settings():
    return PollerSettings(
        user_agent="FeedPollerTest/1.0",
        concurrency=10,
        connect_timeout=5.0,
        request_timeout=10.0,
    )


@pytest.fixture
def store(tmp_path):
    s = FileArtifactStore(str(tmp_path / "artifacts"))
    yield s
    s.executor.shutdown(wait=True)


@pytest.fixture
def unused_port():
    """A local port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def make_catalog(db_path, rows):
    """Create a feed catalog with (id, url, title, lastmod, etag) rows."""
    conn = connect(str(db_path))
    conn.execute("CREATE TABLE podcasts (id INTEGER PRIMARY KEY, url TEXT, title TEXT, lastmod INTEGER, etag TEXT)")
    conn.executemany("INSERT INTO podcasts (id, url, title, lastmod, etag) VALUES (?, ?, ?, ?, ?)", rows)
    conn.commit()
    conn.close()
    return str(db_path)


@pytest.fixture
def catalog_factory(tmp_path):
    def _factory(rows, name="feeds.db"):
        return make_catalog(tmp_path / name, rows)
    return _factory
