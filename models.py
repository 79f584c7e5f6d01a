#!/usr/bin/env python3
"""
Data models and the feed catalog reader for the Feed Poller.

FeedRecord values come from the SQLite feed catalog; FetchOutcome values are
produced by the fetcher and consumed by the artifact stores.
"""

from dataclasses import dataclass, field
from os import path, access, R_OK
from pathlib import Path
from sqlite3 import connect, Row, Error
from time import time
from typing import Dict, List

from config import get_logger
from errors import FeedListError
from telemetry import trace_span

logger = get_logger("models")

# Written in place of an entity tag when none is known
NO_ETAG = "[[NO_ETAG]]"

PERMANENT_REDIRECT_CODES = frozenset({301, 308})

FEEDS_QUERY = "SELECT id, url, title, lastmod, etag FROM podcasts ORDER BY id ASC"


@dataclass(frozen=True)
class FeedRecord:
    """One feed to poll, with the validators cached from the previous run."""

    id: int
    url: str
    title: str = ""
    last_modified: int = 0
    etag: str = ""


@dataclass(frozen=True)
class FetchOutcome:
    """The result of one fetch attempt, as persisted by an artifact store.

    ``status_code`` is either the real HTTP status or one of the synthetic
    failure codes. ``effective_url`` is the URL the response finally came
    from. ``etag`` may be NO_ETAG.
    """

    feed_id: int
    effective_url: str
    status_code: int
    last_modified: int
    etag: str
    body: str = ""
    fetched_at: int = field(default_factory=lambda: int(time()))

    @property
    def is_permanent_redirect(self) -> bool:
        return self.status_code in PERMANENT_REDIRECT_CODES

    @classmethod
    def redirect_stub(cls, feed_id: int, location: str, status_code: int) -> "FetchOutcome":
        """Outcome recording only a URL change, with zeroed validators and no body."""
        return cls(feed_id=feed_id, effective_url=location, status_code=status_code,
                   last_modified=0, etag="")

    @classmethod
    def failure(cls, feed_id: int, url: str, status_code: int,
                last_modified: int = 0, etag: str = "") -> "FetchOutcome":
        """Outcome for a local failure class, carrying no body."""
        return cls(feed_id=feed_id, effective_url=url, status_code=status_code,
                   last_modified=last_modified, etag=etag)


@dataclass(frozen=True)
class PollResult:
    """What the fetcher reports back for one feed."""

    outcome: FetchOutcome
    updated: bool
    persisted: bool = True


UPDATED = "updated"
NOT_UPDATED = "not_updated"
FAILED = "failed"


@dataclass
class PollRunSummary:
    """Counters and per-feed verdicts for one orchestrator run."""

    total: int = 0
    updated: int = 0
    not_updated: int = 0
    failed: int = 0
    write_failures: int = 0
    verdicts: Dict[int, str] = field(default_factory=dict)

    def record(self, feed_id: int, result: PollResult) -> None:
        if result.updated:
            self.updated += 1
            self.verdicts[feed_id] = UPDATED
        else:
            self.not_updated += 1
            self.verdicts[feed_id] = NOT_UPDATED
        if not result.persisted:
            self.write_failures += 1

    def record_failure(self, feed_id: int) -> None:
        self.failed += 1
        self.verdicts[feed_id] = FAILED

    @property
    def completed(self) -> int:
        return self.updated + self.not_updated + self.failed


@trace_span(
    "load_feeds",
    tracer_name="db",
    static_attrs={"db.system": "sqlite"},
    attr_from_args=lambda db_path: {"db.path": str(db_path)},
)
def load_feeds(db_path: str) -> List[FeedRecord]:
    """Read the ordered feed list from a SQLite catalog.

    The catalog holds a ``podcasts`` table with ``id, url, title, lastmod,
    etag`` columns. Any failure to read it raises FeedListError, which ends
    the run before anything is fetched.
    """
    db_path = str(db_path)
    if not path.isfile(db_path):
        raise FeedListError(f"Feed catalog not found at {db_path}")
    if not access(db_path, R_OK):
        raise FeedListError(f"No read permission for feed catalog at {db_path}")

    feeds: List[FeedRecord] = []
    try:
        conn = connect(Path(db_path).resolve().as_uri() + "?mode=ro", uri=True)
        try:
            conn.row_factory = Row
            for row in conn.execute(FEEDS_QUERY):
                feeds.append(FeedRecord(
                    id=int(row["id"]),
                    url=row["url"] or "",
                    title=row["title"] or "",
                    last_modified=int(row["lastmod"] or 0),
                    etag=row["etag"] or "",
                ))
        finally:
            conn.close()
    except Error as e:
        raise FeedListError(f"Error running SQL query: [{e}]") from e
    except (TypeError, ValueError) as e:
        raise FeedListError(f"Malformed row in feed catalog {db_path}: {e}") from e

    logger.info(f"Loaded {len(feeds)} feeds from {db_path}")
    return feeds
