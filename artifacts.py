#!/usr/bin/env python3
"""
Artifact persistence for fetch outcomes.

Each outcome becomes one artifact addressed by ``(feed_id, status_code)``:

    <last_modified>\\n
    <etag>\\n
    <effective_url>\\n
    <fetched_at>\\n
    <body ...>

Permanent-redirect stubs live under ``redirects/``, everything else under
``feeds/``, so a URL-reconciliation pass can scan just the redirects. Writing
to an existing key replaces the artifact.
"""

import os
import tempfile
from asyncio import TimeoutError, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from aiohttp import ClientError

from azure_storage import BlobClient
from config import ERRORCODE_FILE_SIZE_EXCEEDED, get_logger
from errors import ArtifactWriteError
from models import FetchOutcome, PERMANENT_REDIRECT_CODES
from telemetry import trace_span

logger = get_logger("artifacts")

FEEDS_NAMESPACE = "feeds"
REDIRECTS_NAMESPACE = "redirects"
NAMESPACES = (FEEDS_NAMESPACE, REDIRECTS_NAMESPACE)


@dataclass(frozen=True)
class Artifact:
    """A persisted outcome as read back from a store."""

    feed_id: int
    status_code: int
    last_modified: int
    etag: str
    effective_url: str
    fetched_at: int
    body: str


def namespace_for(status_code: int) -> str:
    return REDIRECTS_NAMESPACE if status_code in PERMANENT_REDIRECT_CODES else FEEDS_NAMESPACE


def artifact_key(feed_id: int, status_code: int) -> str:
    return f"{namespace_for(status_code)}/{feed_id}_{status_code}.txt"


def serialize_outcome(outcome: FetchOutcome, size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED) -> bytes:
    """Render an outcome as four metadata lines followed by the body."""
    header = (
        f"{outcome.last_modified}\n"
        f"{outcome.etag}\n"
        f"{outcome.effective_url}\n"
        f"{outcome.fetched_at}\n"
    ).encode("utf-8")
    if outcome.status_code == size_exceeded_code or not outcome.body:
        return header
    return header + outcome.body.encode("utf-8")


def parse_artifact(data: bytes, feed_id: int, status_code: int) -> Artifact:
    """Parse artifact bytes back into an Artifact.

    Raises:
        ValueError: if the metadata lines are missing or malformed.
    """
    parts = data.split(b"\n", 4)
    if len(parts) < 5:
        raise ValueError(f"Artifact for feed {feed_id} has {len(parts) - 1} metadata lines, expected 4")
    last_modified, etag, url, fetched_at, body = parts
    return Artifact(
        feed_id=feed_id,
        status_code=status_code,
        last_modified=int(last_modified),
        etag=etag.decode("utf-8"),
        effective_url=url.decode("utf-8"),
        fetched_at=int(fetched_at),
        body=body.decode("utf-8"),
    )


class ArtifactStore:
    """Interface shared by the artifact backends.

    Implementations must tolerate concurrent writes to distinct keys.
    """

    def __init__(self, size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED) -> None:
        self.size_exceeded_code = size_exceeded_code

    def key_for(self, feed_id: int, status_code: int) -> str:
        return artifact_key(feed_id, status_code)

    async def initialize(self) -> None:
        pass

    async def write(self, outcome: FetchOutcome) -> None:
        """Persist an outcome, replacing any artifact at the same key.

        Raises:
            ArtifactWriteError: if the store rejects the write.
        """
        raise NotImplementedError

    async def list_keys(self, namespace: str = FEEDS_NAMESPACE) -> List[str]:
        """Keys currently stored in a namespace, sorted."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class FileArtifactStore(ArtifactStore):
    """Stores artifacts as files under ``<base_dir>/feeds`` and ``<base_dir>/redirects``."""

    def __init__(self, base_dir: str, size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED,
                 executor: Optional[ThreadPoolExecutor] = None) -> None:
        super().__init__(size_exceeded_code)
        self.base_dir = Path(base_dir)
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(thread_name_prefix="artifact-writer")
        for namespace in NAMESPACES:
            try:
                (self.base_dir / namespace).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                # Surfaced again, per feed, when writes are attempted
                logger.error(f"Cannot create artifact directory {self.base_dir / namespace}: {e}")

    def path_for(self, feed_id: int, status_code: int) -> Path:
        return self.base_dir / self.key_for(feed_id, status_code)

    def _write_file(self, target: Path, payload: bytes) -> None:
        # Write beside the target and rename so readers never see a partial artifact
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp_name, target)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    @trace_span(
        "artifact.write",
        tracer_name="artifacts",
        static_attrs={"artifact.backend": "file"},
        attr_from_args=lambda self, outcome: {
            "feed.id": outcome.feed_id,
            "http.status_code": outcome.status_code,
        },
    )
    async def write(self, outcome: FetchOutcome) -> None:
        target = self.path_for(outcome.feed_id, outcome.status_code)
        payload = serialize_outcome(outcome, self.size_exceeded_code)
        try:
            await get_running_loop().run_in_executor(self.executor, self._write_file, target, payload)
        except OSError as e:
            raise ArtifactWriteError(f"Error writing artifact {target}: {e}", key=str(target)) from e
        logger.debug(f"Wrote artifact {target} ({len(payload)} bytes)")

    def read(self, feed_id: int, status_code: int) -> Artifact:
        """Read an artifact back. Raises FileNotFoundError if absent."""
        data = self.path_for(feed_id, status_code).read_bytes()
        return parse_artifact(data, feed_id, status_code)

    async def list_keys(self, namespace: str = FEEDS_NAMESPACE) -> List[str]:
        directory = self.base_dir / namespace
        if not directory.is_dir():
            return []
        return sorted(f"{namespace}/{p.name}" for p in directory.glob("*.txt"))

    async def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=True)


class BlobArtifactStore(ArtifactStore):
    """Stores artifacts as block blobs in an Azure Storage container."""

    def __init__(self, client: BlobClient, container: str,
                 size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED) -> None:
        super().__init__(size_exceeded_code)
        self.client = client
        self.container = container

    async def initialize(self) -> None:
        """Create the container if needed."""
        try:
            res = await self.client.create_container(self.container)
        except ClientError as e:
            raise ArtifactWriteError(f"Cannot reach blob storage for container {self.container}: {e}") from e
        try:
            if res.status not in (201, 409):
                raise ArtifactWriteError(f"Cannot create container {self.container}: HTTP {res.status}")
        finally:
            res.release()

    @trace_span(
        "artifact.write",
        tracer_name="artifacts",
        static_attrs={"artifact.backend": "azure"},
        attr_from_args=lambda self, outcome: {
            "feed.id": outcome.feed_id,
            "http.status_code": outcome.status_code,
        },
    )
    async def write(self, outcome: FetchOutcome) -> None:
        key = self.key_for(outcome.feed_id, outcome.status_code)
        payload = serialize_outcome(outcome, self.size_exceeded_code)
        try:
            res = await self.client.put_blob(self.container, key, payload, mimetype="text/plain; charset=utf-8")
        except (ClientError, TimeoutError) as e:
            raise ArtifactWriteError(f"Error uploading artifact {key}: {e}", key=key) from e
        try:
            if res.status not in (200, 201):
                raise ArtifactWriteError(f"Error uploading artifact {key}: HTTP {res.status}", key=key)
        finally:
            res.release()
        logger.debug(f"Uploaded artifact {self.container}/{key} ({len(payload)} bytes)")

    async def list_keys(self, namespace: str = FEEDS_NAMESPACE) -> List[str]:
        return sorted([name async for name in self.client.list_blob_names(self.container, prefix=f"{namespace}/")])

    async def close(self) -> None:
        await self.client.close()


def create_artifact_store(cfg, size_exceeded_code: int = ERRORCODE_FILE_SIZE_EXCEEDED,
                          base_dir: Optional[str] = None) -> ArtifactStore:
    """Pick the artifact backend from configuration.

    Falls back to the file store when Azure is selected but credentials are
    missing.
    """
    if cfg.ARTIFACT_BACKEND == "azure":
        if cfg.AZURE_STORAGE_ACCOUNT and cfg.AZURE_STORAGE_KEY:
            client = BlobClient(cfg.AZURE_STORAGE_ACCOUNT, cfg.AZURE_STORAGE_KEY)
            logger.info(f"Writing artifacts to Azure container {cfg.AZURE_STORAGE_CONTAINER}")
            return BlobArtifactStore(client, cfg.AZURE_STORAGE_CONTAINER, size_exceeded_code)
        logger.warning("ARTIFACT_BACKEND=azure but AZURE_STORAGE_ACCOUNT/AZURE_STORAGE_KEY are not set; using files")
    directory = base_dir or cfg.ARTIFACT_DIR
    logger.info(f"Writing artifacts under {directory}")
    return FileArtifactStore(directory, size_exceeded_code)
