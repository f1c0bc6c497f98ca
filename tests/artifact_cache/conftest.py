"""
Shared fixtures for artifact cache tests.

FakeSession stands in for the slice of aiohttp.ClientSession the fetcher
uses: head()/get() async context managers whose responses expose
``status``, ``headers`` and ``content.iter_chunked()``. Nothing here
touches the network.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp
import pytest

from artifact_cache.config import CacheConfig
from artifact_cache.manager import ArtifactManager
from artifact_cache.storage.cache import PersistentCache


@dataclass
class FakeFile:
    body: bytes
    etag: Optional[str] = '"v1"'
    status: int = 200
    # Body delivery stops for good after this many bytes
    stall_after: Optional[int] = None
    # Body delivery raises ClientPayloadError after this many bytes
    fail_after: Optional[int] = None
    # Body ends early after this many bytes (Content-Length unchanged)
    truncate_to: Optional[int] = None
    send_length: bool = True


class FakeContent:
    def __init__(self, session: "FakeSession", remote: FakeFile):
        self._session = session
        self._remote = remote

    async def iter_chunked(self, n: int):
        body = self._remote.body
        if self._remote.truncate_to is not None:
            body = body[: self._remote.truncate_to]
        for offset in range(0, len(body), n):
            if self._remote.stall_after is not None and offset >= self._remote.stall_after:
                self._session.stalled.set()
                await asyncio.Event().wait()
            if self._remote.fail_after is not None and offset >= self._remote.fail_after:
                raise aiohttp.ClientPayloadError("Connection lost mid-body")
            chunk = body[offset:offset + n]
            self._session.bytes_sent += len(chunk)
            yield chunk
            await asyncio.sleep(0)


class FakeResponse:
    def __init__(self, session: "FakeSession", remote: FakeFile, with_body: bool):
        self.status = remote.status
        self.headers: Dict[str, str] = {}
        if remote.send_length:
            self.headers["Content-Length"] = str(len(remote.body))
        if remote.etag is not None:
            self.headers["ETag"] = remote.etag
        self.content = FakeContent(session, remote) if with_body else None


class FakeRequest:
    def __init__(self, session: "FakeSession", method: str, url: str):
        self._session = session
        self._method = method
        self._url = url

    async def __aenter__(self) -> FakeResponse:
        self._session.calls.append((self._method, self._url))
        if self._session.offline:
            raise aiohttp.ClientConnectionError(f"Cannot connect to {self._url}")
        remote = self._session.files.get(self._url)
        if remote is None:
            remote = FakeFile(body=b"", etag=None, status=404)
        return FakeResponse(self._session, remote, with_body=self._method == "GET")

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class FakeSession:
    """In-process remote holding a dict of URL -> FakeFile."""

    def __init__(self):
        self.files: Dict[str, FakeFile] = {}
        self.calls: List[tuple] = []
        self.offline = False
        self.bytes_sent = 0
        self.stalled = asyncio.Event()
        self.closed = False

    def add(self, url: str, body: bytes, **kwargs) -> FakeFile:
        remote = FakeFile(body=body, **kwargs)
        self.files[url] = remote
        return remote

    def head(self, url: str, timeout=None, allow_redirects: bool = True) -> FakeRequest:
        return FakeRequest(self, "HEAD", url)

    def get(self, url: str, timeout=None) -> FakeRequest:
        return FakeRequest(self, "GET", url)

    def count(self, method: str) -> int:
        return sum(1 for m, _ in self.calls if m == method)

    async def close(self) -> None:
        self.closed = True


BASE = "https://models.example.com/repo"


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def cache(tmp_path):
    return PersistentCache(tmp_path, write_mode="stream")


@pytest.fixture
def config(tmp_path):
    return CacheConfig(
        cache_dir=tmp_path,
        write_mode="stream",
        chunk_size=4096,
        progress_interval_seconds=0.0,
    )


@pytest.fixture
def manager(config, cache, fake_session):
    return ArtifactManager(config, cache=cache, session=fake_session)
