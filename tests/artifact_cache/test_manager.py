"""
Tests for ArtifactManager and Artifact.

Test coverage:
- acquire: single file and shard sets, catalog shortcut, URL validation
- acquire after interrupted, failed or externally deleted downloads
- list: grouping by first shard, VALID/INVALID filtering
- remove / clear: DELETED sentinel, open() failures
- validate / refresh
- cancellation leaves nothing VALID
"""

import asyncio

import pytest

from artifact_cache.cancellation import CancellationToken
from artifact_cache.config import CacheConfig
from artifact_cache.manager import Artifact, ArtifactManager, ArtifactStatus, compute_status
from artifact_cache.shards import resolve_shards
from artifact_cache.storage.models import CacheEntry, CacheEntryMetadata
from core.errors.exceptions import (
    ArtifactDeletedError,
    DownloadCancelledError,
    IntegrityError,
    NetworkError,
    ValidationError,
)

SINGLE = "https://host/repo/tiny.gguf"
SHARDED = "https://host/repo/model-00001-of-00003.gguf"
SHARDS = resolve_shards(SHARDED)
SIZES = [10517152, 10381216, 5773312]


def add_sharded(session, sizes=SIZES, **kwargs):
    for url, size in zip(SHARDS, sizes):
        session.add(url, b"\x02" * size, **kwargs)


class TestAcquire:
    @pytest.mark.asyncio
    async def test_single_file(self, manager, fake_session):
        fake_session.add(SINGLE, b"gguf" * 1000)

        artifact = await manager.acquire(SINGLE)

        assert artifact.url == SINGLE
        assert artifact.status is ArtifactStatus.VALID
        assert artifact.size == 4000
        assert len(artifact.files) == 1

    @pytest.mark.asyncio
    async def test_sharded_artifact_size(self, manager, fake_session):
        add_sharded(fake_session)
        progress = []

        artifact = await manager.acquire(SHARDED, progress_callback=progress.append)

        assert artifact.size == 26671680
        assert artifact.status is ArtifactStatus.VALID
        assert len(artifact.files) == 3
        assert [f.metadata.original_url for f in artifact.files] == SHARDS
        loaded = [p.loaded for p in progress]
        assert loaded == sorted(loaded)
        assert progress[-1].loaded == progress[-1].total == 26671680

        [listed] = await manager.list()
        assert listed.url == SHARDED
        assert listed.size == 26671680
        assert len(listed.files) == 3

    @pytest.mark.asyncio
    async def test_any_shard_url_acquires_whole_set(self, manager, fake_session):
        add_sharded(fake_session, sizes=[100, 200, 300])

        artifact = await manager.acquire(SHARDS[1])

        assert artifact.url == SHARDED
        assert artifact.size == 600

    @pytest.mark.asyncio
    async def test_cached_unchanged_etag_single_progress_no_body(
        self, config, cache, fake_session
    ):
        fake_session.add(SINGLE, b"x" * 5000, etag='"same"')
        first = ArtifactManager(config, cache=cache, session=fake_session)
        await first.acquire(SINGLE)
        fake_session.bytes_sent = 0
        fake_session.calls.clear()

        # New manager: the catalog is rebuilt from the cache contents
        second = ArtifactManager(config, cache=cache, session=fake_session)
        progress = []
        artifact = await second.acquire(SINGLE, progress_callback=progress.append)

        assert artifact.status is ArtifactStatus.VALID
        assert fake_session.bytes_sent == 0
        assert fake_session.count("GET") == 0
        assert len(progress) == 1
        assert progress[0].loaded == progress[0].total == 5000

    @pytest.mark.asyncio
    async def test_cached_shard_set_single_progress_no_body(self, config, cache, fake_session):
        add_sharded(fake_session, sizes=[100, 200, 300])
        await ArtifactManager(config, cache=cache, session=fake_session).acquire(SHARDED)
        fake_session.calls.clear()
        progress = []

        artifact = await ArtifactManager(config, cache=cache, session=fake_session).acquire(
            SHARDED, progress_callback=progress.append
        )

        assert artifact.status is ArtifactStatus.VALID
        assert [(p.loaded, p.total) for p in progress] == [(600, 600)]
        assert fake_session.count("GET") == 0

    @pytest.mark.asyncio
    async def test_revalidated_shard_set_single_progress(self, manager, fake_session):
        add_sharded(fake_session, sizes=[100, 200, 300])
        await manager.acquire(SHARDED)
        fake_session.calls.clear()
        progress = []

        # download() always checks the remote, even for a VALID artifact
        artifact = await manager.download(SHARDED, progress_callback=progress.append)

        assert artifact.status is ArtifactStatus.VALID
        assert [(p.loaded, p.total) for p in progress] == [(600, 600)]
        assert fake_session.count("HEAD") == 3
        assert fake_session.count("GET") == 0

    @pytest.mark.asyncio
    async def test_failed_refetch_after_etag_change_not_served(
        self, manager, config, cache, fake_session
    ):
        fake_session.add(SINGLE, b"A" * 100, etag='"v1"')
        await manager.acquire(SINGLE)
        fake_session.add(SINGLE, b"B" * 100, etag='"v2"', fail_after=0)

        with pytest.raises(NetworkError):
            await manager.download(SINGLE)
        assert await manager.list() == []

        fake_session.files[SINGLE].fail_after = None
        fake_session.calls.clear()
        fresh = ArtifactManager(config, cache=cache, session=fake_session)
        artifact = await fresh.acquire(SINGLE)

        assert fake_session.count("GET") == 1
        assert artifact.status is ArtifactStatus.VALID
        [blob] = await artifact.open()
        assert await blob.read_range(0, 100) == b"B" * 100

    @pytest.mark.asyncio
    async def test_interrupted_unknown_length_download_restarts(self, manager, fake_session):
        body = b"\x03" * 100_000
        fake_session.add(SINGLE, body, send_length=False, stall_after=8192)
        token = CancellationToken()

        task = asyncio.create_task(manager.acquire(SINGLE, cancel_token=token))
        await asyncio.wait_for(fake_session.stalled.wait(), timeout=5)
        token.cancel()
        with pytest.raises(DownloadCancelledError):
            await task
        assert await manager.list() == []

        fake_session.files[SINGLE].stall_after = None
        artifact = await manager.acquire(SINGLE)

        assert fake_session.count("GET") == 2
        assert artifact.status is ArtifactStatus.VALID
        assert artifact.size == len(body)

    @pytest.mark.asyncio
    async def test_catalog_rebuilt_before_shortcut(self, manager, fake_session, cache):
        fake_session.add(SINGLE, b"abc")
        await manager.acquire(SINGLE)
        await cache.delete(SINGLE)
        fake_session.calls.clear()

        artifact = await manager.acquire(SINGLE)

        assert fake_session.count("GET") == 1
        assert artifact.status is ArtifactStatus.VALID
        [blob] = await artifact.open()
        assert blob.size == 3

    @pytest.mark.asyncio
    async def test_cataloged_valid_artifact_needs_no_network(self, manager, fake_session):
        fake_session.add(SINGLE, b"x" * 10)
        await manager.acquire(SINGLE)
        fake_session.calls.clear()
        progress = []

        again = await manager.acquire(SINGLE, progress_callback=progress.append)

        assert fake_session.calls == []
        assert again.size == 10
        assert [(p.loaded, p.total) for p in progress] == [(10, 10)]

    @pytest.mark.asyncio
    async def test_use_cache_false_redownloads(self, manager, fake_session):
        fake_session.add(SINGLE, b"x" * 10)
        await manager.acquire(SINGLE)

        await manager.acquire(SINGLE, use_cache=False)

        assert fake_session.count("GET") == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url",
        [
            "https://host/repo/model.bin",
            "https://host/repo/model.gguf.bin",
            "https://host/repo/model.GGUF",
            "ftp://host/repo/model.gguf",
            "not a url",
        ],
    )
    async def test_rejected_before_network(self, manager, fake_session, url):
        with pytest.raises(ValidationError):
            await manager.acquire(url)
        assert fake_session.calls == []

    @pytest.mark.asyncio
    async def test_query_and_fragment_ignored_for_validation(self, manager, fake_session):
        url = "https://host/repo/tiny.gguf?download=true#main"
        fake_session.add(url, b"abc")

        artifact = await manager.acquire(url)

        assert artifact.status is ArtifactStatus.VALID

    @pytest.mark.asyncio
    async def test_cancel_leaves_nothing_valid(self, manager, fake_session, cache):
        add_sharded(fake_session, sizes=[1_000_000] * 3, stall_after=8192)
        token = CancellationToken()
        first_key = cache.key_for_url(SHARDS[0])

        async def first_shard_on_disk():
            while await cache.size(first_key) < 0:
                await asyncio.sleep(0.01)

        task = asyncio.create_task(manager.acquire(SHARDED, cancel_token=token))
        await asyncio.wait_for(first_shard_on_disk(), timeout=5)
        token.cancel()

        with pytest.raises(DownloadCancelledError):
            await task
        assert await manager.list() == []
        [partial] = await manager.list(include_invalid=True)
        assert partial.status is ArtifactStatus.INVALID

        # Acquiring again starts over
        for url in SHARDS:
            fake_session.files[url].stall_after = None
        artifact = await manager.acquire(SHARDED)
        assert artifact.status is ArtifactStatus.VALID


class TestList:
    @pytest.mark.asyncio
    async def test_invalid_filtered_unless_requested(self, manager, fake_session, cache):
        add_sharded(fake_session, sizes=[100, 200, 300])
        await manager.acquire(SHARDED)
        await cache.delete(SHARDS[2])

        assert await manager.list() == []
        [artifact] = await manager.list(include_invalid=True)
        assert artifact.status is ArtifactStatus.INVALID
        assert len(artifact.files) == 2

    @pytest.mark.asyncio
    async def test_later_shard_alone_is_not_an_artifact(self, manager, cache):
        key = cache.key_for_url(SHARDS[1])

        async def body():
            yield b"x" * 5

        await cache.write_metadata(
            key, CacheEntryMetadata(etag="e", original_size=5, original_url=SHARDS[1])
        )
        await cache.write(key, body())

        assert await manager.list(include_invalid=True) == []

    @pytest.mark.asyncio
    async def test_get(self, manager, fake_session):
        fake_session.add(SINGLE, b"abc")
        assert manager.get(SINGLE) is None
        await manager.acquire(SINGLE)
        assert manager.get(SINGLE).size == 3


class TestRemoveClear:
    @pytest.mark.asyncio
    async def test_remove(self, manager, fake_session):
        add_sharded(fake_session, sizes=[10, 20, 30])
        artifact = await manager.acquire(SHARDED)

        await manager.remove(artifact)

        assert artifact.size == -1
        assert artifact.status is ArtifactStatus.DELETED
        with pytest.raises(ArtifactDeletedError):
            await artifact.open()
        assert await manager.list() == []
        assert await manager.list(include_invalid=True) == []
        assert manager.get(SHARDED) is None

    @pytest.mark.asyncio
    async def test_artifact_remove_shortcut(self, manager, fake_session):
        fake_session.add(SINGLE, b"abc")
        artifact = await manager.acquire(SINGLE)
        await artifact.remove()
        assert artifact.status is ArtifactStatus.DELETED

    @pytest.mark.asyncio
    async def test_clear(self, manager, fake_session):
        fake_session.add(SINGLE, b"abc")
        artifact = await manager.acquire(SINGLE)

        await manager.clear()

        assert artifact.status is ArtifactStatus.DELETED
        assert await manager.list(include_invalid=True) == []


class TestArtifactAccess:
    @pytest.mark.asyncio
    async def test_open_returns_blob_per_shard(self, manager, fake_session):
        add_sharded(fake_session, sizes=[10, 20, 30])
        artifact = await manager.acquire(SHARDED)

        blobs = await artifact.open()

        assert [b.size for b in blobs] == [10, 20, 30]
        assert await blobs[1].read_range(0, 4) == b"\x02" * 4
        assert all(b.path.exists() for b in blobs)

    @pytest.mark.asyncio
    async def test_open_missing_shard(self, manager, fake_session, cache):
        add_sharded(fake_session, sizes=[10, 20, 30])
        artifact = await manager.acquire(SHARDED)
        await cache.delete(SHARDS[0])

        with pytest.raises(IntegrityError):
            await artifact.open()

    @pytest.mark.asyncio
    async def test_validate_detects_damage(self, manager, fake_session, cache):
        fake_session.add(SINGLE, b"abcdef")
        artifact = await manager.acquire(SINGLE)
        key = cache.key_for_url(SINGLE)

        async def short():
            yield b"ab"

        await cache.write(key, short())

        assert artifact.status is ArtifactStatus.VALID
        assert await artifact.validate() is ArtifactStatus.INVALID
        assert artifact.size == 2

    @pytest.mark.asyncio
    async def test_refresh_repairs(self, manager, fake_session, cache):
        fake_session.add(SINGLE, b"abcdef")
        artifact = await manager.acquire(SINGLE)

        async def short():
            yield b"ab"

        await cache.write(cache.key_for_url(SINGLE), short())
        await artifact.validate()

        refreshed = await artifact.refresh()

        assert refreshed is artifact
        assert artifact.status is ArtifactStatus.VALID
        assert artifact.size == 6
        assert fake_session.count("GET") == 2


class TestComputeStatus:
    def test_rules(self):
        meta = CacheEntryMetadata(original_size=5)
        good = CacheEntry(key="k", size=5, metadata=meta)
        short = CacheEntry(key="k", size=4, metadata=meta)

        assert compute_status(["u"], [good], 5) is ArtifactStatus.VALID
        assert compute_status(["u"], [short], 4) is ArtifactStatus.INVALID
        assert compute_status(["u", "v"], [good], 5) is ArtifactStatus.INVALID
        assert compute_status(["u"], [good], -1) is ArtifactStatus.DELETED


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_owned_session_created_and_closed(self, tmp_path, fake_session, monkeypatch):
        monkeypatch.setattr("artifact_cache.manager.create_session", lambda: fake_session)
        fake_session.add(SINGLE, b"abc")

        async with ArtifactManager(CacheConfig(cache_dir=tmp_path, write_mode="stream")) as manager:
            artifact = await manager.acquire(SINGLE)
            assert isinstance(artifact, Artifact)

        assert fake_session.closed is True

    @pytest.mark.asyncio
    async def test_borrowed_session_left_open(self, manager, fake_session):
        await manager.close()
        assert fake_session.closed is False
