"""
Artifact catalog and lifecycle.

ArtifactManager is the consumer-facing entry point. It projects the flat
set of cache entries into Artifacts (one per canonical URL, one file per
shard), computes their status, and runs downloads through the
DownloadCoordinator.

Artifacts are never persisted: every list() rebuilds them from the
current cache contents.

Usage:
    async with ArtifactManager(CacheConfig.load_config()) as manager:
        artifact = await manager.acquire(
            "https://host/model-00001-of-00003.gguf",
            progress_callback=lambda p: print(f"{p.loaded}/{p.total}"),
        )
        blobs = await artifact.open()
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Sequence, Union

import aiohttp

from core.errors.exceptions import ArtifactDeletedError, IntegrityError, ValidationError
from core.logging.context import set_log_context
from core.logging.utilities import LoggedClass, logged_operation
from core.security.url_validation import validate_artifact_url
from artifact_cache.cancellation import CancellationToken
from artifact_cache.config import CacheConfig
from artifact_cache.coordinator import DownloadCoordinator
from artifact_cache.fetch.fetcher import ArtifactFetcher
from artifact_cache.fetch.http import create_session
from artifact_cache.progress import DownloadProgress, ProgressCallback
from artifact_cache.shards import resolve_shards
from artifact_cache.storage.blob import CachedBlob
from artifact_cache.storage.cache import PersistentCache
from artifact_cache.storage.models import CacheEntry

# Artifact.size after remove()
DELETED_SIZE = -1

ArtifactURL = Union[str, Sequence[str]]


class ArtifactStatus(str, Enum):
    """Validity of an artifact against the current cache contents."""

    VALID = "valid"
    INVALID = "invalid"
    DELETED = "deleted"


def compute_status(shard_urls: List[str], files: List[CacheEntry], size: int) -> ArtifactStatus:
    """
    Status of an artifact from its cached files.

    VALID requires one complete file per shard; any missing shard or
    length mismatch is INVALID; the deleted sentinel size is DELETED.
    """
    if size == DELETED_SIZE:
        return ArtifactStatus.DELETED
    if len(files) != len(shard_urls):
        return ArtifactStatus.INVALID
    if not all(entry.is_complete for entry in files):
        return ArtifactStatus.INVALID
    return ArtifactStatus.VALID


class Artifact:
    """A cached model artifact: one or more shard files under one canonical URL.

    Attributes:
        url: Canonical URL (first shard, or the single file)
        shard_urls: Every shard URL in shard order
        files: Cached entries for the shards present, in shard order
        size: Sum of stored file lengths, or -1 once removed
    """

    def __init__(
        self,
        manager: "ArtifactManager",
        url: str,
        shard_urls: List[str],
        files: List[CacheEntry],
    ):
        self._manager = manager
        self.url = url
        self.shard_urls = shard_urls
        self.files = files
        self.size = sum(entry.size for entry in files)

    def __repr__(self) -> str:
        return f"Artifact(url={self.url!r}, size={self.size}, status={self.status.value})"

    @property
    def status(self) -> ArtifactStatus:
        return compute_status(self.shard_urls, self.files, self.size)

    async def open(self) -> List[CachedBlob]:
        """
        Open every shard for reading.

        Returns:
            One CachedBlob per shard, in shard order

        Raises:
            ArtifactDeletedError: The artifact was removed
            IntegrityError: A shard file is missing from the cache
        """
        if self.size == DELETED_SIZE:
            raise ArtifactDeletedError(
                f"Artifact {self.url} was removed", context={"url": self.url}
            )
        blobs = []
        for shard_url in self.shard_urls:
            blob = await self._manager.cache.open(self._manager.cache.key_for_url(shard_url))
            if blob is None:
                raise IntegrityError(
                    f"Shard {shard_url} of {self.url} is missing from the cache",
                    context={"url": self.url},
                )
            blobs.append(blob)
        return blobs

    async def validate(self) -> ArtifactStatus:
        """Re-read the cache and recompute files, size and status."""
        if self.size != DELETED_SIZE:
            entries = await self._manager.cache.list()
            self.files = _shard_entries(self.shard_urls, _index_by_url(entries))
            self.size = sum(entry.size for entry in self.files)
        return self.status

    async def refresh(
        self,
        parallelism: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> "Artifact":
        """
        Download every shard again, ignoring cached copies.

        Returns:
            self, with files and size recomputed
        """
        fresh = await self._manager.download(
            self.shard_urls,
            parallelism=parallelism,
            use_cache=False,
            progress_callback=progress_callback,
            cancel_token=cancel_token,
        )
        self.files = fresh.files
        self.size = fresh.size
        return self

    async def remove(self) -> None:
        """Delete every shard from the cache. See ArtifactManager.remove()."""
        await self._manager.remove(self)


def _index_by_url(entries: List[CacheEntry]) -> Dict[str, CacheEntry]:
    return {
        entry.metadata.original_url: entry
        for entry in entries
        if entry.metadata.original_url
    }


def _shard_entries(shard_urls: List[str], by_url: Dict[str, CacheEntry]) -> List[CacheEntry]:
    return [by_url[url] for url in shard_urls if url in by_url]


class ArtifactManager(LoggedClass):
    """
    Catalog of cached artifacts plus acquire/remove/clear operations.

    The manager owns its aiohttp session unless one is passed in, and its
    PersistentCache unless one is passed in. Use as an async context
    manager, or call close().
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        cache: Optional[PersistentCache] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """
        Args:
            config: Cache configuration (defaults from CacheConfig())
            cache: Cache to use (default: built from config.cache_dir/write_mode)
            session: aiohttp session to use (default: created on first download)
        """
        super().__init__()
        self.config = config or CacheConfig()
        self._owns_cache = cache is None
        self.cache = cache or PersistentCache(self.config.cache_dir, self.config.write_mode)
        self._session = session
        self._owns_session = session is None
        self._artifacts: Dict[str, Artifact] = {}

    async def __aenter__(self) -> "ArtifactManager":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close owned resources (session, cache write backend)."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        if self._owns_cache:
            await self.cache.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = create_session()
        return self._session

    # =========================================================================
    # Catalog
    # =========================================================================

    async def list(self, include_invalid: bool = False) -> List[Artifact]:
        """
        Enumerate cached artifacts.

        Each entry whose stored URL is a first shard (or a single file)
        yields one artifact, gathering the other shards of its set. Entries
        for later shards never start an artifact of their own, and entries
        with no stored URL (legacy records) cannot be attributed.

        Args:
            include_invalid: Also return INVALID artifacts

        Returns:
            Artifacts ordered by URL
        """
        entries = await self.cache.list()
        by_url = _index_by_url(entries)

        artifacts: Dict[str, Artifact] = {}
        for original_url in sorted(by_url):
            shard_urls = resolve_shards(original_url)
            if shard_urls[0] != original_url:
                continue
            artifacts[original_url] = Artifact(
                self, original_url, shard_urls, _shard_entries(shard_urls, by_url)
            )

        self._artifacts = artifacts
        return [
            artifact
            for artifact in artifacts.values()
            if include_invalid or artifact.status is ArtifactStatus.VALID
        ]

    def get(self, url: str) -> Optional[Artifact]:
        """Cataloged artifact for url (any shard URL works), as of the last list()."""
        return self._artifacts.get(resolve_shards(url)[0])

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def acquire(
        self,
        url: ArtifactURL,
        parallelism: Optional[int] = None,
        use_cache: bool = True,
        allow_offline: Optional[bool] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Artifact:
        """
        Make an artifact available in the cache.

        The catalog is rebuilt from the cache first. An artifact that is
        VALID there is returned without any network activity, and
        progress_callback is invoked once with loaded == total == size.
        Otherwise this is download().

        Args:
            url: Any shard URL of the artifact, or an explicit list of URLs
            parallelism: Concurrent shard downloads (default: config.parallel_downloads)
            use_cache: Reuse valid cached files (False forces a full refetch)
            allow_offline: Use stored metadata when the remote is unreachable
                (default: config.allow_offline)
            progress_callback: Receives aggregate DownloadProgress
            cancel_token: Cooperative cancellation signal

        Returns:
            The artifact, re-derived from the cache after downloading

        Raises:
            ValidationError: URL is not an accepted artifact URL
            NetworkError / HttpStatusError: A HEAD or GET failed
            DownloadCancelledError: Cancellation requested
        """
        shard_urls = resolve_shards(url)
        if use_cache and shard_urls:
            await self.list()
            cataloged = self._artifacts.get(shard_urls[0])
            if (
                cataloged is not None
                and cataloged.shard_urls == shard_urls
                and cataloged.status is ArtifactStatus.VALID
            ):
                self._log(logging.DEBUG, "Artifact already cached", url=cataloged.url)
                if progress_callback is not None:
                    progress_callback(DownloadProgress(cataloged.size, cataloged.size))
                return cataloged

        return await self.download(
            url,
            parallelism=parallelism,
            use_cache=use_cache,
            allow_offline=allow_offline,
            progress_callback=progress_callback,
            cancel_token=cancel_token,
        )

    @logged_operation(level=logging.INFO, log_start=True)
    async def download(
        self,
        url: ArtifactURL,
        parallelism: Optional[int] = None,
        use_cache: bool = True,
        allow_offline: Optional[bool] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Artifact:
        """
        Validate remote state for every shard and fetch what is stale.

        Same arguments and errors as acquire(), but never short-circuits on
        the catalog.
        """
        shard_urls = resolve_shards(url)
        if not shard_urls:
            raise ValidationError("No artifact URL given")
        canonical = shard_urls[0]
        is_valid, error = validate_artifact_url(canonical, self.config.allowed_extension)
        if not is_valid:
            raise ValidationError(error, context={"url": canonical})

        set_log_context(operation="acquire", artifact_url=canonical)
        session = self._get_session()
        offline = self.config.allow_offline if allow_offline is None else allow_offline

        def fetcher_factory(shard_url: str, on_progress: ProgressCallback) -> ArtifactFetcher:
            return ArtifactFetcher(
                shard_url,
                self.cache,
                session,
                use_cache=use_cache,
                allow_offline=offline,
                progress_callback=on_progress,
                cancel_token=cancel_token,
                chunk_size=self.config.chunk_size,
                timeout_seconds=self.config.request_timeout_seconds,
                progress_interval_seconds=self.config.progress_interval_seconds,
                tee_buffer_chunks=self.config.tee_buffer_chunks,
            )

        coordinator = DownloadCoordinator(
            shard_urls,
            fetcher_factory,
            parallelism=parallelism or self.config.parallel_downloads,
            progress_callback=progress_callback,
            cancel_token=cancel_token,
        )
        await coordinator.run()

        entries = await self.cache.list()
        artifact = Artifact(
            self, canonical, shard_urls, _shard_entries(shard_urls, _index_by_url(entries))
        )
        self._artifacts[canonical] = artifact
        if artifact.status is not ArtifactStatus.VALID:
            self._log(
                logging.WARNING,
                "Artifact downloaded but cache is incomplete",
                url=canonical,
                status=artifact.status.value,
            )
        return artifact

    @logged_operation(level=logging.INFO)
    async def remove(self, artifact: Artifact) -> None:
        """
        Delete every file of an artifact and mark it DELETED.

        The Artifact object keeps existing but open() on it fails.
        """
        set_log_context(operation="remove", artifact_url=artifact.url)
        keys = {self.cache.key_for_url(url) for url in artifact.shard_urls}
        keys.update(entry.key for entry in artifact.files)
        await self.cache.delete_many(lambda entry: entry.key in keys)
        artifact.size = DELETED_SIZE
        self._artifacts.pop(artifact.url, None)

    @logged_operation(level=logging.INFO)
    async def clear(self) -> None:
        """Delete everything in the cache. Cataloged artifacts become DELETED."""
        set_log_context(operation="clear")
        await self.cache.clear()
        for artifact in self._artifacts.values():
            artifact.size = DELETED_SIZE
        self._artifacts = {}
