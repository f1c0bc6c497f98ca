"""
Cache entry schemas and key derivation.

A cache entry is stored as two files in the cache directory:
    <key>                   content blob
    __metadata__<key>       JSON record {"etag", "originalSize", "originalURL"}
"""

import hashlib
import re

from pydantic import BaseModel, ConfigDict, Field

from core.security.url_validation import strip_query

# File name prefix for metadata records
METADATA_PREFIX = "__metadata__"

# Sentinel ETag for entries written before metadata records existed.
# Never equal to a normalized remote ETag (those are alphanumeric only).
POLYFILL_ETAG = "polyfill_for_older_version"

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def cache_key_for_url(url: str) -> str:
    """
    Derive the cache key for a canonical URL.

    Format: ``{sha1(url)}_{last path segment}``. The hash covers the full URL
    (query string included) so distinct URLs never share a key; the suffix is
    only there to keep the cache directory human-readable.

    Args:
        url: Canonical artifact URL

    Returns:
        File-system safe cache key
    """
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()
    suffix = strip_query(url).rstrip("/").rsplit("/", 1)[-1]
    suffix = _UNSAFE_FILENAME_CHARS.sub("_", suffix)
    return f"{digest}_{suffix}"


class CacheEntryMetadata(BaseModel):
    """Sidecar record describing the remote state a cache entry was fetched from.

    Attributes:
        etag: Normalized remote entity tag ("" if unknown, POLYFILL_ETAG for
              legacy entries)
        original_size: Remote Content-Length at validation time (-1 if unknown)
        original_url: Canonical URL the entry was fetched for
    """

    model_config = ConfigDict(populate_by_name=True)

    etag: str = Field(default="", description="Normalized remote entity tag")
    original_size: int = Field(
        ...,
        alias="originalSize",
        description="Remote Content-Length at validation time",
    )
    original_url: str = Field(
        default="",
        alias="originalURL",
        description="Canonical URL this entry was fetched for",
    )

    @property
    def is_polyfilled(self) -> bool:
        """True for records synthesized for legacy entries."""
        return self.etag == POLYFILL_ETAG

    def to_json(self) -> str:
        """Serialize with the on-disk field names."""
        return self.model_dump_json(by_alias=True)

    @classmethod
    def polyfill(cls, size: int) -> "CacheEntryMetadata":
        """Build the record assumed for an entry that has no metadata file."""
        return cls(etag=POLYFILL_ETAG, original_size=size, original_url="")


class CacheEntry(BaseModel):
    """A stored content blob joined to its metadata record.

    Attributes:
        key: Cache key (file name of the content blob)
        size: Physically stored byte length
        metadata: Sidecar metadata (polyfilled if the record is missing)
    """

    key: str = Field(..., min_length=1)
    size: int = Field(..., ge=0)
    metadata: CacheEntryMetadata

    @property
    def is_complete(self) -> bool:
        """Stored length matches the remote length recorded at fetch time."""
        return self.size == self.metadata.original_size
