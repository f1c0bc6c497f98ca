"""
Shard set resolution for multi-part artifacts.

Split artifacts follow the naming convention
``<base>-<NNNNN>-of-<MMMMM>.<ext>`` with 1-based, zero-padded 5-digit
indices. Any shard URL resolves to the full ordered list of shard URLs;
a trailing query string or fragment is carried over verbatim.

    >>> resolve_shards("model-00002-of-00003.gguf")
    ['model-00001-of-00003.gguf', 'model-00002-of-00003.gguf', 'model-00003-of-00003.gguf']
"""

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

SHARD_DIGITS = 5

_SHARD_URL = re.compile(
    r"^(?P<base>.*)"
    r"-(?P<index>[0-9]{5})-of-(?P<total>[0-9]{5})"
    r"(?P<ext>\.[^/?#]+)"
    r"(?P<suffix>[?#].*)?$",
    re.DOTALL,
)


@dataclass(frozen=True)
class ShardDescriptor:
    """One shard of a split artifact, parsed from its URL."""

    base_url: str
    index: int
    total: int
    extension: str
    suffix: str = ""

    def url_for(self, index: int) -> str:
        """URL of shard ``index`` (1-based) in the same set."""
        if not 1 <= index <= self.total:
            raise ValueError(f"Shard index {index} outside 1..{self.total}")
        return (
            f"{self.base_url}-{index:0{SHARD_DIGITS}d}-of-{self.total:0{SHARD_DIGITS}d}"
            f"{self.extension}{self.suffix}"
        )

    @property
    def url(self) -> str:
        return self.url_for(self.index)

    def all_urls(self) -> List[str]:
        """All shard URLs in ascending index order."""
        return [self.url_for(i) for i in range(1, self.total + 1)]


def parse_shard_url(url: str) -> Optional[ShardDescriptor]:
    """
    Parse a shard URL.

    Args:
        url: URL that may follow the shard naming convention

    Returns:
        ShardDescriptor, or None if url is not a well-formed shard URL
        (no match, total of zero, or index outside 1..total)
    """
    match = _SHARD_URL.match(url)
    if not match:
        return None

    index = int(match.group("index"))
    total = int(match.group("total"))
    if total < 1 or not 1 <= index <= total:
        return None

    return ShardDescriptor(
        base_url=match.group("base"),
        index=index,
        total=total,
        extension=match.group("ext"),
        suffix=match.group("suffix") or "",
    )


def resolve_shards(url: Union[str, Sequence[str]]) -> List[str]:
    """
    Resolve an artifact URL into its ordered list of shard URLs.

    Rules:
    - A list (or tuple) of URLs is returned as given; caller order wins.
    - A shard URL yields every shard of its set, whichever index it names.
    - Anything else yields a single-element list.

    Args:
        url: Single URL or explicit list of URLs

    Returns:
        Ordered list of URLs
    """
    if not isinstance(url, str):
        return list(url)

    shard = parse_shard_url(url)
    if shard is None:
        return [url]
    return shard.all_urls()


def canonical_url(url: Union[str, Sequence[str]]) -> str:
    """The URL identifying an artifact: its first shard (or the single file)."""
    return resolve_shards(url)[0]
