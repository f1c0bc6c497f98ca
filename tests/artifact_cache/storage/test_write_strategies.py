"""Tests for cache write strategies and their selection."""

import asyncio
from unittest.mock import patch

import pytest

from artifact_cache.storage.writers import (
    SerializedWriteStrategy,
    StreamWriteStrategy,
    detect_write_mode,
    select_write_strategy,
)
from core.errors.exceptions import ConfigurationError


async def chunks_of(*parts: bytes, delay: float = 0.0):
    for part in parts:
        if delay:
            await asyncio.sleep(delay)
        yield part


class TestSelection:
    def test_explicit_modes(self):
        assert isinstance(select_write_strategy("stream"), StreamWriteStrategy)
        assert isinstance(select_write_strategy("serialized"), SerializedWriteStrategy)

    def test_unknown_mode(self):
        with pytest.raises(ConfigurationError):
            select_write_strategy("mmap")

    @pytest.mark.parametrize(
        "platform, expected",
        [("win32", "serialized"), ("linux", "stream"), ("darwin", "stream")],
    )
    def test_auto_detection(self, platform, expected):
        with patch("artifact_cache.storage.writers.sys.platform", platform):
            assert detect_write_mode() == expected
            assert select_write_strategy("auto").mode == expected


@pytest.mark.parametrize("strategy_cls", [StreamWriteStrategy, SerializedWriteStrategy])
class TestWrite:
    @pytest.mark.asyncio
    async def test_writes_in_order(self, tmp_path, strategy_cls):
        strategy = strategy_cls()
        path = tmp_path / "blob"

        written = await strategy.write(path, chunks_of(b"abc", b"def", b"g"))

        assert written == 7
        assert path.read_bytes() == b"abcdefg"
        await strategy.close()

    @pytest.mark.asyncio
    async def test_truncates_existing_content(self, tmp_path, strategy_cls):
        strategy = strategy_cls()
        path = tmp_path / "blob"
        path.write_bytes(b"x" * 100)

        await strategy.write(path, chunks_of(b"short"))

        assert path.read_bytes() == b"short"
        await strategy.close()

    @pytest.mark.asyncio
    async def test_failed_stream_leaves_short_file(self, tmp_path, strategy_cls):
        strategy = strategy_cls()
        path = tmp_path / "blob"

        async def failing():
            yield b"12345"
            raise RuntimeError("producer died")

        with pytest.raises(RuntimeError):
            await strategy.write(path, failing())

        assert path.read_bytes() == b"12345"
        await strategy.close()


class TestSerializedWriteStrategy:
    @pytest.mark.asyncio
    async def test_concurrent_writes_do_not_interleave(self, tmp_path):
        strategy = SerializedWriteStrategy()
        a, b = tmp_path / "a", tmp_path / "b"

        await asyncio.gather(
            strategy.write(a, chunks_of(b"a1", b"a2", b"a3", delay=0.001)),
            strategy.write(b, chunks_of(b"b1", b"b2", b"b3", delay=0.001)),
        )

        assert a.read_bytes() == b"a1a2a3"
        assert b.read_bytes() == b"b1b2b3"
        await strategy.close()

    @pytest.mark.asyncio
    async def test_cancelled_session_releases_handle(self, tmp_path):
        strategy = SerializedWriteStrategy()

        async def endless():
            yield b"partial"
            await asyncio.sleep(3600)
            yield b"never"

        task = asyncio.create_task(strategy.write(tmp_path / "a", endless()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        # The next session can open a handle
        await strategy.write(tmp_path / "b", chunks_of(b"ok"))
        assert (tmp_path / "a").read_bytes() == b"partial"
        assert (tmp_path / "b").read_bytes() == b"ok"
        await strategy.close()
