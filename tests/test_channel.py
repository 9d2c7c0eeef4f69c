"""Tests for the bounded progress channel."""

from __future__ import annotations

import asyncio

import pytest

from brewhouse.core.channel import EventKind, ProgressChannel


def progress(channel: ProgressChannel, node: str, so_far: int) -> None:
    channel.emit(EventKind.DOWNLOAD_PROGRESS, node, bytes_so_far=so_far)


def state(channel: ProgressChannel, node: str, value: str = "fetching") -> None:
    channel.emit(EventKind.NODE_STATE, node, state=value)


class TestBackpressure:
    """Tests for coalescing and dropping under a full buffer."""

    def test_progress_coalesced_per_node(self) -> None:
        """Should keep only the latest progress update for a node."""
        channel = ProgressChannel(10)
        sub = channel.subscribe()

        progress(channel, "a", 1)
        progress(channel, "b", 1)
        progress(channel, "a", 2)

        events = sub.drain()
        assert [(e.node, e.data["bytes_so_far"]) for e in events] == [("a", 2), ("b", 1)]

    def test_progress_dropped_before_state(self) -> None:
        """Should evict a progress update to make room for a state event."""
        channel = ProgressChannel(2)
        sub = channel.subscribe()

        progress(channel, "a", 1)
        state(channel, "a")
        state(channel, "b")

        events = sub.drain()
        assert [e.kind for e in events] == [EventKind.NODE_STATE, EventKind.NODE_STATE]
        assert sub.dropped == 1

    def test_new_progress_dropped_when_full_of_state(self) -> None:
        channel = ProgressChannel(2)
        sub = channel.subscribe()

        state(channel, "a")
        state(channel, "b")
        progress(channel, "c", 1)

        assert [e.node for e in sub.drain()] == ["a", "b"]
        assert sub.dropped == 1

    def test_oldest_state_dropped_last_resort(self) -> None:
        """Should discard the oldest event but keep order of the rest."""
        channel = ProgressChannel(2)
        sub = channel.subscribe()

        for node in ("a", "b", "c"):
            state(channel, node)

        assert [e.node for e in sub.drain()] == ["b", "c"]
        assert sub.dropped == 1

    def test_publish_never_blocks_without_consumer(self) -> None:
        channel = ProgressChannel(4)
        sub = channel.subscribe()

        for i in range(1000):
            progress(channel, f"n{i % 3}", i)

        assert len(sub.drain()) == 3


class TestSubscription:
    """Tests for consuming a subscription."""

    @pytest.mark.asyncio
    async def test_iterates_until_closed(self) -> None:
        channel = ProgressChannel()
        sub = channel.subscribe()

        async def produce() -> None:
            for node in ("a", "b"):
                state(channel, node)
                await asyncio.sleep(0)
            channel.close()

        received = []

        async def consume() -> None:
            async for event in sub:
                received.append(event.node)

        await asyncio.gather(consume(), produce())

        assert received == ["a", "b"]

    @pytest.mark.asyncio
    async def test_subscribe_after_close(self) -> None:
        channel = ProgressChannel()
        channel.close()

        sub = channel.subscribe()

        assert await sub.get() is None

    def test_fan_out(self) -> None:
        """Should deliver every event to every subscriber."""
        channel = ProgressChannel()
        first, second = channel.subscribe(), channel.subscribe()

        state(channel, "a")

        assert len(first.drain()) == 1
        assert len(second.drain()) == 1

    def test_emit_after_close_ignored(self) -> None:
        channel = ProgressChannel()
        sub = channel.subscribe()
        channel.close()

        state(channel, "a")

        assert sub.drain() == []
        assert channel.closed
