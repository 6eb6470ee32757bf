"""
Unit tests for the message log and its live streams.
"""

# pylint: disable=redefined-outer-name
# pylint: disable=protected-access

import asyncio
import sqlite3

import pytest

from dmchat.core.errors import BackendUnavailable, EmptyMessage
from dmchat.services.change_feed import FeedListener, LocalChangeFeed, room_channel
from dmchat.services.message_log import MessageLog

ROOM = "u1_u2"


async def next_item(stream, timeout=2.0):
    return await asyncio.wait_for(stream.__anext__(), timeout=timeout)


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
async def test_append_rejects_blank_text(message_log, storage, text):
    """Blank messages fail before anything is persisted."""
    with pytest.raises(EmptyMessage):
        await message_log.append(ROOM, "u1", text)

    assert storage.get_recent_messages(ROOM) == []


@pytest.mark.asyncio
async def test_append_persists_and_publishes(message_log, storage, feed):
    listener = await feed.subscribe(room_channel(ROOM))

    message_id = await message_log.append(ROOM, "u1", "hello")

    stored = storage.get_recent_messages(ROOM)
    assert [m.id for m in stored] == [message_id]
    assert stored[0].sender_id == "u1"
    assert stored[0].text == "hello"

    payload = await asyncio.wait_for(listener.get(), timeout=1)
    assert payload["id"] == message_id
    assert payload["timestamp"] == stored[0].timestamp


@pytest.mark.asyncio
async def test_append_keeps_text_as_typed(message_log, storage):
    await message_log.append(ROOM, "u1", "  spaced  ")
    assert storage.get_recent_messages(ROOM)[0].text == "  spaced  "


@pytest.mark.asyncio
async def test_append_storage_failure(message_log, storage, monkeypatch):
    def broken(*args):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(storage, "append_message", broken)

    with pytest.raises(BackendUnavailable):
        await message_log.append(ROOM, "u1", "hello")


@pytest.mark.asyncio
async def test_subscribe_replays_recent_tail_ascending(message_log):
    ids = [await message_log.append(ROOM, "u1", f"m{i}") for i in range(5)]

    stream = message_log.subscribe_recent(ROOM, limit=3)
    replayed = [await next_item(stream) for _ in range(3)]

    assert [m.id for m in replayed] == ids[2:]
    assert [m.text for m in replayed] == ["m2", "m3", "m4"]
    await stream.close()


@pytest.mark.asyncio
async def test_subscribe_pushes_new_messages_once_in_order(message_log):
    first = await message_log.append(ROOM, "u1", "before")
    stream = message_log.subscribe_recent(ROOM)
    assert (await next_item(stream)).id == first

    second = await message_log.append(ROOM, "u2", "after 1")
    third = await message_log.append(ROOM, "u1", "after 2")

    assert (await next_item(stream)).id == second
    assert (await next_item(stream)).id == third

    with pytest.raises(asyncio.TimeoutError):
        await next_item(stream, timeout=0.1)
    await stream.close()


@pytest.mark.asyncio
async def test_concurrent_appends_are_observed_in_acceptance_order(message_log, storage):
    stream = message_log.subscribe_recent(ROOM)
    waiter = asyncio.create_task(next_item(stream))
    await asyncio.sleep(0)

    await asyncio.gather(*(message_log.append(ROOM, f"sender{i % 3}", f"m{i}") for i in range(12)))

    observed = [await waiter] + [await next_item(stream) for _ in range(11)]
    stored = storage.get_recent_messages(ROOM, limit=100)

    assert [m.id for m in observed] == [m.id for m in stored]
    timestamps = [m.timestamp for m in observed]
    assert timestamps == sorted(timestamps)
    await stream.close()


@pytest.mark.asyncio
async def test_redelivered_notification_is_dropped(message_log, feed):
    first = await message_log.append(ROOM, "u1", "one")
    stream = message_log.subscribe_recent(ROOM)
    delivered = await next_item(stream)

    # The transport redelivers the same message.
    await feed.publish(room_channel(ROOM), delivered.model_dump(mode="json"))
    second = await message_log.append(ROOM, "u2", "two")

    assert delivered.id == first
    assert (await next_item(stream)).id == second
    await stream.close()


@pytest.mark.asyncio
async def test_out_of_order_notifications_keep_log_order(message_log, storage, feed):
    """Notifications only trigger a read from storage, so the log order wins."""
    stream = message_log.subscribe_recent(ROOM)
    waiter = asyncio.create_task(next_item(stream))
    await asyncio.sleep(0.01)

    first = storage.append_message(ROOM, "u1", "first")
    second = storage.append_message(ROOM, "u2", "second")
    await feed.publish(room_channel(ROOM), second.model_dump(mode="json"))
    await feed.publish(room_channel(ROOM), first.model_dump(mode="json"))

    assert (await waiter).id == first.id
    assert (await next_item(stream)).id == second.id
    await stream.close()


class BrokenListener(FeedListener):
    """Listener whose channel drops on the first read."""

    def __init__(self, inner):
        self.inner = inner

    async def get(self):
        raise BackendUnavailable("connection reset")

    async def close(self):
        await self.inner.close()


class FlakyFeed(LocalChangeFeed):
    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures
        self.subscriptions = 0

    async def subscribe(self, channel):
        self.subscriptions += 1
        listener = await super().subscribe(channel)
        if self.failures:
            self.failures -= 1
            return BrokenListener(listener)
        return listener


@pytest.mark.asyncio
async def test_stream_resynchronizes_after_connection_loss(storage, caplog):
    feed = FlakyFeed()
    log = MessageLog(storage, feed, reconnect_initial_delay=0.01, reconnect_max_delay=0.05)

    first = await log.append(ROOM, "u1", "before drop")
    stream = log.subscribe_recent(ROOM)
    assert (await next_item(stream)).id == first

    # Sent while the stream's channel is broken: only the resync can see it.
    second = await log.append(ROOM, "u2", "during drop")

    assert (await next_item(stream)).id == second
    assert feed.subscriptions == 2
    assert stream.reconnects == 1
    assert "lost its channel" in caplog.text

    third = await log.append(ROOM, "u1", "after drop")
    assert (await next_item(stream)).id == third
    await stream.close()


@pytest.mark.asyncio
async def test_close_ends_iteration_without_touching_data(message_log, storage, feed):
    await message_log.append(ROOM, "u1", "kept")
    stream = message_log.subscribe_recent(ROOM)

    async def consume():
        return [m.text async for m in stream]

    consumer = asyncio.create_task(consume())
    await asyncio.sleep(0.05)
    await stream.close()

    assert await asyncio.wait_for(consumer, timeout=1) == ["kept"]
    assert stream.closed
    assert feed.listener_count(room_channel(ROOM)) == 0
    assert [m.text for m in storage.get_recent_messages(ROOM)] == ["kept"]

    # Further appends are not delivered anywhere and do not fail.
    await message_log.append(ROOM, "u1", "later")
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_stream_as_context_manager(message_log, feed):
    async with message_log.subscribe_recent(ROOM) as stream:
        waiter = asyncio.create_task(next_item(stream))
        await message_log.append(ROOM, "u1", "hi")
        assert (await waiter).text == "hi"

    assert feed.listener_count(room_channel(ROOM)) == 0


@pytest.mark.asyncio
async def test_burst_larger_than_limit_on_empty_room_is_fully_delivered(message_log, storage):
    stream = message_log.subscribe_recent(ROOM, limit=5)
    waiter = asyncio.create_task(next_item(stream))
    await asyncio.sleep(0.01)

    await asyncio.gather(*(message_log.append(ROOM, "u1", f"m{i}") for i in range(8)))

    observed = [await waiter] + [await next_item(stream) for _ in range(7)]
    stored = storage.get_recent_messages(ROOM, limit=100)

    assert [m.id for m in observed] == [m.id for m in stored]
    with pytest.raises(asyncio.TimeoutError):
        await next_item(stream, timeout=0.1)
    await stream.close()


@pytest.mark.asyncio
async def test_zero_limit_skips_history_but_streams_new_messages(message_log):
    await message_log.append(ROOM, "u1", "old")
    stream = message_log.subscribe_recent(ROOM, limit=0)
    waiter = asyncio.create_task(next_item(stream))
    await asyncio.sleep(0.01)

    new_id = await message_log.append(ROOM, "u2", "new")

    assert (await waiter).id == new_id
    with pytest.raises(asyncio.TimeoutError):
        await next_item(stream, timeout=0.1)
    await stream.close()


@pytest.mark.asyncio
async def test_zero_limit_on_empty_room(message_log):
    stream = message_log.subscribe_recent(ROOM, limit=0)
    waiter = asyncio.create_task(next_item(stream))
    await asyncio.sleep(0.01)

    new_id = await message_log.append(ROOM, "u1", "first")

    assert (await waiter).id == new_id
    await stream.close()


@pytest.mark.asyncio
async def test_resync_after_drop_delivers_more_than_limit(storage):
    feed = FlakyFeed()
    log = MessageLog(storage, feed, reconnect_initial_delay=0.05, reconnect_max_delay=0.05)

    first = await log.append(ROOM, "u1", "before drop")
    stream = log.subscribe_recent(ROOM, limit=2)
    assert (await next_item(stream)).id == first

    # The channel is broken until the backoff elapses.
    waiter = asyncio.create_task(next_item(stream))
    missed = [await log.append(ROOM, "u2", f"during {i}") for i in range(4)]

    observed = [await waiter] + [await next_item(stream) for _ in range(3)]
    assert [m.id for m in observed] == missed
    await stream.close()
