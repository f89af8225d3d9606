"""
Unit tests for the sync engine (push channel + poll) and the status tracker.
"""

# Disable these false positives as they are caused by pytest syntax
# pylint: disable=redefined-outer-name

import asyncio
import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import pytest

from ledgerchat.core.errors import SubmissionError
from ledgerchat.core.models import ConversationTarget, MessageStatus
from ledgerchat.services.sync import ChannelState, StatusTracker, SyncEngine
from tests.fakes import ALICE, BOB

_DROP = object()
_CLOSE = object()


class FakeChannel:
    """Push channel whose inbound frames are fed by the test."""

    def __init__(self):
        self.sent = []
        self.queue = asyncio.Queue()

    async def send(self, data):
        self.sent.append(json.loads(data))

    def push(self, frame):
        self.queue.put_nowait(frame)

    def drop(self):
        self.queue.put_nowait(_DROP)

    def close(self):
        self.queue.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self.queue.get()
        if frame is _DROP:
            raise ConnectionResetError("connection reset by peer")
        if frame is _CLOSE:
            raise StopAsyncIteration
        return frame


def make_connector(outcomes):
    """
    Connector yielding the queued outcomes in order: a FakeChannel is opened,
    an exception is raised. Once the queue is empty every attempt is refused.
    """
    attempts = []

    @asynccontextmanager
    async def connect(url):
        attempts.append(url)
        outcome = outcomes.pop(0) if outcomes else ConnectionRefusedError("connection refused")
        if isinstance(outcome, Exception):
            raise outcome
        yield outcome

    return connect, attempts


async def eventually(predicate, timeout=2.0):
    """Yields to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def refresh():
    return AsyncMock()


def make_engine(refresh, connect, **kwargs):
    options = {
        "poll_interval_s": 60.0,
        "reconnect_delay_s": 0.001,
        "reconnect_backoff": 1.0,
        "connect": connect,
    }
    options.update(kwargs)
    return SyncEngine(ALICE, refresh, "ws://push.test", **options)


@pytest.mark.asyncio
async def test_channel_failures_fall_back_to_polling_and_reconnect(refresh):
    channel = FakeChannel()
    connect, attempts = make_connector([channel])
    engine = make_engine(refresh, connect, poll_interval_s=0.01)
    states = []
    engine.add_listener(states.append)

    await engine.start()
    await eventually(lambda: engine.state is ChannelState.CONNECTED)
    channel.drop()
    await eventually(lambda: states.count(ChannelState.CONNECTING) >= 4 and refresh.await_count >= 1)
    await engine.stop()

    assert states[:8] == [
        ChannelState.CONNECTING,
        ChannelState.CONNECTED,
        ChannelState.DISCONNECTED,
        ChannelState.CONNECTING,
        ChannelState.DISCONNECTED,
        ChannelState.CONNECTING,
        ChannelState.DISCONNECTED,
        ChannelState.CONNECTING,
    ]
    assert len(attempts) >= 3
    assert "Falling back to polling" in engine.last_error
    assert engine.state is ChannelState.DISCONNECTED


@pytest.mark.asyncio
async def test_clean_close_reconnects_and_resubscribes(refresh):
    first, second = FakeChannel(), FakeChannel()
    connect, attempts = make_connector([first, second])
    engine = make_engine(refresh, connect)

    await engine.start()
    await eventually(lambda: first.sent)
    first.close()
    await eventually(lambda: second.sent)
    await engine.stop()

    assert len(attempts) == 2
    assert second.sent == first.sent
    assert engine.last_error is None


@pytest.mark.asyncio
async def test_subscription_is_sent_on_connect(refresh):
    channel = FakeChannel()
    connect, _ = make_connector([channel])
    engine = make_engine(refresh, connect)
    await engine.select_group("g1")

    await engine.start()
    await eventually(lambda: channel.sent)
    await engine.stop()

    assert channel.sent == [{"action": "subscribe", "wallet": ALICE, "group": "g1"}]


@pytest.mark.asyncio
async def test_select_group_resubscribes_without_reconnecting(refresh):
    channel = FakeChannel()
    connect, attempts = make_connector([channel])
    engine = make_engine(refresh, connect)

    await engine.start()
    await eventually(lambda: channel.sent)
    await engine.select_group("g2")
    await engine.select_group(None)
    await engine.stop()

    assert [frame["group"] for frame in channel.sent] == [None, "g2", None]
    assert len(attempts) == 1
    assert engine.selected_group is None


@pytest.mark.asyncio
async def test_message_update_triggers_refresh(refresh):
    channel = FakeChannel()
    connect, _ = make_connector([channel])
    engine = make_engine(refresh, connect)

    await engine.start()
    await eventually(lambda: channel.sent)
    channel.push(json.dumps({"type": "PING"}))
    channel.push("not json")
    channel.push(json.dumps({"type": "MESSAGE_UPDATE"}))
    await eventually(lambda: refresh.await_count == 1)
    await engine.stop()

    refresh.assert_awaited_once()


@pytest.mark.asyncio
async def test_poll_runs_while_channel_is_healthy(refresh):
    channel = FakeChannel()
    connect, _ = make_connector([channel])
    engine = make_engine(refresh, connect, poll_interval_s=0.01)

    await engine.start()
    await eventually(lambda: refresh.await_count >= 2)
    assert engine.state is ChannelState.CONNECTED
    await engine.stop()


@pytest.mark.asyncio
async def test_stop_cancels_every_timer(refresh):
    connect, attempts = make_connector([])
    engine = make_engine(refresh, connect, poll_interval_s=0.01)

    await engine.start()
    await eventually(lambda: refresh.await_count >= 1 and attempts)
    await engine.stop()

    polls, connects = refresh.await_count, len(attempts)
    await asyncio.sleep(0.05)

    assert refresh.await_count == polls
    assert len(attempts) == connects
    assert not engine.is_running


@pytest.mark.asyncio
async def test_push_disabled_polls_only(refresh):
    connect, attempts = make_connector([])
    engine = make_engine(refresh, connect, poll_interval_s=0.01, enable_push=False)

    await engine.start()
    await eventually(lambda: refresh.await_count >= 1)
    await engine.stop()

    assert attempts == []
    assert engine.state is ChannelState.DISCONNECTED


@pytest.mark.asyncio
async def test_refresh_errors_are_logged_not_raised(caplog):
    refresh = AsyncMock(side_effect=RuntimeError("rpc down"))
    connect, _ = make_connector([])
    engine = make_engine(refresh, connect)

    await engine.refresh()

    assert "Error loading messages: rpc down" in caplog.text


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_reconnecting(refresh, caplog):
    connect, attempts = make_connector([])
    engine = make_engine(refresh, connect)
    states = []

    def broken(state):
        raise RuntimeError("render failed")

    engine.add_listener(broken)
    engine.add_listener(states.append)

    await engine.start()
    await eventually(lambda: len(attempts) >= 3)
    await engine.stop()

    assert states[:3] == [ChannelState.CONNECTING, ChannelState.DISCONNECTED, ChannelState.CONNECTING]
    assert "Channel state listener failed" in caplog.text


def test_reconnect_delay_grows_until_capped():
    connect, _ = make_connector([])
    engine = SyncEngine(
        ALICE,
        AsyncMock(),
        "ws://push.test",
        reconnect_delay_s=5.0,
        reconnect_backoff=2.0,
        max_reconnect_delay_s=60.0,
        connect=connect,
    )

    delays = [engine.next_reconnect_delay() for _ in range(6)]

    assert delays == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


@pytest.mark.asyncio
async def test_reconnect_delay_resets_after_a_successful_connect(refresh):
    channel = FakeChannel()
    connect, _ = make_connector([channel])
    engine = make_engine(refresh, connect, reconnect_backoff=2.0)
    engine.next_reconnect_delay()
    engine.next_reconnect_delay()

    await engine.start()
    await eventually(lambda: engine.state is ChannelState.CONNECTED)
    delay = engine.next_reconnect_delay()
    await engine.stop()

    assert delay == 0.001


# === Status tracker ===


@pytest.mark.asyncio
async def test_status_tracker_advances_incoming_messages_only(make_repo):
    alice, bob = make_repo(ALICE), make_repo(BOB)
    await alice.send_message(ConversationTarget.direct(BOB), "hello")
    await bob.send_message(ConversationTarget.direct(ALICE), "hi back")

    tracker = StatusTracker(bob)
    advanced = await tracker.advance(await bob.list_messages(BOB), MessageStatus.READ)

    assert [(m.sender, m.status) for m in advanced] == [(ALICE, MessageStatus.READ)]
    statuses = {m.sender: m.status for m in await alice.list_messages(ALICE)}
    assert statuses == {ALICE: MessageStatus.READ, BOB: MessageStatus.SENT}
    assert tracker.updating == set()


@pytest.mark.asyncio
async def test_status_tracker_skips_messages_already_at_target(make_repo, ledger):
    await make_repo(ALICE).send_message(ConversationTarget.direct(BOB), "hello")
    bob = make_repo(BOB)
    tracker = StatusTracker(bob)
    [message] = await bob.list_messages(BOB)

    await tracker.advance([message], MessageStatus.READ)
    submitted = len(ledger.submitted)
    advanced = await tracker.advance(await bob.list_messages(BOB), MessageStatus.DELIVERED)

    assert advanced == []
    assert len(ledger.submitted) == submitted


@pytest.mark.asyncio
async def test_status_tracker_logs_failures(make_repo, ledger, caplog):
    await make_repo(ALICE).send_message(ConversationTarget.direct(BOB), "hello")
    bob = make_repo(BOB)
    tracker = StatusTracker(bob)
    messages = await bob.list_messages(BOB)
    ledger.fail_next = 1

    advanced = await tracker.advance(messages, MessageStatus.DELIVERED)

    assert advanced == []
    assert "Error updating status" in caplog.text
    assert tracker.updating == set()
    assert (await bob.list_messages(BOB))[0].status is MessageStatus.SENT


@pytest.mark.asyncio
async def test_status_tracker_skips_updates_in_flight(make_repo):
    await make_repo(ALICE).send_message(ConversationTarget.direct(BOB), "hello")
    bob = make_repo(BOB)
    bob.update_message_status = AsyncMock(side_effect=SubmissionError("unused"))
    tracker = StatusTracker(bob)
    [message] = await bob.list_messages(BOB)
    tracker.updating.add(message.key)

    assert await tracker.advance([message], MessageStatus.READ) == []
    bob.update_message_status.assert_not_awaited()
