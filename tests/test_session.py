"""
Tests for the chat session controller wiring and its cached view.
"""

# pylint: disable=redefined-outer-name

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from ledgerchat.core import codec
from ledgerchat.core.address import find_message_address
from ledgerchat.core.errors import LedgerUnavailable, SubmissionError
from ledgerchat.core.models import ConversationTarget, MessageStatus
from ledgerchat.services.session import ChatSessionService, SessionNotReady
from tests.fakes import ACCOUNT_PADDING, ALICE, BOB, CAROL, PROGRAM_ID, FakeWallet, ReversingCipher


@pytest.fixture
def session_settings():
    """Settings with push disabled and a poll interval long enough to stay out of the way."""
    with patch("ledgerchat.services.session.settings") as mock_settings:
        mock_settings.program_id = PROGRAM_ID
        mock_settings.rpc_url = "https://rpc.test"
        mock_settings.rpc_timeout_s = 1.0
        mock_settings.ws_url = "ws://push.test"
        mock_settings.enable_websocket = False
        mock_settings.enable_encryption = True
        mock_settings.polling_interval_ms = 60_000
        mock_settings.reconnect_delay_s = 5.0
        mock_settings.reconnect_backoff = 2.0
        mock_settings.max_reconnect_delay_s = 60.0
        mock_settings.submission_timeout_s = 5.0
        mock_settings.message_account_size = 300
        mock_settings.group_account_size = 200
        yield mock_settings


@pytest.fixture
def session():
    return ChatSessionService()


async def _start(session, ledger, clock, **kwargs):
    await session.initialize(FakeWallet(ALICE), gateway=ledger, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_initialize_loads_messages_and_groups(session, session_settings, ledger, clock, make_repo):
    bob = make_repo(BOB)
    await bob.send_message(ConversationTarget.direct(ALICE), "hi alice")
    group = await bob.create_group("Friends", [ALICE])

    await _start(session, ledger, clock)
    try:
        assert session.identity == ALICE
        assert [m.content for m in session.messages] == ["hi alice"]
        assert [g.id for g in session.groups] == [group.id]
        assert session.sync.is_running
    finally:
        await session.shutdown()

    assert not session.is_initialized()
    assert session.messages == []


@pytest.mark.asyncio
async def test_incoming_messages_are_marked_read_when_focused(session, session_settings, ledger, clock, make_repo):
    bob = make_repo(BOB)
    await bob.send_message(ConversationTarget.direct(ALICE), "hi alice")

    await _start(session, ledger, clock)
    await session.shutdown()

    assert (await bob.list_messages(BOB))[0].status is MessageStatus.READ


@pytest.mark.asyncio
async def test_incoming_messages_are_marked_delivered_when_unfocused(
    session, session_settings, ledger, clock, make_repo
):
    bob = make_repo(BOB)
    await bob.send_message(ConversationTarget.direct(ALICE), "hi alice")
    session.set_focus(False)

    await _start(session, ledger, clock)
    try:
        assert session.messages[0].status is MessageStatus.DELIVERED
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_view_status_never_regresses(session, session_settings, ledger, clock, make_repo):
    await make_repo(BOB).send_message(ConversationTarget.direct(ALICE), "hi alice")
    await _start(session, ledger, clock)
    try:
        [message] = session.messages
        assert message.status is MessageStatus.READ

        # A stale read from a lagging node
        address, _ = find_message_address(BOB, ALICE, message.timestamp, PROGRAM_ID)
        stale = message.model_copy(update={"status": MessageStatus.SENT})
        ledger.accounts[address] = codec.encode(stale) + ACCOUNT_PADDING
        submitted = len(ledger.submitted)

        [relisted] = await session.relist()

        assert relisted.status is MessageStatus.READ
        assert len(ledger.submitted) == submitted
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_send_refreshes_the_view_and_marks_presence(session, session_settings, ledger, clock):
    await _start(session, ledger, clock)
    try:
        attempt = await session.send(ConversationTarget.direct(BOB), "hello bob")

        assert attempt.signature is not None
        assert [m.content for m in session.messages] == ["hello bob"]
        assert session.is_online(ALICE)
        assert not session.is_online(BOB)
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_failed_send_can_be_retried(session, session_settings, ledger, clock):
    await _start(session, ledger, clock)
    try:
        ledger.fail_next = 1
        with pytest.raises(SubmissionError) as exc_info:
            await session.send(ConversationTarget.direct(BOB), "hello bob")

        assert [entry.fingerprint for entry in session.pending()] == [exc_info.value.fingerprint]
        assert session.messages == []

        clock.advance(1000)
        await session.retry(exc_info.value.fingerprint)

        assert session.pending() == []
        assert [m.content for m in session.messages] == ["hello bob"]
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_select_group_switches_scope(session, session_settings, ledger, clock, make_repo):
    bob = make_repo(BOB)
    group = await bob.create_group("Friends", [ALICE])
    await bob.send_message(ConversationTarget.group(group.id), "hi group")
    await bob.send_message(ConversationTarget.direct(ALICE), "hi alice")

    await _start(session, ledger, clock)
    try:
        assert [m.content for m in session.messages] == ["hi alice"]

        messages = await session.select_group(group.id)

        assert session.selected_group == group.id
        assert session.sync.selected_group == group.id
        assert [m.content for m in messages] == ["hi group"]
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_relist_finishing_after_a_scope_change_is_dropped(session, session_settings, ledger, clock, make_repo):
    bob = make_repo(BOB)
    group = await bob.create_group("Friends", [ALICE])
    await bob.send_message(ConversationTarget.group(group.id), "in group")
    await bob.send_message(ConversationTarget.direct(ALICE), "direct")

    await _start(session, ledger, clock)
    try:
        scan = ledger.scan_program_accounts
        scanned, release = asyncio.Event(), asyncio.Event()

        async def held_scan(approximate_size):
            accounts = await scan(approximate_size)
            if not scanned.is_set():
                scanned.set()
                await release.wait()
            return accounts

        ledger.scan_program_accounts = held_scan
        stale = asyncio.create_task(session.relist())
        await scanned.wait()

        await session.select_group(group.id)
        release.set()
        await stale

        assert session.selected_group == group.id
        assert [m.content for m in session.messages] == ["in group"]
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_membership_changes_reload_groups(session, session_settings, ledger, clock):
    await _start(session, ledger, clock)
    try:
        group = await session.create_group("Friends", [BOB])
        assert [g.id for g in session.groups] == [group.id]

        await session.add_member(group.id, CAROL)
        assert session.groups[0].participants == [ALICE, BOB, CAROL]

        await session.remove_member(group.id, ALICE)
        assert session.groups == []
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_ledger_outage_keeps_the_last_view(session, session_settings, ledger, clock, make_repo):
    await make_repo(BOB).send_message(ConversationTarget.direct(ALICE), "hi alice")
    await _start(session, ledger, clock)
    try:
        ledger.scan_program_accounts = AsyncMock(side_effect=LedgerUnavailable("rpc down"))

        messages = await session.relist()

        assert [m.content for m in messages] == ["hi alice"]
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_encryption_follows_settings(session, session_settings, ledger, clock):
    session_settings.enable_encryption = False
    await _start(session, ledger, clock, cipher=ReversingCipher())
    try:
        await session.send(ConversationTarget.direct(BOB), "plain", encrypted=True)

        stored = codec.decode_message(next(iter(ledger.accounts.values())))
        assert stored.content == "plain"
    finally:
        await session.shutdown()


@pytest.mark.asyncio
async def test_initialize_requires_a_program_id(session, session_settings, ledger, clock):
    session_settings.program_id = None

    with pytest.raises(ValueError, match="program_id"):
        await _start(session, ledger, clock)
    assert not session.is_initialized()


@pytest.mark.asyncio
async def test_initialize_refuses_a_second_wallet(session, session_settings, ledger, clock):
    await _start(session, ledger, clock)
    try:
        await session.initialize(FakeWallet(ALICE), gateway=ledger, clock=clock)
        with pytest.raises(ValueError):
            await session.initialize(FakeWallet(BOB), gateway=ledger, clock=clock)
    finally:
        await session.shutdown()


def test_actions_require_a_connected_wallet(session):
    with pytest.raises(SessionNotReady):
        session.pending()
    with pytest.raises(SessionNotReady):
        _ = session.sync
