"""
Keeps the local view of the current conversation fresh.

Two triggers feed the same re-list: a push channel (websocket) that sends
MESSAGE_UPDATE notifications, and a fixed-interval poll that runs whatever
the push channel is doing. The push channel reconnects with backoff and is
never fatal: while it is down the client simply relies on polling.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable, Iterable, List, Optional, Set

import websockets
from websockets.exceptions import WebSocketException

from ledgerchat.core.errors import ChannelError, ChatError
from ledgerchat.core.models import Message, MessageStatus
from ledgerchat.core.push_protocol import SubscribeRequest, parse_inbound
from ledgerchat.services.repository import RecordRepository

logger = logging.getLogger(__name__)

Connector = Callable[[str], AsyncContextManager[Any]]
StateListener = Callable[["ChannelState"], None]

_CHANNEL_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, ChannelError)


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class SyncEngine:
    """
    Owns the push channel and the poll timer for one (identity, group) scope.
    """

    def __init__(
        self,
        identity: str,
        refresh: Callable[[], Awaitable[Any]],
        ws_url: str,
        poll_interval_s: float = 30.0,
        reconnect_delay_s: float = 5.0,
        reconnect_backoff: float = 2.0,
        max_reconnect_delay_s: float = 60.0,
        enable_push: bool = True,
        connect: Connector = websockets.connect,
    ):
        self.identity = identity
        self.ws_url = ws_url
        self.poll_interval_s = poll_interval_s
        self.reconnect_delay_s = reconnect_delay_s
        self.reconnect_backoff = reconnect_backoff
        self.max_reconnect_delay_s = max_reconnect_delay_s
        self.enable_push = enable_push
        self.last_error: Optional[str] = None

        self._refresh = refresh
        self._connect = connect
        self._state = ChannelState.DISCONNECTED
        self._listeners: List[StateListener] = []
        self._channel: Any = None
        self._group: Optional[str] = None
        self._running = False
        self._next_delay = reconnect_delay_s
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._channel_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def selected_group(self) -> Optional[str]:
        return self._group

    @property
    def is_running(self) -> bool:
        return self._running

    def add_listener(self, listener: StateListener) -> None:
        """Registers a callback invoked on every channel state change."""
        self._listeners.append(listener)

    async def start(self) -> None:
        """Starts the poll timer and, if enabled, the push channel."""
        if self._running:
            return

        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        if self.enable_push:
            self._channel_task = asyncio.create_task(self._channel_loop())
        logger.info("[%s] Sync started (push=%s, poll every %ss)", self.identity, self.enable_push, self.poll_interval_s)

    async def stop(self) -> None:
        """Stops the reconnect timer, the poll timer and the channel, unconditionally."""
        self._running = False

        for task in (self._channel_task, self._poll_task):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._channel_task = None
        self._poll_task = None
        self._channel = None
        self._set_state(ChannelState.DISCONNECTED)
        logger.info("[%s] Sync stopped", self.identity)

    async def select_group(self, group_id: Optional[str]) -> None:
        """
        Changes the subscribed scope. While connected, the subscription is
        re-sent on the open channel instead of reconnecting.
        """
        self._group = group_id
        if self._state is ChannelState.CONNECTED and self._channel is not None:
            try:
                await self._send_subscription()
            except _CHANNEL_ERRORS as e:
                logger.warning("Could not update push subscription: %s", e)

    async def refresh(self) -> None:
        """
        The shared re-list. Safe to run from both triggers at once: it only
        reads the ledger and replaces the cached view.
        """
        try:
            await self._refresh()
        # pylint: disable=broad-exception-caught
        except Exception as e:
            logger.error("Error loading messages: %s", e)

    async def _poll_loop(self) -> None:
        try:
            while self._running:
                await asyncio.sleep(self.poll_interval_s)
                await self.refresh()
        finally:
            logger.debug("[%s] Poll loop terminated.", self.identity)

    async def _channel_loop(self) -> None:
        while self._running:
            self._set_state(ChannelState.CONNECTING)
            try:
                async with self._connect(self.ws_url) as channel:
                    self._channel = channel
                    self._set_state(ChannelState.CONNECTED)
                    self._next_delay = self.reconnect_delay_s
                    self.last_error = None
                    await self._send_subscription()

                    async for frame in channel:
                        await self._dispatch(frame)

                logger.info("Push channel closed")
            except _CHANNEL_ERRORS as e:
                self.last_error = f"Push channel error: {e}. Falling back to polling."
                logger.warning("Push channel error: %s. Falling back to polling, will retry connection shortly.", e)
            finally:
                self._channel = None

            self._set_state(ChannelState.DISCONNECTED)
            if not self._running:
                break

            delay = self.next_reconnect_delay()
            logger.debug("Reconnecting push channel in %.1fs", delay)
            await asyncio.sleep(delay)

    def next_reconnect_delay(self) -> float:
        """Delay before the next connection attempt; grows until capped, resets on connect."""
        delay = self._next_delay
        self._next_delay = min(delay * self.reconnect_backoff, self.max_reconnect_delay_s)
        return delay

    async def _send_subscription(self) -> None:
        request = SubscribeRequest(wallet=self.identity, group=self._group)
        await self._channel.send(request.to_wire())

    async def _dispatch(self, frame: Any) -> None:
        """Single entry point for inbound frames."""
        if parse_inbound(frame) is not None:
            await self.refresh()

    def _set_state(self, state: ChannelState) -> None:
        if state is self._state:
            return

        logger.debug("Push channel %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in self._listeners:
            try:
                listener(state)
            # pylint: disable=broad-exception-caught
            except Exception as e:
                logger.error("Channel state listener failed on %s: %s", state.value, e)


class StatusTracker:
    """
    Moves incoming messages forward (delivered, read) on the ledger.
    Keys of messages with a submission in flight are kept so that overlapping
    re-lists do not submit the same update twice.
    """

    def __init__(self, repository: RecordRepository):
        self.repository = repository
        self.updating: Set[str] = set()

    async def advance(self, messages: Iterable[Message], target: MessageStatus) -> List[Message]:
        """Returns copies of the messages that were successfully advanced to target."""
        advanced = []
        for message in messages:
            if message.sender == self.repository.identity:
                continue
            if message.status.rank >= target.rank or message.key in self.updating:
                continue

            self.updating.add(message.key)
            try:
                await self.repository.update_message_status(message, target)
            except ChatError as e:
                logger.warning("Error updating status of message %s: %s", message.key, e)
            else:
                advanced.append(message.with_status(target))
            finally:
                self.updating.discard(message.key)

        return advanced
