"""
Chat session controller, centralizing the services of the connected wallet
in a structured and coherent object.
"""

import logging
from typing import Callable, Dict, List, Optional

from ledgerchat.config.settings import settings
from ledgerchat.core.errors import ChatError
from ledgerchat.core.models import (
    ConversationTarget,
    Group,
    Message,
    MessageStatus,
    PendingRetry,
    now_ms,
)
from ledgerchat.core.presence import PresenceTracker
from ledgerchat.services.cipher import IContentCipher
from ledgerchat.services.ledger import ILedgerGateway, IWallet, RpcLedgerGateway
from ledgerchat.services.membership import GroupMembershipManager
from ledgerchat.services.repository import RecordRepository
from ledgerchat.services.send_pipeline import SendAttempt, SendPipeline
from ledgerchat.services.sync import Connector, StatusTracker, SyncEngine

logger = logging.getLogger(__name__)


class SessionNotReady(ChatError):
    """No wallet is connected yet."""


class ChatSessionService:
    """
    Wires the repository, send pipeline, membership manager, sync engine and
    presence tracker for one connected wallet, and keeps the cached view
    (messages of the current scope, groups of the wallet).
    """

    def __init__(self) -> None:
        self._identity: Optional[str] = None
        self._repository: Optional[RecordRepository] = None
        self._pipeline: Optional[SendPipeline] = None
        self._membership: Optional[GroupMembershipManager] = None
        self._sync: Optional[SyncEngine] = None
        self._status: Optional[StatusTracker] = None
        self.presence = PresenceTracker()

        self.focused = True
        self._selected_group: Optional[str] = None
        self._messages: List[Message] = []
        self._groups: List[Group] = []
        # Highest status observed per message key, so the view never regresses
        self._known_status: Dict[str, MessageStatus] = {}

    # === Lifecycle ===

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def is_initialized(self) -> bool:
        return self._identity is not None

    async def initialize(
        self,
        wallet: IWallet,
        gateway: Optional[ILedgerGateway] = None,
        program_id: Optional[str] = None,
        cipher: Optional[IContentCipher] = None,
        clock: Callable[[], int] = now_ms,
        connect: Optional[Connector] = None,
    ) -> None:
        """
        Starts the session for the wallet: builds the services, loads the
        initial view and starts syncing.
        """
        if self.is_initialized():
            if self._identity != wallet.public_key:
                raise ValueError(f"Session is already initialized for {self._identity}")
            return

        program_id = program_id or settings.program_id
        if not program_id:
            raise ValueError("program_id is not configured")

        identity = wallet.public_key
        logger.info("Initializing chat session for wallet: %s", identity)

        if gateway is None:
            gateway = RpcLedgerGateway(settings.rpc_url, program_id, wallet, timeout=settings.rpc_timeout_s)

        repository = RecordRepository(
            gateway,
            program_id,
            identity,
            message_account_size=settings.message_account_size,
            group_account_size=settings.group_account_size,
            cipher=cipher if settings.enable_encryption else None,
            clock=clock,
        )
        self._identity = identity
        self._repository = repository
        self._pipeline = SendPipeline(
            repository,
            submission_timeout_s=settings.submission_timeout_s,
            on_confirmed=self.relist,
            clock=clock,
        )
        self._membership = GroupMembershipManager(repository)
        self._status = StatusTracker(repository)

        sync_options = {}
        if connect is not None:
            sync_options["connect"] = connect
        self._sync = SyncEngine(
            identity,
            self.relist,
            settings.ws_url,
            poll_interval_s=settings.polling_interval_ms / 1000,
            reconnect_delay_s=settings.reconnect_delay_s,
            reconnect_backoff=settings.reconnect_backoff,
            max_reconnect_delay_s=settings.max_reconnect_delay_s,
            enable_push=settings.enable_websocket,
            **sync_options,
        )

        await self.relist()
        await self.load_groups()
        await self._sync.start()

    async def shutdown(self) -> None:
        """Stops syncing and forgets the session state."""
        logger.info("Shutting down chat session...")
        if self._sync:
            await self._sync.stop()

        self._identity = None
        self._repository = None
        self._pipeline = None
        self._membership = None
        self._sync = None
        self._status = None
        self._selected_group = None
        self._messages = []
        self._groups = []
        self._known_status = {}
        logger.info("Chat session shutdown complete.")

    # === View ===

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    @property
    def groups(self) -> List[Group]:
        return list(self._groups)

    @property
    def selected_group(self) -> Optional[str]:
        return self._selected_group

    @property
    def sync(self) -> SyncEngine:
        if self._sync is None:
            raise SessionNotReady("Please connect your wallet first")
        return self._sync

    async def relist(self) -> List[Message]:
        """
        Re-reads the messages of the current scope and advances the status of
        incoming ones (read when the conversation is focused, delivered otherwise).

        A re-list that finishes after the scope changed is dropped: the view
        always belongs to the selected group.
        """
        repository, status = self._repo(), self._status
        scope = self._selected_group
        try:
            fetched = await repository.list_messages(repository.identity, scope)
        except ChatError as e:
            logger.error("Error loading messages: %s", e)
            return self.messages

        merged = self._merge(fetched)
        if status is not None:
            target = MessageStatus.READ if self.focused else MessageStatus.DELIVERED
            advanced = {message.key: message for message in await status.advance(merged, target)}
            if advanced:
                merged = self._merge([advanced.get(message.key, message) for message in merged])

        if scope != self._selected_group:
            logger.debug("Dropping re-list of %s, scope is now %s", scope or "direct messages", self._selected_group)
            return self.messages

        self._messages = merged
        return self.messages

    async def load_groups(self) -> List[Group]:
        repository = self._repo()
        try:
            self._groups = await repository.list_groups(repository.identity)
        except ChatError as e:
            logger.error("Error loading groups: %s", e)
        return self.groups

    async def select_group(self, group_id: Optional[str]) -> List[Message]:
        """Switches the conversation scope to a group (or back to direct messages)."""
        self._selected_group = group_id
        await self.sync.select_group(group_id)
        return await self.relist()

    def set_focus(self, focused: bool) -> None:
        self.focused = focused

    def _merge(self, messages: List[Message]) -> List[Message]:
        merged = []
        for message in messages:
            known = self._known_status.get(message.key)
            if known is not None and known.rank > message.status.rank:
                message = message.with_status(known)
            self._known_status[message.key] = message.status
            merged.append(message)
        return merged

    # === Actions ===

    async def send(self, target: ConversationTarget, content: str, encrypted: bool = False) -> SendAttempt:
        attempt = await self._send_pipeline().send(target, content, encrypted)
        self.presence.mark_online(self._repo().identity)
        return attempt

    async def retry(self, fingerprint: str) -> SendAttempt:
        attempt = await self._send_pipeline().retry(fingerprint)
        self.presence.mark_online(self._repo().identity)
        return attempt

    def dismiss(self, fingerprint: str) -> PendingRetry:
        return self._send_pipeline().dismiss(fingerprint)

    def pending(self) -> List[PendingRetry]:
        return self._send_pipeline().pending()

    async def create_group(self, name: str, participants: List[str]) -> Group:
        group = await self._repo().create_group(name, participants)
        await self.load_groups()
        return group

    async def get_group(self, group_id: str) -> Optional[Group]:
        return await self._repo().get_group(group_id)

    async def add_member(self, group_id: str, identity: str) -> Group:
        group = await self._members().add_member(group_id, identity)
        await self.load_groups()
        return group

    async def remove_member(self, group_id: str, identity: str) -> Group:
        group = await self._members().remove_member(group_id, identity)
        await self.load_groups()
        return group

    def is_online(self, identity: str) -> bool:
        return self.presence.is_online(identity)

    def _repo(self) -> RecordRepository:
        if self._repository is None:
            raise SessionNotReady("Please connect your wallet first")
        return self._repository

    def _send_pipeline(self) -> SendPipeline:
        if self._pipeline is None:
            raise SessionNotReady("Please connect your wallet first")
        return self._pipeline

    def _members(self) -> GroupMembershipManager:
        if self._membership is None:
            raise SessionNotReady("Please connect your wallet first")
        return self._membership


chat_service = ChatSessionService()
