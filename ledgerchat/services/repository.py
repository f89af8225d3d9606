"""
Record repository: turns chat operations into ledger instructions and
scanned ledger accounts back into chat records.

The repository holds no mutable state. Every read scans the program's
accounts; every write is a single submitted instruction.
"""

import logging
from typing import Callable, Iterable, List, Optional, Tuple

from ledgerchat.core import codec
from ledgerchat.core.address import find_group_address, find_message_address
from ledgerchat.core.codec import RecordKind
from ledgerchat.core.errors import DecodeError, StatusRegression, ValidationError
from ledgerchat.core.models import (
    MAX_MESSAGE_LENGTH,
    ConversationTarget,
    CreateGroupInstruction,
    Group,
    Message,
    MessageStatus,
    SendMessageInstruction,
    UpdateMessageStatusInstruction,
    identity_to_bytes,
    make_group_id,
    now_ms,
)
from ledgerchat.services.cipher import IContentCipher
from ledgerchat.services.ledger import (
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
    AccountMeta,
    ILedgerGateway,
    LedgerInstruction,
)

logger = logging.getLogger(__name__)


def decode_accounts(
    accounts: Iterable[Tuple[str, bytes]], kind: RecordKind
) -> List[Tuple[str, codec.Record]]:
    """
    Best-effort batch decode.
    A malformed or foreign account is logged and skipped; it never hides the rest.
    """
    decoded = []
    skipped = 0
    for address, data in accounts:
        try:
            decoded.append((address, codec.decode(kind, data)))
        except DecodeError as e:
            skipped += 1
            logger.debug("Skipping account %s, not a valid %s: %s", address, kind.value, e)

    if skipped:
        logger.info("Skipped %d undecodable accounts while scanning for %s records", skipped, kind.value)
    return decoded


class RecordRepository:
    """Stateless facade over the ledger gateway for messages and groups."""

    def __init__(
        self,
        gateway: ILedgerGateway,
        program_id: str,
        identity: str,
        message_account_size: int = 300,
        group_account_size: int = 200,
        cipher: Optional[IContentCipher] = None,
        clock: Callable[[], int] = now_ms,
    ):
        identity_to_bytes(program_id)
        identity_to_bytes(identity)
        self.gateway = gateway
        self.program_id = program_id
        self.identity = identity
        self.message_account_size = message_account_size
        self.group_account_size = group_account_size
        self.cipher = cipher
        self.clock = clock

    # === Messages ===

    async def send_message(self, target: ConversationTarget, content: str, encrypted: bool = False) -> str:
        """
        Submits a new message to a recipient or a group.
        The message account address is keyed by the send timestamp, so every
        call creates a new logical message.
        """
        message = self.build_message(target, content, encrypted)
        message_address, _ = find_message_address(
            message.sender, message.recipient, message.timestamp, self.program_id
        )

        instruction = SendMessageInstruction(
            content=message.content,
            timestamp=message.timestamp,
            is_encrypted=message.is_encrypted,
            group_id=message.group_id,
        )
        ledger_instruction = LedgerInstruction(
            program_id=self.program_id,
            accounts=[
                AccountMeta(pubkey=self.identity, is_signer=True, is_writable=True),
                AccountMeta(pubkey=message_address, is_writable=True),
                AccountMeta(pubkey=message.recipient),
                AccountMeta(pubkey=SYSTEM_PROGRAM_ID),
                AccountMeta(pubkey=RENT_SYSVAR_ID),
            ],
            data=codec.encode(instruction),
        )

        signature = await self.gateway.submit(ledger_instruction, self.identity)
        logger.info("Message sent to %s with signature %s", target.label, signature)
        return signature

    def validate_message(self, target: ConversationTarget, content: str) -> str:
        """Checks a send before any sealing or I/O. Returns the recipient account."""
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty")

        if target.is_group:
            recipient, _ = find_group_address(str(target.group_id), self.program_id)
        else:
            recipient = str(target.recipient)
            if recipient == self.identity:
                raise ValidationError("Cannot send a direct message to yourself")

        self._check_size(content)
        return recipient

    def build_message(self, target: ConversationTarget, content: str, encrypted: bool = False) -> Message:
        """Validates and assembles the message that a send would store."""
        recipient = self.validate_message(target, content)

        payload = content
        if encrypted and self.cipher is not None:
            payload = self.cipher.encrypt(content, recipient)
            # Sealing adds overhead, the stored form must fit as well
            self._check_size(payload)

        return Message(
            sender=self.identity,
            recipient=recipient,
            content=payload,
            timestamp=self.clock(),
            is_encrypted=encrypted,
            group_id=target.group_id,
        )

    async def list_messages(self, identity: str, group_id: Optional[str] = None) -> List[Message]:
        """
        Lists messages sent or received by identity, newest first.
        Ties on timestamp are ordered by account address.

        With a group filter, messages addressed to the group account are
        included as well, so members see each other's group messages.
        """
        parties = {identity}
        if group_id is not None:
            parties.add(find_group_address(group_id, self.program_id)[0])

        accounts = await self.gateway.scan_program_accounts(self.message_account_size)

        found: List[Tuple[str, Message]] = []
        for address, message in decode_accounts(accounts, RecordKind.MESSAGE):
            if not isinstance(message, Message):
                continue
            if message.sender not in parties and message.recipient not in parties:
                continue
            if group_id is not None and message.group_id != group_id:
                continue
            found.append((address, self._open(message)))

        found.sort(key=lambda item: item[0])
        found.sort(key=lambda item: item[1].timestamp, reverse=True)
        return [message for _, message in found]

    async def update_message_status(self, message: Message, status: MessageStatus) -> str:
        """Moves a stored message forward to status. Backward moves are rejected."""
        if not message.status.can_advance_to(status):
            raise StatusRegression(
                f"Cannot move message {message.key} from {message.status.value} to {status.value}"
            )

        message_address, _ = find_message_address(
            message.sender, message.recipient, message.timestamp, self.program_id
        )
        ledger_instruction = LedgerInstruction(
            program_id=self.program_id,
            accounts=[
                AccountMeta(pubkey=self.identity, is_signer=True),
                AccountMeta(pubkey=message_address, is_writable=True),
            ],
            data=codec.encode(UpdateMessageStatusInstruction(status=status)),
        )
        signature = await self.gateway.submit(ledger_instruction, self.identity)
        logger.debug("Message %s marked %s (%s)", message.key, status.value, signature)
        return signature

    @staticmethod
    def _check_size(payload: str) -> None:
        if len(payload.encode("utf-8")) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message exceeds {MAX_MESSAGE_LENGTH} bytes")

    def _open(self, message: Message) -> Message:
        if not message.is_encrypted or self.cipher is None:
            return message

        peer = message.recipient if message.sender == self.identity else message.sender
        try:
            plaintext = self.cipher.decrypt(message.content, peer)
        except ValueError as e:
            logger.warning("Could not decrypt message %s: %s", message.key, e)
            return message
        return message.model_copy(update={"content": plaintext})

    # === Groups ===

    async def create_group(self, name: str, participants: List[str]) -> Group:
        """
        Creates a group with the given participants plus the caller.
        The group id is derived from the creation time and the creator.
        """
        if not name or not name.strip():
            raise ValidationError("Group name cannot be empty")
        for participant in participants:
            identity_to_bytes(participant)

        members = [self.identity]
        for participant in participants:
            if participant not in members:
                members.append(participant)

        created_at = self.clock()
        group = Group(
            id=make_group_id(self.identity, created_at),
            name=name.strip(),
            participants=members,
            created_at=created_at,
            creator=self.identity,
        )

        signature = await self._submit_group(group.id, group.name, group.participants)
        logger.info("Group %s created with signature %s", group.id, signature)
        return group

    async def update_group_members(self, group: Group, participants: List[str]) -> str:
        """
        Replaces the full participant list of an existing group.
        The wire protocol has no incremental add/remove.
        """
        signature = await self._submit_group(group.id, group.name, participants)
        logger.info("Group %s members updated with signature %s", group.id, signature)
        return signature

    async def get_group(self, group_id: str) -> Optional[Group]:
        """Fetches a group by id, or None if it does not exist or cannot be read."""
        address, _ = find_group_address(group_id, self.program_id)
        data = await self.gateway.fetch_account(address)
        if data is None:
            return None

        try:
            group = codec.decode_group(data)
        except DecodeError as e:
            logger.warning("Group account %s is not readable: %s", address, e)
            return None
        return group

    async def list_groups(self, identity: str) -> List[Group]:
        """Lists every group whose participants include identity."""
        accounts = await self.gateway.scan_program_accounts(self.group_account_size)

        groups = [
            record
            for _, record in decode_accounts(accounts, RecordKind.GROUP)
            if isinstance(record, Group) and record.has_member(identity)
        ]
        return sorted(groups, key=lambda group: (group.created_at, group.id))

    async def _submit_group(self, group_id: str, name: str, participants: List[str]) -> str:
        group_address, _ = find_group_address(group_id, self.program_id)
        instruction = CreateGroupInstruction(name=name, participants=participants)
        ledger_instruction = LedgerInstruction(
            program_id=self.program_id,
            accounts=[
                AccountMeta(pubkey=self.identity, is_signer=True, is_writable=True),
                AccountMeta(pubkey=group_address, is_writable=True),
                AccountMeta(pubkey=SYSTEM_PROGRAM_ID),
                AccountMeta(pubkey=RENT_SYSVAR_ID),
            ],
            data=codec.encode(instruction),
        )
        return await self.gateway.submit(ledger_instruction, self.identity)
