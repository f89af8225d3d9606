"""
Define the chat records (messages, groups, instructions) to ensure
consistency between the codec, the repository and the services.
"""

import time
from enum import Enum
from typing import Annotated, ClassVar, List, Optional, Union

import base58
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, model_validator

from ledgerchat.core.errors import StatusRegression, ValidationError

IDENTITY_LENGTH = 32
MAX_MESSAGE_LENGTH = 1024


def identity_to_bytes(identity: str) -> bytes:
    """Decodes a base58 identity into its 32 raw bytes."""
    try:
        raw = base58.b58decode(identity)
    except ValueError as e:
        raise ValidationError(f"Invalid address format: {identity!r}") from e

    if len(raw) != IDENTITY_LENGTH:
        raise ValidationError(f"Invalid address format: {identity!r} is {len(raw)} bytes, expected 32")
    return raw


def identity_from_bytes(raw: bytes) -> str:
    """Encodes 32 raw bytes as a base58 identity."""
    if len(raw) != IDENTITY_LENGTH:
        raise ValidationError(f"Identity must be 32 bytes, got {len(raw)}")
    return base58.b58encode(raw).decode("ascii")


def _check_identity(value: str) -> str:
    identity_to_bytes(value)
    return value


Identity = Annotated[str, AfterValidator(_check_identity)]


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class MessageStatus(str, Enum):
    """Delivery status of a message, in its only allowed order."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, other: "MessageStatus") -> bool:
        """True for forward moves and for the same status (a no-op)."""
        return other.rank >= self.rank


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class Message(BaseModel):
    """A direct or group message as stored in its ledger account."""

    model_config = ConfigDict(frozen=True)

    sender: Identity
    recipient: Identity
    content: str
    timestamp: int = Field(ge=0, lt=2**64)
    is_encrypted: bool = False
    group_id: Optional[str] = None
    status: MessageStatus = MessageStatus.SENT

    @model_validator(mode="after")
    def _check_parties(self) -> "Message":
        # Group messages carry the group's derived address in the recipient slot
        if self.group_id is None and self.sender == self.recipient:
            raise ValueError("sender and recipient must differ for a direct message")
        return self

    @property
    def key(self) -> str:
        """Local bookkeeping key, unique per sender and send time."""
        return f"{self.sender}_{self.timestamp}"

    def with_status(self, status: MessageStatus) -> "Message":
        """Returns a copy with the status advanced. Never moves backwards."""
        if not self.status.can_advance_to(status):
            raise StatusRegression(f"Cannot move message {self.key} from {self.status.value} to {status.value}")
        return self.model_copy(update={"status": status})


def make_group_id(creator: str, created_at: int) -> str:
    """Group ids are derived from the creation time and the creator's address."""
    return f"group_{created_at}_{creator[:8]}"


class Group(BaseModel):
    """A group chat as stored in its ledger account."""

    id: str
    name: str
    participants: List[Identity]
    created_at: int = Field(ge=0, lt=2**64)
    creator: Identity

    @model_validator(mode="after")
    def _check_participants(self) -> "Group":
        if not self.participants:
            raise ValueError("a group needs at least one participant")
        if len(set(self.participants)) != len(self.participants):
            raise ValueError("group participants must be unique")
        return self

    def has_member(self, identity: str) -> bool:
        return identity in self.participants


class ConversationTarget(BaseModel):
    """Where a message goes: exactly one of a recipient or a group."""

    model_config = ConfigDict(frozen=True)

    recipient: Optional[Identity] = None
    group_id: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "ConversationTarget":
        if (self.recipient is None) == (self.group_id is None):
            raise ValueError("specify either a recipient or a group, not both")
        if self.group_id is not None and not self.group_id.strip():
            raise ValueError("group id cannot be empty")
        return self

    @classmethod
    def direct(cls, recipient: str) -> "ConversationTarget":
        return cls(recipient=recipient)

    @classmethod
    def group(cls, group_id: str) -> "ConversationTarget":
        return cls(group_id=group_id)

    @property
    def is_group(self) -> bool:
        return self.group_id is not None

    @property
    def label(self) -> str:
        return self.group_id if self.group_id is not None else str(self.recipient)


class PendingRetry(BaseModel):
    """A send that failed at submission, kept until retried or dismissed."""

    fingerprint: str
    content: str
    target: ConversationTarget
    is_encrypted: bool = False
    failed_at: int
    error: str = ""


# === Instructions ===


class SendMessageInstruction(BaseModel):
    VARIANT: ClassVar[int] = 0

    content: str
    timestamp: int = Field(ge=0, lt=2**64)
    is_encrypted: bool = False
    group_id: Optional[str] = None


class CreateGroupInstruction(BaseModel):
    """Creates a group, or replaces the full participant list of an existing one."""

    VARIANT: ClassVar[int] = 1

    name: str
    participants: List[Identity]


class UpdateMessageStatusInstruction(BaseModel):
    VARIANT: ClassVar[int] = 2

    status: MessageStatus


Instruction = Union[SendMessageInstruction, CreateGroupInstruction, UpdateMessageStatusInstruction]
