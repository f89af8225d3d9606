"""
Binary codec for chat records.

The same bytes are read by the on-ledger program, so field order and widths
are fixed: u32 little-endian length prefixes for strings and vectors, u64
little-endian integers, strict 0/1 bytes for booleans and option tags, and
32 raw bytes per identity.
"""

import struct
from enum import Enum
from typing import List, Optional, Union

from ledgerchat.core.errors import DecodeError
from ledgerchat.core.models import (
    CreateGroupInstruction,
    Group,
    IDENTITY_LENGTH,
    Instruction,
    Message,
    MessageStatus,
    SendMessageInstruction,
    UpdateMessageStatusInstruction,
    identity_from_bytes,
    identity_to_bytes,
)

Record = Union[Message, Group, SendMessageInstruction, CreateGroupInstruction, UpdateMessageStatusInstruction]


class RecordKind(Enum):
    """Kinds of byte layouts the codec understands."""

    MESSAGE = "message"
    GROUP = "group"
    INSTRUCTION = "instruction"


class _Writer:
    def __init__(self) -> None:
        self._buf = bytearray()

    def u8(self, value: int) -> None:
        self._buf += struct.pack("<B", value)

    def u32(self, value: int) -> None:
        self._buf += struct.pack("<I", value)

    def u64(self, value: int) -> None:
        self._buf += struct.pack("<Q", value)

    def boolean(self, value: bool) -> None:
        self.u8(1 if value else 0)

    def string(self, value: str) -> None:
        raw = value.encode("utf-8")
        self.u32(len(raw))
        self._buf += raw

    def identity(self, value: str) -> None:
        self._buf += identity_to_bytes(value)

    def identities(self, values: List[str]) -> None:
        self.u32(len(values))
        for value in values:
            self.identity(value)

    def optional_string(self, value: Optional[str]) -> None:
        if value is None:
            self.u8(0)
        else:
            self.u8(1)
            self.string(value)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._pos = 0

    def _take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise DecodeError(f"Buffer truncated: need {size} bytes at offset {self._pos}, have {len(self._data) - self._pos}")
        chunk = bytes(self._data[self._pos : end])
        self._pos = end
        return chunk

    def u8(self) -> int:
        return struct.unpack("<B", self._take(1))[0]

    def u32(self) -> int:
        return struct.unpack("<I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def boolean(self) -> bool:
        value = self.u8()
        if value not in (0, 1):
            raise DecodeError(f"Invalid bool byte {value} at offset {self._pos - 1}")
        return value == 1

    def string(self) -> str:
        raw = self._take(self.u32())
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 string: {e}") from e

    def identity(self) -> str:
        return identity_from_bytes(self._take(IDENTITY_LENGTH))

    def identities(self) -> List[str]:
        count = self.u32()
        # Reject absurd lengths before looping over a foreign buffer
        if count * IDENTITY_LENGTH > self.remaining:
            raise DecodeError(f"Buffer truncated: {count} identities declared, {self.remaining} bytes left")
        return [self.identity() for _ in range(count)]

    def optional_string(self) -> Optional[str]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag == 1:
            return self.string()
        raise DecodeError(f"Invalid option tag {tag} at offset {self._pos - 1}")

    def status(self) -> MessageStatus:
        raw = self.string()
        try:
            return MessageStatus(raw)
        except ValueError as e:
            raise DecodeError(f"Unknown message status {raw!r}") from e

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos


# === Encoding ===


def encode_message(message: Message) -> bytes:
    """Message account layout."""
    w = _Writer()
    w.boolean(True)
    w.identity(message.sender)
    w.identity(message.recipient)
    w.string(message.content)
    w.u64(message.timestamp)
    w.boolean(message.is_encrypted)
    w.string(message.status.value)
    w.optional_string(message.group_id)
    return w.getvalue()


def encode_group(group: Group) -> bytes:
    """Group account layout."""
    w = _Writer()
    w.boolean(True)
    w.string(group.id)
    w.string(group.name)
    w.identities(group.participants)
    w.u64(group.created_at)
    w.identity(group.creator)
    return w.getvalue()


def encode_instruction(instruction: Instruction) -> bytes:
    """Instruction data: the variant byte first, then the variant's fields."""
    w = _Writer()
    w.u8(instruction.VARIANT)

    if isinstance(instruction, SendMessageInstruction):
        w.string(instruction.content)
        w.u64(instruction.timestamp)
        w.boolean(instruction.is_encrypted)
        w.optional_string(instruction.group_id)
    elif isinstance(instruction, CreateGroupInstruction):
        w.string(instruction.name)
        w.identities(instruction.participants)
    elif isinstance(instruction, UpdateMessageStatusInstruction):
        w.string(instruction.status.value)
    else:
        raise TypeError(f"Unsupported instruction type: {type(instruction).__name__}")

    return w.getvalue()


def encode(record: Record) -> bytes:
    """Encodes any chat record into its wire bytes."""
    if isinstance(record, Message):
        return encode_message(record)
    if isinstance(record, Group):
        return encode_group(record)
    return encode_instruction(record)


# === Decoding ===


def _check_initialized(r: _Reader) -> None:
    if not r.boolean():
        raise DecodeError("Account is not initialized")


# Account records are built without the models' business rules. Other
# clients may store self-sends or repeated participants, and those records
# must still decode. Field types are already guaranteed by the reader.


def decode_message(data: bytes) -> Message:
    r = _Reader(data)
    _check_initialized(r)
    return Message.model_construct(
        sender=r.identity(),
        recipient=r.identity(),
        content=r.string(),
        timestamp=r.u64(),
        is_encrypted=r.boolean(),
        status=r.status(),
        group_id=r.optional_string(),
    )


def decode_group(data: bytes) -> Group:
    r = _Reader(data)
    _check_initialized(r)
    return Group.model_construct(
        id=r.string(),
        name=r.string(),
        participants=r.identities(),
        created_at=r.u64(),
        creator=r.identity(),
    )


def decode_instruction(data: bytes) -> Instruction:
    r = _Reader(data)
    variant = r.u8()

    instruction: Instruction
    if variant == SendMessageInstruction.VARIANT:
        instruction = SendMessageInstruction(
            content=r.string(),
            timestamp=r.u64(),
            is_encrypted=r.boolean(),
            group_id=r.optional_string(),
        )
    elif variant == CreateGroupInstruction.VARIANT:
        instruction = CreateGroupInstruction(name=r.string(), participants=r.identities())
    elif variant == UpdateMessageStatusInstruction.VARIANT:
        instruction = UpdateMessageStatusInstruction(status=r.status())
    else:
        raise DecodeError(f"Unknown instruction variant {variant}")

    # Instruction data is sized exactly, unlike over-allocated accounts
    if r.remaining:
        raise DecodeError(f"{r.remaining} unexpected bytes after instruction data")
    return instruction


_DECODERS: dict = {
    RecordKind.MESSAGE: decode_message,
    RecordKind.GROUP: decode_group,
    RecordKind.INSTRUCTION: decode_instruction,
}


def decode(kind: RecordKind, data: bytes) -> Record:
    """
    Decodes bytes as the given record kind.

    Account kinds ignore trailing bytes (ledger accounts are allocated larger
    than their content). Raises DecodeError when the layout is inconsistent.
    """
    return _DECODERS[kind](data)
