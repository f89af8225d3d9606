"""
Module for program address derivation

Records live at addresses computed from fixed seeds, so any party can find a
message or a group without a lookup table. The derivation follows the ledger's
program-address search: hash the seeds with a bump byte and the program id,
and accept the first digest that is not a valid ed25519 point.
"""

import hashlib
from typing import Sequence, Tuple

from ledgerchat.core.errors import AddressDerivationError, InvalidSeed
from ledgerchat.core.models import identity_from_bytes, identity_to_bytes

MAX_SEED_LENGTH = 32
MAX_SEEDS = 16
PDA_MARKER = b"ProgramDerivedAddress"

MESSAGE_NAMESPACE = "message"
GROUP_NAMESPACE = "group"

# ed25519 curve parameters
_P = 2**255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


def is_on_curve(point: bytes) -> bool:
    """
    Checks whether 32 bytes decompress to a point on the ed25519 curve.

    The point is valid when x^2 = (y^2 - 1) / (d*y^2 + 1) has a solution,
    i.e. the ratio is zero or a quadratic residue mod p.
    """
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    if u == 0:
        return True
    x2 = u * pow(v, _P - 2, _P) % _P
    return pow(x2, (_P - 1) // 2, _P) == 1


def create_program_address(seeds: Sequence[bytes], program_id: str) -> str:
    """Hashes the seeds (bump included) into an address. Fails if it lands on the curve."""
    digest = hashlib.sha256()
    for seed in seeds:
        digest.update(seed)
    digest.update(identity_to_bytes(program_id))
    digest.update(PDA_MARKER)
    candidate = digest.digest()

    if is_on_curve(candidate):
        raise AddressDerivationError("Derived address lies on the ed25519 curve")
    return identity_from_bytes(candidate)


def derive(namespace: str, seeds: Sequence[bytes], program_id: str) -> Tuple[str, int]:
    """
    Derive the address for a namespace and its seed components.

    Args:
        namespace (str): UTF-8 tag used as the first seed ("message", "group").
        seeds (Sequence[bytes]): Ordered seed components.
        program_id (str): Base58 address of the owning program.

    Returns:
        Tuple[str, int]: The base58 address and the bump that produced it.
    """
    all_seeds = [namespace.encode("utf-8"), *seeds]

    if len(all_seeds) >= MAX_SEEDS:
        raise InvalidSeed(f"Too many seeds: {len(all_seeds)} (max {MAX_SEEDS - 1} plus bump)")
    for seed in all_seeds:
        if len(seed) > MAX_SEED_LENGTH:
            raise InvalidSeed(f"Seed of {len(seed)} bytes exceeds the {MAX_SEED_LENGTH}-byte limit")

    for bump in range(255, -1, -1):
        try:
            address = create_program_address([*all_seeds, bytes([bump])], program_id)
        except AddressDerivationError:
            continue
        return address, bump

    raise AddressDerivationError(f"No viable bump for namespace {namespace!r}")


def find_message_address(sender: str, recipient: str, timestamp: int, program_id: str) -> Tuple[str, int]:
    """Address of the message sent by sender to recipient at timestamp (epoch ms)."""
    if not 0 <= timestamp < 2**64:
        raise InvalidSeed(f"Timestamp {timestamp} does not fit in 8 bytes")
    return derive(
        MESSAGE_NAMESPACE,
        [identity_to_bytes(sender), identity_to_bytes(recipient), timestamp.to_bytes(8, "big")],
        program_id,
    )


def find_group_address(group_id: str, program_id: str) -> Tuple[str, int]:
    """Address of the group account holding group_id."""
    return derive(GROUP_NAMESPACE, [group_id.encode("utf-8")], program_id)
