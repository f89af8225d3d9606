"""
Ledger boundary: the gateway contract used by the repository, the wallet
contract used for signing, and a JSON-RPC gateway implementation.
"""

import base64
import itertools
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel

from ledgerchat.core.errors import LedgerUnavailable, SubmissionError

logger = logging.getLogger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
RENT_SYSVAR_ID = "SysvarRent111111111111111111111111111111111"


class AccountMeta(BaseModel):
    """An account referenced by an instruction."""

    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


class LedgerInstruction(BaseModel):
    """A program instruction ready to be wrapped in a transaction and signed."""

    program_id: str
    accounts: List[AccountMeta]
    data: bytes

    @property
    def signer(self) -> Optional[str]:
        return next((meta.pubkey for meta in self.accounts if meta.is_signer), None)


class ILedgerGateway(ABC):
    """
    Abstract interface for the ledger client.
    Submits signed instructions and reads program-owned accounts.
    """

    @abstractmethod
    async def submit(self, instruction: LedgerInstruction, signer: str) -> str:
        """
        Signs and submits the instruction on behalf of signer.
        Returns the transaction signature or raises SubmissionError.
        """
        pass

    @abstractmethod
    async def fetch_account(self, address: str) -> Optional[bytes]:
        """Returns the raw account bytes, or None if the account does not exist."""
        pass

    @abstractmethod
    async def scan_program_accounts(self, approximate_size: int) -> List[Tuple[str, bytes]]:
        """
        Lists (address, bytes) for every program-owned account matching the
        size hint. The hint is advisory; decoding is the authoritative check.
        """
        pass


class IWallet(ABC):
    """Abstract interface for the key holder that signs transactions."""

    @property
    @abstractmethod
    def public_key(self) -> str:
        """Base58 identity of the connected wallet."""
        pass

    @abstractmethod
    async def sign_and_send(self, instruction: LedgerInstruction) -> str:
        """Wraps the instruction in a transaction, signs it, sends it and returns its signature."""
        pass


class RpcLedgerGateway(ILedgerGateway):
    """
    Gateway over the ledger's JSON-RPC API.
    Reads go straight to the RPC node; submissions are delegated to the wallet,
    which owns the keys.
    """

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        wallet: IWallet,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.wallet = wallet
        self.timeout = timeout
        self._transport = transport
        self._ids = itertools.count(1)

    async def submit(self, instruction: LedgerInstruction, signer: str) -> str:
        if signer != self.wallet.public_key:
            raise SubmissionError(f"Connected wallet {self.wallet.public_key} cannot sign for {signer}")

        try:
            signature = await self.wallet.sign_and_send(instruction)
        except SubmissionError:
            raise
        # pylint: disable=broad-exception-caught
        except Exception as e:
            raise SubmissionError(f"Transaction failed: {e}") from e

        logger.info("Submitted instruction to %s, signature %s", instruction.program_id, signature)
        return signature

    async def fetch_account(self, address: str) -> Optional[bytes]:
        result = await self._call("getAccountInfo", [address, {"encoding": "base64"}])
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            return None
        return self._decode_data(value)

    async def scan_program_accounts(self, approximate_size: int) -> List[Tuple[str, bytes]]:
        params = [
            self.program_id,
            {"encoding": "base64", "filters": [{"dataSize": approximate_size}]},
        ]
        result = await self._call("getProgramAccounts", params)
        try:
            return [(entry["pubkey"], self._decode_data(entry["account"])) for entry in result or []]
        except (KeyError, TypeError) as e:
            raise LedgerUnavailable(f"Malformed getProgramAccounts entry: {e!r}") from e

    @staticmethod
    def _decode_data(account: Dict[str, Any]) -> bytes:
        try:
            data, encoding = account["data"]
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerUnavailable(f"Malformed account data: {e!r}") from e
        if encoding != "base64":
            raise LedgerUnavailable(f"Unexpected account encoding {encoding!r}")
        try:
            return base64.b64decode(data, validate=True)
        except (TypeError, ValueError) as e:
            raise LedgerUnavailable(f"Account data is not valid base64: {e}") from e

    async def _call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise LedgerUnavailable(f"{method} failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise LedgerUnavailable(f"{method} returned a non-JSON reply: {e}") from e
        if not isinstance(body, dict):
            raise LedgerUnavailable(f"{method} returned an unexpected reply")
        if "error" in body:
            error = body["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise LedgerUnavailable(f"{method} failed: {message}")
        return body.get("result")
