"""Wallet Provider, resolves the wallet that signs for a chat session."""

import base64
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from ledgerchat.config.settings import settings
from ledgerchat.core.errors import SubmissionError
from ledgerchat.core.models import identity_to_bytes
from ledgerchat.services.ledger import IWallet, LedgerInstruction

logger = logging.getLogger(__name__)


class IWalletProvider(ABC):
    """
    Abstract interface for the wallet provider.
    """

    @abstractmethod
    async def connect(self, public_key: str) -> IWallet:
        """
        Returns a wallet able to sign for public_key,
        or raises ValidationError for a malformed key.
        """
        pass


class RemoteSignerWallet(IWallet):
    """
    Wallet whose keys live in an external signer (a wallet extension bridge
    or a local signing daemon). Each instruction is posted to the signer,
    which builds the transaction, signs it, sends it and answers with the
    transaction signature.
    """

    def __init__(
        self,
        public_key: str,
        signer_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._public_key = public_key
        self.signer_url = signer_url
        self.timeout = timeout
        self._transport = transport

    @property
    def public_key(self) -> str:
        return self._public_key

    async def sign_and_send(self, instruction: LedgerInstruction) -> str:
        payload = {
            "signer": self._public_key,
            "program_id": instruction.program_id,
            "accounts": [meta.model_dump() for meta in instruction.accounts],
            "data": base64.b64encode(instruction.data).decode("ascii"),
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self.signer_url, json=payload)
                response.raise_for_status()
                signature = response.json()["signature"]
            except httpx.HTTPError as e:
                raise SubmissionError(f"Signer unreachable: {e}") from e
            except (ValueError, KeyError, TypeError) as e:
                raise SubmissionError(f"Malformed signer response: {e}") from e

        logger.debug("Signer returned signature %s", signature)
        return str(signature)


class RemoteSignerWalletProvider(IWalletProvider):
    """
    Wallet provider backed by the external signer at signer_url.
    No key material ever reaches this process.
    """

    def __init__(self, signer_url: str, timeout: float = 10.0):
        self.signer_url = signer_url
        self.timeout = timeout

    async def connect(self, public_key: str) -> IWallet:
        identity_to_bytes(public_key)
        logger.info("Connecting wallet %s through signer %s", public_key, self.signer_url)
        return RemoteSignerWallet(public_key, self.signer_url, timeout=self.timeout)


# Create a singleton for Wallet provider
current_wallet_provider: IWalletProvider = RemoteSignerWalletProvider(
    settings.signer_url, timeout=settings.rpc_timeout_s
)
