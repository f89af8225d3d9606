"""
Content confidentiality hook.

Key distribution is handled outside this client; the repository only needs
something that turns plaintext into the stored payload for a peer and back.
"""

from abc import ABC, abstractmethod


class IContentCipher(ABC):
    """Abstract interface for sealing message content for a peer."""

    @abstractmethod
    def encrypt(self, plaintext: str, peer: str) -> str:
        """Returns the payload to store on the ledger for the given peer."""
        pass

    @abstractmethod
    def decrypt(self, payload: str, peer: str) -> str:
        """Recovers the plaintext of a stored payload exchanged with peer."""
        pass
