"""
Error taxonomy shared by every layer.

Validation and authorization errors are raised before any submission.
DecodeError never reaches the user: batch scans log it and skip the record.
"""

from typing import Optional


class ChatError(Exception):
    """Base class for every error raised by the chat client."""


class ValidationError(ChatError, ValueError):
    """Malformed identity, empty content or target, oversize content."""


class InvalidSeed(ValidationError):
    """A derivation seed is too long, or too many seeds were given."""


class AddressDerivationError(ChatError):
    """No bump produced an off-curve address."""


class AuthorizationError(ChatError):
    """The caller is not allowed to perform the operation."""


class NotAuthorized(AuthorizationError):
    """Only existing group participants may change the membership."""


class InvariantViolation(ChatError):
    """The operation would break a record invariant."""


class AlreadyMember(InvariantViolation):
    pass


class NotMember(InvariantViolation):
    pass


class LastMemberViolation(InvariantViolation):
    """Removing the member would leave the group without participants."""


class StatusRegression(InvariantViolation):
    """Message status can only move forward: sent -> delivered -> read."""


class RetryInProgress(InvariantViolation):
    """A retry of the same failed send is still being submitted."""


class NotFound(ChatError):
    pass


class RetryNotFound(NotFound):
    """No pending retry is stored under the given fingerprint."""


class SubmissionError(ChatError):
    """The ledger rejected, or failed to confirm, a submitted instruction."""

    def __init__(self, message: str, fingerprint: Optional[str] = None):
        super().__init__(message)
        # Set by the send pipeline when the failed send was kept for retry
        self.fingerprint = fingerprint


class DecodeError(ChatError):
    """Bytes do not match the layout of the requested record kind."""


class ChannelError(ChatError):
    """The push channel failed. Never fatal: the client falls back to polling."""


class LedgerUnavailable(ChatError):
    """A ledger read failed (transport error or RPC error response)."""
