"""
Outbound message pipeline.

Each send is one attempt: composing -> submitting -> confirmed | failed.
Failed attempts are kept as pending retries keyed by a fingerprint until the
user retries or dismisses them. The pipeline never retries on its own.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ledgerchat.core.errors import RetryInProgress, RetryNotFound, SubmissionError
from ledgerchat.core.models import ConversationTarget, PendingRetry, now_ms
from ledgerchat.services.repository import RecordRepository

logger = logging.getLogger(__name__)


class SendState(Enum):
    COMPOSING = "composing"
    SUBMITTING = "submitting"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class SendAttempt:
    """Outcome of one submission."""

    content: str
    target: ConversationTarget
    is_encrypted: bool = False
    state: SendState = SendState.COMPOSING
    signature: Optional[str] = None
    fingerprint: Optional[str] = None


class SendPipeline:
    """Sends messages and owns the pending-retry entries of failed sends."""

    def __init__(
        self,
        repository: RecordRepository,
        submission_timeout_s: Optional[float] = 60.0,
        on_confirmed: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.repository = repository
        self.submission_timeout_s = submission_timeout_s
        self.on_confirmed = on_confirmed
        self.clock = clock
        self._pending: Dict[str, PendingRetry] = {}
        self._retrying: Set[str] = set()
        self._sequence = itertools.count(1)

    def fingerprint(self, content: str, target: ConversationTarget, submitted_at: int) -> str:
        """
        Key of a failed send: content prefix, recipient prefix and submission time.
        The trailing local sequence number keeps two failures in the same
        millisecond apart.
        """
        return f"{content[:10]}_{target.label[:5]}_{submitted_at}_{next(self._sequence)}"

    def pending(self) -> List[PendingRetry]:
        """Failed sends awaiting a retry or a dismissal, oldest first."""
        return list(self._pending.values())

    def get_pending(self, fingerprint: str) -> PendingRetry:
        entry = self._pending.get(fingerprint)
        if entry is None:
            raise RetryNotFound(f"No failed message with fingerprint {fingerprint!r}")
        return entry

    async def send(self, target: ConversationTarget, content: str, encrypted: bool = False) -> SendAttempt:
        """
        Submits one message.
        Validation errors are raised before any I/O and leave no retry entry.
        On submission failure a retry entry is stored and the error re-raised.
        """
        attempt = SendAttempt(content=content, target=target, is_encrypted=encrypted)
        # Fail fast on malformed input, nothing is recorded for it
        self.repository.validate_message(target, content)

        submitted_at = self.clock()
        try:
            await self._submit(attempt)
        except SubmissionError as e:
            fingerprint = self.fingerprint(content, target, submitted_at)
            attempt.fingerprint = fingerprint
            e.fingerprint = fingerprint
            self._pending[fingerprint] = PendingRetry(
                fingerprint=fingerprint,
                content=content,
                target=target,
                is_encrypted=encrypted,
                failed_at=self.clock(),
                error=str(e),
            )
            logger.error("Failed to send message to %s (retry key %s): %s", target.label, fingerprint, e)
            raise

        await self._after_confirmed()
        return attempt

    async def retry(self, fingerprint: str) -> SendAttempt:
        """
        Re-submits a failed send with its original content and target.
        The retry gets a fresh timestamp, so it is a new message on the ledger.
        The entry stays stored until the retry is confirmed. If the retry fails
        again, or is interrupted, it is kept under the same fingerprint.
        """
        entry = self.get_pending(fingerprint)
        if fingerprint in self._retrying:
            raise RetryInProgress(f"Retry of {fingerprint!r} is already in progress")

        attempt = SendAttempt(
            content=entry.content,
            target=entry.target,
            is_encrypted=entry.is_encrypted,
            fingerprint=fingerprint,
        )
        self._retrying.add(fingerprint)
        try:
            await self._submit(attempt)
        except SubmissionError as e:
            # A dismissal during the submission wins over the failure
            if fingerprint in self._pending:
                self._pending[fingerprint] = entry.model_copy(update={"failed_at": self.clock(), "error": str(e)})
            e.fingerprint = fingerprint
            logger.error("Retry %s failed: %s", fingerprint, e)
            raise
        finally:
            self._retrying.discard(fingerprint)

        self._pending.pop(fingerprint, None)
        logger.info("Retry %s succeeded", fingerprint)
        await self._after_confirmed()
        return attempt

    def dismiss(self, fingerprint: str) -> PendingRetry:
        """Drops a failed send without retrying it."""
        entry = self._pending.pop(fingerprint, None)
        if entry is None:
            raise RetryNotFound(f"No failed message with fingerprint {fingerprint!r}")
        return entry

    async def _submit(self, attempt: SendAttempt) -> None:
        attempt.state = SendState.SUBMITTING
        try:
            attempt.signature = await asyncio.wait_for(
                self.repository.send_message(attempt.target, attempt.content, attempt.is_encrypted),
                timeout=self.submission_timeout_s,
            )
        except asyncio.TimeoutError as e:
            attempt.state = SendState.FAILED
            raise SubmissionError(f"Submission not confirmed within {self.submission_timeout_s}s") from e
        except SubmissionError:
            attempt.state = SendState.FAILED
            raise
        attempt.state = SendState.CONFIRMED

    async def _after_confirmed(self) -> None:
        # The re-list always follows the confirmed submission
        if self.on_confirmed is not None:
            await self.on_confirmed()
