"""
Shared fixtures built on the test doubles in tests.fakes.
"""

# pylint: disable=redefined-outer-name

import pytest

from ledgerchat.services.repository import RecordRepository
from tests.fakes import PROGRAM_ID, FakeClock, FakeLedger


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def ledger(clock) -> FakeLedger:
    return FakeLedger(PROGRAM_ID, clock)


@pytest.fixture
def make_repo(ledger, clock):
    """Factory for a repository acting as the given identity on the shared ledger."""

    def factory(identity: str, **kwargs) -> RecordRepository:
        return RecordRepository(ledger, PROGRAM_ID, identity, clock=clock, **kwargs)

    return factory
