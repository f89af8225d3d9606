"""
Group membership management.

Every change is a read-modify-write of the whole participant list: fetch the
group, check the invariants, submit the complete new list. The cycle is not
isolated. If two members change the same group concurrently, the last
submission wins and the other change is silently lost.
"""

import logging
from typing import List

from ledgerchat.core.errors import (
    AlreadyMember,
    LastMemberViolation,
    NotAuthorized,
    NotFound,
    NotMember,
)
from ledgerchat.core.models import Group, identity_to_bytes
from ledgerchat.services.repository import RecordRepository

logger = logging.getLogger(__name__)


class GroupMembershipManager:
    """Adds and removes group participants on behalf of the connected identity."""

    def __init__(self, repository: RecordRepository):
        self.repository = repository

    @property
    def caller(self) -> str:
        return self.repository.identity

    async def add_member(self, group_id: str, new_identity: str) -> Group:
        """
        Adds new_identity to the group.

        Raises:
            NotFound: the group does not exist.
            NotAuthorized: the caller is not a participant.
            AlreadyMember: new_identity is already a participant.
        """
        identity_to_bytes(new_identity)
        group = await self._load(group_id)

        if not group.has_member(self.caller):
            raise NotAuthorized("Only group members can add new participants")
        if group.has_member(new_identity):
            raise AlreadyMember(f"{new_identity} is already a member of {group_id}")

        return await self._replace(group, [*group.participants, new_identity])

    async def remove_member(self, group_id: str, identity: str) -> Group:
        """
        Removes identity from the group.

        Raises:
            NotFound: the group does not exist.
            NotAuthorized: the caller is not a participant.
            NotMember: identity is not a participant.
            LastMemberViolation: the group would be left without participants.
        """
        group = await self._load(group_id)

        if not group.has_member(self.caller):
            raise NotAuthorized("Only group members can remove participants")
        if not group.has_member(identity):
            raise NotMember(f"{identity} is not a member of {group_id}")

        remaining = [p for p in group.participants if p != identity]
        if not remaining:
            raise LastMemberViolation(f"Cannot remove the last member of {group_id}")

        return await self._replace(group, remaining)

    async def _load(self, group_id: str) -> Group:
        group = await self.repository.get_group(group_id)
        if group is None:
            raise NotFound(f"Group {group_id} not found")
        return group

    async def _replace(self, group: Group, participants: List[str]) -> Group:
        await self.repository.update_group_members(group, participants)
        logger.info("Group %s now has %d participants", group.id, len(participants))
        return group.model_copy(update={"participants": participants})
