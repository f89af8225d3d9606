"""In memory presence tracking (who was recently seen active)"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class PresenceTracker:
    """
    Keeps the process-local set of identities seen as active.
    Advisory only: nothing is persisted or shared with other clients.
    """

    # None keeps identities online for the lifetime of the process
    ttl_s: Optional[float] = None
    clock: Callable[[], float] = time.monotonic
    # Mapping identity -> last time it was seen
    last_seen: Dict[str, float] = field(default_factory=dict)

    def mark_online(self, identity: str) -> None:
        """Records that the identity was just seen active."""
        self.last_seen[identity] = self.clock()

    def is_online(self, identity: str) -> bool:
        seen = self.last_seen.get(identity)
        if seen is None:
            return False
        if self.ttl_s is not None and self.clock() - seen > self.ttl_s:
            del self.last_seen[identity]
            return False
        return True

    def online(self) -> List[str]:
        """Returns every identity currently considered online."""
        return [identity for identity in list(self.last_seen) if self.is_online(identity)]
