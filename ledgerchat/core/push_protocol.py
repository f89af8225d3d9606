"""
Typed messages exchanged over the push channel.

Outbound: a subscription naming the wallet and the selected group.
Inbound: MESSAGE_UPDATE notifications. Any other shape is ignored.
"""

import json
import logging
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class SubscribeRequest(BaseModel):
    """Sent on every (re)connect and whenever the selected group changes."""

    action: Literal["subscribe"] = "subscribe"
    wallet: str
    group: Optional[str] = None

    def to_wire(self) -> str:
        return self.model_dump_json()


class MessageUpdate(BaseModel):
    """Notification that message accounts changed for the subscribed scope."""

    type: Literal["MESSAGE_UPDATE"]


def parse_inbound(raw: str | bytes) -> Optional[MessageUpdate]:
    """Returns the typed notification, or None for anything unrecognised."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.debug("Ignoring non-JSON push frame: %r", raw)
        return None

    if not isinstance(payload, dict):
        return None

    try:
        return MessageUpdate(**payload)
    except ValidationError:
        logger.debug("Ignoring push frame of unknown shape: %s", payload)
        return None
