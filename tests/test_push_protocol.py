"""
Unit tests for push channel frames.
"""

import json

from ledgerchat.core.push_protocol import MessageUpdate, SubscribeRequest, parse_inbound


def test_subscribe_request_wire_format():
    wire = SubscribeRequest(wallet="wallet1", group="g1").to_wire()

    assert json.loads(wire) == {"action": "subscribe", "wallet": "wallet1", "group": "g1"}


def test_subscribe_request_without_group():
    assert json.loads(SubscribeRequest(wallet="wallet1").to_wire())["group"] is None


def test_message_update_is_recognised():
    assert parse_inbound('{"type": "MESSAGE_UPDATE"}') == MessageUpdate(type="MESSAGE_UPDATE")
    assert parse_inbound(b'{"type": "MESSAGE_UPDATE", "extra": 1}') is not None


def test_unknown_frames_are_ignored():
    assert parse_inbound('{"type": "PRESENCE"}') is None
    assert parse_inbound("[1, 2, 3]") is None
    assert parse_inbound("{broken") is None
    assert parse_inbound(b"\xff\xfe") is None
