#!/usr/bin/env python3
"""
Chain access tests.

Tests for event decoding, the JSON-RPC client and the live subscription
including:
- Raw event decoding
- Historical event ordering
- Websocket message decoding
- Reconnect give-up
"""

import asyncio
import json
import pytest
import requests
from unittest.mock import Mock, patch

from profiles_mirror.indexer.chain import BlockHeader, ChainSubscription, RPCClient
from profiles_mirror.indexer.errors import RPCError, SubscriptionError
from profiles_mirror.indexer.events import (
    INDEXED_EVENTS,
    METADATA_UPDATED,
    REGISTER_GROUP,
    REGISTER_SHORT_NAME,
    EventDecodeError,
    MetadataUpdated,
    NameKind,
    NameRegistered,
    Unrecognized,
    decode_event,
    parse_bytes,
    parse_int,
)

DIGEST_HEX = "0x00" + "ab" * 32


def metadata_event(block, avatar="0xAbC0000000000000000000000000000000000001", digest=DIGEST_HEX):
    return {
        "event": METADATA_UPDATED,
        "values": {
            "avatar": avatar,
            "metadataDigest": digest,
            "blockNumber": hex(block),
            "transactionHash": f"0xtx{block}",
        },
    }


class TestDecodeEvent:

    def test_metadata(self):
        event = decode_event(metadata_event(7))
        assert isinstance(event, MetadataUpdated)
        assert event.address == "0xabc0000000000000000000000000000000000001"
        assert event.digest == bytes([0]) + bytes([0xab]) * 32
        assert event.block_number == 7
        assert event.transaction_hash == "0xtx7"

    def test_group_name(self):
        event = decode_event({"event": REGISTER_GROUP,
                              "values": {"group": "0xG", "name": "Bakers", "blockNumber": 12}})
        assert isinstance(event, NameRegistered)
        assert event.kind is NameKind.GROUP
        assert event.name == "Bakers"
        assert event.address == "0xg"

    def test_short_name_keeps_raw_value(self):
        event = decode_event({"$event": REGISTER_SHORT_NAME, "avatar": "0x1", "shortName": "0x2a",
                              "blockNumber": "3"})
        assert event.kind is NameKind.SHORT_NAME
        assert event.name == "0x2a"
        assert event.block_number == 3

    def test_unknown_event(self):
        event = decode_event({"event": "CrcV2_Trust", "values": {"blockNumber": "0x10"}})
        assert event == Unrecognized(event_name="CrcV2_Trust", block_number=16)

    @pytest.mark.parametrize("raw", [
        "not a dict",
        {"event": METADATA_UPDATED, "values": "nope"},
        {"event": METADATA_UPDATED, "values": {"metadataDigest": DIGEST_HEX, "blockNumber": 1}},
        {"event": METADATA_UPDATED, "values": {"avatar": "0x1", "metadataDigest": "zz", "blockNumber": 1}},
        {"event": METADATA_UPDATED, "values": {"avatar": "0x1", "metadataDigest": DIGEST_HEX}},
    ])
    def test_malformed(self, raw):
        with pytest.raises(EventDecodeError):
            decode_event(raw)

    def test_indexed_events(self):
        assert METADATA_UPDATED in INDEXED_EVENTS
        assert len(INDEXED_EVENTS) == 4


class TestParsers:

    def test_parse_int(self):
        assert parse_int(5) == 5
        assert parse_int("0x10") == 16
        assert parse_int("10") == 10
        with pytest.raises(EventDecodeError):
            parse_int(True)

    def test_parse_bytes(self):
        assert parse_bytes("0x0102") == b"\x01\x02"
        assert parse_bytes([1, 2]) == b"\x01\x02"
        assert parse_bytes(b"\x01") == b"\x01"
        with pytest.raises(EventDecodeError):
            parse_bytes(12)


class TestRPCClient:

    def make_client(self, result=None, error=None):
        client = RPCClient("http://node.example")
        response = Mock()
        response.raise_for_status = Mock()
        response.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": result, "error": error}
        client.session.post = Mock(return_value=response)
        return client

    def test_auth_header(self):
        client = RPCClient("http://node.example", auth_token="secret")
        assert client.session.headers["Authorization"] == "Bearer secret"

    def test_block_number(self):
        assert self.make_client("0x1f").get_block_number() == 31

    def test_rpc_error(self):
        client = self.make_client(error={"code": -32000, "message": "bad"})
        with pytest.raises(RPCError):
            client.get_block_number()

    def test_transport_error(self):
        client = RPCClient("http://node.example")
        client.session.post = Mock(side_effect=requests.ConnectionError("refused"))
        with pytest.raises(RPCError):
            client.call("eth_blockNumber")

    def test_get_block(self):
        client = self.make_client({"number": "0xa", "hash": "0xh10", "parentHash": "0xh9"})
        assert client.get_block(10) == BlockHeader(number=10, hash="0xh10", parent_hash="0xh9")
        assert client.session.post.call_args.kwargs["json"]["params"] == ["0xa", False]

    def test_get_missing_block(self):
        assert self.make_client(None).get_block("latest") is None

    def test_events_returned_ascending(self):
        # the node answers newest first
        raw = [metadata_event(7), metadata_event(5), metadata_event(3)]
        client = self.make_client(raw)

        events = client.get_events(1, 10)

        assert [e.block_number for e in events] == [3, 5, 7]
        params = client.session.post.call_args.kwargs["json"]["params"]
        assert params == [None, 1, 10, INDEXED_EVENTS]

    def test_same_block_keeps_log_order(self):
        raw = [
            {"event": REGISTER_GROUP, "values": {"group": "0x2", "name": "second", "blockNumber": 4}},
            {"event": REGISTER_GROUP, "values": {"group": "0x1", "name": "first", "blockNumber": 4}},
        ]
        events = self.make_client(raw).get_events(1, 10)
        assert [e.name for e in events] == ["first", "second"]

    def test_undecodable_and_unknown_dropped(self):
        raw = [metadata_event(2), {"event": "CrcV2_Trust", "values": {}}, {"event": METADATA_UPDATED}]
        events = self.make_client(raw).get_events(1, 10)
        assert len(events) == 1

    def test_empty_range(self):
        client = self.make_client([])
        assert client.get_events(10, 9) == []
        client.session.post.assert_not_called()


class TestChainSubscription:

    def test_backoff_is_capped(self):
        sub = ChainSubscription("ws://node", reconnect_delay=1, max_delay=8)
        for attempt in range(10):
            delay = sub.backoff(attempt)
            base = min(2 ** attempt, 8)
            assert base <= delay <= base * 1.5

    def test_decode_notification(self):
        sub = ChainSubscription("ws://node")
        message = json.dumps({
            "jsonrpc": "2.0",
            "method": "eth_subscription",
            "params": {"subscription": "0x1", "result": [metadata_event(9), {"event": "CrcV2_Trust"}]},
        })
        events = sub._decode_message(message)
        assert isinstance(events[0], MetadataUpdated)
        assert isinstance(events[1], Unrecognized)

    def test_decode_single_event_result(self):
        sub = ChainSubscription("ws://node")
        message = json.dumps({"params": {"result": metadata_event(9)}})
        assert len(sub._decode_message(message)) == 1

    def test_subscription_ack_ignored(self):
        sub = ChainSubscription("ws://node")
        assert sub._decode_message(json.dumps({"jsonrpc": "2.0", "id": 1, "result": "0xsub"})) == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sub = ChainSubscription("ws://node", reconnect_delay=0, max_delay=0, max_attempts=3)
        connect = Mock(side_effect=OSError("refused"))

        with patch("profiles_mirror.indexer.chain.websockets.connect", connect):
            with pytest.raises(SubscriptionError):
                async for _ in sub:
                    pass

        assert connect.call_count == 3
        assert not sub.connected.is_set()

    @pytest.mark.asyncio
    async def test_handshake_timeout_is_retried(self):
        class StalledHandshake:
            async def __aenter__(self):
                raise asyncio.TimeoutError()

            async def __aexit__(self, *exc):
                return False

        sub = ChainSubscription("ws://node", reconnect_delay=0, max_delay=0, max_attempts=2)
        connect = Mock(return_value=StalledHandshake())

        with patch("profiles_mirror.indexer.chain.websockets.connect", connect):
            with pytest.raises(SubscriptionError):
                async for _ in sub:
                    pass

        assert connect.call_count == 2
