"""
Relay Unit Tests
================

[RELAY] Frame codec, authentication, pairing and forwarding.
"""

import asyncio
import socket

import pytest

from natlink.errors import RelayUnavailable, TraversalError
from natlink.records import EndpointRecord
from natlink.nat.relay import (
    RelayServer,
    RelayClient,
    RelayCredentials,
    RelayMessageType,
    encode_frame,
    read_frame,
    session_key_for,
)


GOOD = RelayCredentials("alice", "s3cret")


# ============================================================================
# Codec Tests
# ============================================================================

class TestFrames:
    """Test frame encoding."""

    async def test_frame_roundtrip(self):
        reader = asyncio.StreamReader()
        reader.feed_data(encode_frame(RelayMessageType.DATA, "peer-1", b"payload"))
        reader.feed_eof()

        assert await read_frame(reader) == (RelayMessageType.DATA, "peer-1", b"payload")

    async def test_bad_magic(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"XXXX" + b"\x05\x00\x00\x00")
        reader.feed_eof()

        assert await read_frame(reader) is None

    async def test_truncated_frame(self):
        reader = asyncio.StreamReader()
        reader.feed_data(encode_frame(RelayMessageType.DATA, "p", b"payload")[:-3])
        reader.feed_eof()

        assert await read_frame(reader) is None

    def test_payload_limit(self):
        with pytest.raises(ValueError):
            encode_frame(RelayMessageType.DATA, "p", b"x" * 70000)

    def test_credentials_encoding(self):
        assert RelayCredentials.decode(GOOD.encode()) == GOOD
        assert RelayCredentials.decode(b"bob:pa:ss") == RelayCredentials("bob", "pa:ss")


class TestSessionKey:
    """Both peers derive the same key."""

    def test_symmetric(self):
        a = EndpointRecord.create("192.168.1.2", "203.0.113.1", 35000, 35001, record_id="a")
        b = EndpointRecord.create("10.0.0.2", "198.51.100.1", 36000, 36001, record_id="b")

        assert session_key_for(a, b) == session_key_for(b, a)
        assert len(session_key_for(a, b)) == 32

    def test_distinct_pairs(self):
        a = EndpointRecord.create("192.168.1.2", "203.0.113.1", 35000, 35001)
        b = EndpointRecord.create("10.0.0.2", "198.51.100.1", 36000, 36001)
        c = EndpointRecord.create("10.0.0.3", "198.51.100.2", 36000, 36001)

        assert session_key_for(a, b) != session_key_for(a, c)


# ============================================================================
# Server / Client Tests
# ============================================================================

class TestAllocation:
    """Test ALLOCATE handling."""

    async def test_allocate_with_credentials(self, relay_server):
        client = RelayClient("peer-a")
        try:
            address = await client.allocate(relay_server.address, GOOD, timeout=2.0)

            host, port = relay_server.address
            assert address.startswith(f"{host}:{port}/")
            assert client.is_connected
            assert client.server_address == relay_server.address
            assert relay_server.get_stats()["allocations"] == 1
        finally:
            await client.disconnect()

    async def test_wrong_password_rejected(self, relay_server):
        client = RelayClient("peer-a")

        with pytest.raises(RelayUnavailable) as exc_info:
            await client.allocate(relay_server.address, RelayCredentials("alice", "wrong"), timeout=2.0)

        assert "Authentication failed" in str(exc_info.value)
        assert not client.is_connected
        assert relay_server.rejected_allocations == 1

    async def test_missing_credentials_rejected(self, relay_server):
        with pytest.raises(RelayUnavailable):
            await RelayClient("peer-a").allocate(relay_server.address, None, timeout=2.0)

    async def test_open_relay_accepts_anyone(self):
        server = RelayServer(host="127.0.0.1", port=0)
        await server.start()
        client = RelayClient("peer-a")
        try:
            await client.allocate(server.address, None, timeout=2.0)
            assert client.is_connected
        finally:
            await client.disconnect()
            await server.stop()

    async def test_unreachable_relay(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            closed = s.getsockname()

        with pytest.raises(RelayUnavailable) as exc_info:
            await RelayClient("peer-a").allocate(closed, GOOD, timeout=1.0)

        assert isinstance(exc_info.value, TraversalError)

    async def test_capacity_limit(self):
        server = RelayServer(host="127.0.0.1", port=0, max_allocations=1)
        await server.start()
        first = RelayClient("a")
        try:
            await first.allocate(server.address, None, timeout=2.0)
            with pytest.raises(RelayUnavailable):
                await RelayClient("b").allocate(server.address, None, timeout=2.0)
        finally:
            await first.disconnect()
            await server.stop()


class TestForwarding:
    """Test BIND pairing and DATA forwarding."""

    async def test_forward_between_pair(self, relay_server):
        a, b = RelayClient("peer-a"), RelayClient("peer-b")
        try:
            await a.allocate(relay_server.address, GOOD, timeout=2.0)
            await b.allocate(relay_server.address, GOOD, timeout=2.0)

            await a.bind("session-1")
            await b.bind("session-1")
            assert await a.wait_paired(timeout=2.0)
            assert await b.wait_paired(timeout=2.0)
            assert a.partner_id == "peer-b"

            await a.send(b"ping")
            assert await asyncio.wait_for(b.recv(), timeout=2.0) == b"ping"

            await b.send(b"pong")
            assert await asyncio.wait_for(a.recv(), timeout=2.0) == b"pong"

            assert relay_server.total_bytes_relayed >= 4
        finally:
            await a.disconnect()
            await b.disconnect()

    async def test_data_before_partner_is_buffered(self, relay_server):
        a, b = RelayClient("peer-a"), RelayClient("peer-b")
        try:
            await a.allocate(relay_server.address, GOOD, timeout=2.0)
            await a.bind("session-2")
            await a.send(b"early")

            await b.allocate(relay_server.address, GOOD, timeout=2.0)
            await b.bind("session-2")

            assert await asyncio.wait_for(b.recv(), timeout=2.0) == b"early"
        finally:
            await a.disconnect()
            await b.disconnect()

    async def test_different_sessions_not_paired(self, relay_server):
        a, b = RelayClient("peer-a"), RelayClient("peer-b")
        try:
            await a.allocate(relay_server.address, GOOD, timeout=2.0)
            await b.allocate(relay_server.address, GOOD, timeout=2.0)
            await a.bind("one")
            await b.bind("two")

            assert not await a.wait_paired(timeout=0.3)
            assert relay_server.get_stats()["waiting_sessions"] == 2
        finally:
            await a.disconnect()
            await b.disconnect()

    async def test_partner_disconnect_closes_recv(self, relay_server):
        a, b = RelayClient("peer-a"), RelayClient("peer-b")
        try:
            await a.allocate(relay_server.address, GOOD, timeout=2.0)
            await b.allocate(relay_server.address, GOOD, timeout=2.0)
            await a.bind("session-3")
            await b.bind("session-3")
            await a.wait_paired(timeout=2.0)

            await b.disconnect()

            with pytest.raises(ConnectionError):
                await asyncio.wait_for(a.recv(), timeout=2.0)
            assert not a.is_connected
        finally:
            await a.disconnect()

    async def test_send_without_allocation(self):
        with pytest.raises(ConnectionError):
            await RelayClient("peer-a").send(b"x")
