"""
STUN Unit Tests
===============

[DISCOVERY] Binding request/response codec and discovery against
a local responder.
"""

import asyncio
import os
import struct
import socket

import pytest

from natlink.errors import DiscoveryFailure
from natlink.nat.stun import (
    STUNClient,
    STUNServer,
    MappedAddress,
    STUN_BINDING_REQUEST,
    STUN_BINDING_RESPONSE,
    STUN_MAGIC_COOKIE,
    ATTR_MAPPED_ADDRESS,
    build_binding_request,
    build_binding_response,
    parse_binding_response,
    parse_plain_response,
)


def legacy_response(transaction_id: bytes, ip: str, port: int) -> bytes:
    """Binding Response carrying only MAPPED-ADDRESS."""
    value = struct.pack(">BBH", 0, 1, port) + socket.inet_aton(ip)
    attrs = struct.pack(">HH", ATTR_MAPPED_ADDRESS, len(value)) + value
    header = struct.pack(">HHI", STUN_BINDING_RESPONSE, len(attrs), STUN_MAGIC_COOKIE)
    return header + transaction_id + attrs


# ============================================================================
# Codec Tests
# ============================================================================

class TestCodec:
    """Test STUN message encoding / parsing."""

    def test_binding_request_header(self):
        tid = os.urandom(12)
        request = build_binding_request(tid)

        msg_type, length, cookie = struct.unpack(">HHI", request[:8])
        assert len(request) == 20
        assert msg_type == STUN_BINDING_REQUEST
        assert length == 0
        assert cookie == STUN_MAGIC_COOKIE
        assert request[8:] == tid

    def test_xor_mapped_address(self):
        tid = os.urandom(12)
        response = build_binding_response(tid, ("203.0.113.7", 54321))

        assert parse_binding_response(response, tid) == ("203.0.113.7", 54321)

    def test_legacy_mapped_address(self):
        tid = os.urandom(12)
        response = legacy_response(tid, "198.51.100.4", 4242)

        assert parse_binding_response(response, tid) == ("198.51.100.4", 4242)

    def test_transaction_id_mismatch(self):
        response = build_binding_response(os.urandom(12), ("203.0.113.7", 54321))
        assert parse_binding_response(response, os.urandom(12)) is None

    def test_truncated_response(self):
        tid = os.urandom(12)
        response = build_binding_response(tid, ("203.0.113.7", 54321))

        assert parse_binding_response(response[:10], tid) is None
        assert parse_binding_response(response[:26], tid) is None

    def test_wrong_message_type(self):
        tid = os.urandom(12)
        assert parse_binding_response(build_binding_request(tid), tid) is None

    @pytest.mark.parametrize("data,expected", [
        (b"203.0.113.7", ("203.0.113.7", 0)),
        (b"203.0.113.7:40000\n", ("203.0.113.7", 40000)),
        (b"garbage", None),
        (b"203.0.113.7:port", None),
        (b"\xff\xfe", None),
    ])
    def test_plain_response(self, data, expected):
        assert parse_plain_response(data) == expected


class TestMappedAddress:
    """Test MappedAddress helpers."""

    def test_public_and_nat(self):
        mapped = MappedAddress(ip="8.8.8.8", port=40000, local_ip="192.168.1.5", local_port=35000)

        assert mapped.is_public
        assert mapped.behind_nat
        assert mapped.to_dict()["is_public"] is True

    def test_private_address(self):
        mapped = MappedAddress(ip="192.168.1.5", port=35000, local_ip="192.168.1.5", local_port=35000)

        assert not mapped.is_public
        assert not mapped.behind_nat


# ============================================================================
# Responder / Client Tests
# ============================================================================

class TestSTUNServer:
    """Test the embedded responder."""

    def test_handle_binding_request(self):
        server = STUNServer()
        tid = os.urandom(12)

        response = server.handle_datagram(build_binding_request(tid), ("198.51.100.9", 6000))

        assert parse_binding_response(response, tid) == ("198.51.100.9", 6000)
        assert server.requests_served == 1

    def test_ignores_garbage(self):
        server = STUNServer()

        assert server.handle_datagram(b"hello", ("198.51.100.9", 6000)) is None
        assert server.handle_datagram(b"\x00" * 20, ("198.51.100.9", 6000)) is None
        assert server.requests_served == 0


class TestSTUNClient:
    """Test discovery over loopback."""

    async def test_discover_via_local_responder(self, stun_server):
        client = STUNClient([stun_server.address], timeout=1.0)

        mapped = await client.discover()

        assert mapped.ip == "127.0.0.1"
        assert mapped.port == mapped.local_port
        assert mapped.server == f"127.0.0.1:{stun_server.address[1]}"
        assert not mapped.degraded

    async def test_discover_binds_requested_port(self, stun_server):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.bind(("127.0.0.1", 0))
            port = s.getsockname()[1]

        client = STUNClient([stun_server.address], timeout=1.0)
        mapped = await client.discover(local_port=port)

        assert mapped.port == port

    async def test_falls_through_to_next_server(self, stun_server):
        """Dead first server is skipped."""
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.bind(("127.0.0.1", 0))
            dead = s.getsockname()

        client = STUNClient([dead, stun_server.address], timeout=0.3, retries=0)
        mapped = await client.discover()

        assert mapped.server.endswith(str(stun_server.address[1]))

    async def test_all_servers_fail(self):
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.bind(("127.0.0.1", 0))
            dead = s.getsockname()

        client = STUNClient([dead], timeout=0.2, retries=0)

        with pytest.raises(DiscoveryFailure) as exc_info:
            await client.discover()
        assert exc_info.value.stage == "discovery"
        assert await client.get_mapped_address() is None

    async def test_no_servers_configured(self):
        with pytest.raises(DiscoveryFailure):
            await STUNClient([]).discover()

    async def test_discover_or_local_degrades(self):
        client = STUNClient([], local_port=35000)

        mapped = await client.discover_or_local()

        assert mapped.degraded
        assert mapped.ip == mapped.local_ip
        assert mapped.port == 35000

    async def test_plain_text_reply_keeps_local_port(self):
        """A bare "ip" reply maps to the local port."""
        class PlainResponder(asyncio.DatagramProtocol):
            def connection_made(self, transport):
                self.transport = transport

            def datagram_received(self, data, addr):
                self.transport.sendto(b"198.51.100.77", addr)

        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            PlainResponder, local_addr=("127.0.0.1", 0),
        )
        try:
            client = STUNClient([transport.get_extra_info("sockname")[:2]], timeout=1.0)
            mapped = await client.discover()
        finally:
            transport.close()

        assert mapped.ip == "198.51.100.77"
        assert mapped.port == mapped.local_port
