"""
End-to-End Full Cycle Tests
===========================

[E2E] Two endpoints on loopback go through discovery (local STUN
responder), matchmaking (local rendezvous server) and traversal.
"""

import asyncio
import socket

import pytest

from config import Config, DiscoveryConfig, EndpointConfig
from natlink.client import Endpoint
from natlink.errors import DiscoveryFailure, MatchTimeout, NatlinkError
from natlink.nat.connection import Strategy

from conftest import free_port, closed_tcp_port


def make_endpoint(stun_address, traversal, listen: bool = False, tcp_port: int = 0) -> Endpoint:
    cfg = Config(
        discovery=DiscoveryConfig(stun_servers=[stun_address], timeout=1.0, retries=0),
        traversal=traversal,
        endpoint=EndpointConfig(
            udp_port=free_port(),
            tcp_port=tcp_port or closed_tcp_port(),
            direct_listen=listen,
        ),
    )
    return Endpoint(cfg, local_ip="127.0.0.1")


@pytest.mark.e2e
@pytest.mark.slow
class TestFullCycle:
    """Complete pairing scenarios."""

    async def test_two_endpoints_pair_and_exchange(self, stun_server, rendezvous_server, fast_traversal):
        """Without listeners direct dial fails and both sides punch."""
        a = make_endpoint(stun_server.address, fast_traversal)
        b = make_endpoint(stun_server.address, fast_traversal)

        try:
            conn_a, conn_b = await asyncio.gather(
                a.pair(rendezvous_server.address),
                b.pair(rendezvous_server.address),
            )

            assert conn_a.strategy == Strategy.PUNCH
            assert conn_b.strategy == Strategy.PUNCH
            assert conn_a.peer_id == b.record.id
            assert conn_b.peer_id == a.record.id

            await conn_a.send(b"ping")
            assert await asyncio.wait_for(conn_b.recv(), timeout=2.0) == b"ping"
            await conn_b.send(b"pong")
            assert await asyncio.wait_for(conn_a.recv(), timeout=2.0) == b"pong"

            stats = a.get_stats()
            assert stats["mapped"]["ip"] == "127.0.0.1"
            assert stats["engine"]["by_strategy"]["punch"] == 1
            assert stun_server.requests_served >= 2
        finally:
            await a.close()
            await b.close()

    async def test_two_listening_endpoints_connect_direct(self, stun_server, rendezvous_server, fast_traversal):
        """Endpoints accept on tcp_port during pairing, so direct dial wins."""
        a = make_endpoint(stun_server.address, fast_traversal, listen=True, tcp_port=free_port(socket.SOCK_STREAM))
        b = make_endpoint(stun_server.address, fast_traversal, listen=True, tcp_port=free_port(socket.SOCK_STREAM))

        try:
            conn_a, conn_b = await asyncio.gather(
                a.pair(rendezvous_server.address),
                b.pair(rendezvous_server.address),
            )

            assert conn_a.strategy == Strategy.DIRECT
            assert conn_b.strategy == Strategy.DIRECT
            assert conn_a.peer_id == b.record.id
            assert conn_b.peer_id == a.record.id

            await conn_a.send(b"ping")
            assert await asyncio.wait_for(conn_b.recv(), timeout=2.0) == b"ping"
            await conn_b.send(b"pong")
            assert await asyncio.wait_for(conn_a.recv(), timeout=2.0) == b"pong"

            # Listener lives only for the pairing
            assert not a.engine.is_listening
            assert not b.engine.is_listening
        finally:
            await a.close()
            await b.close()

    async def test_lone_endpoint_times_out(self, stun_server, rendezvous_server, fast_traversal):
        endpoint = make_endpoint(stun_server.address, fast_traversal, listen=True)

        with pytest.raises(MatchTimeout) as exc_info:
            await endpoint.pair(rendezvous_server.address)

        assert exc_info.value.stage == "matchmaking"
        assert not endpoint.engine.is_listening

    async def test_discovery_failure_without_fallback(self, rendezvous_server, fast_traversal):
        cfg = Config(
            discovery=DiscoveryConfig(stun_servers=[("127.0.0.1", free_port())], timeout=0.2, retries=0),
            traversal=fast_traversal,
            endpoint=EndpointConfig(udp_port=free_port(), tcp_port=closed_tcp_port()),
        )
        endpoint = Endpoint(cfg, local_ip="127.0.0.1", allow_local_fallback=False)

        with pytest.raises(NatlinkError) as exc_info:
            await endpoint.pair(rendezvous_server.address)

        assert isinstance(exc_info.value, DiscoveryFailure)
        assert exc_info.value.stage == "discovery"

    async def test_degraded_record_without_stun(self, fast_traversal):
        """No STUN answer: the endpoint announces its local address."""
        cfg = Config(
            discovery=DiscoveryConfig(stun_servers=[("127.0.0.1", free_port())], timeout=0.2, retries=0),
            traversal=fast_traversal,
            endpoint=EndpointConfig(udp_port=free_port(), tcp_port=closed_tcp_port()),
        )
        endpoint = Endpoint(cfg, local_ip="127.0.0.1")

        record = await endpoint.discover()

        assert endpoint.mapped.degraded
        assert record.udp_port == cfg.endpoint.udp_port
        assert record.id == f"{record.public_ip}:{record.udp_port}"
