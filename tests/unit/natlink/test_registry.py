"""
RendezvousRegistry Unit Tests
=============================

[MATCHMAKING] Pairing exclusivity, idempotent cancel_wait, pluggable policy.
"""

import asyncio

import pytest

from natlink.errors import RegistrationRejected
from natlink.records import EndpointRecord
from natlink.matchmaking.registry import (
    RendezvousRegistry,
    fifo_policy,
    same_network_policy,
)


def make_record(record_id: str, local_ip: str = "192.168.1.10", public_ip: str = "203.0.113.1") -> EndpointRecord:
    return EndpointRecord.create(local_ip, public_ip, 35000, 35001, record_id=record_id)


class TestRegister:
    """Test register / wait_for_match."""

    async def test_first_record_waits(self):
        registry = RendezvousRegistry()

        assert registry.register(make_record("a")) is None
        assert registry.is_waiting("a")
        assert registry.waiting_count("default") == 1

    async def test_second_record_is_matched(self):
        """Second registrant gets the waiting record; the waiter is notified."""
        registry = RendezvousRegistry()
        a = make_record("a")
        b = make_record("b")

        registry.register(a)
        future = registry.wait_for_match("a")

        peer = registry.register(b)

        assert peer == a
        assert future.done()
        assert future.result() == b
        assert registry.waiting_count() == 0

    async def test_pairs_are_disjoint(self):
        """Each waiting record is handed out at most once."""
        registry = RendezvousRegistry()
        records = [make_record(str(i)) for i in range(6)]

        pairs = []
        for record in records:
            peer = registry.register(record)
            if peer is not None:
                pairs.append((peer.id, record.id))

        assert pairs == [("0", "1"), ("2", "3"), ("4", "5")]
        assert registry.waiting_count() == 0

    async def test_fifo_order(self):
        """Oldest waiter is matched first."""
        registry = RendezvousRegistry()

        registry.register(make_record("old"), pool_key="x")
        peer = registry.register(make_record("new"), pool_key="x")

        assert peer.id == "old"

    async def test_pools_are_separate(self):
        registry = RendezvousRegistry()

        assert registry.register(make_record("a"), pool_key="chess") is None
        assert registry.register(make_record("b"), pool_key="go") is None
        assert registry.waiting_count("chess") == 1
        assert registry.waiting_count("go") == 1

    async def test_duplicate_id_rejected(self):
        registry = RendezvousRegistry()
        registry.register(make_record("a"))

        with pytest.raises(RegistrationRejected):
            registry.register(make_record("a"))

        assert registry.waiting_count() == 1

    async def test_concurrent_registrations_never_share_a_peer(self):
        """Registrations from many tasks still produce disjoint pairs."""
        registry = RendezvousRegistry()

        async def register(i: int):
            await asyncio.sleep(0)
            return i, registry.register(make_record(str(i)))

        results = await asyncio.gather(*(register(i) for i in range(20)))
        handed_out = [peer.id for _, peer in results if peer is not None]

        assert len(handed_out) == 10
        assert len(set(handed_out)) == 10
        assert registry.waiting_count() == 0


class TestCancelWait:
    """Test removal from the pool."""

    async def test_cancel_removes_entry(self):
        registry = RendezvousRegistry()
        registry.register(make_record("a"))
        future = registry.wait_for_match("a")

        assert registry.cancel_wait("a") is True
        assert registry.waiting_count() == 0
        assert future.cancelled()

    async def test_cancel_is_idempotent(self):
        registry = RendezvousRegistry()
        registry.register(make_record("a"))

        assert registry.cancel_wait("a") is True
        assert registry.cancel_wait("a") is False
        assert registry.cancel_wait("never-registered") is False

    async def test_cancel_after_match_is_noop(self):
        """A matched waiter keeps its result."""
        registry = RendezvousRegistry()
        registry.register(make_record("a"))
        future = registry.wait_for_match("a")
        registry.register(make_record("b"))

        assert registry.cancel_wait("a") is False
        assert future.result().id == "b"

    async def test_cancelled_record_is_not_matched(self):
        registry = RendezvousRegistry()
        registry.register(make_record("a"))
        registry.cancel_wait("a")

        assert registry.register(make_record("b")) is None

    async def test_wait_for_unknown_id(self):
        registry = RendezvousRegistry()
        with pytest.raises(KeyError):
            registry.wait_for_match("missing")


class TestPolicies:
    """Test match policies."""

    def test_fifo_skips_self(self):
        a = make_record("a")
        assert fifo_policy(a, [a]) is None

    def test_same_network_prefers_neighbour(self):
        newcomer = make_record("new", local_ip="192.168.1.50")
        far = make_record("far", local_ip="10.0.0.3", public_ip="198.51.100.9")
        near = make_record("near", local_ip="192.168.1.20")

        assert same_network_policy(newcomer, [far, near]) == near

    def test_same_network_matches_public_prefix(self):
        """Neighbouring public addresses in one /24 are preferred."""
        newcomer = make_record("new", public_ip="203.0.113.5")
        far = make_record("far", public_ip="198.51.100.7")
        near = make_record("near", local_ip="10.1.1.1", public_ip="203.0.113.9")

        assert same_network_policy(newcomer, [far, near]) == near

    def test_same_network_ignores_private_prefix(self):
        """Equal LAN ranges behind different public /24s are not neighbours."""
        newcomer = make_record("new", local_ip="192.168.1.50", public_ip="203.0.113.5")
        first = make_record("first", local_ip="10.0.0.3", public_ip="198.51.100.7")
        lan_twin = make_record("twin", local_ip="192.168.1.20", public_ip="192.0.2.44")

        assert same_network_policy(newcomer, [first, lan_twin]) == first

    def test_same_network_falls_back_to_fifo(self):
        newcomer = make_record("new", local_ip="192.168.1.50")
        far = make_record("far", local_ip="10.0.0.3", public_ip="198.51.100.9")

        assert same_network_policy(newcomer, [far]) == far

    async def test_registry_uses_custom_policy(self):
        """Policy decides; None keeps the newcomer waiting."""
        def same_public_ip(record, waiting):
            return next((c for c in waiting if c.public_ip == record.public_ip), None)

        registry = RendezvousRegistry(policy=same_public_ip)
        assert registry.register(make_record("far", local_ip="10.0.0.3", public_ip="198.51.100.9")) is None
        assert registry.register(make_record("near", local_ip="192.168.1.20")) is None

        peer = registry.register(make_record("new", local_ip="192.168.1.50"))

        assert peer.id == "near"
        assert registry.waiting_count() == 1
        assert registry.get_stats()["policy"] == "same_public_ip"
