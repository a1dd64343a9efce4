"""
natlink Test Configuration
==========================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, loopback sockets only, fast
- Integration tests: Real rendezvous / relay servers on localhost
- E2E tests: Full pairing cycle (STUN + rendezvous + traversal)

[FIXTURES]
- fast_traversal: TraversalConfig with short budgets
- record_factory: EndpointRecord on loopback with fresh ports
- stun_server / rendezvous_server / relay_server: servers on random ports

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
    pytest tests/e2e/           # End-to-end tests
"""

import sys
import socket
import inspect
import logging
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, Optional

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from config import TraversalConfig
from natlink.records import EndpointRecord
from natlink.nat.stun import STUNServer
from natlink.nat.relay import RelayServer
from natlink.matchmaking.server import RendezvousServer


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "e2e: End-to-end tests (full stack)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        path = str(item.fspath)
        if "/unit/" in path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in path:
            item.add_marker(pytest.mark.e2e)

        # Mark async tests
        if inspect.iscoroutinefunction(getattr(item, "obj", None)):
            item.add_marker(pytest.mark.asyncio)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Silence noisy loggers during tests
    logging.getLogger("asyncio").setLevel(logging.WARNING)


# ============================================================================
# Network Helpers
# ============================================================================

def free_port(kind: int = socket.SOCK_DGRAM) -> int:
    """Свободный порт на loopback (UDP по умолчанию)."""
    with socket.socket(socket.AF_INET, kind) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def closed_tcp_port() -> int:
    """TCP порт, на котором никто не слушает (connect -> refused)."""
    return free_port(socket.SOCK_STREAM)


@pytest.fixture(scope="function")
def record_factory() -> Callable[..., EndpointRecord]:
    """
    Factory for loopback EndpointRecords.

    Each record gets its own free UDP port and a TCP port nobody listens on.
    """
    def _create(
        record_id: str = "",
        local_ip: str = "127.0.0.1",
        public_ip: str = "127.0.0.1",
        udp_port: Optional[int] = None,
        tcp_port: Optional[int] = None,
    ) -> EndpointRecord:
        return EndpointRecord.create(
            local_ip=local_ip,
            public_ip=public_ip,
            udp_port=udp_port or free_port(),
            tcp_port=tcp_port or closed_tcp_port(),
            record_id=record_id,
        )

    return _create


@pytest.fixture(scope="function")
def fast_traversal() -> TraversalConfig:
    """Short strategy budgets for tests."""
    return TraversalConfig(
        direct_timeout=0.3,
        direct_retry_interval=0.05,
        punch_timeout=2.0,
        punch_interval=0.05,
        punch_max_syns=40,
        relay_timeout=2.0,
        total_timeout=6.0,
        connect_attempts=2,
        backoff_base=0.01,
        backoff_max=0.05,
    )


# ============================================================================
# Server Fixtures
# ============================================================================

@pytest_asyncio.fixture(scope="function")
async def stun_server() -> AsyncGenerator[STUNServer, None]:
    """STUN responder on a random loopback port."""
    server = STUNServer("127.0.0.1", 0)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture(scope="function")
async def rendezvous_server() -> AsyncGenerator[RendezvousServer, None]:
    """Rendezvous server with a short match timeout."""
    server = RendezvousServer(
        host="127.0.0.1",
        port=0,
        match_timeout=1.0,
        record_timeout=1.0,
    )
    await server.start()
    yield server
    await server.stop()


RELAY_USERS: Dict[str, str] = {"alice": "s3cret"}


@pytest_asyncio.fixture(scope="function")
async def relay_server() -> AsyncGenerator[RelayServer, None]:
    """Relay with one configured user."""
    server = RelayServer(host="127.0.0.1", port=0, credentials=RELAY_USERS)
    await server.start()
    yield server
    await server.stop()
