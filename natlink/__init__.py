"""
natlink - rendezvous и NAT traversal
====================================
Два узла за NAT находят друг друга через rendezvous сервер
и устанавливают соединение:
- Discovery: публичный адрес через STUN
- Matchmaking: обмен EndpointRecord через rendezvous сервер
- Traversal: direct dial, UDP hole punch, relay
"""

from .errors import (
    NatlinkError,
    DiscoveryFailure,
    MatchmakingError,
    RegistrationRejected,
    MatchTimeout,
    TraversalError,
    SelfConnectionError,
    DuplicateConnectionError,
    TraversalFailure,
    RelayUnavailable,
    TraversalExhausted,
)
from .records import EndpointRecord
from .nat import (
    STUNClient,
    STUNServer,
    Connection,
    Strategy,
    HolePunchEngine,
    RelayServer,
    RelayClient,
)
from .matchmaking import RendezvousRegistry, RendezvousServer
from .client import Endpoint, RendezvousClient

__version__ = "0.1.0"

__all__ = [
    "NatlinkError",
    "DiscoveryFailure",
    "MatchmakingError",
    "RegistrationRejected",
    "MatchTimeout",
    "TraversalError",
    "SelfConnectionError",
    "DuplicateConnectionError",
    "TraversalFailure",
    "RelayUnavailable",
    "TraversalExhausted",
    "EndpointRecord",
    "STUNClient",
    "STUNServer",
    "Connection",
    "Strategy",
    "HolePunchEngine",
    "RelayServer",
    "RelayClient",
    "RendezvousRegistry",
    "RendezvousServer",
    "Endpoint",
    "RendezvousClient",
]
