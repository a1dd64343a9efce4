"""
Matchmaking Module
==================

Rendezvous сервер: узлы присылают свои EndpointRecord,
сервер сводит их попарно и возвращает каждому запись пира.
"""

from .registry import RendezvousRegistry, fifo_policy, same_network_policy, DEFAULT_POOL
from .server import RendezvousServer, SessionState
from .beacon import RendezvousBeacon, discover_rendezvous_server

__all__ = [
    "RendezvousRegistry",
    "fifo_policy",
    "same_network_policy",
    "DEFAULT_POOL",
    "RendezvousServer",
    "SessionState",
    "RendezvousBeacon",
    "discover_rendezvous_server",
]
