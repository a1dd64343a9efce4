"""
NAT Traversal Module
====================

Установление соединения между двумя узлами за NAT:
- STUN: Обнаружение публичного адреса
- Hole Punching: кооперативный UDP hole punch
- Relay: TURN-подобный fallback через relay сервер
- Engine: Порядок стратегий, guard'ы и бюджеты

[CONNECTION PRIORITY]
1. Direct (TCP на публичный адрес пира)
2. Hole Punch (UDP, пробы на публичный и локальный адрес)
3. Relay (через relay сервер с учётными данными)
"""

from .stun import STUNClient, STUNServer, MappedAddress
from .connection import (
    Connection,
    Strategy,
    TransportKind,
    StreamConnection,
    DatagramConnection,
    RelayedConnection,
)
from .hole_punch import UDPHolePuncher, HolePunchResult, PunchResult
from .relay import RelayServer, RelayClient, RelayCredentials, session_key_for
from .engine import HolePunchEngine, EngineState, backoff_delay

__all__ = [
    # STUN
    "STUNClient",
    "STUNServer",
    "MappedAddress",
    # Connections
    "Connection",
    "Strategy",
    "TransportKind",
    "StreamConnection",
    "DatagramConnection",
    "RelayedConnection",
    # Hole Punch
    "UDPHolePuncher",
    "HolePunchResult",
    "PunchResult",
    # Relay
    "RelayServer",
    "RelayClient",
    "RelayCredentials",
    "session_key_for",
    # Engine
    "HolePunchEngine",
    "EngineState",
    "backoff_delay",
]
