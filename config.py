"""
natlink Configuration
=====================
Централизованная конфигурация rendezvous сервера, STUN, traversal и relay.

[CONFIG] Адреса серверов и учётные данные relay - это конфигурация,
а не код. Значения берутся из окружения (.env загружается в main.py).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import os
import logging

logger = logging.getLogger(__name__)


def parse_host_port(value: str, default_port: int) -> Tuple[str, int]:
    """
    Парсить "host:port" (порт необязателен).

    Raises:
        ValueError: порт не число или вне 1-65535
    """
    value = value.strip()
    if ":" not in value:
        return value, default_port

    host, port_str = value.rsplit(":", 1)
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range: {port}")
    return host, port


def parse_server_list(value: str, default_port: int) -> List[Tuple[str, int]]:
    """Парсить список серверов через запятую."""
    return [
        parse_host_port(item, default_port)
        for item in value.split(",")
        if item.strip()
    ]


def _env_servers(name: str, default_port: int) -> Optional[List[Tuple[str, int]]]:
    """Список серверов из окружения; None если не задан или некорректен."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return parse_server_list(raw, default_port)
    except ValueError as e:
        logger.warning(f"[CONFIG] Ignoring {name}={raw!r}: {e}")
        return None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


# ============================================================================
# Environment overrides
# ============================================================================

STUN_SERVERS_ENV = _env_servers("NATLINK_STUN_SERVERS", 3478)
RELAY_SERVERS_ENV = _env_servers("NATLINK_RELAY_SERVERS", 3479)
RELAY_USERNAME: str = os.getenv("NATLINK_RELAY_USERNAME", "").strip()
RELAY_PASSWORD: str = os.getenv("NATLINK_RELAY_PASSWORD", "").strip()
MATCH_TIMEOUT: float = _env_float("NATLINK_MATCH_TIMEOUT", 60.0)
POOL_KEY: str = os.getenv("NATLINK_POOL_KEY", "default").strip() or "default"


@dataclass
class RendezvousConfig:
    """Настройки matchmaking сервера."""

    host: str = "0.0.0.0"

    # TCP порт matchmaking
    port: int = _env_int("NATLINK_RENDEZVOUS_PORT", 5000)

    # Пул ожидания по умолчанию (тип игры / канала)
    pool_key: str = POOL_KEY

    # Сколько ждать второго участника (секунды)
    match_timeout: float = MATCH_TIMEOUT

    # Сколько ждать запись после подключения (секунды)
    record_timeout: float = 10.0

    # Максимальная длина строки записи (байты)
    max_record_size: int = 1024

    # Предпочитать пиров, чьи публичные IP в одной /24
    prefer_same_network: bool = False

    # Встроенный STUN ответчик (0 = выключен)
    stun_port: int = _env_int("NATLINK_STUN_PORT", 3478)

    # UDP порт для LAN discovery сервера (0 = выключен)
    beacon_port: int = _env_int("NATLINK_BEACON_PORT", 5001)


@dataclass
class DiscoveryConfig:
    """Настройки STUN."""

    stun_servers: List[Tuple[str, int]] = field(default_factory=lambda: (
        list(STUN_SERVERS_ENV) if STUN_SERVERS_ENV else [
            ("stun.l.google.com", 19302),
            ("stun1.l.google.com", 19302),
            ("stun.cloudflare.com", 3478),
        ]
    ))

    # Таймаут одного запроса (секунды, 2-5)
    timeout: float = 3.0

    # Повторы на один сервер
    retries: int = 1


@dataclass
class TraversalConfig:
    """Бюджеты стратегий HolePunchEngine."""

    # Direct dial (3-5 s)
    direct_timeout: float = 4.0
    direct_retry_interval: float = 0.5

    # Hole punch (5-15 s)
    punch_timeout: float = 10.0
    punch_interval: float = 0.15
    punch_max_syns: int = 60
    strict_port_match: bool = False

    # Relay allocation
    relay_timeout: float = 10.0

    # Общий бюджет одного connect()
    total_timeout: float = 45.0

    # Повторы всего connect() с экспоненциальным backoff
    connect_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 8.0


@dataclass
class RelayConfig:
    """Настройки relay (TURN-подобный fallback)."""

    relay_servers: List[Tuple[str, int]] = field(default_factory=lambda: (
        list(RELAY_SERVERS_ENV) if RELAY_SERVERS_ENV else []
    ))
    username: str = RELAY_USERNAME
    password: str = RELAY_PASSWORD

    # Relay сервер
    host: str = "0.0.0.0"
    port: int = _env_int("NATLINK_RELAY_PORT", 3479)
    max_allocations: int = 100
    allocation_timeout: float = 60.0


@dataclass
class EndpointConfig:
    """Порты узла, анонсируемые в EndpointRecord."""

    udp_port: int = _env_int("NATLINK_UDP_PORT", 35000)
    tcp_port: int = _env_int("NATLINK_TCP_PORT", 35001)

    # Слушать tcp_port на время traversal (приём direct dial)
    direct_listen: bool = True


@dataclass
class Config:
    """Главный конфигурационный класс."""

    rendezvous: RendezvousConfig = field(default_factory=RendezvousConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    traversal: TraversalConfig = field(default_factory=TraversalConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    endpoint: EndpointConfig = field(default_factory=EndpointConfig)


# Глобальный экземпляр конфигурации
config = Config()
