"""
LAN Beacon - поиск rendezvous сервера в локальной сети
======================================================

[BEACON] Без заранее известного адреса сервера:
1. Узел шлёт broadcast DISCOVER_MESSAGE на порт beacon
2. Сервер отвечает "host:port" своего TCP listener'а
3. Узел подключается к rendezvous по этому адресу
"""

import asyncio
import socket
import logging
from typing import Optional, Tuple

from config import parse_host_port

from ..utils.netinfo import get_local_ip

logger = logging.getLogger(__name__)


DISCOVER_MESSAGE = b"NATLINK_DISCOVER"
BEACON_TIMEOUT = 2.0


class RendezvousBeaconProtocol(asyncio.DatagramProtocol):
    """Протокол для UDP beacon."""

    def __init__(self, beacon: "RendezvousBeacon"):
        self.beacon = beacon
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        if data.strip() != DISCOVER_MESSAGE:
            return
        self.beacon.requests_served += 1
        logger.debug(f"[BEACON] Discovery request from {addr[0]}:{addr[1]}")
        self.transport.sendto(self.beacon.announcement(), addr)


class RendezvousBeacon:
    """
    Ответчик на LAN discovery.

    [USAGE]
    ```python
    beacon = RendezvousBeacon(server_port=5000, port=5001)
    await beacon.start()
    ```
    """

    def __init__(
        self,
        server_port: int,
        port: int = 5001,
        host: str = "0.0.0.0",
        advertised_host: str = "",
    ):
        """
        Args:
            server_port: TCP порт rendezvous сервера (в ответе)
            port: UDP порт beacon
            host: Адрес для прослушивания
            advertised_host: Адрес в ответе (по умолчанию локальный IP)
        """
        self.server_port = server_port
        self.port = port
        self.host = host
        self.advertised_host = advertised_host or get_local_ip()
        self.requests_served = 0
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def address(self) -> Tuple[str, int]:
        if self._transport:
            return self._transport.get_extra_info("sockname")[:2]
        return (self.host, self.port)

    def announcement(self) -> bytes:
        return f"{self.advertised_host}:{self.server_port}".encode("utf-8")

    async def start(self) -> None:
        """Запустить beacon."""
        if self._transport:
            return

        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: RendezvousBeaconProtocol(self),
            local_addr=(self.host, self.port),
            allow_broadcast=True,
        )

        host, port = self.address
        logger.info(f"[BEACON] Listening on {host}:{port}, announcing {self.announcement().decode()}")

    async def stop(self) -> None:
        """Остановить beacon."""
        if self._transport:
            self._transport.close()
            self._transport = None


async def discover_rendezvous_server(
    beacon_port: int = 5001,
    timeout: float = BEACON_TIMEOUT,
    broadcast_addr: str = "<broadcast>",
) -> Optional[Tuple[str, int]]:
    """
    Найти rendezvous сервер в LAN.

    Returns:
        (host, port) сервера или None, если никто не ответил
    """
    loop = asyncio.get_running_loop()

    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setblocking(False)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)

    try:
        sock.bind(("0.0.0.0", 0))
        await loop.sock_sendto(sock, DISCOVER_MESSAGE, (broadcast_addr, beacon_port))

        data, addr = await asyncio.wait_for(loop.sock_recvfrom(sock, 256), timeout=timeout)
        server = parse_host_port(data.decode("utf-8", errors="replace"), 0)

        logger.info(f"[BEACON] Found rendezvous server {server[0]}:{server[1]} (via {addr[0]})")
        return server

    except asyncio.TimeoutError:
        logger.warning(f"[BEACON] No rendezvous server answered on port {beacon_port}")
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"[BEACON] Discovery failed: {e}")
        return None
    finally:
        sock.close()
