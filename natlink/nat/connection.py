"""
Connection - результат traversal
================================

[CONNECTION] Установленное соединение с пиром, помеченное стратегией:
- DIRECT: TCP поток к публичному адресу пира
- PUNCH: UDP сокет, "пробитый" через оба NAT
- RELAY: поток через relay сервер

[CAPABILITIES] Вызывающий код ветвится по гарантиям, а не по типу сокета:
- transport: STREAM (байтовый поток) или DATAGRAM (сообщения)
- ordered / reliable: гарантии доставки

После возврата соединение принадлежит приложению; engine за него
больше не отвечает.
"""

import asyncio
import socket
import time
import logging
from enum import Enum
from typing import Tuple, Dict, Any

logger = logging.getLogger(__name__)


class Strategy(Enum):
    """Стратегия, которой получено соединение."""
    DIRECT = "direct"
    PUNCH = "punch"
    RELAY = "relay"


class TransportKind(Enum):
    """Характер транспорта."""
    STREAM = "stream"
    DATAGRAM = "datagram"


MAX_DATAGRAM_SIZE = 65507


class Connection:
    """Базовый класс соединения с пиром."""

    strategy: Strategy
    transport: TransportKind

    def __init__(self, peer_id: str, remote_addr: Tuple[str, int], latency_ms: float = 0):
        self.peer_id = peer_id
        self.remote_addr = remote_addr
        self.latency_ms = latency_ms
        self.established_at = time.time()
        self._closed = False

    @property
    def ordered(self) -> bool:
        return self.transport == TransportKind.STREAM

    @property
    def reliable(self) -> bool:
        return self.transport == TransportKind.STREAM

    @property
    def is_open(self) -> bool:
        return not self._closed

    async def send(self, data: bytes) -> None:
        raise NotImplementedError

    async def recv(self) -> bytes:
        raise NotImplementedError

    async def close(self) -> None:
        self._closed = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "strategy": self.strategy.value,
            "transport": self.transport.value,
            "remote": f"{self.remote_addr[0]}:{self.remote_addr[1]}",
            "ordered": self.ordered,
            "reliable": self.reliable,
            "latency_ms": self.latency_ms,
            "established_at": self.established_at,
        }

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.strategy.value}/{self.transport.value} "
            f"{self.remote_addr[0]}:{self.remote_addr[1]}>"
        )


class StreamConnection(Connection):
    """TCP соединение (direct dial)."""

    strategy = Strategy.DIRECT
    transport = TransportKind.STREAM

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer_id: str = "",
        latency_ms: float = 0,
    ):
        super().__init__(peer_id, writer.get_extra_info("peername")[:2], latency_ms)
        self.reader = reader
        self.writer = writer

    async def send(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def recv(self, max_bytes: int = 65536) -> bytes:
        return await self.reader.read(max_bytes)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


class DatagramConnection(Connection):
    """UDP сокет, привязанный к пробитому адресу пира."""

    strategy = Strategy.PUNCH
    transport = TransportKind.DATAGRAM

    def __init__(
        self,
        sock: socket.socket,
        remote_addr: Tuple[str, int],
        peer_id: str = "",
        latency_ms: float = 0,
        ignore_prefix: bytes = b"",
    ):
        super().__init__(peer_id, remote_addr, latency_ms)
        self.socket = sock
        # Запоздавшие маркеры punch не должны попасть в приложение
        self.ignore_prefix = ignore_prefix

    @property
    def local_addr(self) -> Tuple[str, int]:
        return self.socket.getsockname()[:2]

    async def send(self, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        await loop.sock_sendto(self.socket, data, self.remote_addr)

    async def recv(self) -> bytes:
        """Следующая датаграмма от пира (чужие отбрасываются)."""
        loop = asyncio.get_running_loop()
        while True:
            data, addr = await loop.sock_recvfrom(self.socket, MAX_DATAGRAM_SIZE)
            if addr[:2] != self.remote_addr:
                logger.debug(f"[CONN] Dropped datagram from unexpected {addr}")
                continue
            if self.ignore_prefix and data.startswith(self.ignore_prefix):
                continue
            return data

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.socket.close()


class RelayedConnection(Connection):
    """
    Соединение через relay.

    Relay сохраняет порядок (TCP до relay), но сообщения могут теряться,
    если пир ещё не подключился, а буфер relay переполнен.
    """

    strategy = Strategy.RELAY
    transport = TransportKind.DATAGRAM

    def __init__(self, client, relay_address: str, peer_id: str = ""):
        super().__init__(peer_id, client.server_address)
        self.client = client
        self.relay_address = relay_address

    @property
    def ordered(self) -> bool:
        return True

    @property
    def is_open(self) -> bool:
        return not self._closed and self.client.is_connected

    async def send(self, data: bytes) -> None:
        await self.client.send(data)

    async def recv(self) -> bytes:
        return await self.client.recv()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.client.disconnect()

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["relay_address"] = self.relay_address
        return data
