"""
STUN - Address Discovery
========================

[STUN] RFC 5389 - Обнаружение публичного адреса:
- Отправляем Binding Request на STUN сервер
- Получаем XOR-MAPPED-ADDRESS (наш публичный IP:port)
- Если сервер не ответил - пробуем следующий по списку

[FALLBACK] Если не ответил ни один сервер:
- discover() поднимает DiscoveryFailure
- discover_or_local() подставляет локальный адрес (degraded, только LAN)
- Запись с пустым публичным адресом в rendezvous не уходит никогда

[RESPONDER] STUNServer - минимальный ответчик на самом rendezvous хосте:
- Отвечает на Binding Request атрибутом XOR-MAPPED-ADDRESS
- Клиент также понимает упрощённый текстовый ответ "ip" или "ip:port"
"""

import asyncio
import ipaddress
import os
import socket
import struct
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, List

from ..errors import DiscoveryFailure
from ..utils.netinfo import get_local_ip

logger = logging.getLogger(__name__)


# STUN Message Types
STUN_BINDING_REQUEST = 0x0001
STUN_BINDING_RESPONSE = 0x0101
STUN_BINDING_ERROR = 0x0111

# STUN Attributes
ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020
ATTR_SOFTWARE = 0x8022

# STUN Magic Cookie (RFC 5389)
STUN_MAGIC_COOKIE = 0x2112A442
STUN_HEADER_SIZE = 20

FAMILY_IPV4 = 0x01

# Timeouts
STUN_TIMEOUT = 3.0  # seconds
STUN_RETRIES = 1

SOFTWARE_NAME = b"natlink"


@dataclass
class MappedAddress:
    """
    Публичный адрес, полученный через STUN.

    [DEGRADED] degraded=True - STUN недоступен, вместо публичного
    подставлен локальный адрес. Traversal будет работать только в LAN.
    """
    ip: str
    port: int
    local_ip: str = ""
    local_port: int = 0
    server: str = ""
    degraded: bool = False

    @property
    def is_public(self) -> bool:
        """Проверить, является ли IP публичным."""
        try:
            return ipaddress.ip_address(self.ip).is_global
        except ValueError:
            return False

    @property
    def behind_nat(self) -> bool:
        return self.ip != self.local_ip or self.port != self.local_port

    def to_dict(self) -> dict:
        return {
            "ip": self.ip,
            "port": self.port,
            "local_ip": self.local_ip,
            "local_port": self.local_port,
            "server": self.server,
            "degraded": self.degraded,
            "is_public": self.is_public,
        }


def build_binding_request(transaction_id: bytes) -> bytes:
    """
    Построить STUN Binding Request.

    [FORMAT]
    0                   1                   2                   3
    0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |0 0|     STUN Message Type     |         Message Length        |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                         Magic Cookie                          |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                     Transaction ID (96 bits)                  |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    """
    header = struct.pack(
        ">HHI",
        STUN_BINDING_REQUEST,
        0,  # No attributes
        STUN_MAGIC_COOKIE,
    )
    return header + transaction_id


def build_binding_response(transaction_id: bytes, addr: Tuple[str, int]) -> bytes:
    """Построить Binding Response с XOR-MAPPED-ADDRESS и SOFTWARE."""
    ip, port = addr
    xor_port = port ^ (STUN_MAGIC_COOKIE >> 16)
    xor_addr = struct.unpack(">I", socket.inet_aton(ip))[0] ^ STUN_MAGIC_COOKIE

    xor_mapped = struct.pack(">BBHI", 0, FAMILY_IPV4, xor_port, xor_addr)
    attributes = struct.pack(">HH", ATTR_XOR_MAPPED_ADDRESS, len(xor_mapped)) + xor_mapped

    software = SOFTWARE_NAME + b"\x00" * (-len(SOFTWARE_NAME) % 4)
    attributes += struct.pack(">HH", ATTR_SOFTWARE, len(SOFTWARE_NAME)) + software

    header = struct.pack(">HHI", STUN_BINDING_RESPONSE, len(attributes), STUN_MAGIC_COOKIE)
    return header + transaction_id + attributes


def parse_xor_mapped_address(
    data: bytes,
    transaction_id: bytes,
) -> Tuple[Optional[str], Optional[int]]:
    """
    Парсить XOR-MAPPED-ADDRESS атрибут.

    [FORMAT]
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |x x x x x x x x|    Family     |         X-Port                |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                X-Address (Variable)                           |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    """
    if len(data) < 8:
        return None, None

    family = data[1]
    xor_port = struct.unpack(">H", data[2:4])[0]
    port = xor_port ^ (STUN_MAGIC_COOKIE >> 16)

    if family == FAMILY_IPV4:
        xor_addr = struct.unpack(">I", data[4:8])[0]
        addr = xor_addr ^ STUN_MAGIC_COOKIE
        ip = socket.inet_ntoa(struct.pack(">I", addr))
        return ip, port

    # IPv6 not implemented
    return None, None


def parse_mapped_address(data: bytes) -> Tuple[Optional[str], Optional[int]]:
    """Парсить MAPPED-ADDRESS атрибут (legacy)."""
    if len(data) < 8:
        return None, None

    family = data[1]
    port = struct.unpack(">H", data[2:4])[0]

    if family == FAMILY_IPV4:
        ip = socket.inet_ntoa(data[4:8])
        return ip, port

    return None, None


def parse_binding_response(
    data: bytes,
    expected_transaction_id: bytes,
) -> Optional[Tuple[str, int]]:
    """
    Парсить STUN Binding Response.

    Returns:
        (ip, port) или None если ответ не наш / повреждён
    """
    if len(data) < STUN_HEADER_SIZE:
        return None

    msg_type, msg_length, magic_cookie = struct.unpack(">HHI", data[:8])
    transaction_id = data[8:20]

    if msg_type != STUN_BINDING_RESPONSE:
        logger.debug(f"[STUN] Unexpected message type: 0x{msg_type:04x}")
        return None

    if magic_cookie != STUN_MAGIC_COOKIE:
        logger.debug(f"[STUN] Invalid magic cookie: 0x{magic_cookie:08x}")
        return None

    if transaction_id != expected_transaction_id:
        logger.debug("[STUN] Transaction ID mismatch")
        return None

    offset = STUN_HEADER_SIZE
    end = min(len(data), STUN_HEADER_SIZE + msg_length)
    mapped_ip = None
    mapped_port = None

    while offset + 4 <= end:
        attr_type, attr_length = struct.unpack(">HH", data[offset:offset + 4])
        offset += 4

        if offset + attr_length > end:
            break

        attr_value = data[offset:offset + attr_length]

        if attr_type == ATTR_XOR_MAPPED_ADDRESS:
            # XOR-MAPPED-ADDRESS (preferred)
            mapped_ip, mapped_port = parse_xor_mapped_address(attr_value, transaction_id)
        elif attr_type == ATTR_MAPPED_ADDRESS and not mapped_ip:
            mapped_ip, mapped_port = parse_mapped_address(attr_value)

        # Align to 4 bytes
        offset += attr_length + (-attr_length % 4)

    if mapped_ip and mapped_port:
        return mapped_ip, mapped_port

    return None


def parse_plain_response(data: bytes) -> Optional[Tuple[str, int]]:
    """
    Парсить упрощённый текстовый ответ "ip" или "ip:port".

    Returns:
        (ip, port) - port = 0 если сервер прислал только IP
    """
    try:
        text = data.decode("ascii").strip()
    except UnicodeDecodeError:
        return None

    host, _, port_str = text.partition(":")
    try:
        ip = str(ipaddress.IPv4Address(host))
        port = int(port_str) if port_str else 0
    except ValueError:
        return None

    if not 0 <= port <= 65535:
        return None
    return ip, port


class STUNClient:
    """
    STUN Client для обнаружения публичного адреса.

    [USAGE]
    ```python
    client = STUNClient([("stun.example.org", 3478)])
    mapped = await client.discover()
    print(f"Public: {mapped.ip}:{mapped.port}")
    ```
    """

    def __init__(
        self,
        stun_servers: Optional[List[Tuple[str, int]]] = None,
        local_port: int = 0,
        timeout: float = STUN_TIMEOUT,
        retries: int = STUN_RETRIES,
    ):
        """
        Args:
            stun_servers: Упорядоченный список STUN серверов [(host, port), ...]
            local_port: Локальный порт для привязки (0 = случайный)
            timeout: Таймаут одного запроса
            retries: Повторы на один сервер
        """
        self.stun_servers = list(stun_servers or [])
        self.local_port = local_port
        self.timeout = timeout
        self.retries = retries

    async def discover(
        self,
        stun_server: Optional[Tuple[str, int]] = None,
        local_port: Optional[int] = None,
    ) -> MappedAddress:
        """
        Получить публичный адрес.

        Args:
            stun_server: Предпочтительный сервер (пробуется первым)
            local_port: Порт для привязки (или self.local_port)

        Raises:
            DiscoveryFailure: ни один сервер не ответил
        """
        servers = list(self.stun_servers)
        if stun_server:
            servers = [stun_server] + [s for s in servers if s != stun_server]

        if not servers:
            raise DiscoveryFailure("No STUN servers configured")

        port = self.local_port if local_port is None else local_port
        errors = []

        # Пробуем STUN серверы по очереди
        for stun_host, stun_port in servers:
            try:
                result = await self._query_stun(stun_host, stun_port, port)
            except OSError as e:
                logger.debug(f"[STUN] {stun_host}:{stun_port} failed: {e}")
                errors.append(f"{stun_host}:{stun_port}: {e}")
                continue

            if result:
                logger.info(
                    f"[STUN] Mapped address: {result.ip}:{result.port} "
                    f"(via {stun_host}:{stun_port})"
                )
                return result
            errors.append(f"{stun_host}:{stun_port}: no valid response")

        logger.warning("[STUN] All servers failed")
        raise DiscoveryFailure("All STUN servers failed: " + "; ".join(errors))

    async def get_mapped_address(
        self,
        local_port: Optional[int] = None,
    ) -> Optional[MappedAddress]:
        """То же, что discover(), но None вместо исключения."""
        try:
            return await self.discover(local_port=local_port)
        except DiscoveryFailure:
            return None

    async def discover_or_local(
        self,
        local_port: Optional[int] = None,
    ) -> MappedAddress:
        """
        Публичный адрес или локальный (degraded), если STUN недоступен.
        """
        try:
            return await self.discover(local_port=local_port)
        except DiscoveryFailure as e:
            port = self.local_port if local_port is None else local_port
            local_ip = get_local_ip()
            logger.warning(f"[STUN] {e}; falling back to local address {local_ip} (LAN only)")
            return MappedAddress(
                ip=local_ip,
                port=port,
                local_ip=local_ip,
                local_port=port,
                degraded=True,
            )

    async def _query_stun(
        self,
        stun_host: str,
        stun_port: int,
        local_port: int = 0,
    ) -> Optional[MappedAddress]:
        """Отправить Binding Request и дождаться ответа."""
        loop = asyncio.get_running_loop()

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        try:
            sock.bind(("0.0.0.0", local_port))
            actual_local_port = sock.getsockname()[1]

            transaction_id = os.urandom(12)
            request = build_binding_request(transaction_id)

            # Резолвим адрес STUN сервера
            infos = await loop.getaddrinfo(
                stun_host, stun_port,
                family=socket.AF_INET, type=socket.SOCK_DGRAM,
            )
            stun_addr = infos[0][4]

            for attempt in range(self.retries + 1):
                await loop.sock_sendto(sock, request, stun_addr)

                try:
                    data, addr = await asyncio.wait_for(
                        loop.sock_recvfrom(sock, 1024),
                        timeout=self.timeout,
                    )
                except asyncio.TimeoutError:
                    if attempt < self.retries:
                        logger.debug(f"[STUN] Retry {attempt + 1}/{self.retries}")
                    continue

                mapped = parse_binding_response(data, transaction_id)
                if mapped is None:
                    mapped = parse_plain_response(data)
                    if mapped and mapped[1] == 0:
                        # Текстовый ответ без порта: порт считаем неизменным
                        mapped = (mapped[0], actual_local_port)

                if mapped:
                    return MappedAddress(
                        ip=mapped[0],
                        port=mapped[1],
                        local_ip=get_local_ip(),
                        local_port=actual_local_port,
                        server=f"{stun_host}:{stun_port}",
                    )

                logger.debug(f"[STUN] Malformed response from {addr}")

            return None

        finally:
            sock.close()


class STUNServerProtocol(asyncio.DatagramProtocol):
    """Протокол STUN ответчика."""

    def __init__(self, server: "STUNServer"):
        self.server = server
        self.transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport) -> None:
        self.transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        response = self.server.handle_datagram(data, addr)
        if response and self.transport:
            self.transport.sendto(response, addr)


class STUNServer:
    """
    Минимальный STUN ответчик (Binding Request -> XOR-MAPPED-ADDRESS).

    [DEPLOYMENT] Запускается рядом с rendezvous сервером, чтобы узлам
    не нужен был внешний STUN.
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 3478):
        self.host = host
        self.port = port
        self._transport: Optional[asyncio.DatagramTransport] = None
        self.requests_served = 0

    @property
    def address(self) -> Tuple[str, int]:
        if self._transport:
            return self._transport.get_extra_info("sockname")[:2]
        return (self.host, self.port)

    async def start(self) -> None:
        """Запустить ответчик."""
        if self._transport:
            return

        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: STUNServerProtocol(self),
            local_addr=(self.host, self.port),
        )
        logger.info(f"[STUN] Responder listening on {self.address[0]}:{self.address[1]}")

    async def stop(self) -> None:
        if self._transport:
            self._transport.close()
            self._transport = None
            logger.info("[STUN] Responder stopped")

    def handle_datagram(self, data: bytes, addr: Tuple[str, int]) -> Optional[bytes]:
        """Обработать запрос; None - молча игнорировать."""
        if len(data) < STUN_HEADER_SIZE:
            return None

        msg_type, _, magic_cookie = struct.unpack(">HHI", data[:8])
        if msg_type != STUN_BINDING_REQUEST or magic_cookie != STUN_MAGIC_COOKIE:
            return None

        self.requests_served += 1
        logger.debug(f"[STUN] Binding request from {addr[0]}:{addr[1]}")
        return build_binding_response(data[8:20], addr)
