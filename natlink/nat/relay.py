"""
Relay - последний резерв, когда direct и hole punch не сработали
================================================================

[RELAY] TURN-подобная схема без внешних зависимостей:
1. Клиент подключается к relay и запрашивает allocation (с учётными данными)
2. Relay выдаёт адрес allocation ("host:port/N")
3. Оба пира делают BIND с одинаковым ключом сессии
4. Relay пересылает DATA между двумя allocation с одним ключом

[SESSION KEY] Ключ выводится из обеих EndpointRecord, поэтому пиры
выбирают один и тот же ключ без дополнительной сигнализации.

[BUFFERING] DATA, отправленные до BIND партнёра, буферизуются
(не более MAX_PENDING_FRAMES) и пересылаются при соединении пары.

[MESSAGE FORMAT]
+-------+--------+-------------+-------------+---------+---------+
| Magic | Type   | Peer ID len | Payload len | Peer ID | Payload |
| 4     | 1      | 1           | 2           | ...     | ...     |
+-------+--------+-------------+-------------+---------+---------+
"""

import asyncio
import hashlib
import hmac
import struct
import time
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional, Dict, List, Tuple, Deque

from ..errors import RelayUnavailable
from ..records import EndpointRecord

logger = logging.getLogger(__name__)


# Protocol constants
RELAY_MAGIC = b"NLRY"  # 4 bytes
HEADER_SIZE = 8


class RelayMessageType(IntEnum):
    ALLOCATE = 1       # Запрос allocation (payload = "user:password")
    ALLOCATE_ACK = 2   # Адрес allocation
    BIND = 3           # Присоединиться к сессии (payload = session key)
    BIND_ACK = 4       # Пара собрана
    DATA = 5           # Данные для пересылки
    PING = 6           # Keep-alive
    PONG = 7           # Ответ на ping
    DISCONNECT = 8     # Отключение
    ERROR = 9          # Ошибка


# Limits
MAX_ALLOCATIONS = 100
MAX_PAYLOAD_SIZE = 65535
MAX_PENDING_FRAMES = 64
ALLOCATION_TIMEOUT = 60.0  # Секунды до удаления неактивной allocation
PING_INTERVAL = 20.0
CLEANUP_INTERVAL = 30.0


@dataclass(frozen=True)
class RelayCredentials:
    """Учётные данные relay (берутся из конфигурации)."""
    username: str
    password: str

    def encode(self) -> bytes:
        return f"{self.username}:{self.password}".encode("utf-8")

    @classmethod
    def decode(cls, payload: bytes) -> "RelayCredentials":
        username, _, password = payload.decode("utf-8", errors="replace").partition(":")
        return cls(username, password)


def session_key_for(a: EndpointRecord, b: EndpointRecord) -> str:
    """Ключ сессии пары - одинаковый с обеих сторон."""
    parts = sorted((a.to_wire().strip(), b.to_wire().strip()))
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:32]


def encode_frame(msg_type: RelayMessageType, peer_id: str, payload: bytes) -> bytes:
    """Упаковать сообщение relay."""
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"Relay payload too large: {len(payload)}")

    peer_id_bytes = peer_id.encode("utf-8")[:255]
    header = (
        RELAY_MAGIC +
        bytes([msg_type.value]) +
        bytes([len(peer_id_bytes)]) +
        struct.pack(">H", len(payload))
    )
    return header + peer_id_bytes + payload


async def read_frame(
    reader: asyncio.StreamReader,
    timeout: Optional[float] = None,
) -> Optional[Tuple[RelayMessageType, str, bytes]]:
    """
    Прочитать сообщение relay.

    Returns:
        (type, peer_id, payload) или None при EOF / таймауте / мусоре
    """
    try:
        header = await asyncio.wait_for(reader.readexactly(HEADER_SIZE), timeout=timeout)

        if header[:4] != RELAY_MAGIC:
            return None

        msg_type = RelayMessageType(header[4])
        peer_id_len = header[5]
        payload_len = struct.unpack(">H", header[6:8])[0]

        peer_id = ""
        if peer_id_len > 0:
            peer_id = (await reader.readexactly(peer_id_len)).decode("utf-8", errors="replace")

        payload = b""
        if payload_len > 0:
            payload = await reader.readexactly(payload_len)

        return msg_type, peer_id, payload

    except (asyncio.TimeoutError, asyncio.IncompleteReadError, ConnectionError, ValueError):
        return None


async def write_frame(
    writer: asyncio.StreamWriter,
    msg_type: RelayMessageType,
    peer_id: str,
    payload: bytes,
) -> bool:
    """Отправить сообщение; False если соединение уже разорвано."""
    try:
        writer.write(encode_frame(msg_type, peer_id, payload))
        await writer.drain()
        return True
    except (ConnectionError, OSError) as e:
        logger.debug(f"[RELAY] Send error: {e}")
        return False


@dataclass
class Allocation:
    """Allocation одного клиента на relay."""
    allocation_id: int
    peer_id: str
    relay_address: str
    writer: asyncio.StreamWriter
    session_key: Optional[str] = None
    partner: Optional["Allocation"] = None
    pending: Deque[bytes] = field(default_factory=lambda: deque(maxlen=MAX_PENDING_FRAMES))
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    bytes_relayed: int = 0

    def touch(self) -> None:
        self.last_activity = time.time()

    def is_stale(self, timeout: float) -> bool:
        return time.time() - self.last_activity > timeout


class RelayServer:
    """
    Relay сервер - пересылка трафика между парами allocation.

    [USAGE]
    ```python
    relay = RelayServer(port=3479, credentials={"user": "secret"})
    await relay.start()
    ```
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 3479,
        credentials: Optional[Dict[str, str]] = None,
        max_allocations: int = MAX_ALLOCATIONS,
        allocation_timeout: float = ALLOCATION_TIMEOUT,
        node_id: str = "relay",
    ):
        """
        Args:
            host: Адрес для прослушивания
            port: Порт для прослушивания (0 = случайный)
            credentials: username -> password; пусто = без авторизации
            max_allocations: Максимум одновременных allocation
            allocation_timeout: Время жизни неактивной allocation
            node_id: ID relay в ответах
        """
        self.host = host
        self.port = port
        self.credentials = dict(credentials or {})
        self.max_allocations = max_allocations
        self.allocation_timeout = allocation_timeout
        self.node_id = node_id

        self._allocations: Dict[int, Allocation] = {}
        self._sessions: Dict[str, Allocation] = {}  # session key -> ожидающая allocation
        self._next_id = 1

        self._server: Optional[asyncio.AbstractServer] = None
        self._running = False
        self._tasks: List[asyncio.Task] = []

        # Статистика
        self.total_bytes_relayed = 0
        self.total_allocations = 0
        self.rejected_allocations = 0

    @property
    def address(self) -> Tuple[str, int]:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[:2]
        return (self.host, self.port)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_allocations - len(self._allocations))

    async def start(self) -> None:
        """Запустить relay сервер."""
        if self._running:
            return

        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
        )
        self._running = True
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))

        host, port = self.address
        logger.info(f"[RELAY] Server started on {host}:{port}")

    async def stop(self) -> None:
        """Остановить relay сервер."""
        self._running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._server:
            self._server.close()

        for allocation in list(self._allocations.values()):
            allocation.writer.close()
        self._allocations.clear()
        self._sessions.clear()

        if self._server:
            await self._server.wait_closed()
            self._server = None

        logger.info("[RELAY] Server stopped")

    def get_stats(self) -> Dict:
        """Статистика relay."""
        host, port = self.address
        return {
            "running": self._running,
            "host": host,
            "port": port,
            "allocations": len(self._allocations),
            "waiting_sessions": len(self._sessions),
            "available_slots": self.available_slots,
            "total_allocations": self.total_allocations,
            "rejected_allocations": self.rejected_allocations,
            "total_bytes_relayed": self.total_bytes_relayed,
        }

    def _authenticate(self, payload: bytes) -> bool:
        if not self.credentials:
            return True
        creds = RelayCredentials.decode(payload)
        expected = self.credentials.get(creds.username)
        if expected is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), creds.password.encode("utf-8"))

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Обработка подключения клиента."""
        client_addr = writer.get_extra_info("peername")
        logger.debug(f"[RELAY] New connection from {client_addr}")

        allocation: Optional[Allocation] = None

        try:
            while self._running:
                msg = await read_frame(reader, timeout=self.allocation_timeout)
                if not msg:
                    break

                msg_type, peer_id, payload = msg

                if msg_type == RelayMessageType.ALLOCATE:
                    if allocation:
                        await self._send_error(writer, "Already allocated")
                        continue
                    if not self._authenticate(payload):
                        self.rejected_allocations += 1
                        logger.warning(f"[RELAY] Authentication failed from {client_addr}")
                        await self._send_error(writer, "Authentication failed")
                        break
                    if not self.available_slots:
                        self.rejected_allocations += 1
                        await self._send_error(writer, "Relay is full")
                        break

                    allocation = self._allocate(peer_id, writer)
                    await write_frame(
                        writer,
                        RelayMessageType.ALLOCATE_ACK,
                        self.node_id,
                        allocation.relay_address.encode("utf-8"),
                    )

                elif allocation is None:
                    await self._send_error(writer, "Not allocated")
                    break

                elif msg_type == RelayMessageType.BIND:
                    await self._bind(allocation, payload.decode("utf-8", errors="replace"))

                elif msg_type == RelayMessageType.DATA:
                    allocation.touch()
                    await self._forward(allocation, payload)

                elif msg_type == RelayMessageType.PING:
                    allocation.touch()
                    await write_frame(writer, RelayMessageType.PONG, self.node_id, b"")

                elif msg_type == RelayMessageType.DISCONNECT:
                    break

        except asyncio.CancelledError:
            pass
        except (ConnectionError, OSError) as e:
            logger.debug(f"[RELAY] Client error: {e}")
        finally:
            if allocation:
                await self._release(allocation)
            writer.close()

    def _allocate(self, peer_id: str, writer: asyncio.StreamWriter) -> Allocation:
        allocation_id = self._next_id
        self._next_id += 1

        host, port = self.address
        allocation = Allocation(
            allocation_id=allocation_id,
            peer_id=peer_id,
            relay_address=f"{host}:{port}/{allocation_id}",
            writer=writer,
        )
        self._allocations[allocation_id] = allocation
        self.total_allocations += 1

        logger.info(f"[RELAY] Allocated {allocation.relay_address} for {peer_id[:16]}")
        return allocation

    async def _bind(self, allocation: Allocation, session_key: str) -> None:
        """Присоединить allocation к сессии; второй участник собирает пару."""
        if allocation.session_key:
            await self._send_error(allocation.writer, "Already bound")
            return

        allocation.session_key = session_key
        waiting = self._sessions.pop(session_key, None)

        if waiting is None or waiting is allocation:
            self._sessions[session_key] = allocation
            logger.debug(f"[RELAY] {allocation.relay_address} waiting for partner")
            return

        allocation.partner = waiting
        waiting.partner = allocation

        logger.info(
            f"[RELAY] Paired {waiting.relay_address} <-> {allocation.relay_address}"
        )

        for side in (waiting, allocation):
            await write_frame(
                side.writer,
                RelayMessageType.BIND_ACK,
                side.partner.peer_id,
                side.partner.relay_address.encode("utf-8"),
            )

        # Пересылаем то, что было отправлено до появления партнёра
        for side in (waiting, allocation):
            while side.pending:
                await self._forward(side, side.pending.popleft())

    async def _forward(self, allocation: Allocation, payload: bytes) -> None:
        partner = allocation.partner
        if partner is None:
            allocation.pending.append(payload)
            return

        if await write_frame(partner.writer, RelayMessageType.DATA, allocation.peer_id, payload):
            allocation.bytes_relayed += len(payload)
            self.total_bytes_relayed += len(payload)

    async def _release(self, allocation: Allocation) -> None:
        self._allocations.pop(allocation.allocation_id, None)
        if allocation.session_key and self._sessions.get(allocation.session_key) is allocation:
            del self._sessions[allocation.session_key]

        partner = allocation.partner
        if partner is not None:
            partner.partner = None
            allocation.partner = None
            await write_frame(partner.writer, RelayMessageType.DISCONNECT, allocation.peer_id, b"")

        logger.debug(f"[RELAY] Released {allocation.relay_address}")

    async def _send_error(self, writer: asyncio.StreamWriter, error: str) -> None:
        await write_frame(writer, RelayMessageType.ERROR, self.node_id, error.encode("utf-8"))

    async def _cleanup_loop(self) -> None:
        """Фоновая задача для очистки неактивных allocation."""
        while self._running:
            await asyncio.sleep(CLEANUP_INTERVAL)

            stale = [
                a for a in self._allocations.values()
                if a.is_stale(self.allocation_timeout)
            ]
            for allocation in stale:
                logger.debug(f"[RELAY] Removing stale allocation {allocation.relay_address}")
                allocation.writer.close()
                await self._release(allocation)


class RelayClient:
    """
    Клиент relay.

    [USAGE]
    ```python
    client = RelayClient(peer_id="my_record_id")
    relay_address = await client.allocate(("relay.example.org", 3479), credentials)
    await client.bind(session_key_for(my_record, peer_record))
    await client.send(b"Hello!")
    data = await client.recv()
    ```
    """

    def __init__(self, peer_id: str):
        self.peer_id = peer_id
        self.relay_address: Optional[str] = None
        self.partner_id: Optional[str] = None
        self._server_address: Tuple[str, int] = ("", 0)
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connected = False
        self._paired = asyncio.Event()
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._tasks: List[asyncio.Task] = []

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_paired(self) -> bool:
        return self._paired.is_set()

    @property
    def server_address(self) -> Tuple[str, int]:
        return self._server_address

    async def allocate(
        self,
        relay_server: Tuple[str, int],
        credentials: Optional[RelayCredentials] = None,
        timeout: float = 10.0,
    ) -> str:
        """
        Получить allocation на relay.

        Returns:
            Адрес allocation

        Raises:
            RelayUnavailable: relay недоступен, отказал в авторизации или молчит
        """
        host, port = relay_server
        self._server_address = (host, port)

        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise RelayUnavailable(f"Cannot reach relay {host}:{port}: {str(e) or 'timeout'}") from e

        payload = credentials.encode() if credentials else b""
        sent = await write_frame(self._writer, RelayMessageType.ALLOCATE, self.peer_id, payload)

        msg = await read_frame(self._reader, timeout=timeout) if sent else None
        if msg is None:
            await self._close_transport()
            raise RelayUnavailable(f"Allocation timeout on {host}:{port}")

        msg_type, _, reply = msg
        if msg_type == RelayMessageType.ERROR:
            await self._close_transport()
            raise RelayUnavailable(f"Relay {host}:{port} refused: {reply.decode('utf-8', errors='replace')}")

        if msg_type != RelayMessageType.ALLOCATE_ACK:
            await self._close_transport()
            raise RelayUnavailable(f"Unexpected relay reply: {msg_type.name}")

        self.relay_address = reply.decode("utf-8", errors="replace")
        self._connected = True

        self._tasks.append(asyncio.create_task(self._recv_loop()))
        self._tasks.append(asyncio.create_task(self._ping_loop()))

        logger.info(f"[RELAY_CLIENT] Allocated {self.relay_address} on {host}:{port}")
        return self.relay_address

    async def bind(self, session_key: str) -> None:
        """Присоединиться к сессии пары."""
        if not self._connected:
            raise ConnectionError("Relay allocation is not active")
        await write_frame(self._writer, RelayMessageType.BIND, self.peer_id, session_key.encode("utf-8"))

    async def wait_paired(self, timeout: Optional[float] = None) -> bool:
        """Дождаться, пока пир сделает BIND."""
        try:
            await asyncio.wait_for(self._paired.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def send(self, data: bytes) -> None:
        if not self._connected:
            raise ConnectionError("Relay allocation is not active")
        if not await write_frame(self._writer, RelayMessageType.DATA, self.peer_id, data):
            raise ConnectionError("Relay connection lost")

    async def recv(self) -> bytes:
        """Следующее сообщение от пира; ConnectionError после отключения."""
        if not self._connected and self._inbox.empty():
            raise ConnectionError("Relay allocation is not active")
        data = await self._inbox.get()
        if data is None:
            self._inbox.put_nowait(None)
            raise ConnectionError("Relay connection closed")
        return data

    async def disconnect(self) -> None:
        """Отключиться от relay."""
        was_connected = self._connected
        self._connected = False

        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        await asyncio.gather(
            *(t for t in self._tasks if t is not current), return_exceptions=True
        )
        self._tasks.clear()

        if was_connected and self._writer:
            await write_frame(self._writer, RelayMessageType.DISCONNECT, self.peer_id, b"")
        await self._close_transport()
        self._inbox.put_nowait(None)

    async def _close_transport(self) -> None:
        if self._writer:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        self._reader = None
        self._writer = None

    async def _recv_loop(self) -> None:
        """Фоновое получение сообщений."""
        reader = self._reader
        while self._connected and reader is not None:
            msg = await read_frame(reader)
            if not msg:
                break

            msg_type, peer_id, payload = msg

            if msg_type == RelayMessageType.DATA:
                self._inbox.put_nowait(payload)

            elif msg_type == RelayMessageType.BIND_ACK:
                self.partner_id = peer_id
                self._paired.set()
                logger.info(f"[RELAY_CLIENT] Paired with {peer_id[:16]} via {payload.decode('utf-8', errors='replace')}")

            elif msg_type == RelayMessageType.DISCONNECT:
                logger.info(f"[RELAY_CLIENT] Peer disconnected: {peer_id[:16]}")
                break

            elif msg_type == RelayMessageType.ERROR:
                logger.error(f"[RELAY_CLIENT] Error: {payload.decode('utf-8', errors='replace')}")

        self._connected = False
        self._paired.clear()
        self._inbox.put_nowait(None)

    async def _ping_loop(self) -> None:
        """Фоновый ping для keep-alive."""
        while self._connected:
            await asyncio.sleep(PING_INTERVAL)
            if self._writer is None:
                break
            await write_frame(self._writer, RelayMessageType.PING, self.peer_id, b"")
