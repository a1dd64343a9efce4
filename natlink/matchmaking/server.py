"""
Rendezvous Server - TCP matchmaking
===================================

[SESSION] Одно TCP соединение = одна сессия:
1. AWAITING_RECORD: читаем одну строку "localIP,publicIP,udpPort,tcpPort"
2. Некорректная запись -> REJECTED, соединение закрывается, пул не меняется
3. В пуле уже есть пир -> сразу отдаём его запись (MATCHED)
4. Иначе WAITING: ждём уведомления, отключения клиента или таймаута
5. Уведомление -> пишем запись пира (MATCHED)
   Таймаут -> запись удаляется из пула (TIMED_OUT)
   Отключение -> запись удаляется из пула (ABORTED)

[ID] id записи - адрес входящего соединения ("ip:port").

При таймауте сервер ничего не пишет: клиент видит закрытое
соединение без ответа. При отказе перед закрытием пишется строка
"REJECTED <причина>", чтобы клиент отличил отказ от таймаута.
"""

import asyncio
import time
import logging
from enum import Enum, auto
from typing import Optional, Dict, Tuple, Set

from ..errors import RegistrationRejected
from ..records import EndpointRecord, new_record_id
from ..nat.stun import STUNServer
from ..utils.netinfo import format_address
from .registry import RendezvousRegistry, DEFAULT_POOL
from .beacon import RendezvousBeacon

logger = logging.getLogger(__name__)


MATCH_TIMEOUT = 60.0
RECORD_TIMEOUT = 10.0
MAX_RECORD_SIZE = 1024
REJECTED_PREFIX = b"REJECTED "


class SessionState(Enum):
    """Состояние сессии matchmaking."""
    AWAITING_RECORD = auto()
    WAITING = auto()
    MATCHED = auto()
    TIMED_OUT = auto()
    REJECTED = auto()
    ABORTED = auto()


class RendezvousServer:
    """
    Rendezvous сервер.

    [USAGE]
    ```python
    server = RendezvousServer(port=5000, stun_port=3478, beacon_port=5001)
    await server.start()
    ...
    await server.stop()
    ```
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 5000,
        registry: Optional[RendezvousRegistry] = None,
        pool_key: str = DEFAULT_POOL,
        match_timeout: float = MATCH_TIMEOUT,
        record_timeout: float = RECORD_TIMEOUT,
        max_record_size: int = MAX_RECORD_SIZE,
        stun_port: Optional[int] = None,
        beacon_port: Optional[int] = None,
    ):
        """
        Args:
            host: Адрес для прослушивания
            port: TCP порт (0 = случайный)
            registry: Пулы ожидания (по умолчанию FIFO)
            pool_key: Пул, в который попадают все сессии этого сервера
            match_timeout: Сколько ждать второго участника
            record_timeout: Сколько ждать запись после подключения
            max_record_size: Максимальная длина строки записи
            stun_port: Встроенный STUN ответчик (None = выключен)
            beacon_port: LAN beacon (None = выключен)
        """
        self.host = host
        self.port = port
        self.registry = registry or RendezvousRegistry()
        self.pool_key = pool_key
        self.match_timeout = match_timeout
        self.record_timeout = record_timeout
        self.max_record_size = max_record_size

        self.stun_server = STUNServer(host, stun_port) if stun_port is not None else None
        self.beacon: Optional[RendezvousBeacon] = None
        self._beacon_port = beacon_port

        self._server: Optional[asyncio.AbstractServer] = None
        self._running = False
        self._started_at = 0.0
        self._writers: Set[asyncio.StreamWriter] = set()

        # Статистика
        self.active_sessions = 0
        self.session_results: Dict[str, int] = {
            state.name: 0 for state in SessionState
            if state not in (SessionState.AWAITING_RECORD, SessionState.WAITING)
        }

    @property
    def address(self) -> Tuple[str, int]:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[:2]
        return (self.host, self.port)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запустить TCP listener и вспомогательные службы."""
        if self._running:
            return

        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
        )
        self._running = True
        self._started_at = time.time()

        host, port = self.address
        logger.info(f"[RENDEZVOUS] Listening on {host}:{port} (pool '{self.pool_key}')")

        if self.stun_server:
            await self.stun_server.start()

        if self._beacon_port is not None:
            self.beacon = RendezvousBeacon(server_port=port, port=self._beacon_port, host=self.host)
            await self.beacon.start()

    async def stop(self) -> None:
        """Остановить сервер."""
        self._running = False

        if self.beacon:
            await self.beacon.stop()
            self.beacon = None

        if self.stun_server:
            await self.stun_server.stop()

        if self._server:
            self._server.close()
            # Ожидающие сессии завершатся как ABORTED
            for writer in list(self._writers):
                writer.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("[RENDEZVOUS] Server stopped")

    async def serve_forever(self) -> None:
        """Запустить и работать до отмены."""
        await self.start()
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    def get_stats(self) -> Dict:
        """Статистика сервера."""
        host, port = self.address
        return {
            "running": self._running,
            "host": host,
            "port": port,
            "uptime": time.time() - self._started_at if self._running else 0,
            "active_sessions": self.active_sessions,
            "sessions": dict(self.session_results),
            "registry": self.registry.get_stats(),
            "stun_requests": self.stun_server.requests_served if self.stun_server else 0,
        }

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        state = await self._handle_session(reader, writer)
        self.session_results[state.name] += 1

    async def _handle_session(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> SessionState:
        """
        Провести одну сессию до конца.

        Returns:
            Итоговое состояние сессии
        """
        peername = writer.get_extra_info("peername")
        session_id = format_address(peername[:2]) if peername else new_record_id()

        self.active_sessions += 1
        self._writers.add(writer)
        record: Optional[EndpointRecord] = None
        registered = False

        try:
            try:
                line = await self._read_record_line(reader)
                if line is None:
                    logger.debug(f"[RENDEZVOUS] {session_id} sent no record")
                    return SessionState.ABORTED

                record = EndpointRecord.from_wire(line, record_id=session_id)
                peer = self.registry.register(record, self.pool_key)
            except RegistrationRejected as e:
                logger.warning(f"[RENDEZVOUS] Rejected record from {session_id}: {e}")
                await self._send_rejection(writer, str(e))
                return SessionState.REJECTED

            if peer is not None:
                await self._send_record(writer, peer)
                return SessionState.MATCHED

            registered = True
            return await self._wait_for_peer(reader, writer, record)

        except (ConnectionError, OSError) as e:
            logger.debug(f"[RENDEZVOUS] Session {session_id} I/O error: {e}")
            return SessionState.ABORTED

        finally:
            if registered:
                # Ничего не делает, если запись уже выдана пиру
                self.registry.cancel_wait(record.id)
            self.active_sessions -= 1
            self._writers.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _read_record_line(self, reader: asyncio.StreamReader) -> Optional[bytes]:
        """
        Одна строка записи или None (таймаут, EOF).

        Raises:
            RegistrationRejected: строка длиннее max_record_size
        """
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=self.record_timeout)
        except asyncio.TimeoutError:
            return None
        except ValueError:
            # Строка длиннее буфера StreamReader
            raise RegistrationRejected("Record line exceeds reader buffer") from None

        if len(line) > self.max_record_size:
            raise RegistrationRejected(f"Record too long: {len(line)} bytes")
        return line or None

    async def _wait_for_peer(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        record: EndpointRecord,
    ) -> SessionState:
        """WAITING: уведомление, отключение клиента или таймаут."""
        future = self.registry.wait_for_match(record.id)
        disconnect = asyncio.create_task(reader.read(1))

        try:
            done, _ = await asyncio.wait(
                {future, disconnect},
                timeout=self.match_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            disconnect.cancel()
            await asyncio.gather(disconnect, return_exceptions=True)

        if future.done() and not future.cancelled():
            await self._send_record(writer, future.result())
            return SessionState.MATCHED

        if not done:
            logger.info(f"[RENDEZVOUS] {record.id} timed out after {self.match_timeout}s")
            return SessionState.TIMED_OUT

        logger.info(f"[RENDEZVOUS] {record.id} disconnected while waiting")
        return SessionState.ABORTED

    async def _send_rejection(self, writer: asyncio.StreamWriter, reason: str) -> None:
        try:
            writer.write(REJECTED_PREFIX + reason.replace("\n", " ").encode("utf-8") + b"\n")
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[RENDEZVOUS] Could not send rejection: {e}")

    async def _send_record(self, writer: asyncio.StreamWriter, peer: EndpointRecord) -> None:
        writer.write(peer.encode())
        await writer.drain()
        logger.debug(f"[RENDEZVOUS] Sent record of {peer.id}")
