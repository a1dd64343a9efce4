"""
HolePunchEngine - установление соединения с найденным пиром
===========================================================

[ENGINE] Один connect() на одну пару. Стратегии по порядку,
у каждой свой дедлайн; первая удачная завершает попытку:
1. Direct: TCP на публичный адрес пира (фиксированный интервал повторов).
   Если engine слушает tcp_port, звонит сторона с меньшим id, другая принимает
2. Punch: кооперативный UDP hole punch
3. Relay: allocation на relay сервере

[GUARDS] До любого I/O:
- запись пира указывает на нас самих -> SelfConnectionError
- с пиром уже есть (или устанавливается) соединение -> DuplicateConnectionError

[FAILURES] Неудача стратегии (TraversalFailure) логируется и поглощается.
Наружу выходит только TraversalExhausted со списком неудач.

[RETRY] Повтор всего connect() с экспоненциальной паузой - connect_with_retry().
Внутри стратегий backoff не используется: общий бюджет короткий.

[STATES]
- NEW: Начальное состояние
- CONNECTING: Идёт перебор стратегий
- CONNECTED: Последний connect() успешен
- FAILED: Последний connect() исчерпал стратегии
- CLOSED: Все соединения закрыты
"""

import asyncio
import time
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, List, Dict, Tuple, Set, Callable

from config import TraversalConfig

from ..errors import (
    SelfConnectionError,
    DuplicateConnectionError,
    TraversalFailure,
    TraversalExhausted,
    RelayUnavailable,
)
from ..records import EndpointRecord
from .connection import Connection, Strategy, StreamConnection, DatagramConnection, RelayedConnection
from .hole_punch import UDPHolePuncher, PUNCH_MAGIC
from .relay import RelayClient, RelayCredentials, session_key_for

logger = logging.getLogger(__name__)


# Direct dial: dialer -> "NATLINK_DIRECT <id>\n", acceptor -> DIRECT_ACK
DIRECT_HELLO = b"NATLINK_DIRECT "
DIRECT_ACK = b"NATLINK_DIRECT_OK\n"
HANDSHAKE_TIMEOUT = 2.0


class EngineState(Enum):
    """Состояние engine."""
    NEW = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    FAILED = auto()
    CLOSED = auto()


def backoff_delay(attempt: int, base: float, maximum: float) -> float:
    """Пауза перед повтором номер attempt (с нуля): base * 2**attempt, не больше maximum."""
    return min(base * (2 ** attempt), maximum)


@dataclass
class TraversalAttempt:
    """Состояние одного connect(): общий дедлайн и накопленные неудачи."""
    peer: EndpointRecord
    deadline: float
    started_at: float = field(default_factory=time.monotonic)
    strategy: Optional[Strategy] = None
    failures: List[TraversalFailure] = field(default_factory=list)

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def budget(self, limit: float) -> float:
        """Дедлайн стратегии, урезанный общим бюджетом."""
        return min(limit, self.remaining())

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class HolePunchEngine:
    """
    Перебор стратегий traversal для одного узла.

    [USAGE]
    ```python
    engine = HolePunchEngine(
        local_record=my_record,
        relay_servers=[("relay.example.org", 3479)],
        relay_credentials=RelayCredentials("user", "secret"),
    )

    try:
        connection = await engine.connect_with_retry(peer_record)
        await connection.send(b"Hello!")
    except TraversalExhausted as e:
        for failure in e.failures:
            print(failure.strategy, failure.reason)
    ```
    """

    def __init__(
        self,
        local_record: EndpointRecord,
        traversal: Optional[TraversalConfig] = None,
        relay_servers: Optional[List[Tuple[str, int]]] = None,
        relay_credentials: Optional[RelayCredentials] = None,
        puncher: Optional[UDPHolePuncher] = None,
        relay_client_factory: Callable[[str], RelayClient] = RelayClient,
    ):
        """
        Args:
            local_record: Наша EndpointRecord (то, что ушло на rendezvous)
            traversal: Бюджеты стратегий
            relay_servers: Relay серверы в порядке предпочтения
            relay_credentials: Учётные данные relay
            puncher: UDPHolePuncher (по умолчанию из traversal)
            relay_client_factory: Конструктор RelayClient по peer_id
        """
        self.local_record = local_record
        self.traversal = traversal or TraversalConfig()
        self.relay_servers = list(relay_servers or [])
        self.relay_credentials = relay_credentials
        self.puncher = puncher or UDPHolePuncher(
            node_id=local_record.id,
            interval=self.traversal.punch_interval,
            max_syns=self.traversal.punch_max_syns,
            strict_port_match=self.traversal.strict_port_match,
        )
        self.relay_client_factory = relay_client_factory

        self._state = EngineState.NEW
        self._connections: Dict[str, Connection] = {}  # peer_id -> connection
        self._pending: Set[str] = set()

        # Direct listener и ожидающие входящего dial: peer_id -> (запись, future)
        self._listener: Optional[asyncio.AbstractServer] = None
        self._accept_waiters: Dict[str, Tuple[EndpointRecord, asyncio.Future]] = {}

        self._on_state_change: Optional[Callable] = None

        # Статистика
        self.attempts = 0
        self.failures = 0
        self.by_strategy: Dict[str, int] = {s.value: 0 for s in Strategy}

    @property
    def state(self) -> EngineState:
        return self._state

    def _set_state(self, state: EngineState) -> None:
        old_state = self._state
        self._state = state
        logger.debug(f"[ENGINE] State: {old_state.name} -> {state.name}")

        if self._on_state_change:
            try:
                self._on_state_change(old_state, state)
            except Exception as e:
                logger.warning(f"[ENGINE] State callback error: {e}")

    def on_state_change(self, callback: Callable) -> None:
        """Установить callback (old_state, new_state)."""
        self._on_state_change = callback

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def is_self(self, peer: EndpointRecord) -> bool:
        """Указывает ли запись на нас самих (id или любой наш адрес)."""
        own = self.local_record
        if peer.id and peer.id == own.id:
            return True

        if (peer.public_ip, peer.udp_port) == (own.public_ip, own.udp_port):
            return True
        if (peer.public_ip, peer.tcp_port) == (own.public_ip, own.tcp_port):
            return True

        # Одинаковый приватный адрес что-то значит только за тем же NAT
        if peer.public_ip != own.public_ip or peer.local_ip != own.local_ip:
            return False
        return peer.udp_port == own.udp_port or peer.tcp_port == own.tcp_port

    def check_peer(self, peer: EndpointRecord) -> None:
        """
        Проверки перед connect().

        Raises:
            SelfConnectionError: запись пира - это мы
            DuplicateConnectionError: соединение уже есть или устанавливается
        """
        if self.is_self(peer):
            raise SelfConnectionError(f"Peer record {peer} points at this endpoint")

        existing = self._connections.get(peer.id)
        if existing is not None and existing.is_open:
            raise DuplicateConnectionError(f"Already connected to {peer.id} via {existing.strategy.value}")

        if peer.id in self._pending:
            raise DuplicateConnectionError(f"Connection to {peer.id} already in progress")

    # ------------------------------------------------------------------
    # Direct listener
    # ------------------------------------------------------------------

    @property
    def is_listening(self) -> bool:
        return self._listener is not None

    async def listen(self, port: Optional[int] = None, host: str = "0.0.0.0") -> Tuple[str, int]:
        """
        Принимать direct dial (по умолчанию на tcp_port нашей записи).

        Raises:
            OSError: порт занят
        """
        if self._listener is None:
            self._listener = await asyncio.start_server(
                self._handle_direct,
                host,
                self.local_record.tcp_port if port is None else port,
            )
            bound = self._listener.sockets[0].getsockname()
            logger.info(f"[ENGINE] Accepting direct dial on {bound[0]}:{bound[1]}")

        return self._listener.sockets[0].getsockname()[:2]

    def stop_listening(self) -> None:
        """Закрыть listener; принятые соединения остаются открытыми."""
        if self._listener is not None:
            self._listener.close()
            self._listener = None

    # ------------------------------------------------------------------
    # Connect
    # ------------------------------------------------------------------

    async def connect(self, peer: EndpointRecord) -> Connection:
        """
        Установить соединение с пиром.

        Returns:
            Connection с тегом стратегии

        Raises:
            SelfConnectionError, DuplicateConnectionError: до любого I/O
            TraversalExhausted: ни одна стратегия не сработала
        """
        self.check_peer(peer)

        self._pending.add(peer.id)
        self.attempts += 1
        self._set_state(EngineState.CONNECTING)

        attempt = TraversalAttempt(
            peer=peer,
            deadline=time.monotonic() + self.traversal.total_timeout,
        )
        logger.info(f"[ENGINE] Connecting to {peer}")

        try:
            connection = await asyncio.wait_for(
                self._run_strategies(attempt),
                timeout=self.traversal.total_timeout,
            )
        except asyncio.TimeoutError:
            self.failures += 1
            self._set_state(EngineState.FAILED)
            raise TraversalExhausted(
                attempt.failures,
                reason=f"total budget of {self.traversal.total_timeout}s exceeded",
            ) from None
        except TraversalExhausted:
            self.failures += 1
            self._set_state(EngineState.FAILED)
            raise
        finally:
            self._pending.discard(peer.id)

        self._connections[peer.id] = connection
        self.by_strategy[connection.strategy.value] += 1
        self._set_state(EngineState.CONNECTED)

        logger.info(
            f"[ENGINE] Connected to {peer.id} via {connection.strategy.value} "
            f"in {attempt.elapsed_ms():.0f}ms"
        )
        return connection

    async def connect_with_retry(
        self,
        peer: EndpointRecord,
        attempts: Optional[int] = None,
    ) -> Connection:
        """
        connect() с повторами всей попытки и экспоненциальной паузой.

        Повторяется только TraversalExhausted; ошибки guard'ов выходят сразу.
        """
        attempts = attempts or self.traversal.connect_attempts
        last_error: Optional[TraversalExhausted] = None

        for n in range(attempts):
            try:
                return await self.connect(peer)
            except TraversalExhausted as e:
                last_error = e
                if n + 1 >= attempts:
                    break
                delay = backoff_delay(n, self.traversal.backoff_base, self.traversal.backoff_max)
                logger.warning(
                    f"[ENGINE] Attempt {n + 1}/{attempts} to {peer.id} failed, "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise last_error

    async def _run_strategies(self, attempt: TraversalAttempt) -> Connection:
        strategies = (
            (Strategy.DIRECT, self._try_direct),
            (Strategy.PUNCH, self._try_punch),
            (Strategy.RELAY, self._try_relay),
        )

        for strategy, run in strategies:
            attempt.strategy = strategy
            logger.debug(f"[ENGINE] Trying {strategy.value} ({attempt.remaining():.1f}s left)")
            try:
                return await run(attempt)
            except TraversalFailure as e:
                logger.info(f"[ENGINE] {e}")
                attempt.failures.append(e)

        raise TraversalExhausted(attempt.failures)

    def direct_targets(self, peer: EndpointRecord) -> List[Tuple[str, int]]:
        """TCP адреса для direct dial; за общим NAT добавляется локальный адрес."""
        targets = [peer.public_tcp_address]
        if peer.public_ip == self.local_record.public_ip and peer.local_ip != peer.public_ip:
            targets.append((peer.local_ip, peer.tcp_port))
        return targets

    def dials_first(self, peer: EndpointRecord) -> bool:
        """Роль в direct: без listener'а всегда звоним, иначе звонит меньший id."""
        return not self.is_listening or self.local_record.id < peer.id

    async def _try_direct(self, attempt: TraversalAttempt) -> Connection:
        if self.dials_first(attempt.peer):
            return await self._dial_direct(attempt)
        return await self._accept_direct(attempt)

    async def _dial_direct(self, attempt: TraversalAttempt) -> Connection:
        """TCP connect + hello с повтором через фиксированный интервал."""
        peer = attempt.peer
        targets = self.direct_targets(peer)
        deadline = time.monotonic() + attempt.budget(self.traversal.direct_timeout)
        last_error = "timeout"

        while True:
            for host, port in targets:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TraversalFailure(Strategy.DIRECT, last_error)

                started = time.monotonic()
                try:
                    reader, writer = await asyncio.wait_for(
                        asyncio.open_connection(host, port),
                        timeout=remaining,
                    )
                except (OSError, asyncio.TimeoutError) as e:
                    last_error = f"{host}:{port}: {str(e) or 'timeout'}"
                    continue

                if not await self._direct_handshake(reader, writer, deadline):
                    last_error = f"{host}:{port}: handshake rejected"
                    continue

                return StreamConnection(
                    reader,
                    writer,
                    peer_id=peer.id,
                    latency_ms=(time.monotonic() - started) * 1000,
                )

            pause = min(self.traversal.direct_retry_interval, deadline - time.monotonic())
            if pause > 0:
                await asyncio.sleep(pause)

    async def _direct_handshake(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        deadline: float,
    ) -> bool:
        """Hello со своим id; True если пир ответил DIRECT_ACK. Иначе сокет закрыт."""
        try:
            writer.write(DIRECT_HELLO + self.local_record.id.encode("utf-8") + b"\n")
            await writer.drain()
            reply = await asyncio.wait_for(
                reader.readline(),
                timeout=max(0.0, deadline - time.monotonic()),
            )
        except (OSError, ValueError, asyncio.TimeoutError):
            reply = b""

        if reply == DIRECT_ACK:
            return True

        writer.close()
        return False

    async def _accept_direct(self, attempt: TraversalAttempt) -> Connection:
        """Ждать, пока пир с меньшим id дозвонится до нашего listener'а."""
        peer = attempt.peer
        future = asyncio.get_running_loop().create_future()
        self._accept_waiters[peer.id] = (peer, future)

        try:
            return await asyncio.wait_for(
                asyncio.shield(future),
                timeout=attempt.budget(self.traversal.direct_timeout),
            )
        except asyncio.TimeoutError:
            if future.done() and not future.cancelled():
                return future.result()
            raise TraversalFailure(Strategy.DIRECT, "peer did not dial in") from None
        finally:
            self._accept_waiters.pop(peer.id, None)
            if not future.done():
                future.cancel()

    async def _handle_direct(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Входящий direct dial: hello -> проверка пира -> DIRECT_ACK."""
        peername = writer.get_extra_info("peername")
        started = time.monotonic()

        try:
            line = await asyncio.wait_for(reader.readline(), timeout=HANDSHAKE_TIMEOUT)
        except (OSError, ValueError, asyncio.TimeoutError):
            line = b""

        peer_id = ""
        if line.startswith(DIRECT_HELLO):
            peer_id = line[len(DIRECT_HELLO):].strip().decode("utf-8", errors="replace")

        waiter = self._accept_waiters.get(peer_id)
        if (
            waiter is None
            or waiter[1].done()
            or peername[0] not in (waiter[0].public_ip, waiter[0].local_ip)
        ):
            logger.debug(f"[ENGINE] Rejected direct dial from {peername} ({peer_id or 'no hello'})")
            writer.close()
            return

        peer, future = waiter
        future.set_result(StreamConnection(
            reader,
            writer,
            peer_id=peer.id,
            latency_ms=(time.monotonic() - started) * 1000,
        ))

        try:
            writer.write(DIRECT_ACK)
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[ENGINE] Direct ACK to {peer.id} failed: {e}")

    async def _try_punch(self, attempt: TraversalAttempt) -> Connection:
        """UDP hole punch с анонсированного порта."""
        peer = attempt.peer
        result = await self.puncher.punch(
            local_port=self.local_record.udp_port,
            candidates=list(peer.candidate_addresses),
            timeout=attempt.budget(self.traversal.punch_timeout),
        )

        if not result.success:
            raise TraversalFailure(Strategy.PUNCH, result.error or result.result.name.lower())

        return DatagramConnection(
            result.socket,
            result.remote_addr,
            peer_id=peer.id,
            latency_ms=result.latency_ms,
            ignore_prefix=PUNCH_MAGIC,
        )

    async def _try_relay(self, attempt: TraversalAttempt) -> Connection:
        """Allocation на каждом relay по порядку."""
        if not self.relay_servers:
            raise TraversalFailure(Strategy.RELAY, "no relay servers configured")

        peer = attempt.peer
        session_key = session_key_for(self.local_record, peer)
        reasons = []

        for relay_server in self.relay_servers:
            timeout = attempt.budget(self.traversal.relay_timeout)
            if timeout <= 0:
                reasons.append("budget exhausted")
                break

            client = self.relay_client_factory(self.local_record.id)
            try:
                relay_address = await client.allocate(
                    relay_server,
                    self.relay_credentials,
                    timeout=timeout,
                )
                await client.bind(session_key)
            except (RelayUnavailable, ConnectionError) as e:
                logger.warning(f"[ENGINE] Relay {relay_server[0]}:{relay_server[1]} unavailable: {e}")
                reasons.append(str(e))
                await client.disconnect()
                continue
            except BaseException:
                # Отмена общим бюджетом: allocation не должна пережить connect()
                await client.disconnect()
                raise

            return RelayedConnection(client, relay_address, peer_id=peer.id)

        raise TraversalFailure(Strategy.RELAY, "; ".join(reasons))

    # ------------------------------------------------------------------
    # Book-keeping
    # ------------------------------------------------------------------

    def get_connection(self, peer_id: str) -> Optional[Connection]:
        """Получить соединение с пиром."""
        return self._connections.get(peer_id)

    async def close_connection(self, peer_id: str) -> None:
        """Закрыть соединение с пиром."""
        connection = self._connections.pop(peer_id, None)
        if connection:
            await connection.close()

    async def close_all(self) -> None:
        """Закрыть все соединения."""
        self.stop_listening()
        for peer_id in list(self._connections.keys()):
            await self.close_connection(peer_id)

        self._set_state(EngineState.CLOSED)

    def get_stats(self) -> Dict:
        """Статистика engine."""
        return {
            "state": self._state.name,
            "record_id": self.local_record.id,
            "attempts": self.attempts,
            "failures": self.failures,
            "by_strategy": dict(self.by_strategy),
            "pending": len(self._pending),
            "listening": self.is_listening,
            "connections": {
                peer_id: conn.strategy.value
                for peer_id, conn in self._connections.items()
            },
        }
