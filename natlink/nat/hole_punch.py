"""
Hole Punching - кооперативный UDP hole punch
============================================

[HOLE PUNCH] Принцип работы:
1. Оба узла знают адреса друг друга (через rendezvous)
2. Оба одновременно шлют маркерные датаграммы на публичный и локальный адрес пира
3. NAT создаёт mapping для исходящего пакета
4. Входящий пакет от пира проходит через созданный mapping
5. Первый, кто увидел пакет пира, отвечает один раз (ACK) - соединение есть

[CONCURRENCY] Один punch = одна группа задач:
- sender: шлёт SYN каждые PUNCH_INTERVAL, максимум max_syns раз
- listener: ждёт первую маркерную датаграмму с адреса пира
Успех любой стороны завершает общий future и останавливает другую;
дедлайн отменяет обе. Группа всегда дожидается завершения задач.

[LIMITATIONS]
- Symmetric NAT: часто не работает (разный mapping для каждого destination)
- Пакет, пришедший до того, как пир начал слушать, теряется и просто повторяется
"""

import asyncio
import socket
import time
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Tuple, Any, Sequence

logger = logging.getLogger(__name__)


# Constants
PUNCH_TIMEOUT = 10.0  # seconds
PUNCH_INTERVAL = 0.15  # seconds between SYNs
PUNCH_MAX_SYNS = 60

# Hole punch message magic
PUNCH_MAGIC = b"NATLINK_PUNCH"
PUNCH_SYN = PUNCH_MAGIC + b"_SYN"
PUNCH_ACK = PUNCH_MAGIC + b"_ACK"


class HolePunchResult(Enum):
    """Результат hole punching."""
    SUCCESS = auto()
    TIMEOUT = auto()
    ERROR = auto()


@dataclass
class PunchResult:
    """Результат попытки hole punch."""
    success: bool
    result: HolePunchResult
    socket: Optional[Any] = None  # Успешный сокет
    local_addr: Tuple[str, int] = ("", 0)
    remote_addr: Tuple[str, int] = ("", 0)
    latency_ms: float = 0
    syns_sent: int = 0
    error: str = ""


class _PunchSession:
    """Состояние одного punch: сокет, кандидаты, общий future завершения."""

    def __init__(self, sock: socket.socket, candidates: Sequence[Tuple[str, int]], done: asyncio.Future):
        self.sock = sock
        self.candidates = tuple(candidates)
        self.candidate_ips = {ip for ip, _ in self.candidates}
        self.done = done
        self.syns_sent = 0
        self.started_at = time.monotonic()


class UDPHolePuncher:
    """
    UDP Hole Punching.

    [USAGE]
    ```python
    puncher = UDPHolePuncher(node_id="abc123")
    result = await puncher.punch(
        local_port=35000,
        candidates=[("203.0.113.1", 54321), ("192.168.1.20", 35000)],
    )
    if result.success:
        # result.socket привязан к result.remote_addr
        pass
    ```
    """

    def __init__(
        self,
        node_id: str = "",
        interval: float = PUNCH_INTERVAL,
        max_syns: int = PUNCH_MAX_SYNS,
        strict_port_match: bool = False,
    ):
        """
        Args:
            node_id: ID узла (добавляется в маркер для логов пира)
            interval: Пауза между SYN
            max_syns: Максимум отправок SYN
            strict_port_match: Требовать совпадения порта, а не только IP
        """
        self.node_id = node_id
        self.interval = interval
        self.max_syns = max_syns
        self.strict_port_match = strict_port_match

    async def punch(
        self,
        local_port: int,
        candidates: Sequence[Tuple[str, int]],
        timeout: float = PUNCH_TIMEOUT,
    ) -> PunchResult:
        """
        Выполнить UDP hole punch.

        Args:
            local_port: Анонсированный локальный UDP порт
            candidates: Адреса пира (публичный, локальный)
            timeout: Общий дедлайн punch

        Returns:
            PunchResult; при успехе сокет передаётся вызывающему
        """
        if not candidates:
            return PunchResult(
                success=False,
                result=HolePunchResult.ERROR,
                error="No candidate addresses",
            )

        loop = asyncio.get_running_loop()

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        success = False
        try:
            sock.bind(("0.0.0.0", local_port))
            local_addr = sock.getsockname()

            logger.info(
                f"[PUNCH] UDP starting: {local_addr} -> "
                f"{', '.join(f'{ip}:{port}' for ip, port in candidates)}"
            )

            session = _PunchSession(sock, candidates, loop.create_future())
            sender = asyncio.create_task(self._syn_loop(session))
            listener = asyncio.create_task(self._listen_loop(session))

            try:
                remote_addr = await asyncio.wait_for(
                    asyncio.shield(session.done),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                remote_addr = None
            finally:
                for task in (sender, listener):
                    task.cancel()
                await asyncio.gather(sender, listener, return_exceptions=True)
                if not session.done.done():
                    session.done.cancel()

            if remote_addr is None:
                logger.warning(
                    f"[PUNCH] UDP timeout after {session.syns_sent} SYNs"
                )
                return PunchResult(
                    success=False,
                    result=HolePunchResult.TIMEOUT,
                    local_addr=local_addr,
                    syns_sent=session.syns_sent,
                    error="Timeout waiting for peer SYN",
                )

            latency = (time.monotonic() - session.started_at) * 1000
            logger.info(
                f"[PUNCH] UDP success: {local_addr} <-> {remote_addr} ({latency:.1f}ms)"
            )
            success = True
            return PunchResult(
                success=True,
                result=HolePunchResult.SUCCESS,
                socket=sock,
                local_addr=local_addr,
                remote_addr=remote_addr,
                latency_ms=latency,
                syns_sent=session.syns_sent,
            )

        except OSError as e:
            logger.error(f"[PUNCH] UDP error: {e}")
            return PunchResult(
                success=False,
                result=HolePunchResult.ERROR,
                error=str(e),
            )
        finally:
            if not success:
                sock.close()

    def matches_candidate(self, addr: Tuple[str, int], session: _PunchSession) -> bool:
        """
        Пришла ли датаграмма с адреса пира.

        NAT может переписать порт, поэтому по умолчанию сравнивается только IP.
        """
        if addr in session.candidates:
            return True
        return not self.strict_port_match and addr[0] in session.candidate_ips

    async def _syn_loop(self, session: _PunchSession) -> None:
        """Отправлять SYN на все кандидаты с фиксированным интервалом."""
        loop = asyncio.get_running_loop()
        syn_msg = PUNCH_SYN + self.node_id.encode()[:32]

        for _ in range(self.max_syns):
            if session.done.done():
                return
            for addr in session.candidates:
                try:
                    await loop.sock_sendto(session.sock, syn_msg, addr)
                except OSError as e:
                    logger.debug(f"[PUNCH] Send error to {addr}: {e}")
            session.syns_sent += 1
            await asyncio.sleep(self.interval)

        logger.debug(f"[PUNCH] SYN budget exhausted ({self.max_syns}), still listening")

    async def _listen_loop(self, session: _PunchSession) -> None:
        """Ждать первую маркерную датаграмму от пира."""
        loop = asyncio.get_running_loop()
        ack_msg = PUNCH_ACK + self.node_id.encode()[:32]

        while not session.done.done():
            try:
                data, addr = await loop.sock_recvfrom(session.sock, 1024)
            except (ConnectionResetError, ConnectionRefusedError):
                # ICMP unreachable от закрытого порта пира - просто ждём дальше
                continue

            addr = addr[:2]
            if not data.startswith(PUNCH_MAGIC):
                continue

            if not self.matches_candidate(addr, session):
                logger.debug(f"[PUNCH] Ignoring packet from non-candidate {addr}")
                continue

            if data.startswith(PUNCH_SYN):
                logger.debug(f"[PUNCH] Received SYN from {addr}, replying ACK")
                try:
                    await loop.sock_sendto(session.sock, ack_msg, addr)
                except OSError as e:
                    logger.debug(f"[PUNCH] ACK send error: {e}")
            else:
                logger.debug(f"[PUNCH] Received ACK from {addr}")

            if not session.done.done():
                session.done.set_result(addr)
            return
