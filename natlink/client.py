"""
Endpoint - полный цикл pairing
==============================

[ENDPOINT] Один вызов pair() проводит узел через все стадии:
1. Discovery: публичный адрес через STUN (или локальный, если STUN недоступен)
2. Запись: EndpointRecord с анонсированными UDP/TCP портами
3. Matchmaking: обмен записями через rendezvous сервер
4. Traversal: HolePunchEngine.connect_with_retry(); на это время
   открыт TCP listener на tcp_port для входящего direct dial

Результат - готовый Connection или одна терминальная ошибка
(NatlinkError), у которой `stage` называет стадию.
"""

import asyncio
import logging
from typing import Optional, Tuple

from config import Config, config as default_config

from .errors import MatchmakingError, MatchTimeout, RegistrationRejected
from .records import EndpointRecord
from .nat.stun import STUNClient, MappedAddress
from .nat.engine import HolePunchEngine
from .nat.connection import Connection
from .nat.relay import RelayCredentials
from .matchmaking.beacon import discover_rendezvous_server
from .matchmaking.server import REJECTED_PREFIX
from .utils.netinfo import format_address

logger = logging.getLogger(__name__)


def address_id(record: EndpointRecord) -> str:
    """Стабильный id записи по публичному UDP адресу."""
    return format_address(record.public_address)


class RendezvousClient:
    """
    Клиентская сторона matchmaking: отправить свою запись, получить запись пира.

    [USAGE]
    ```python
    client = RendezvousClient()
    peer = await client.exchange(my_record, ("rendezvous.example.org", 5000))
    ```
    """

    def __init__(self, timeout: float = 60.0, connect_timeout: float = 10.0):
        """
        Args:
            timeout: Сколько ждать пира (не меньше match_timeout сервера)
            connect_timeout: Таймаут TCP подключения к серверу
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout

    async def exchange(
        self,
        record: EndpointRecord,
        server: Tuple[str, int],
        timeout: Optional[float] = None,
    ) -> EndpointRecord:
        """
        Обменяться записями через rendezvous сервер.

        Raises:
            RegistrationRejected: сервер отверг запись (строка REJECTED)
            MatchTimeout: сервер закрыл сессию без ответа (пир не пришёл)
            MatchmakingError: сервер недоступен или ответ некорректен
        """
        host, port = server
        timeout = self.timeout if timeout is None else timeout

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise MatchmakingError(f"Cannot reach rendezvous server {host}:{port}: {str(e) or 'timeout'}") from e

        try:
            writer.write(record.encode())
            await writer.drain()
            logger.info(f"[ENDPOINT] Registered at {host}:{port}, waiting for peer")

            try:
                line = await asyncio.wait_for(reader.readline(), timeout=timeout)
            except asyncio.TimeoutError:
                raise MatchTimeout(f"No peer within {timeout}s") from None
            except (ConnectionError, OSError):
                line = b""

            if not line:
                raise MatchTimeout("Rendezvous server closed the session without a peer")

            if line.startswith(REJECTED_PREFIX):
                reason = line[len(REJECTED_PREFIX):].decode("utf-8", "replace").strip()
                raise RegistrationRejected(f"Rendezvous server rejected the record: {reason}")

            try:
                peer = EndpointRecord.from_wire(line)
            except RegistrationRejected as e:
                raise MatchmakingError(f"Malformed peer record from server: {e}") from e

            peer = peer.with_id(address_id(peer))
            logger.info(f"[ENDPOINT] Matched with {peer}")
            return peer

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass


class Endpoint:
    """
    Узел, ищущий пару через rendezvous.

    [USAGE]
    ```python
    endpoint = Endpoint()
    try:
        connection = await endpoint.pair(("rendezvous.example.org", 5000))
    except NatlinkError as e:
        print(f"Pairing failed at {e.stage}: {e}")
    ```
    """

    def __init__(
        self,
        cfg: Optional[Config] = None,
        local_ip: str = "",
        allow_local_fallback: bool = True,
        stun_client: Optional[STUNClient] = None,
        rendezvous_client: Optional[RendezvousClient] = None,
    ):
        """
        Args:
            cfg: Конфигурация (по умолчанию глобальная)
            local_ip: Переопределить локальный IP в записи
            allow_local_fallback: Без STUN анонсировать локальный адрес (только LAN)
            stun_client: STUN клиент (по умолчанию из cfg.discovery)
            rendezvous_client: Клиент matchmaking
        """
        self.config = cfg or default_config
        self.local_ip = local_ip
        self.allow_local_fallback = allow_local_fallback

        self.stun_client = stun_client or STUNClient(
            stun_servers=self.config.discovery.stun_servers,
            local_port=self.config.endpoint.udp_port,
            timeout=self.config.discovery.timeout,
            retries=self.config.discovery.retries,
        )
        self.rendezvous_client = rendezvous_client or RendezvousClient(
            timeout=self.config.rendezvous.match_timeout + 5,
        )

        self.mapped: Optional[MappedAddress] = None
        self.record: Optional[EndpointRecord] = None
        self.engine: Optional[HolePunchEngine] = None

    @property
    def relay_credentials(self) -> Optional[RelayCredentials]:
        relay = self.config.relay
        if not relay.username:
            return None
        return RelayCredentials(relay.username, relay.password)

    async def discover(self) -> EndpointRecord:
        """Discovery + создание собственной записи."""
        udp_port = self.config.endpoint.udp_port
        if self.allow_local_fallback:
            self.mapped = await self.stun_client.discover_or_local(local_port=udp_port)
        else:
            self.mapped = await self.stun_client.discover(local_port=udp_port)

        if self.mapped.port != self.mapped.local_port:
            # В записи один UDP порт; остаётся надежда на IP-сравнение при punch
            logger.warning(
                f"[ENDPOINT] NAT rewrote port {self.mapped.local_port} -> {self.mapped.port}"
            )

        record = EndpointRecord.create(
            local_ip=self.local_ip or self.mapped.local_ip,
            public_ip=self.mapped.ip,
            udp_port=self.mapped.local_port or udp_port,
            tcp_port=self.config.endpoint.tcp_port,
        )
        self.record = record.with_id(address_id(record))

        logger.info(f"[ENDPOINT] Local record: {self.record}")
        return self.record

    def create_engine(self, record: EndpointRecord) -> HolePunchEngine:
        return HolePunchEngine(
            local_record=record,
            traversal=self.config.traversal,
            relay_servers=self.config.relay.relay_servers,
            relay_credentials=self.relay_credentials,
        )

    async def locate_server(self) -> Tuple[str, int]:
        """Найти rendezvous сервер через LAN beacon."""
        server = await discover_rendezvous_server(self.config.rendezvous.beacon_port)
        if server is None:
            raise MatchmakingError("No rendezvous server found on the local network")
        return server

    async def pair(self, server: Optional[Tuple[str, int]] = None) -> Connection:
        """
        Полный цикл: discovery, matchmaking, traversal.

        Args:
            server: Адрес rendezvous (None = искать в LAN)

        Raises:
            DiscoveryFailure: STUN недоступен и fallback запрещён
            MatchmakingError: сервер не найден или пир не пришёл
            TraversalError: соединение не установлено
        """
        record = self.record or await self.discover()
        if server is None:
            server = await self.locate_server()

        if self.engine is None:
            self.engine = self.create_engine(record)

        # Listener открыт до обмена записями: пир может позвонить сразу
        if self.config.endpoint.direct_listen:
            await self._listen_for_direct()

        try:
            peer = await self.rendezvous_client.exchange(record, server)
            return await self.engine.connect_with_retry(peer)
        finally:
            self.engine.stop_listening()

    async def _listen_for_direct(self) -> None:
        port = self.config.endpoint.tcp_port
        try:
            await self.engine.listen(port)
        except OSError as e:
            logger.warning(f"[ENDPOINT] Cannot listen on TCP {port}: {e}; direct dial only")

    async def close(self) -> None:
        if self.engine:
            await self.engine.close_all()

    def get_stats(self) -> dict:
        return {
            "record": self.record.to_dict() if self.record else None,
            "mapped": self.mapped.to_dict() if self.mapped else None,
            "engine": self.engine.get_stats() if self.engine else None,
        }

