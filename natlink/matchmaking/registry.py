"""
Rendezvous Registry - пул ожидающих записей
===========================================

[REGISTRY] Единственный общий ресурс rendezvous сервера:
- pool_key -> упорядоченные ожидающие записи (FIFO)
- id -> future уведомления о найденном пире

[ATOMICITY] Проверка пула, изъятие ожидающего и вставка нового
выполняются под одной блокировкой: запись не может быть выдана
двум регистрантам одновременно, пары не пересекаются.

[POLICY] Выбор пира вынесен в подключаемую функцию:
- fifo_policy: самый давний ожидающий (по умолчанию)
- same_network_policy: сначала пир, чей публичный IP в той же /24, иначе FIFO
"""

import asyncio
import threading
import logging
from collections import OrderedDict
from typing import Optional, Dict, Callable, Sequence

from ..errors import RegistrationRejected
from ..records import EndpointRecord
from ..utils.netinfo import same_network

logger = logging.getLogger(__name__)


DEFAULT_POOL = "default"

# (новая запись, ожидающие по порядку) -> выбранный пир или None
MatchPolicy = Callable[[EndpointRecord, Sequence[EndpointRecord]], Optional[EndpointRecord]]


def fifo_policy(
    record: EndpointRecord,
    waiting: Sequence[EndpointRecord],
) -> Optional[EndpointRecord]:
    """Самый давний ожидающий пир."""
    for candidate in waiting:
        if candidate.id != record.id:
            return candidate
    return None


def same_network_policy(
    record: EndpointRecord,
    waiting: Sequence[EndpointRecord],
) -> Optional[EndpointRecord]:
    """Пир, чей публичный IP совпадает по первым трём октетам, иначе FIFO."""
    for candidate in waiting:
        if candidate.id == record.id:
            continue
        if same_network(candidate.public_ip, record.public_ip):
            return candidate
    return fifo_policy(record, waiting)


class RendezvousRegistry:
    """
    Пулы ожидающих EndpointRecord.

    [USAGE]
    ```python
    registry = RendezvousRegistry()

    peer = registry.register(record)
    if peer is None:
        # Ждём, пока кто-то зарегистрируется после нас
        peer = await registry.wait_for_match(record.id)
    ```
    """

    def __init__(self, policy: MatchPolicy = fifo_policy):
        self.policy = policy
        self._pools: Dict[str, "OrderedDict[str, EndpointRecord]"] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._pool_of: Dict[str, str] = {}  # id -> pool_key
        self._lock = threading.Lock()

        # Статистика
        self.total_registered = 0
        self.total_matched = 0
        self.total_cancelled = 0

    def register(self, record: EndpointRecord, pool_key: str = DEFAULT_POOL) -> Optional[EndpointRecord]:
        """
        Зарегистрировать запись.

        Returns:
            Запись ожидавшего пира (он уже уведомлён) или None,
            если запись поставлена в пул ожидания

        Raises:
            RegistrationRejected: запись с таким id уже ожидает
        """
        with self._lock:
            if record.id in self._pool_of:
                raise RegistrationRejected(f"Record {record.id} is already waiting")

            pool = self._pools.setdefault(pool_key, OrderedDict())
            peer = self.policy(record, list(pool.values()))

            self.total_registered += 1

            if peer is not None:
                del pool[peer.id]
                del self._pool_of[peer.id]
                if not pool:
                    del self._pools[pool_key]

                future = self._waiters.pop(peer.id)
                if not future.done():
                    future.set_result(record)

                self.total_matched += 1
                logger.info(f"[RENDEZVOUS] Matched {record.id} <-> {peer.id} in pool '{pool_key}'")
                return peer

            pool[record.id] = record
            self._pool_of[record.id] = pool_key
            self._waiters[record.id] = asyncio.get_running_loop().create_future()

        logger.info(f"[RENDEZVOUS] {record.id} waiting in pool '{pool_key}'")
        return None

    def wait_for_match(self, record_id: str) -> asyncio.Future:
        """
        Future, который получит запись пира.

        Raises:
            KeyError: запись не ожидает
        """
        with self._lock:
            return self._waiters[record_id]

    def cancel_wait(self, record_id: str) -> bool:
        """
        Убрать запись из пула (таймаут или отключение).

        Повторный вызов безопасен.

        Returns:
            True если запись была в пуле
        """
        with self._lock:
            pool_key = self._pool_of.pop(record_id, None)
            if pool_key is None:
                return False

            pool = self._pools.get(pool_key)
            if pool is not None:
                pool.pop(record_id, None)
                if not pool:
                    del self._pools[pool_key]

            future = self._waiters.pop(record_id, None)
            if future is not None and not future.done():
                future.cancel()

            self.total_cancelled += 1

        logger.debug(f"[RENDEZVOUS] {record_id} removed from pool '{pool_key}'")
        return True

    def is_waiting(self, record_id: str) -> bool:
        with self._lock:
            return record_id in self._pool_of

    def waiting_count(self, pool_key: Optional[str] = None) -> int:
        """Число ожидающих (в одном пуле или во всех)."""
        with self._lock:
            if pool_key is None:
                return len(self._pool_of)
            return len(self._pools.get(pool_key, ()))

    def get_stats(self) -> Dict:
        """Статистика registry."""
        with self._lock:
            return {
                "policy": getattr(self.policy, "__name__", str(self.policy)),
                "waiting": len(self._pool_of),
                "pools": {key: len(pool) for key, pool in self._pools.items()},
                "total_registered": self.total_registered,
                "total_matched": self.total_matched,
                "total_cancelled": self.total_cancelled,
            }
