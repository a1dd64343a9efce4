"""
Ошибки natlink
==============

[ERRORS] Иерархия исключений по стадиям установления соединения:
- discovery: STUN не ответил ни один сервер
- matchmaking: некорректная запись или никто не пришёл в пул
- traversal: все стратегии (direct, punch, relay) исчерпаны

Приложение получает либо готовое соединение, либо ровно одну
терминальную ошибку, по `stage` которой решает, повторять ли pairing.
"""

from typing import List, Optional


class NatlinkError(Exception):
    """Базовая ошибка natlink."""
    stage = "unknown"


class DiscoveryFailure(NatlinkError):
    """Ни один STUN сервер не ответил."""
    stage = "discovery"


class MatchmakingError(NatlinkError):
    """Ошибки rendezvous сессии."""
    stage = "matchmaking"


class RegistrationRejected(MatchmakingError):
    """Некорректная EndpointRecord - в пул не попадает."""
    pass


class MatchTimeout(MatchmakingError):
    """Пир не появился за время ожидания."""
    pass


class TraversalError(NatlinkError):
    """Ошибки HolePunchEngine."""
    stage = "traversal"


class SelfConnectionError(TraversalError):
    """Запись пира указывает на нас самих."""
    pass


class DuplicateConnectionError(TraversalError):
    """С этим пиром уже есть (или устанавливается) соединение."""
    pass


class TraversalFailure(TraversalError):
    """Одна стратегия не уложилась в свой дедлайн."""

    def __init__(self, strategy, reason: str = ""):
        self.strategy = strategy
        self.reason = reason
        name = getattr(strategy, "name", str(strategy))
        super().__init__(f"{name} failed: {reason}" if reason else f"{name} failed")


class RelayUnavailable(TraversalError):
    """Relay отказал в allocation (auth, capacity, timeout)."""
    pass


class TraversalExhausted(TraversalError):
    """Все стратегии исчерпаны - пару нужно пересоздать."""

    def __init__(self, failures: Optional[List[TraversalFailure]] = None, reason: str = ""):
        self.failures = list(failures or [])
        if not reason:
            reason = "; ".join(str(f) for f in self.failures) or "no strategy succeeded"
        super().__init__(f"Traversal exhausted: {reason}")
