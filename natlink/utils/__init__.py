"""Вспомогательные сетевые функции."""

from .netinfo import get_local_ip, same_network, format_address

__all__ = [
    "get_local_ip",
    "same_network",
    "format_address",
]
