"""Сетевые утилиты: локальный IP, сравнение подсетей, форматирование адреса."""

import socket
import logging
from typing import Tuple

logger = logging.getLogger(__name__)


def get_local_ip(route_host: str = "8.8.8.8") -> str:
    """
    Получить локальный IP.

    UDP connect ничего не отправляет, но заставляет ОС выбрать интерфейс.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect((route_host, 80))
        return s.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        s.close()


def same_network(ip1: str, ip2: str) -> bool:
    """Совпадают ли первые три октета (эвристика /24)."""
    parts1 = ip1.split(".")
    parts2 = ip2.split(".")

    if len(parts1) != 4 or len(parts2) != 4:
        return False

    return parts1[:3] == parts2[:3]


def format_address(addr: Tuple[str, int]) -> str:
    return f"{addr[0]}:{addr[1]}"
