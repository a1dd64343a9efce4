"""
Endpoint Record - сетевая идентичность узла
===========================================

[RECORD] Что узел сообщает rendezvous серверу о себе:
- local_ip: адрес в частной сети (как его видит ОС)
- public_ip: адрес за NAT (узнали через STUN)
- udp_port / tcp_port: порты для traversal

[WIRE FORMAT] Одна строка, четыре поля через запятую:

    localIP,publicIP,udpPort,tcpPort\\n

[INVARIANTS]
- Запись неизменяема после отправки (frozen dataclass)
- Запись с пустым public_ip никогда не попадает к пиру
- Только IPv4
- Переподключение = новая запись, без обновления на месте
"""

import ipaddress
import logging
import secrets
from dataclasses import dataclass, asdict
from typing import Dict, Any, Tuple, Union

from .errors import RegistrationRejected

logger = logging.getLogger(__name__)


WIRE_FIELDS = 4
WIRE_SEPARATOR = ","
WIRE_TERMINATOR = "\n"

MIN_PORT = 1
MAX_PORT = 65535


def new_record_id() -> str:
    """Случайный идентификатор сессии для узла."""
    return secrets.token_hex(8)


def _parse_ip(value: str, field_name: str) -> str:
    value = value.strip()
    if not value:
        raise RegistrationRejected(f"Empty {field_name}")
    try:
        return str(ipaddress.IPv4Address(value))
    except ValueError:
        # Сокеты punch и STUN только AF_INET
        raise RegistrationRejected(f"Invalid IPv4 {field_name}: {value!r}") from None


def _parse_port(value: Union[str, int], field_name: str) -> int:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise RegistrationRejected(f"Empty {field_name}")
        try:
            value = int(value)
        except ValueError:
            raise RegistrationRejected(f"Non-numeric {field_name}: {value!r}") from None
    if isinstance(value, bool) or not isinstance(value, int):
        raise RegistrationRejected(f"Invalid {field_name}: {value!r}")
    if not MIN_PORT <= value <= MAX_PORT:
        raise RegistrationRejected(f"{field_name} out of range: {value}")
    return value


@dataclass(frozen=True)
class EndpointRecord:
    """
    Сетевая идентичность узла на момент регистрации.

    [ID] На сервере id = адрес входящего соединения ("ip:port"),
    на узле - случайный токен. Стабилен в рамках одной попытки matchmaking.
    """

    id: str
    local_ip: str
    public_ip: str
    udp_port: int
    tcp_port: int

    @classmethod
    def create(
        cls,
        local_ip: str,
        public_ip: str,
        udp_port: Union[str, int],
        tcp_port: Union[str, int],
        record_id: str = "",
    ) -> "EndpointRecord":
        """
        Создать проверенную запись.

        Raises:
            RegistrationRejected: если любое поле пустое или некорректное
        """
        return cls(
            id=record_id or new_record_id(),
            local_ip=_parse_ip(local_ip, "local IP"),
            public_ip=_parse_ip(public_ip, "public IP"),
            udp_port=_parse_port(udp_port, "UDP port"),
            tcp_port=_parse_port(tcp_port, "TCP port"),
        )

    @classmethod
    def from_wire(cls, line: Union[str, bytes], record_id: str = "") -> "EndpointRecord":
        """
        Распарсить строку wire формата.

        Raises:
            RegistrationRejected: неверное число полей или некорректные значения
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError:
                raise RegistrationRejected("Record is not valid UTF-8") from None

        parts = line.strip().split(WIRE_SEPARATOR)
        if len(parts) != WIRE_FIELDS:
            raise RegistrationRejected(
                f"Expected {WIRE_FIELDS} fields, got {len(parts)}"
            )

        local_ip, public_ip, udp_port, tcp_port = parts
        return cls.create(local_ip, public_ip, udp_port, tcp_port, record_id)

    def to_wire(self) -> str:
        """Сериализовать в одну строку (с завершающим \\n)."""
        return WIRE_SEPARATOR.join((
            self.local_ip,
            self.public_ip,
            str(self.udp_port),
            str(self.tcp_port),
        )) + WIRE_TERMINATOR

    def encode(self) -> bytes:
        return self.to_wire().encode("utf-8")

    def with_id(self, record_id: str) -> "EndpointRecord":
        """Копия записи с другим id (сервер присваивает свой)."""
        return EndpointRecord(
            id=record_id,
            local_ip=self.local_ip,
            public_ip=self.public_ip,
            udp_port=self.udp_port,
            tcp_port=self.tcp_port,
        )

    @property
    def public_address(self) -> Tuple[str, int]:
        return (self.public_ip, self.udp_port)

    @property
    def local_address(self) -> Tuple[str, int]:
        return (self.local_ip, self.udp_port)

    @property
    def public_tcp_address(self) -> Tuple[str, int]:
        return (self.public_ip, self.tcp_port)

    @property
    def candidate_addresses(self) -> Tuple[Tuple[str, int], ...]:
        """UDP кандидаты пира: публичный, затем локальный (без дублей)."""
        if self.public_address == self.local_address:
            return (self.public_address,)
        return (self.public_address, self.local_address)

    @property
    def behind_nat(self) -> bool:
        return self.public_ip != self.local_ip

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        return (
            f"{self.id} (public={self.public_ip}, local={self.local_ip}, "
            f"udp={self.udp_port}, tcp={self.tcp_port})"
        )
