"""Network helper and server-list parsing tests."""

import pytest

import config
from config import parse_host_port, parse_server_list
from natlink.utils.netinfo import same_network, format_address


@pytest.mark.parametrize("a,b,expected", [
    ("192.168.1.10", "192.168.1.200", True),
    ("192.168.1.10", "192.168.2.10", False),
    ("10.0.0.1", "not-an-ip", False),
])
def test_same_network(a, b, expected):
    assert same_network(a, b) is expected


def test_parse_host_port():
    assert parse_host_port("relay.example.org:4000", 3479) == ("relay.example.org", 4000)
    assert parse_host_port(" relay.example.org ", 3479) == ("relay.example.org", 3479)

    with pytest.raises(ValueError):
        parse_host_port("relay.example.org:port", 3479)
    with pytest.raises(ValueError):
        parse_host_port("relay.example.org:70000", 3479)


def test_parse_server_list():
    assert parse_server_list("a:1, b ,,c:3", 9) == [("a", 1), ("b", 9), ("c", 3)]
    assert parse_server_list("", 9) == []


def test_format_address():
    assert format_address(("203.0.113.7", 35000)) == "203.0.113.7:35000"


class TestEnvServers:
    """NATLINK_*_SERVERS parsing never breaks import."""

    def test_valid_list(self, monkeypatch):
        monkeypatch.setenv("NATLINK_TEST_SERVERS", "relay1:4000,relay2")

        assert config._env_servers("NATLINK_TEST_SERVERS", 3479) == [("relay1", 4000), ("relay2", 3479)]

    def test_malformed_port_is_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv("NATLINK_TEST_SERVERS", "relay1:abc")

        assert config._env_servers("NATLINK_TEST_SERVERS", 3479) is None
        assert "NATLINK_TEST_SERVERS" in caplog.text

    def test_unset(self, monkeypatch):
        monkeypatch.delenv("NATLINK_TEST_SERVERS", raising=False)

        assert config._env_servers("NATLINK_TEST_SERVERS", 3479) is None
