#!/usr/bin/env python3
"""
natlink - rendezvous и NAT traversal
====================================

[ROLES] Один скрипт, четыре роли:
- server: rendezvous сервер (+ встроенный STUN ответчик и LAN beacon)
- relay: relay сервер для fallback
- stun: отдельный STUN ответчик
- connect: узел, который ищет пару и устанавливает соединение

Использование:
    python main.py server [--port PORT] [--match-timeout SECONDS]
    python main.py relay [--port PORT]
    python main.py stun [--port PORT]
    python main.py connect [--server HOST:PORT] [--message TEXT]

Примеры:
    # Rendezvous сервер со встроенным STUN
    python main.py server --port 5000 --stun-port 3478

    # Два узла (в разных сетях)
    python main.py connect --server rendezvous.example.org:5000 --stun rendezvous.example.org:3478
    python main.py connect --server rendezvous.example.org:5000 --stun rendezvous.example.org:3478

    # Узел в LAN без адреса сервера (поиск через beacon)
    python main.py connect --message "Hello"
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

# Загрузка переменных окружения из .env файла
from dotenv import load_dotenv
load_dotenv()

from config import config, parse_host_port, parse_server_list
from natlink import NatlinkError, Endpoint
from natlink.nat import STUNServer, RelayServer
from natlink.matchmaking import RendezvousServer, RendezvousRegistry, fifo_policy, same_network_policy
from natlink.utils.netinfo import get_local_ip


# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("natlink")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="natlink - peer rendezvous and NAT traversal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Rendezvous server with embedded STUN responder
  python main.py server --port 5000 --stun-port 3478

  # Relay with credentials from NATLINK_RELAY_USERNAME / NATLINK_RELAY_PASSWORD
  python main.py relay --port 3479

  # Two endpoints pairing through the server
  python main.py connect --server 203.0.113.10:5000 --stun 203.0.113.10:3478
""",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    roles = parser.add_subparsers(dest="role", required=True)

    # server
    server = roles.add_parser("server", help="Run the rendezvous server")
    server.add_argument("--host", default=config.rendezvous.host)
    server.add_argument(
        "--port", "-p",
        type=int,
        default=config.rendezvous.port,
        help=f"TCP matchmaking port (default: {config.rendezvous.port})",
    )
    server.add_argument(
        "--pool",
        default=config.rendezvous.pool_key,
        help="Waiting pool key (default: %(default)s)",
    )
    server.add_argument(
        "--match-timeout",
        type=float,
        default=config.rendezvous.match_timeout,
        help="Seconds to wait for a second endpoint (default: %(default)s)",
    )
    server.add_argument(
        "--stun-port",
        type=int,
        default=config.rendezvous.stun_port,
        help="Embedded STUN responder port, 0 to disable (default: %(default)s)",
    )
    server.add_argument(
        "--beacon-port",
        type=int,
        default=config.rendezvous.beacon_port,
        help="LAN discovery port, 0 to disable (default: %(default)s)",
    )
    server.add_argument(
        "--prefer-same-network",
        action="store_true",
        default=config.rendezvous.prefer_same_network,
        help="Pair endpoints whose public IPs share a /24 first",
    )

    # relay
    relay = roles.add_parser("relay", help="Run the relay server")
    relay.add_argument("--host", default=config.relay.host)
    relay.add_argument(
        "--port", "-p",
        type=int,
        default=config.relay.port,
        help=f"Relay TCP port (default: {config.relay.port})",
    )
    relay.add_argument(
        "--max-allocations",
        type=int,
        default=config.relay.max_allocations,
    )

    # stun
    stun = roles.add_parser("stun", help="Run a standalone STUN responder")
    stun.add_argument("--host", default="0.0.0.0")
    stun.add_argument(
        "--port", "-p",
        type=int,
        default=config.rendezvous.stun_port or 3478,
    )

    # connect
    connect = roles.add_parser("connect", help="Pair with a peer and open a connection")
    connect.add_argument(
        "--server", "-s",
        default="",
        help="Rendezvous server HOST:PORT (default: LAN discovery)",
    )
    connect.add_argument(
        "--stun",
        default="",
        help="Comma-separated STUN servers (default: NATLINK_STUN_SERVERS)",
    )
    connect.add_argument(
        "--relay",
        default="",
        help="Comma-separated relay servers (default: NATLINK_RELAY_SERVERS)",
    )
    connect.add_argument(
        "--udp-port",
        type=int,
        default=config.endpoint.udp_port,
    )
    connect.add_argument(
        "--tcp-port",
        type=int,
        default=config.endpoint.tcp_port,
    )
    connect.add_argument(
        "--no-listen",
        action="store_true",
        help="Do not accept direct TCP dials on --tcp-port",
    )
    connect.add_argument(
        "--local-ip",
        default="",
        help="Override the advertised local IP",
    )
    connect.add_argument(
        "--message", "-m",
        default="",
        help="Send this message after connecting and print the reply",
    )

    return parser


async def wait_for_shutdown() -> None:
    """Ждать SIGINT/SIGTERM."""
    shutdown_event = asyncio.Event()

    def handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler)
        except NotImplementedError:
            pass

    await shutdown_event.wait()


async def run_server(args: argparse.Namespace) -> None:
    policy = same_network_policy if args.prefer_same_network else fifo_policy
    server = RendezvousServer(
        host=args.host,
        port=args.port,
        registry=RendezvousRegistry(policy=policy),
        pool_key=args.pool,
        match_timeout=args.match_timeout,
        record_timeout=config.rendezvous.record_timeout,
        max_record_size=config.rendezvous.max_record_size,
        stun_port=args.stun_port or None,
        beacon_port=args.beacon_port or None,
    )
    await server.start()
    logger.info(f"[MAIN] Endpoints should connect to {get_local_ip()}:{server.address[1]}")

    try:
        await wait_for_shutdown()
    finally:
        logger.info(f"[MAIN] Stats: {server.get_stats()}")
        await server.stop()


async def run_relay(args: argparse.Namespace) -> None:
    credentials = {}
    if config.relay.username:
        credentials[config.relay.username] = config.relay.password
    else:
        logger.warning("[MAIN] NATLINK_RELAY_USERNAME not set, relay accepts anyone")

    relay = RelayServer(
        host=args.host,
        port=args.port,
        credentials=credentials,
        max_allocations=args.max_allocations,
        allocation_timeout=config.relay.allocation_timeout,
    )
    await relay.start()

    try:
        await wait_for_shutdown()
    finally:
        logger.info(f"[MAIN] Stats: {relay.get_stats()}")
        await relay.stop()


async def run_stun(args: argparse.Namespace) -> None:
    stun = STUNServer(args.host, args.port)
    await stun.start()

    try:
        await wait_for_shutdown()
    finally:
        logger.info(f"[MAIN] Served {stun.requests_served} binding requests")
        await stun.stop()


async def run_connect(args: argparse.Namespace) -> int:
    if args.stun:
        config.discovery.stun_servers = parse_server_list(args.stun, 3478)
    if args.relay:
        config.relay.relay_servers = parse_server_list(args.relay, config.relay.port)
    config.endpoint.udp_port = args.udp_port
    config.endpoint.tcp_port = args.tcp_port
    config.endpoint.direct_listen = not args.no_listen

    server: Optional[tuple] = None
    if args.server:
        server = parse_host_port(args.server, config.rendezvous.port)

    endpoint = Endpoint(config, local_ip=args.local_ip)

    try:
        connection = await endpoint.pair(server)
    except NatlinkError as e:
        logger.error(f"[MAIN] Pairing failed at {e.stage}: {e}")
        return 1

    print(f"Connected: {connection!r}")
    print(f"  {connection.to_dict()}")

    try:
        if args.message:
            await connection.send(args.message.encode("utf-8"))
            reply = await asyncio.wait_for(connection.recv(), timeout=30)
            print(f"Reply: {reply.decode('utf-8', errors='replace')}")
        else:
            data = await asyncio.wait_for(connection.recv(), timeout=30)
            print(f"Received: {data.decode('utf-8', errors='replace')}")
            await connection.send(data)
    except (asyncio.TimeoutError, ConnectionError, OSError) as e:
        logger.warning(f"[MAIN] Exchange failed: {str(e) or 'timeout'}")
    finally:
        await endpoint.close()

    return 0


async def main() -> int:
    """
    Главная функция - точка входа.
    """
    args = build_parser().parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.role == "server":
        await run_server(args)
    elif args.role == "relay":
        await run_relay(args)
    elif args.role == "stun":
        await run_stun(args)
    elif args.role == "connect":
        return await run_connect(args)
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
