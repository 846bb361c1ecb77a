"""
Game server queries. Hytale servers answer the HyQuery UDP packet on their game
port. Hosts that don't are tried with an A2S info query and finally a plain TCP
connect, which only tells us the host is up.
"""

import asyncio
import time
import traceback

import a2s
import orjson

from hytale_top import config

HYQUERY_MAGIC = b"HYQUERY"
HYQUERY_PACKET = HYQUERY_MAGIC + b"\x00\xfe\x01"
LEGACY_PACKET = b"\xfe\x01"

MAX_REPORTED_PLAYERS = 1000
DEFAULT_MAX_PLAYERS = 20
DEFAULT_VERSION = "Hytale"


def elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def capped_count(value, default: int) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return default
    return min(max(count, 0), MAX_REPORTED_PLAYERS)


def offline_result() -> dict:
    return {
        "online": False,
        "players": 0,
        "maxPlayers": 0,
        "motd": None,
        "version": None,
        "latency": None,
    }


def parse_hyquery_response(msg: bytes) -> dict:
    """
    Parses a HyQuery reply. Any reply at all means the server is up, so a body
    we can't read still yields an online result with default counts.
    """
    if msg.startswith(HYQUERY_MAGIC):
        payload = msg[len(HYQUERY_MAGIC) :]
    else:
        # legacy replies carry a two byte prefix
        payload = msg[2:]
    try:
        body = orjson.loads(payload)
    except orjson.JSONDecodeError:
        body = None
    if not isinstance(body, dict):
        body = {}
    players = body.get("players")
    if not isinstance(players, dict):
        players = {}
    return {
        "online": True,
        "players": capped_count(players.get("online"), 0),
        "maxPlayers": capped_count(players.get("max"), DEFAULT_MAX_PLAYERS),
        "motd": body.get("motd") or body.get("description"),
        "version": body.get("version") or DEFAULT_VERSION,
        "latency": None,
    }


class HyQueryProtocol(asyncio.DatagramProtocol):
    def __init__(self, response: asyncio.Future):
        self.response = response

    def connection_made(self, transport):
        transport.sendto(HYQUERY_PACKET)
        transport.sendto(LEGACY_PACKET)

    def datagram_received(self, data, addr):
        if not self.response.done():
            self.response.set_result(data)

    def error_received(self, exc):
        if not self.response.done():
            self.response.set_exception(exc)

    def connection_lost(self, exc):
        if exc is not None and not self.response.done():
            self.response.set_exception(exc)


async def query_hyquery(host: str, port: int, timeout: float) -> dict | None:
    loop = asyncio.get_running_loop()
    response = loop.create_future()
    start = time.perf_counter()
    try:
        transport, _ = await asyncio.wait_for(
            loop.create_datagram_endpoint(
                lambda: HyQueryProtocol(response), remote_addr=(host, port)
            ),
            timeout,
        )
    except (asyncio.TimeoutError, OSError):
        return None
    try:
        msg = await asyncio.wait_for(response, timeout)
    except (asyncio.TimeoutError, OSError):
        return None
    finally:
        transport.close()
    result = parse_hyquery_response(msg)
    result["latency"] = elapsed_ms(start)
    return result


async def query_a2s(host: str, port: int, timeout: float) -> dict | None:
    try:
        info = await a2s.ainfo((host, port), timeout=timeout)
    except Exception:
        # non-A2S services can answer with anything
        if config.DEBUG:
            traceback.print_exc()
        return None
    return {
        "online": True,
        "players": capped_count(info.player_count, 0),
        "maxPlayers": capped_count(info.max_players, DEFAULT_MAX_PLAYERS),
        "motd": info.server_name,
        "version": info.version or DEFAULT_VERSION,
        "latency": round(info.ping * 1000),
    }


async def query_tcp(host: str, port: int, timeout: float) -> dict | None:
    start = time.perf_counter()
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout=timeout
        )
    except (asyncio.TimeoutError, OSError):
        return None
    latency = elapsed_ms(start)
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return {
        "online": True,
        "players": 0,
        "maxPlayers": DEFAULT_MAX_PLAYERS,
        "motd": None,
        "version": DEFAULT_VERSION,
        "latency": latency,
    }


PROBES = (query_hyquery, query_a2s, query_tcp)


async def query_server(host: str, port: int = 5520, timeout: float | None = None) -> dict:
    """
    Queries a game server with each probe in turn. The first one to get an
    answer wins.
    """
    if timeout is None:
        timeout = config.QUERY_TIMEOUT
    for probe in PROBES:
        result = await probe(host, port, timeout)
        if result is not None:
            if config.DEBUG:
                print(f"{host}:{port} answered {probe.__name__} in {result['latency']}ms")
            return result
    return offline_result()
