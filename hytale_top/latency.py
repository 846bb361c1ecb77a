import tarfile
import time
import urllib.parse
import urllib.request
from pathlib import Path

import aiohttp
import geoip2.database
import geoip2.errors
import orjson

from hytale_top import config, query
from hytale_top.errors import PingError, ProbeError
from hytale_top.store import utcnow

# (upper bound ms, label, color, emoji, score)
LATENCY_RATINGS = (
    (50, "Excellent", "#22c55e", "🟢", 5),
    (80, "Great", "#84cc16", "🟢", 4),
    (120, "Good", "#eab308", "🟡", 3),
    (180, "Fair", "#f97316", "🟠", 2),
    (300, "Poor", "#ef4444", "🔴", 1),
)
BAD_RATING = ("Bad", "#dc2626", "🔴", 0)

ECHO_PATH = "/api/user-ping"

GEOIP_MAX_AGE_DAYS = 30


def latency_rating(latency: float) -> dict:
    for limit, label, color, emoji, score in LATENCY_RATINGS:
        if latency < limit:
            return {"label": label, "color": color, "emoji": emoji, "score": score}
    label, color, emoji, score = BAD_RATING
    return {"label": label, "color": color, "emoji": emoji, "score": score}


async def measure_server_latency(host: str, port: int) -> int:
    """
    Latency from this service to the game server, in ms.
    """
    result = await query.query_server(host, port)
    if not result["online"] or result["latency"] is None:
        raise ProbeError("Server did not respond to ping")
    return result["latency"]


def user_location(headers, remote: str | None, geoip=None) -> dict:
    """
    Where the caller is, from CDN headers or the GeoIP database.
    """
    country = headers.get("cf-ipcountry") or headers.get("x-vercel-ip-country")
    city = headers.get("x-vercel-ip-city")
    region = headers.get("x-vercel-ip-country-region")
    if not country and geoip is not None and remote:
        try:
            found = geoip.city(remote)
            country = found.country.iso_code
            city = city or found.city.name
        except (geoip2.errors.AddressNotFoundError, ValueError):
            pass
    return {
        "country": country or "unknown",
        "city": urllib.parse.unquote(city) if city else None,
        "region": region,
    }


def handle_geoip(geoip_db: Path, edition: str = "GeoLite2-City") -> bool:
    """
    Downloads the MaxMind database unless a fresh copy is already on disk.
    """
    if geoip_db.exists():
        age = utcnow().timestamp() - geoip_db.stat().st_mtime
        if age / 24 / 3600 <= GEOIP_MAX_AGE_DAYS:
            return True
    if not config.GEOIP_KEY:
        return False
    archive_name = f"./{edition}.tar.gz"
    urllib.request.urlretrieve(
        f"https://download.maxmind.com/app/geoip_download?edition_id={edition}&license_key={config.GEOIP_KEY}&suffix=tar.gz",
        archive_name,
    )
    with tarfile.open(archive_name) as tar:
        for member in tar.getmembers():
            if member.name.endswith(".mmdb"):
                with tar.extractfile(member) as db:
                    with open(geoip_db, "wb") as out:
                        out.write(db.read())
                return True
    return False


def open_geoip(geoip_db: Path) -> geoip2.database.Reader | None:
    if not handle_geoip(geoip_db):
        return None
    return geoip2.database.Reader(geoip_db)


async def ping_test(
    session: aiohttp.ClientSession,
    server_id: str | None = None,
    ip: str | None = None,
    port: int | None = None,
) -> dict:
    """
    Estimates the latency a player would see: half the round trip to this
    service plus the service's own latency to the game server.
    """
    try:
        start = time.perf_counter()
        async with session.get(ECHO_PATH) as resp:
            echo = await resp.json(loads=orjson.loads)
        user_latency = round((time.perf_counter() - start) * 1000 / 2)
        if not echo.get("success"):
            raise PingError("Failed to measure user latency")

        async with session.post(
            ECHO_PATH, json={"serverId": server_id, "ip": ip, "port": port}
        ) as resp:
            ping = await resp.json(loads=orjson.loads)
    except (aiohttp.ClientError, orjson.JSONDecodeError) as e:
        raise PingError("Failed to ping server") from e
    if not ping.get("success"):
        raise PingError(ping.get("error") or "Failed to ping server")

    server_latency = ping["latency"]["serverLatency"]
    total_latency = user_latency + server_latency
    return {
        "serverLatency": server_latency,
        "userLatency": user_latency,
        "totalLatency": total_latency,
        "rating": latency_rating(total_latency),
        "userLocation": ping.get("userLocation") or echo.get("location"),
        "timestamp": int(utcnow().timestamp() * 1000),
    }
