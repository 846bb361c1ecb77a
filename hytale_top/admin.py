import asyncio
import datetime
import traceback
from pathlib import Path

import orjson
import tinydb

from hytale_top import config, query
from hytale_top.errors import NotFound
from hytale_top.servers import (
    DEFAULT_PORT,
    SHORT_DESCRIPTION_LENGTH,
    normalize_server,
    server_slug,
    slugify,
)
from hytale_top.store import SERVERS, remove_none, utcnow
from hytale_top.uptime import record_uptime_check, uptime_stats

SEED_FILE = Path(__file__).with_name("seed_servers.json")

FEATURED_VOTES = 150

SERVER_CATEGORIES = {
    "pvpht": "pvp",
    "hytale-party": "minigames",
    "elitehytale-pvp-no-lag-active-staff": "pvp",
    "hytown": "roleplay",
    "hylore": "survival",
    "hyfable": "survival",
    "hytale-box": "creative",
    "2b2h": "survival",
    "cozytale-kitpvp-and-more": "minigames",
    "runeteria": "roleplay",
    "topstrix": "adventure",
    "dogecraft": "economy",
    "hyspania": "survival",
    "ru-inter-world-hytale-iw": "survival",
    "hyt2b": "survival",
    "primetale": "other",
    "horizons-smp": "survival",
    "runefall-net": "minigames",
    "hyfyve": "survival",
    "old-stronghold": "adventure",
}


def load_seed_servers(path: Path = SEED_FILE) -> list[dict]:
    with open(path, "rb") as fp:
        return orjson.loads(fp.read())


def reset_votes(db: tinydb.TinyDB) -> int:
    table = db.table(SERVERS)
    doc_ids = [doc.doc_id for doc in table.all()]
    table.update({"votes": 0, "votesThisMonth": 0}, doc_ids=doc_ids)
    print(f"Reset votes for {len(doc_ids)} servers")
    return len(doc_ids)


def update_categories(db: tinydb.TinyDB) -> list[dict]:
    table = db.table(SERVERS)
    results = []
    for doc in table.all():
        slug = server_slug(doc.doc_id, doc)
        category = SERVER_CATEGORIES.get(slug)
        if category:
            table.update({"category": category}, doc_ids=[doc.doc_id])
            results.append({"name": doc.get("name"), "slug": slug, "category": category})
    print(f"Updated categories for {len(results)} servers")
    return results


def clear_servers(db: tinydb.TinyDB) -> int:
    table = db.table(SERVERS)
    removed = table.remove(doc_ids=[doc.doc_id for doc in table.all()])
    print(f"Deleted {len(removed)} servers")
    return len(removed)


def seed_document(seed: dict, now_ts: float) -> dict:
    description = seed.get("description") or ""
    return remove_none(
        {
            "name": seed["name"],
            "slug": seed.get("slug") or slugify(seed["name"]),
            "ip": seed["ip"],
            "port": seed.get("port") or DEFAULT_PORT,
            "description": description,
            "shortDescription": description[:SHORT_DESCRIPTION_LENGTH],
            "category": "survival",
            "tags": [],
            "banner": seed.get("banner"),
            "isOnline": False,
            "currentPlayers": 0,
            "maxPlayers": 100,
            "uptime": 0,
            "lastPinged": 0,
            # counters start at zero so seeded servers compete fairly
            "votes": 0,
            "votesThisMonth": 0,
            "website": seed.get("website"),
            "discord": seed.get("discord"),
            "country": seed.get("country") or "US",
            "language": ["en"],
            "version": "Unknown",
            "isFeatured": (seed.get("votes") or 0) > FEATURED_VOTES,
            "isVerified": seed.get("discord") is not None,
            "isPremium": False,
            "createdAt": now_ts,
            "updatedAt": now_ts,
        }
    )


def seed_servers(
    db: tinydb.TinyDB,
    clear: bool = False,
    seeds: list[dict] | None = None,
    now: datetime.datetime | None = None,
) -> dict:
    print("Starting database seed...")
    if clear:
        clear_servers(db)
    if seeds is None:
        seeds = load_seed_servers()
    now_ts = (now or utcnow()).timestamp()
    table = db.table(SERVERS)
    print(f"Seeding {len(seeds)} servers...")
    results = []
    for seed in seeds:
        try:
            doc_id = table.insert(seed_document(seed, now_ts))
            results.append({"name": seed["name"], "id": str(doc_id), "success": True})
        except Exception as e:
            traceback.print_exc()
            results.append(
                {"name": seed.get("name"), "success": False, "error": str(e)}
            )
    successful = sum(1 for result in results if result["success"])
    return {
        "total": len(seeds),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


async def ping_one(db: tinydb.TinyDB, doc, now: datetime.datetime) -> dict:
    server_id = str(doc.doc_id)
    name = doc.get("name") or server_id
    try:
        result = await query.query_server(doc.get("ip") or "", doc.get("port") or DEFAULT_PORT)
        record_uptime_check(
            db, server_id, result["online"], result["players"], result["latency"], now
        )
        db.table(SERVERS).update(
            {
                "isOnline": result["online"],
                "currentPlayers": result["players"],
                "maxPlayers": result["maxPlayers"] or 100,
                "version": result["version"] or "Hytale",
                "uptime": uptime_stats(db, server_id, now=now)["uptimePercentage"],
                "lastPinged": now.timestamp(),
                "updatedAt": now.timestamp(),
            },
            doc_ids=[doc.doc_id],
        )
    except Exception:
        traceback.print_exc()
        return {"name": name, "online": False, "players": 0}
    status = "ONLINE" if result["online"] else "OFFLINE"
    print(f"{name}: {status} ({result['players']} players, {result['latency']}ms)")
    return {"name": name, "online": result["online"], "players": result["players"]}


async def ping_all_servers(
    db: tinydb.TinyDB,
    batch_size: int = config.PING_BATCH_SIZE,
    now: datetime.datetime | None = None,
) -> dict:
    """
    Queries every listed server in batches and stores the status it reports.
    """
    docs = db.table(SERVERS).all()
    if not docs:
        raise NotFound("No servers in database. Run seed first.")
    now = now or utcnow()
    print(f"Pinging {len(docs)} servers...")
    results = []
    for i in range(0, len(docs), batch_size):
        batch = docs[i : i + batch_size]
        results += await asyncio.gather(*[ping_one(db, doc, now) for doc in batch])
    online = sum(1 for result in results if result["online"])
    total_players = sum(result["players"] for result in results if result["online"])
    print(f"Ping complete: {online}/{len(docs)} online, {total_players} players")
    return {
        "summary": {
            "total": len(docs),
            "online": online,
            "offline": len(docs) - online,
            "totalPlayers": total_players,
        },
        "results": results,
    }


def ping_status(db: tinydb.TinyDB) -> dict:
    servers = [
        normalize_server(doc.doc_id, doc) for doc in db.table(SERVERS).all()
    ]
    online = sum(1 for server in servers if server["isOnline"])
    return {
        "summary": {
            "total": len(servers),
            "online": online,
            "offline": len(servers) - online,
            "totalPlayers": sum(server["currentPlayers"] for server in servers),
        },
        "servers": [
            {
                "id": server["id"],
                "slug": server["slug"],
                "name": server["name"],
                "ip": server["ip"],
                "isOnline": server["isOnline"],
                "currentPlayers": server["currentPlayers"],
                "maxPlayers": server["maxPlayers"],
                "lastPinged": server["lastPinged"],
            }
            for server in servers
        ],
    }


def server_count(db: tinydb.TinyDB) -> int:
    return len(db.table(SERVERS))
