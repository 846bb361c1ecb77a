import datetime

import tinydb

from hytale_top.errors import BadRequest
from hytale_top.store import UPTIME, Doc, to_iso, utcnow

DEFAULT_HOURS = 168
HISTORY_LIMIT = 500
CHART_HISTORY = 100


def record_uptime_check(
    db: tinydb.TinyDB,
    server_id: str,
    online: bool,
    players: int = 0,
    latency: int | None = None,
    now: datetime.datetime | None = None,
) -> None:
    db.table(UPTIME).insert(
        {
            "serverId": str(server_id),
            "timestamp": (now or utcnow()).timestamp(),
            "online": online,
            "players": players,
            "latency": latency or None,
        }
    )


def uptime_history(
    db: tinydb.TinyDB,
    server_id: str,
    hours: int = DEFAULT_HOURS,
    now: datetime.datetime | None = None,
) -> list[dict]:
    """
    Checks for a server in the last `hours`, newest first.
    """
    cutoff = ((now or utcnow()) - datetime.timedelta(hours=hours)).timestamp()
    history = db.table(UPTIME).search(
        (Doc.serverId == str(server_id)) & (Doc.timestamp >= cutoff)
    )
    history.sort(key=lambda record: record["timestamp"], reverse=True)
    return [dict(record) for record in history[:HISTORY_LIMIT]]


def uptime_stats(
    db: tinydb.TinyDB,
    server_id: str | None,
    hours: int = DEFAULT_HOURS,
    now: datetime.datetime | None = None,
) -> dict:
    if not server_id:
        raise BadRequest("Server ID is required")
    history = uptime_history(db, server_id, hours, now)
    online = [record for record in history if record["online"]]
    players = [record["players"] for record in online]
    return {
        "serverId": str(server_id),
        "uptimePercentage": (
            round(len(online) / len(history) * 100, 1) if history else 0
        ),
        "avgPlayers": round(sum(players) / len(players)) if players else 0,
        "maxPlayers": max(players) if players else 0,
        "totalChecks": len(history),
        "onlineChecks": len(online),
        "history": history[:CHART_HISTORY],
    }


def aggregate_uptime_for_chart(
    history: list[dict], hours: int = 24, now: datetime.datetime | None = None
) -> list[dict]:
    """
    Hourly uptime and average players, oldest hour first.
    """
    now = now or utcnow()
    chart = []
    for i in range(hours - 1, -1, -1):
        hour_start = (now - datetime.timedelta(hours=i + 1)).timestamp()
        hour_end_dt = now - datetime.timedelta(hours=i)
        hour_end = hour_end_dt.timestamp()
        records = [r for r in history if hour_start <= r["timestamp"] < hour_end]
        online = sum(1 for r in records if r["online"])
        chart.append(
            {
                "hour": hour_end_dt.strftime("%H"),
                "uptime": round(online / len(records) * 100) if records else 0,
                "players": (
                    round(sum(r["players"] for r in records) / len(records))
                    if records
                    else 0
                ),
            }
        )
    return chart


def history_view(history: list[dict]) -> list[dict]:
    return [{**record, "timestamp": to_iso(record["timestamp"])} for record in history]
