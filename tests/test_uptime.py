import datetime

import pytest

from hytale_top import uptime
from hytale_top.errors import BadRequest


def test_uptime_stats(db, at):
    now = at(2026, 5, 1, 12)
    for minutes, online, players in ((10, True, 10), (20, True, 30), (30, False, 0)):
        uptime.record_uptime_check(
            db, "1", online, players, 25, now - datetime.timedelta(minutes=minutes)
        )
    uptime.record_uptime_check(db, "2", True, 99, 25, now)

    stats = uptime.uptime_stats(db, "1", hours=24, now=now)

    assert stats["totalChecks"] == 3
    assert stats["onlineChecks"] == 2
    assert stats["uptimePercentage"] == 66.7
    assert stats["avgPlayers"] == 20
    assert stats["maxPlayers"] == 30
    assert [r["players"] for r in stats["history"]] == [10, 30, 0]


def test_uptime_history_cutoff(db, at):
    now = at(2026, 5, 1, 12)
    uptime.record_uptime_check(db, "1", True, 1, now=now - datetime.timedelta(hours=2))
    uptime.record_uptime_check(db, "1", True, 1, now=now - datetime.timedelta(hours=30))

    assert len(uptime.uptime_history(db, "1", hours=24, now=now)) == 1
    assert len(uptime.uptime_history(db, "1", hours=48, now=now)) == 2


def test_uptime_stats_without_checks(db):
    stats = uptime.uptime_stats(db, "7")

    assert stats["uptimePercentage"] == 0
    assert stats["avgPlayers"] == 0
    assert stats["history"] == []


def test_uptime_stats_requires_server(db):
    with pytest.raises(BadRequest):
        uptime.uptime_stats(db, "")


def test_chart_buckets_by_hour(db, at):
    now = at(2026, 5, 1, 12)
    uptime.record_uptime_check(db, "1", True, 10, now=at(2026, 5, 1, 11, 15))
    uptime.record_uptime_check(db, "1", False, 0, now=at(2026, 5, 1, 11, 45))
    uptime.record_uptime_check(db, "1", True, 8, now=at(2026, 5, 1, 9, 30))
    history = uptime.uptime_history(db, "1", now=now)

    chart = uptime.aggregate_uptime_for_chart(history, hours=24, now=now)

    assert len(chart) == 24
    assert chart[-1] == {"hour": "12", "uptime": 50, "players": 5}
    assert chart[-3] == {"hour": "10", "uptime": 100, "players": 8}
    assert chart[0] == {"hour": "13", "uptime": 0, "players": 0}


def test_history_view_uses_iso_timestamps(db, at):
    uptime.record_uptime_check(db, "1", True, 3, now=at(2026, 5, 1, 8))

    (record,) = uptime.history_view(uptime.uptime_history(db, "1", now=at(2026, 5, 1, 9)))

    assert record["timestamp"] == "2026-05-01T08:00:00+00:00"
    assert record["players"] == 3
