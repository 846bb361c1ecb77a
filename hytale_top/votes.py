import datetime
import threading

import tinydb

from hytale_top.errors import AlreadyVoted, BadRequest, NotFound, Unauthenticated
from hytale_top.store import (
    SERVERS,
    TIMESTAMP_TIMEZONE,
    VOTES,
    Doc,
    as_id,
    get_doc,
    to_iso,
    utcnow,
)

# eligibility check, vote insert and counter increments happen under this lock
VOTE_LOCK = threading.Lock()

DEFAULT_HISTORY_LIMIT = 10


def day_start(now: datetime.datetime) -> datetime.datetime:
    """
    Start of the UTC calendar day containing now. Votes reopen at this boundary.
    """
    return now.astimezone(TIMESTAMP_TIMEZONE).replace(
        hour=0, minute=0, second=0, microsecond=0
    )


def day_bucket(now: datetime.datetime) -> str:
    return day_start(now).date().isoformat()


def has_voted_today(
    db: tinydb.TinyDB, server_id: str, user_id: str, now: datetime.datetime
) -> bool:
    since = day_start(now).timestamp()
    previous = db.table(VOTES).search(
        (Doc.serverId == server_id) & (Doc.userId == user_id)
    )
    return any((vote.get("votedAt") or 0) >= since for vote in previous)


def increment_votes(doc):
    doc["votes"] = (doc.get("votes") or 0) + 1
    doc["votesThisMonth"] = (doc.get("votesThisMonth") or 0) + 1


def cast_vote(
    db: tinydb.TinyDB,
    server_id: str | None,
    user_id: str | None,
    username: str | None = None,
    user_email: str | None = None,
    now: datetime.datetime | None = None,
) -> int:
    """
    Records a vote and bumps the server's counters.
    :return: The server's vote count after the increment
    """
    if not server_id:
        raise BadRequest("Server ID is required")
    user_id = as_id(user_id)
    if not user_id:
        raise Unauthenticated("You must be logged in to vote")
    server_id = str(server_id)
    now = now or utcnow()
    votes = db.table(VOTES)
    servers = db.table(SERVERS)
    with VOTE_LOCK:
        if has_voted_today(db, server_id, user_id, now):
            raise AlreadyVoted("You have already voted for this server today")
        server = get_doc(servers, server_id)
        if server is None:
            raise NotFound("Server not found")
        vote_id = votes.insert(
            {
                "serverId": server_id,
                "userId": user_id,
                "username": username or "Anonymous",
                "userEmail": user_email or None,
                "votedAt": now.timestamp(),
                "dayBucket": day_bucket(now),
            }
        )
        try:
            servers.update(increment_votes, doc_ids=[server.doc_id])
        except Exception:
            votes.remove(doc_ids=[vote_id])
            raise
        return servers.get(doc_id=server.doc_id).get("votes", 0)


def vote_history(
    db: tinydb.TinyDB, server_id: str | None, limit: int = DEFAULT_HISTORY_LIMIT
) -> dict:
    if not server_id:
        raise BadRequest("Server ID is required")
    found = db.table(VOTES).search(Doc.serverId == str(server_id))
    found.sort(key=lambda vote: vote.get("votedAt") or 0, reverse=True)
    return {
        "votes": [
            {
                "id": str(vote.doc_id),
                "serverId": vote["serverId"],
                "userId": vote.get("userId"),
                "username": vote.get("username") or "Anonymous",
                "votedAt": to_iso(vote.get("votedAt")),
            }
            for vote in found[: max(limit, 0)]
        ],
        "totalVotes": len(found),
    }
