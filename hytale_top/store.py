import datetime
from pathlib import Path

import tinydb
from tinydb.storages import MemoryStorage
from tinydb.table import Document, Table

SERVERS = "servers"
VOTES = "votes"
REVIEWS = "reviews"
UPTIME = "uptime_history"

TIMESTAMP_TIMEZONE = datetime.timezone.utc

Doc = tinydb.Query()


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(tz=TIMESTAMP_TIMEZONE)


def to_iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.datetime.fromtimestamp(timestamp, tz=TIMESTAMP_TIMEZONE).isoformat()


def open_db(path: Path | None = None) -> tinydb.TinyDB:
    """
    Opens the document store. Without a path the store lives in memory.
    """
    if path is None:
        return tinydb.TinyDB(storage=MemoryStorage)
    return tinydb.TinyDB(path)


def get_doc(table: Table, doc_id) -> Document | None:
    """
    Gets a document by its public string id.
    """
    try:
        doc_id = int(doc_id)
    except (TypeError, ValueError):
        return None
    return table.get(doc_id=doc_id)


def as_id(value) -> str | None:
    """
    User and owner ids are stored and compared as strings, whatever JSON type
    the caller sent.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    return str(value)


def remove_none(values: dict) -> dict:
    return {k: v for k, v in values.items() if v is not None}
