"""
Shared fixtures: an in-memory store, a server factory and an HTTP client bound
to a fresh app.
"""

import datetime

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from hytale_top import query
from hytale_top.app import create_app
from hytale_top.store import SERVERS, TIMESTAMP_TIMEZONE, open_db

BASE_URL = "https://hytale.test"


@pytest.fixture
def db():
    store = open_db()
    yield store
    store.close()


@pytest.fixture
def add_server(db):
    """
    Inserts a raw server document and returns its public id.
    """

    def add(**fields) -> str:
        return str(db.table(SERVERS).insert(fields))

    return add


@pytest.fixture
def at():
    def make(*args) -> datetime.datetime:
        return datetime.datetime(*args, tzinfo=TIMESTAMP_TIMEZONE)

    return make


@pytest.fixture
def fake_query(monkeypatch):
    """
    Replaces the game server query with canned answers keyed by host.
    Unknown hosts are offline.
    """
    answers = {}
    calls = []

    async def query_server(host, port=5520, timeout=None):
        calls.append((host, port))
        answer = answers.get(host)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return query.offline_result()
        return {
            "online": True,
            "players": 0,
            "maxPlayers": 20,
            "motd": None,
            "version": "Hytale",
            "latency": 10,
            **answer,
        }

    monkeypatch.setattr(query, "query_server", query_server)
    query_server.answers = answers
    query_server.calls = calls
    return query_server


@pytest_asyncio.fixture
async def client(db):
    app = create_app(db, admin_api_key=None, base_url=BASE_URL)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


@pytest_asyncio.fixture
async def admin_client(db):
    app = create_app(db, admin_api_key="secret", base_url=BASE_URL)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client
