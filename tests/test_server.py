import asyncio

import pytest
import redis

from reqforge import server
from reqforge.history import RunHistory

from fakes import FakeRedis


class DownRedis(FakeRedis):
    def ping(self):
        raise redis.ConnectionError("connection refused")


@pytest.fixture(autouse=True)
def fresh_server_state(monkeypatch):
    monkeypatch.setattr(server, "_history", None)
    monkeypatch.setattr(server, "_history_retry_at", 0.0)
    monkeypatch.setattr(server, "_content_generator", None)


def test_generator_is_built_once_and_reused(monkeypatch):
    built = []

    class RecordingGenerator:
        def __init__(self, credentials):
            built.append(credentials)

    monkeypatch.setattr(server, "ContentGenerator", RecordingGenerator)

    assert server._generator() is server._generator()
    assert built == [server.CREDENTIALS]


def test_history_reconnects_after_redis_comes_back(monkeypatch):
    clients = [DownRedis(), FakeRedis()]
    monkeypatch.setattr(server, "connect_redis", lambda: clients.pop(0))
    monkeypatch.setattr(server, "HISTORY_RETRY_S", 0.0)

    assert asyncio.run(server.get_history()) is None
    history = asyncio.run(server.get_history())

    assert isinstance(history, RunHistory)
    assert clients == []
    assert asyncio.run(server.get_history()) is history


def test_history_waits_before_reconnecting(monkeypatch):
    attempts = []

    def connect():
        attempts.append(1)
        return DownRedis()

    monkeypatch.setattr(server, "connect_redis", connect)

    assert asyncio.run(server.get_history()) is None
    assert asyncio.run(server.get_history()) is None
    assert len(attempts) == 1


def test_tracked_run_is_recorded_when_history_is_up(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(server, "connect_redis", lambda: client)

    async def main():
        async with server._track("audit_collection", "c1") as detail:
            detail["chars"] = 42

    asyncio.run(main())

    run = RunHistory(client).recent()[0]
    assert (run.kind, run.collectionId, run.detail) == ("audit_collection", "c1", {"chars": 42})
