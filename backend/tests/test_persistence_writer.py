import anyio
import pytest

from app.monitoring.metrics import (
    realtime_persistence_dead_letters_total,
    realtime_persistence_retries_total,
)
from freetalk.realtime.persistence import PersistenceWriter, guarded_lookup


def recorder(log: list, value, delay: float = 0.0):
    async def write() -> None:
        if delay:
            await anyio.sleep(delay)
        log.append(value)

    return write


@pytest.mark.anyio("asyncio")
async def test_writes_for_one_key_keep_submission_order() -> None:
    writer = PersistenceWriter(base_delay=0.001)
    log: list = []

    writer.submit("call_upsert", "call:1", recorder(log, "ringing", delay=0.05))
    writer.submit("call_upsert", "call:1", recorder(log, "accepted"))
    writer.submit("call_upsert", "call:1", recorder(log, "ended"))
    await writer.drain()

    assert log == ["ringing", "accepted", "ended"]
    assert writer.pending == 0


@pytest.mark.anyio("asyncio")
async def test_other_keys_are_not_blocked() -> None:
    writer = PersistenceWriter(base_delay=0.001)
    log: list = []

    writer.submit("set_user_online", "user:1", recorder(log, "slow", delay=0.05))
    writer.submit("set_user_online", "user:2", recorder(log, "fast"))
    await writer.drain()

    assert log == ["fast", "slow"]


@pytest.mark.anyio("asyncio")
async def test_transient_failures_are_retried() -> None:
    writer = PersistenceWriter(base_delay=0.001, max_delay=0.002)
    attempts = []

    async def flaky() -> None:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("datastore restarting")

    writer.submit("call_upsert", "call:9", flaky)
    await writer.drain()

    assert len(attempts) == 3
    assert realtime_persistence_retries_total.value("call_upsert") == 2
    assert list(writer.dead_letters) == []


@pytest.mark.anyio("asyncio")
async def test_exhausted_write_is_dead_lettered() -> None:
    writer = PersistenceWriter(attempts=3, base_delay=0.001, max_delay=0.002)

    async def broken() -> None:
        raise ConnectionError("datastore unavailable")

    writer.submit("set_user_online", "user:4", broken)
    await writer.drain()

    [letter] = writer.dead_letters
    assert letter.operation == "set_user_online"
    assert letter.key == "user:4"
    assert letter.attempts == 3
    assert "datastore unavailable" in letter.error
    assert realtime_persistence_dead_letters_total.value("set_user_online") == 1
    assert realtime_persistence_retries_total.value("set_user_online") == 2


@pytest.mark.anyio("asyncio")
async def test_close_cancels_writes_past_timeout() -> None:
    writer = PersistenceWriter(base_delay=0.001)
    log: list = []

    writer.submit("call_upsert", "call:1", recorder(log, "late", delay=10))
    await writer.close(timeout=0.01)

    assert writer.pending == 0
    assert log == []


@pytest.mark.anyio("asyncio")
async def test_guarded_lookup_falls_back_to_default() -> None:
    async def failing() -> list:
        raise ConnectionError("datastore unavailable")

    async def working() -> list:
        return ["1"]

    assert await guarded_lookup("lookup_friends", failing(), []) == []
    assert await guarded_lookup("lookup_friends", working(), []) == ["1"]


def test_writer_requires_one_attempt() -> None:
    with pytest.raises(ValueError):
        PersistenceWriter(attempts=0)
