from __future__ import annotations

import anyio
import pytest

from app.monitoring.metrics import realtime_calls_total
from freetalk.calls.signaling import CallStatus
from freetalk.realtime.hub import Hub
from freetalk.realtime.persistence import PersistenceWriter


def frame(event: str, **data) -> dict:
    return {"event": event, "data": data}


async def start_call(hub, caller, *, call_id: str = "call-1", callee_id: str = "2", call_type: str = "audio"):
    await hub.receive(
        caller, frame("call:initiate", call_id=call_id, callee_id=callee_id, call_type=call_type)
    )


@pytest.mark.anyio("asyncio")
async def test_full_call_lifecycle(hub, connect, persistence) -> None:
    persistence.profiles["1"] = {"name": "Ada", "avatar": "https://cdn.example/ada.png"}
    caller, caller_ws = await connect("1")
    callee, callee_ws = await connect("2")

    await start_call(hub, caller, call_type="video")
    assert callee_ws.events("call:incoming") == [
        {
            "call_id": "call-1",
            "caller_id": "1",
            "caller_name": "Ada",
            "caller_avatar": "https://cdn.example/ada.png",
            "call_type": "video",
        }
    ]
    assert hub.calls.get("call-1").status is CallStatus.RINGING

    await hub.receive(callee, frame("call:accept", call_id="call-1", peer_id="1"))
    assert caller_ws.events("call:accepted") == [{"call_id": "call-1"}]

    await hub.receive(
        caller, frame("call:offer", call_id="call-1", peer_id="2", offer={"type": "offer", "sdp": "v=0"})
    )
    await hub.receive(
        callee, frame("call:answer", call_id="call-1", peer_id="1", answer={"type": "answer", "sdp": "v=0"})
    )
    await hub.receive(
        caller, frame("call:ice-candidate", call_id="call-1", peer_id="2", candidate={"candidate": "c0"})
    )
    assert callee_ws.events("call:offer") == [
        {"call_id": "call-1", "peer_id": "1", "offer": {"type": "offer", "sdp": "v=0"}}
    ]
    assert caller_ws.events("call:answer") == [
        {"call_id": "call-1", "peer_id": "2", "answer": {"type": "answer", "sdp": "v=0"}}
    ]
    assert callee_ws.events("call:ice-candidate") == [
        {"call_id": "call-1", "peer_id": "1", "candidate": {"candidate": "c0"}}
    ]

    await hub.receive(callee, frame("call:end", call_id="call-1"))
    assert caller_ws.events("call:ended") == [{"call_id": "call-1"}]
    assert callee_ws.events("call:ended") == []
    assert hub.calls.get("call-1") is None
    assert hub.calls.active_call_for("1") is None

    await hub.writer.drain()
    assert [write["status"] for write in persistence.call_writes] == ["ringing", "accepted", "ended"]
    record = persistence.calls["call-1"]
    assert record["call_type"] == "video"
    assert record["accepted_at"] is not None
    assert record["ended_at"] >= record["accepted_at"]
    assert realtime_calls_total.value("ringing") == 1
    assert realtime_calls_total.value("ended") == 1

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_unanswered_call_times_out(persistence, connect) -> None:
    hub = Hub(
        persistence,
        ringing_timeout=0.05,
        writer=PersistenceWriter(base_delay=0.001, max_delay=0.01),
    )
    caller, caller_ws = await connect("1", target=hub)
    callee, callee_ws = await connect("2", target=hub)

    await start_call(hub, caller)
    await anyio.sleep(0.2)

    assert caller_ws.events("call:timeout") == [{"call_id": "call-1"}]
    assert callee_ws.events("call:timeout") == [{"call_id": "call-1"}]
    assert hub.calls.get("call-1") is None

    await hub.receive(callee, frame("call:accept", call_id="call-1"))
    assert callee_ws.events("call:failed") == [{"call_id": "call-1", "reason": "not-found"}]
    assert caller_ws.events("call:accepted") == []

    await hub.writer.drain()
    record = persistence.calls["call-1"]
    assert record["status"] == "timeout"
    assert record["accepted_at"] is None
    assert record["duration"] == 0

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_accept_cancels_ringing_timer(persistence, connect) -> None:
    hub = Hub(
        persistence,
        ringing_timeout=0.05,
        writer=PersistenceWriter(base_delay=0.001, max_delay=0.01),
    )
    caller, caller_ws = await connect("1", target=hub)
    callee, _ = await connect("2", target=hub)

    await start_call(hub, caller)
    await hub.receive(callee, frame("call:accept", call_id="call-1"))
    await anyio.sleep(0.2)

    assert caller_ws.events("call:timeout") == []
    assert hub.calls.get("call-1").status is CallStatus.ACCEPTED

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_busy_callee_gets_no_incoming_and_no_record(hub, connect, persistence) -> None:
    first, first_ws = await connect("1")
    second, second_ws = await connect("2")
    third, _ = await connect("3")

    await start_call(hub, second, call_id="call-a", callee_id="3")
    await hub.receive(third, frame("call:accept", call_id="call-a"))

    await start_call(hub, first, call_id="call-b", callee_id="2")

    assert first_ws.events("call:busy") == [{"call_id": "call-b", "callee_id": "2"}]
    assert second_ws.events("call:incoming") == []
    assert hub.calls.get("call-b") is None
    await hub.writer.drain()
    assert "call-b" not in persistence.calls

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_disconnect_ends_accepted_call(hub, connect, persistence) -> None:
    caller, caller_ws = await connect("1")
    callee, _ = await connect("2")

    await start_call(hub, caller)
    await hub.receive(callee, frame("call:accept", call_id="call-1"))
    await hub.close(callee)

    assert caller_ws.events("call:ended") == [{"call_id": "call-1", "reason": "disconnect"}]
    names = caller_ws.names()
    # The call ends before the peer is announced offline.
    assert names.index("call:ended") < len(names) - 1
    assert names[-1] == "user:status-changed"
    assert hub.calls.get("call-1") is None

    await hub.writer.drain()
    assert persistence.calls["call-1"]["status"] == "ended"

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_second_device_keeps_call_alive(hub, connect) -> None:
    caller, caller_ws = await connect("1")
    callee_a, _ = await connect("2")
    callee_b, _ = await connect("2")

    await start_call(hub, caller)
    await hub.receive(callee_a, frame("call:accept", call_id="call-1"))
    await hub.close(callee_a)

    assert caller_ws.events("call:ended") == []
    assert hub.calls.get("call-1").status is CallStatus.ACCEPTED

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_callee_declines(hub, connect, persistence) -> None:
    caller, caller_ws = await connect("1")
    callee, callee_ws = await connect("2")

    await start_call(hub, caller)
    await hub.receive(caller, frame("call:decline", call_id="call-1"))
    assert caller_ws.events("call:failed") == [{"call_id": "call-1", "reason": "forbidden"}]

    await hub.receive(callee, frame("call:decline", call_id="call-1"))
    assert caller_ws.events("call:declined") == [{"call_id": "call-1"}]
    assert hub.calls.get("call-1") is None

    await hub.writer.drain()
    assert persistence.calls["call-1"]["status"] == "declined"

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_callee_reports_busy(hub, connect, persistence) -> None:
    caller, caller_ws = await connect("1")
    callee, _ = await connect("2")

    await start_call(hub, caller)
    await hub.receive(callee, frame("call:busy", call_id="call-1"))

    assert caller_ws.events("call:busy") == [{"call_id": "call-1"}]
    await hub.writer.drain()
    assert persistence.calls["call-1"]["status"] == "busy"

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_caller_cannot_accept_own_call(hub, connect) -> None:
    caller, caller_ws = await connect("1")
    await connect("2")

    await start_call(hub, caller)
    await hub.receive(caller, frame("call:accept", call_id="call-1"))

    assert caller_ws.events("call:failed") == [{"call_id": "call-1", "reason": "forbidden"}]
    assert hub.calls.get("call-1").status is CallStatus.RINGING

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_initiate_rejections(hub, connect, persistence) -> None:
    caller, caller_ws = await connect("1")
    other, other_ws = await connect("3")
    await connect("2")
    await connect("4")

    await start_call(hub, caller, callee_id="1")
    await start_call(hub, caller, callee_id="99")
    await start_call(hub, caller)
    await start_call(hub, other, callee_id="4")
    await start_call(hub, other, call_id="call-2", callee_id="2")
    await start_call(hub, caller, call_id="call-3", callee_id="4")

    assert caller_ws.events("call:failed") == [
        {"call_id": "call-1", "reason": "invalid"},
        {"call_id": "call-1", "reason": "offline"},
        {"call_id": "call-3", "reason": "busy-self"},
    ]
    assert other_ws.events("call:failed") == [{"call_id": "call-1", "reason": "duplicate"}]
    assert other_ws.events("call:busy") == [{"call_id": "call-2", "callee_id": "2"}]

    await hub.writer.drain()
    assert sorted(persistence.calls) == ["call-1"]

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_non_party_actions_are_refused(hub, connect) -> None:
    caller, _ = await connect("1")
    callee, callee_ws = await connect("2")
    stranger, stranger_ws = await connect("3")

    await start_call(hub, caller)
    await hub.receive(stranger, frame("call:end", call_id="call-1"))
    assert stranger_ws.events("error") == [{"detail": "Not a participant of this call"}]
    assert hub.calls.get("call-1").status is CallStatus.RINGING

    await hub.receive(stranger, frame("call:offer", call_id="call-1", peer_id="2", offer={"sdp": "x"}))
    assert callee_ws.events("call:offer") == []

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_relay_requires_matching_peer_and_active_call(hub, connect) -> None:
    caller, _ = await connect("1")
    callee, callee_ws = await connect("2")

    await start_call(hub, caller)
    await hub.receive(caller, frame("call:offer", call_id="call-1", peer_id="7", offer={"sdp": "x"}))
    assert callee_ws.events("call:offer") == []

    await hub.receive(caller, frame("call:offer", call_id="call-1", peer_id="2", offer={"sdp": "x"}))
    assert len(callee_ws.events("call:offer")) == 1

    await hub.receive(caller, frame("call:end", call_id="call-1"))
    await hub.receive(caller, frame("call:ice-candidate", call_id="call-1", peer_id="2", candidate={}))
    assert callee_ws.events("call:ice-candidate") == []

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_terminal_call_emits_nothing_further(hub, connect) -> None:
    caller, caller_ws = await connect("1")
    callee, callee_ws = await connect("2")

    await start_call(hub, caller)
    await hub.receive(callee, frame("call:accept", call_id="call-1"))
    await hub.receive(caller, frame("call:end", call_id="call-1"))
    caller_ws.clear()
    callee_ws.clear()

    for event in ("call:end", "call:accept", "call:busy", "call:decline"):
        await hub.receive(callee, frame(event, call_id="call-1"))

    assert caller_ws.sent == []
    assert callee_ws.names() == ["call:failed"] * 4

    await hub.shutdown()


@pytest.mark.anyio("asyncio")
async def test_incoming_without_profile_still_rings(hub, connect, persistence) -> None:
    persistence.fail_lookups = True
    caller, _ = await connect("1")
    _, callee_ws = await connect("2")

    await start_call(hub, caller)

    assert callee_ws.events("call:incoming") == [
        {
            "call_id": "call-1",
            "caller_id": "1",
            "caller_name": None,
            "caller_avatar": None,
            "call_type": "audio",
        }
    ]

    await hub.shutdown()
