from datetime import datetime, timezone

import pytest

from collabexec.core.models import ExecutionResult, Status
from collabexec.services.broadcaster import COMPLETED, QUEUED, ExecutionEvent, InMemoryBroadcaster


def event(type=QUEUED, room="r1", execution_id="e1", **kw):
    return ExecutionEvent(
        type=type, execution_id=execution_id, room_id=room, user_id="u1",
        display_name="User 1", avatar=None, language="python", **kw,
    )


@pytest.mark.asyncio
async def test_every_room_subscriber_gets_the_event():
    b = InMemoryBroadcaster()
    q1, q2 = b.subscribe("r1"), b.subscribe("r1")
    other = b.subscribe("r2")

    await b.publish("r1", event())

    assert (await q1.get()).execution_id == "e1"
    assert (await q2.get()).execution_id == "e1"
    assert other.empty()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery():
    b = InMemoryBroadcaster()
    q = b.subscribe("r1")
    b.unsubscribe("r1", q)
    assert b.subscriber_count("r1") == 0

    await b.publish("r1", event())
    assert q.empty()
    # unknown room and double unsubscribe are no-ops
    b.unsubscribe("r1", q)
    b.unsubscribe("nope", q)


@pytest.mark.asyncio
async def test_slow_subscriber_loses_oldest_event():
    b = InMemoryBroadcaster(max_pending=2)
    q = b.subscribe("r1")
    for i in range(3):
        await b.publish("r1", event(execution_id=f"e{i}"))

    assert q.qsize() == 2
    assert [(await q.get()).execution_id for _ in range(2)] == ["e1", "e2"]


def test_event_payload():
    ts = datetime(2024, 5, 1, tzinfo=timezone.utc)
    queued = event(timestamp=ts, position=2, estimated_wait_ms=10000).to_dict()
    assert queued == {
        "type": "queued",
        "execution_id": "e1",
        "room_id": "r1",
        "user_id": "u1",
        "display_name": "User 1",
        "avatar": None,
        "language": "python",
        "timestamp": "2024-05-01T00:00:00+00:00",
        "position": 2,
        "estimated_wait_ms": 10000,
    }

    result = ExecutionResult(
        id="e1", room_id="r1", user_id="u1", display_name="User 1", avatar=None,
        language="python", status=Status.COMPLETED, stdout="hi", stderr="",
        started_at=ts, ended_at=ts, duration_ms=0, exit_status=0,
    )
    done = event(type=COMPLETED, timestamp=ts, result=result, duration_ms=0).to_dict()
    assert done["duration_ms"] == 0
    assert done["result"]["status"] == "completed"
    assert done["result"]["stdout"] == "hi"
    assert "position" not in done
