from __future__ import annotations

import threading

from planmend.events import EventEmitter


def test_synchronous_delivery_in_registration_order():
    emitter = EventEmitter()
    received = []
    emitter.subscribe(lambda t, p: received.append(("first", t, p)))
    emitter.subscribe(lambda t, p: received.append(("second", t, p)))

    emitter.emit("feature_updated", {"id": "F1"})

    assert received == [
        ("first", "feature_updated", {"id": "F1"}),
        ("second", "feature_updated", {"id": "F1"}),
    ]


def test_failing_subscriber_is_isolated():
    emitter = EventEmitter()
    received = []

    def broken(_type, _payload):
        raise RuntimeError("subscriber bug")

    emitter.subscribe(broken)
    emitter.subscribe(lambda t, p: received.append(t))

    emitter.emit("a")
    emitter.emit("b")

    assert received == ["a", "b"]


def test_unsubscribe_stops_delivery():
    emitter = EventEmitter()
    received = []
    unsubscribe = emitter.subscribe(lambda t, p: received.append(t))
    emitter.emit("a")
    unsubscribe()
    unsubscribe()
    emitter.emit("b")
    assert received == ["a"]


def test_batching_drops_oldest_when_queue_full():
    emitter = EventEmitter(batch_ms=60_000, max_queue=3)
    received = []
    emitter.subscribe(lambda t, p: received.append(p))

    for i in range(5):
        emitter.emit("tick", i)

    assert received == []
    assert emitter.pending == 3
    assert emitter.dropped == 2

    assert emitter.flush() == 3
    assert received == [2, 3, 4]
    assert emitter.pending == 0
    emitter.close()


def test_batched_events_flush_on_timer():
    emitter = EventEmitter(batch_ms=10)
    done = threading.Event()
    received = []

    def collect(_type, payload):
        received.append(payload)
        if len(received) == 2:
            done.set()

    emitter.subscribe(collect)
    emitter.emit("tick", 1)
    emitter.emit("tick", 2)

    assert done.wait(timeout=5)
    assert received == [1, 2]
    emitter.close()


def test_close_flushes_and_rejects_new_events():
    emitter = EventEmitter(batch_ms=60_000)
    received = []
    emitter.subscribe(lambda t, p: received.append(p))
    emitter.emit("tick", "queued")

    emitter.close()
    emitter.emit("tick", "late")

    assert received == ["queued"]
    assert emitter.pending == 0
