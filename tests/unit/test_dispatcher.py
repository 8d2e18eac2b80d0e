from __future__ import annotations

import threading

from pc2mqtt.delivery_queue import DeliveryQueue
from pc2mqtt.dispatcher import Dispatcher
from pc2mqtt.message import Message


class Link:
    """Connection flag + recording submit()."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: list[Message] = []
        self.refuse = False
        self.drop_on_submit = False
        self._mid = 0
        self._lock = threading.Lock()

    def is_connected(self) -> bool:
        return self.connected

    def submit(self, msg: Message) -> Message:
        with self._lock:
            if self.drop_on_submit:
                self.connected = False
                self.drop_on_submit = False
                return msg
            if self.refuse:
                return msg
            self._mid += 1
            self.sent.append(msg)
            return msg.with_id(self._mid)


def _dispatcher(q, link, epoch=1):
    return Dispatcher(q, link.submit, link.is_connected, epoch=epoch, poll_interval_s=0.01)


def test_delivers_in_enqueue_order(wait_until):
    q = DeliveryQueue(maxsize=50)
    link = Link()
    for i in range(20):
        q.put(Message.publish(f"t/{i}", str(i)))

    d = _dispatcher(q, link)
    d.start()
    try:
        assert wait_until(lambda: len(link.sent) == 20)
    finally:
        assert d.stop(timeout=1)

    assert [m.topic for m in link.sent] == [f"t/{i}" for i in range(20)]


def test_idles_without_popping_while_disconnected(wait_until):
    q = DeliveryQueue(maxsize=5)
    link = Link(connected=False)
    q.put(Message.publish("status/cpu", "42"))

    d = _dispatcher(q, link)
    d.start()
    try:
        assert not wait_until(lambda: link.sent, timeout=0.1)
        assert len(q) == 1

        link.connected = True
        assert wait_until(lambda: len(link.sent) == 1)
    finally:
        d.stop(timeout=1)
    assert len(q) == 0


def test_dropped_during_submit_is_requeued_at_head(wait_until):
    q = DeliveryQueue(maxsize=5)
    link = Link()
    link.drop_on_submit = True
    q.put(Message.publish("a", "1"))
    q.put(Message.publish("b", "2"))

    d = _dispatcher(q, link)
    d.start()
    try:
        assert wait_until(lambda: not link.connected)
        assert wait_until(lambda: len(q) == 2)
        assert [m.topic for m in q.snapshot()] == ["a", "b"]

        link.connected = True
        assert wait_until(lambda: len(link.sent) == 2)
    finally:
        d.stop(timeout=1)
    assert [m.topic for m in link.sent] == ["a", "b"]


def test_refused_while_connected_is_dropped(wait_until):
    q = DeliveryQueue(maxsize=5)
    link = Link()
    link.refuse = True
    q.put(Message.publish("a", "1"))

    d = _dispatcher(q, link)
    d.start()
    try:
        assert wait_until(lambda: len(q) == 0)
    finally:
        d.stop(timeout=1)
    assert link.sent == []


def test_submit_exception_does_not_kill_loop(wait_until):
    q = DeliveryQueue(maxsize=5)
    link = Link()
    calls = {"n": 0}

    def flaky(msg):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return link.submit(msg)

    q.put(Message.publish("a", "1"))
    q.put(Message.publish("b", "2"))
    d = Dispatcher(q, flaky, link.is_connected, epoch=1, poll_interval_s=0.01)
    d.start()
    try:
        assert wait_until(lambda: len(link.sent) == 1)
        assert d.is_alive()
    finally:
        d.stop(timeout=1)
    assert link.sent[0].topic == "b"


def test_cancel_after_pop_requeues_at_head_without_submitting():
    q = DeliveryQueue(maxsize=5)
    q.put(Message.publish("a", "1"))
    q.put(Message.publish("b", "2"))
    link = Link()
    d = _dispatcher(q, link)
    pop = q.get

    def pop_then_cancel(timeout=None):
        msg = pop(timeout=timeout)
        d.cancel()
        return msg

    q.get = pop_then_cancel

    d.run()

    assert link.sent == []
    assert [m.topic for m in q.snapshot()] == ["a", "b"]


def test_stop_is_bounded_and_thread_named():
    q = DeliveryQueue(maxsize=5)
    d = _dispatcher(q, Link(), epoch=7)
    d.start()
    assert d._thread.name == "mqtt-dispatch-7"

    assert d.stop(timeout=1) is True
    assert not d.is_alive()
    assert d.cancel_event.is_set()


def test_stop_before_start_is_noop():
    d = _dispatcher(DeliveryQueue(maxsize=1), Link())
    assert d.stop(timeout=0.1) is True
