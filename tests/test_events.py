"""The event emitter must never let a subscriber affect the publishing call."""

import threading

from gatekeeper.service.events import AuditEmitter, AuthEvent, EventName


class TestAuditEmitter:
    def test_drain_delivers_in_order(self):
        emitter = AuditEmitter()
        seen = []
        emitter.subscribe(seen.append)
        emitter.publish(EventName.LOGGED_IN, user_id="u1")
        emitter.publish(EventName.LOGGED_OUT, user_id="u1")
        assert emitter.drain() == 2
        assert [e.name for e in seen] == [EventName.LOGGED_IN, EventName.LOGGED_OUT]

    def test_named_subscription_filters(self):
        emitter = AuditEmitter()
        seen = []
        emitter.subscribe(seen.append, name=EventName.PASSWORD_CHANGED)
        emitter.publish(EventName.LOGGED_IN)
        emitter.publish(EventName.PASSWORD_CHANGED, user_id="u1")
        emitter.drain()
        assert [e.user_id for e in seen] == ["u1"]

    def test_failing_subscriber_is_isolated(self):
        emitter = AuditEmitter()
        seen = []

        def broken(event: AuthEvent) -> None:
            raise RuntimeError("smtp down")

        emitter.subscribe(broken)
        emitter.subscribe(seen.append)
        emitter.publish(EventName.REGISTERED, user_id="u1")
        emitter.drain()
        assert len(seen) == 1

    def test_full_queue_drops_without_blocking(self):
        emitter = AuditEmitter(maxsize=1)
        emitter.publish(EventName.LOGGED_IN)
        emitter.publish(EventName.LOGGED_IN)
        assert emitter.dropped == 1
        assert emitter.drain() == 1

    def test_unsubscribe(self):
        emitter = AuditEmitter()
        seen = []

        def handler(event: AuthEvent) -> None:
            seen.append(event)

        emitter.subscribe(handler)
        emitter.unsubscribe(handler)
        emitter.publish(EventName.LOGGED_IN)
        emitter.drain()
        assert seen == []

    def test_background_worker_delivers(self):
        emitter = AuditEmitter()
        delivered = threading.Event()
        emitter.subscribe(lambda event: delivered.set())
        emitter.start()
        try:
            emitter.publish(EventName.LOGGED_IN)
            assert delivered.wait(2.0)
        finally:
            emitter.stop()
