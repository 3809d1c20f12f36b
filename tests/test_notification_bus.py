from notification_bus import ENTRY_UPDATED, NotificationBus


def test_handlers_run_in_registration_order():
    bus = NotificationBus()
    calls = []
    bus.subscribe(ENTRY_UPDATED, lambda p: calls.append(("first", p)))
    bus.subscribe(ENTRY_UPDATED, lambda p: calls.append(("second", p)))
    bus.subscribe("other", lambda p: calls.append(("other", p)))

    assert bus.publish(ENTRY_UPDATED, "apple") == 2
    assert calls == [("first", "apple"), ("second", "apple")]


def test_publish_without_subscribers():
    assert NotificationBus().publish(ENTRY_UPDATED, "apple") == 0


def test_unsubscribe_is_idempotent():
    bus = NotificationBus()
    calls = []
    unsubscribe = bus.subscribe(ENTRY_UPDATED, calls.append)
    keep = bus.subscribe(ENTRY_UPDATED, calls.append)

    unsubscribe()
    unsubscribe()

    assert bus.subscriber_count(ENTRY_UPDATED) == 1
    bus.publish(ENTRY_UPDATED, "x")
    assert calls == ["x"]
    keep()
    assert bus.subscriber_count(ENTRY_UPDATED) == 0


def test_same_handler_subscribed_twice_is_called_twice():
    bus = NotificationBus()
    calls = []
    first = bus.subscribe(ENTRY_UPDATED, calls.append)
    bus.subscribe(ENTRY_UPDATED, calls.append)

    first()
    bus.publish(ENTRY_UPDATED, "x")
    assert calls == ["x"]


def test_raising_handler_does_not_block_others():
    bus = NotificationBus()
    calls = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe(ENTRY_UPDATED, broken)
    bus.subscribe(ENTRY_UPDATED, calls.append)

    assert bus.publish(ENTRY_UPDATED, "apple") == 2
    assert calls == ["apple"]


def test_handler_removed_during_publish_is_skipped():
    bus = NotificationBus()
    calls = []
    unsubscribe_second = None

    def first(payload):
        calls.append("first")
        unsubscribe_second()

    bus.subscribe(ENTRY_UPDATED, first)
    unsubscribe_second = bus.subscribe(ENTRY_UPDATED, lambda p: calls.append("second"))

    assert bus.publish(ENTRY_UPDATED, "apple") == 1
    assert calls == ["first"]
