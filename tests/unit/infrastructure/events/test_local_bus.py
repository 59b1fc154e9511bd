"""Tests for the in-process event bus."""

from unittest.mock import MagicMock

from shelfsync.infrastructure.events import LocalEventBus


def test_publish_delivers_in_subscription_order():
    bus = LocalEventBus()
    received = []
    bus.subscribe("scan-progress", lambda payload: received.append(("first", payload)))
    bus.subscribe("scan-progress", lambda payload: received.append(("second", payload)))

    delivered = bus.publish("scan-progress", {"itemId": "a"})

    assert delivered == 2
    assert received == [("first", {"itemId": "a"}), ("second", {"itemId": "a"})]
    assert bus.published_count == 1


def test_publish_without_subscribers():
    bus = LocalEventBus()
    assert bus.publish("nobody-listens") == 0


def test_unsubscribe_is_idempotent():
    bus = LocalEventBus()
    handler = MagicMock()
    unsubscribe = bus.subscribe("sync-complete", handler)

    unsubscribe()
    unsubscribe()
    bus.publish("sync-complete", {})

    handler.assert_not_called()
    assert bus.subscriber_count("sync-complete") == 0


def test_raising_handler_does_not_stop_others():
    bus = LocalEventBus()
    survivor = MagicMock()
    bus.subscribe("enrich-error", MagicMock(side_effect=RuntimeError("boom")))
    bus.subscribe("enrich-error", survivor)

    bus.publish("enrich-error", "provider down")

    survivor.assert_called_once_with("provider down")


def test_handler_may_unsubscribe_during_dispatch():
    bus = LocalEventBus()
    later = MagicMock()
    unsubscribers = []

    def once(payload):
        unsubscribers[0]()

    unsubscribers.append(bus.subscribe("change-complete", once))
    bus.subscribe("change-complete", later)

    bus.publish("change-complete", {})
    bus.publish("change-complete", {})

    assert later.call_count == 2
    assert bus.subscriber_count("change-complete") == 1
