from zrdp.events import (
    CLIENT_EVENT_TYPES,
    ActorsInvalidatedEvent,
    BaseEvent,
    ConnectionEvent,
    ConsoleAPICallEvent,
    EventBus,
    EventSubscription,
    KeepaliveEvent,
    PageErrorEvent,
    TabNavigatedEvent,
    TargetChangedEvent,
    TransportErrorEvent,
    parse_event,
)


def test_parse_tab_navigated():
    event = parse_event(
        {"type": "tabNavigated", "from": "tab1", "url": "chrome://x", "title": "Zotero", "state": "stop"}
    )
    assert isinstance(event, TabNavigatedEvent)
    assert event.source == "tab1"
    assert event.url == "chrome://x"
    assert event.state == "stop"
    assert "type" not in event.data


def test_parse_console_api_call():
    event = parse_event(
        {
            "type": "consoleAPICall",
            "from": "console1",
            "message": {"level": "warn", "arguments": ["a", 1], "filename": "f.js", "lineNumber": "12"},
        }
    )
    assert isinstance(event, ConsoleAPICallEvent)
    assert event.level == "warn"
    assert event.arguments == ["a", 1]
    assert event.line_number == 12


def test_parse_page_error():
    event = parse_event(
        {"type": "pageError", "pageError": {"errorMessage": "boom", "sourceName": "x.js", "warning": True}}
    )
    assert isinstance(event, PageErrorEvent)
    assert event.error_message == "boom"
    assert event.is_warning is True


def test_parse_client_notifications():
    assert isinstance(parse_event({"type": "tabDetached", "from": "tab1"}), TargetChangedEvent)
    connection = parse_event({"type": "reconnecting", "address": "127.0.0.1:6100", "attempt": 2})
    assert isinstance(connection, ConnectionEvent)
    assert connection.attempt == 2
    assert isinstance(parse_event({"type": "actorsInvalidated", "reason": "tabNavigated"}), ActorsInvalidatedEvent)
    assert parse_event({"type": "keepaliveReconnected"}).healthy is True
    assert isinstance(parse_event({"type": "keepaliveFailed"}), KeepaliveEvent)
    error = parse_event({"type": "error", "error": "FramingError", "message": "bad"})
    assert isinstance(error, TransportErrorEvent)
    assert error.message == "bad"


def test_sequence_numbers_increase():
    first = parse_event({"type": "connected"})
    second = parse_event({"type": "connected"})
    assert second.seq > first.seq


def test_bus_filters_by_category_and_source():
    bus = EventBus()
    received = []
    bus.subscribe(EventSubscription(categories=["tabNavigated"], source="tab1", handler=received.append))

    bus.publish({"type": "tabNavigated", "from": "tab1"})
    bus.publish({"type": "tabNavigated", "from": "tab2"})
    bus.publish({"type": "consoleAPICall", "from": "tab1"})
    bus.pump()

    assert [(e.type, e.source) for e in received] == [("tabNavigated", "tab1")]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    token = bus.subscribe(EventSubscription(handler=received.append))
    bus.unsubscribe(token)
    bus.publish({"type": "connected"})
    bus.pump()
    assert received == []


def test_full_mailbox_drops_oldest():
    received = []
    sub = EventSubscription(handler=received.append, queue_size=2)
    for i in range(3):
        assert sub.offer(parse_event({"type": "connected", "attempt": i}))
    assert sub.drain() == 2
    assert [e.attempt for e in received] == [1, 2]
    assert sub.dropped == 1


def test_offer_rejects_filtered_events():
    sub = EventSubscription(handler=lambda event: None, categories=["error"])
    assert not sub.offer(parse_event({"type": "connected"}))
    assert sub.drain() == 0


def test_client_notification_names_parse_to_typed_events():
    for name in CLIENT_EVENT_TYPES:
        assert type(parse_event({"type": name})) is not BaseEvent, name


def test_publish_accepts_parsed_event_and_pump_counts():
    bus = EventBus()
    received = []
    bus.subscribe(EventSubscription(handler=received.append))
    event = parse_event({"type": "tabDetached", "from": "tab1"})

    assert bus.publish(event) is event
    assert bus.pump() == 1
    assert received == [event]


def test_handler_errors_do_not_block_other_events():
    bus = EventBus()
    received = []

    def flaky(event):
        if event.data.get("boom"):
            raise RuntimeError("bad handler")
        received.append(event)

    bus.subscribe(EventSubscription(handler=flaky))
    bus.publish({"type": "connected", "boom": True})
    bus.publish({"type": "connected"})
    bus.pump()
    assert len(received) == 1


def test_background_dispatcher():
    bus = EventBus()
    received = []
    bus.subscribe(EventSubscription(handler=received.append))
    bus.start(interval=0.01)
    try:
        assert bus.running
        bus.publish({"type": "connected"})
    finally:
        bus.stop()
    assert received and received[0].type == "connected"
    assert not bus.running
