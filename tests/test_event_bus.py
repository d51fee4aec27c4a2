from pilot.event_bus import EventBus, PilotEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[PilotEvent] = []

    def dummy_subscriber(event: PilotEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="document.changed",
        document="report",
        payload={"created": True},
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "document.changed"
    assert event.document == "report"
    assert event.payload == {"created": True}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_stop_delivery():
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(seen.append)
    bus.emit("document.removed", "task")

    assert [e.document for e in seen] == ["task"]
    assert seen[0].payload == {}
