from __future__ import annotations

import pytest

from sermon_scribe.eventbus import EventBus


class Collector:
    """Async consumer storing every event it receives."""

    def __init__(self, *, fail: bool = False) -> None:
        self.events: list[object] = []
        self.fail = fail

    async def __call__(self, event: object) -> None:
        self.events.append(event)
        if self.fail:
            raise RuntimeError("renderer broke")


@pytest.mark.asyncio
async def test_exact_and_wildcard_subscriptions() -> None:
    bus = EventBus()
    finals = Collector()
    transcript = Collector()
    await bus.subscribe("transcript.final", finals)
    await bus.subscribe("transcript.*", transcript)

    await bus.publish("transcript.interim", "grace")
    await bus.publish("transcript.final", "grace and peace")
    await bus.publish("transcriptions", "not matched")

    assert finals.events == ["grace and peace"]
    assert transcript.events == ["grace", "grace and peace"]


@pytest.mark.asyncio
async def test_failing_consumer_does_not_block_others(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    broken = Collector(fail=True)
    healthy = Collector()
    await bus.subscribe("session.status", broken)
    await bus.subscribe("session.status", healthy)

    await bus.publish("session.status", "recording")

    assert healthy.events == ["recording"]
    assert "renderer broke" in caplog.text


@pytest.mark.asyncio
async def test_subscribe_is_idempotent_and_unsubscribe_removes_topic() -> None:
    bus = EventBus()
    consumer = Collector()
    await bus.subscribe("notes.updated", consumer)
    await bus.subscribe("notes.updated", consumer)
    assert await bus.topics() == {"notes.updated": 1}

    await bus.unsubscribe("notes.updated", consumer)
    await bus.unsubscribe("notes.updated", consumer)
    await bus.publish("notes.updated", ())

    assert await bus.topics() == {}
    assert consumer.events == []
