import pytest

from core.schemas.events import FeedEventName
from services.market_feed.events import FeedEventEmitter


def test_sync_handlers_and_unsubscribe():
    emitter = FeedEventEmitter("test")
    seen = []
    remove = emitter.on("data", seen.append)
    emitter.on(FeedEventName.DATA, lambda payload: seen.append(("second", payload)))

    emitter.emit("data", 1)
    remove()
    emitter.emit(FeedEventName.DATA, 2)

    assert seen == [1, ("second", 1), ("second", 2)]
    assert emitter.listener_count("data") == 1


def test_failing_handler_is_isolated():
    emitter = FeedEventEmitter("test")
    seen = []

    def broken(payload):
        raise RuntimeError("boom")

    emitter.on("error", broken)
    emitter.on("error", seen.append)
    emitter.emit("error", "payload")

    assert seen == ["payload"]


def test_unknown_event_name_rejected():
    emitter = FeedEventEmitter("test")
    with pytest.raises(ValueError):
        emitter.on("tick", print)


def test_off_and_remove_all():
    emitter = FeedEventEmitter("test")
    seen = []
    emitter.on("close", seen.append)
    emitter.off("close", seen.append)
    emitter.off("close", seen.append)
    emitter.on("connect", seen.append)
    emitter.remove_all_listeners()

    emitter.emit("close", 1)
    emitter.emit("connect", 2)
    assert seen == []


@pytest.mark.asyncio
async def test_async_handlers_run_on_loop():
    emitter = FeedEventEmitter("test")
    seen = []

    async def handler(payload):
        seen.append(payload)

    async def broken(payload):
        raise RuntimeError("async boom")

    emitter.on("message", handler)
    emitter.on("message", broken)
    emitter.emit("message", "tick")
    await emitter.drain()

    assert seen == ["tick"]
