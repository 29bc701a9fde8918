"""Notification delivery retries and broadcast."""

import pytest

from nelo.schemas.core import NotificationJob, NotificationKind, UserRecord
from nelo.workers.notification_dispatcher import NotificationDispatcher


class FlakyChannel:
    """Fails the first `failures` sends to each recipient listed in `fail_for`."""

    def __init__(self, failures: int = 0, fail_for=None, always_fail_for=None):
        self.failures = failures
        self.fail_for = set(fail_for or [])
        self.always_fail_for = set(always_fail_for or [])
        self.sent = []
        self.attempts = {}

    async def send_message(self, to, message):
        self.attempts[to] = self.attempts.get(to, 0) + 1
        if to in self.always_fail_for:
            raise RuntimeError("channel down")
        if to in self.fail_for and self.attempts[to] <= self.failures:
            return {"success": False, "error": "rate limited"}
        self.sent.append((to, message))
        return {"success": True, "message_sids": ["SM1"]}


async def test_failed_delivery_is_retried():
    channel = FlakyChannel(failures=2, fail_for=["u1"])
    dispatcher = NotificationDispatcher(channel, max_attempts=3, backoff_seconds=0)
    dispatcher.start()
    try:
        dispatcher.enqueue(NotificationJob(user_id="u1", message="done", kind=NotificationKind.TRANSACTION_COMPLETE))
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    assert channel.attempts["u1"] == 3
    assert channel.sent == [("u1", "done")]


async def test_delivery_is_dropped_after_max_attempts_without_blocking_others():
    channel = FlakyChannel(always_fail_for=["bad"])
    dispatcher = NotificationDispatcher(channel, max_attempts=2, backoff_seconds=0)
    dispatcher.start()
    try:
        dispatcher.enqueue(NotificationJob(user_id="bad", message="x", kind=NotificationKind.TRANSACTION_FAILED))
        dispatcher.enqueue(NotificationJob(user_id="good", message="y", kind=NotificationKind.TRANSACTION_COMPLETE))
        await dispatcher.join()
    finally:
        await dispatcher.stop()

    assert channel.attempts["bad"] == 2
    assert channel.sent == [("good", "y")]


async def test_send_swallows_channel_errors():
    dispatcher = NotificationDispatcher(FlakyChannel(always_fail_for=["u1"]))

    assert await dispatcher.send("u1", "hello") is False


async def test_broadcast_continues_past_failures(store):
    for number in ["111", "222", "333"]:
        await store.save_user(UserRecord(user_id=number, whatsapp_number=number))
    channel = FlakyChannel(always_fail_for=["222"])
    dispatcher = NotificationDispatcher(channel, store=store, broadcast_delay=0)

    result = await dispatcher.broadcast("news", limit=10)

    assert result == {"total": 3, "sent": 2, "failed": 1}
    assert sorted(to for to, _ in channel.sent) == ["111", "333"]


async def test_broadcast_respects_limit(store):
    for number in ["111", "222", "333"]:
        await store.save_user(UserRecord(user_id=number, whatsapp_number=number))
    dispatcher = NotificationDispatcher(FlakyChannel(), store=store, broadcast_delay=0)

    result = await dispatcher.broadcast("news", limit=2)

    assert result["total"] == 2


async def test_broadcast_requires_store():
    with pytest.raises(RuntimeError):
        await NotificationDispatcher(FlakyChannel()).broadcast("news")
