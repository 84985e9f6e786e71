import asyncio

from activity import ActivityLog
from conftest import T0_MS, FakeNotifier, FakeSource, make_sub
from jsondb import JsonFileDb
from number_watch import Outcome, SubscriptionWatcher, classify
from subscriptions import MemorySubscriptionStore

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
EXPIRY_SECS = 5 * 60 * 60


def watcher_for(store, source, notifier, now_ms):
    return SubscriptionWatcher(
        store, source, notifier, expiry_secs=EXPIRY_SECS, interval_secs=60, clock=lambda: now_ms / 1000
    )


def test_pending_subscription_is_retained_unchanged(run):
    sub = make_sub(target=1050)
    store = MemorySubscriptionStore([sub])
    notifier = FakeNotifier()
    w = watcher_for(store, FakeSource(1040), notifier, T0_MS + 10 * MINUTE_MS)

    for _ in range(3):
        result = run(w.tick())
        assert result.pending == [sub]
    assert store.list_all() == [sub]
    assert store.writes == 0
    assert notifier.sent == []


def test_reached_fires_once_and_drops(run):
    sub = make_sub(target=1050, message_id=77)
    store = MemorySubscriptionStore([sub])
    notifier = FakeNotifier()
    w = watcher_for(store, FakeSource(1050), notifier, T0_MS + 10 * MINUTE_MS)

    result = run(w.tick())
    assert result.reached == [sub]
    assert store.list_all() == []
    (chat_id, text, reply_to), = notifier.sent
    assert (chat_id, reply_to) == (sub.chat_id, 77)
    assert "1050" in text and f"@{sub.first_name}" in text

    run(w.tick())
    assert len(notifier.sent) == 1


def test_expired_after_five_hours(run):
    sub = make_sub(target=1050)
    store = MemorySubscriptionStore([sub])
    notifier = FakeNotifier()
    w = watcher_for(store, FakeSource(1040), notifier, T0_MS + 5 * HOUR_MS + MINUTE_MS)

    result = run(w.tick())
    assert result.expired == [sub]
    assert store.list_all() == []
    assert len(notifier.sent) == 1
    assert "五小時" in notifier.sent[0][1]


def test_reached_takes_precedence_over_expired():
    sub = make_sub(target=1050)
    assert classify(sub, 1060, T0_MS + 6 * HOUR_MS, EXPIRY_SECS * 1000) is Outcome.REACHED
    assert classify(sub, 1049, T0_MS + 6 * HOUR_MS, EXPIRY_SECS * 1000) is Outcome.EXPIRED
    assert classify(sub, 1049, T0_MS + 5 * HOUR_MS, EXPIRY_SECS * 1000) is Outcome.PENDING


def test_upstream_outage_leaves_store_untouched(run):
    subs = [make_sub(user_id=1, target=1050), make_sub(user_id=2, target=1001)]
    store = MemorySubscriptionStore(subs)
    notifier = FakeNotifier()
    w = watcher_for(store, FakeSource(None), notifier, T0_MS + 10 * HOUR_MS)

    result = run(w.tick())
    assert result.skipped
    assert store.list_all() == subs
    assert store.writes == 0
    assert notifier.sent == []


def test_empty_store_skips_fetch(run):
    source = FakeSource(1040)
    w = watcher_for(MemorySubscriptionStore(), source, FakeNotifier(), T0_MS)
    run(w.tick())
    assert source.calls == 0


def test_mixed_outcomes_persist_pending_in_order_with_one_write(run):
    subs = [
        make_sub(user_id=1, target=1030),
        make_sub(user_id=2, target=1100),
        make_sub(user_id=3, target=1090, created_at=T0_MS - 6 * HOUR_MS),
        make_sub(user_id=4, target=1060),
    ]
    store = MemorySubscriptionStore(subs)
    notifier = FakeNotifier()
    w = watcher_for(store, FakeSource(1040), notifier, T0_MS + MINUTE_MS)

    run(w.tick())
    assert [s.user_id for s in store.list_all()] == [2, 4]
    assert store.writes == 1
    assert len(notifier.sent) == 2


def test_fired_and_expired_subscriptions_are_logged(run, tmp_path):
    reached = make_sub(user_id=1, target=1030)
    expired = make_sub(user_id=2, target=1090, created_at=T0_MS - 6 * HOUR_MS)
    pending = make_sub(user_id=3, target=1060)
    store = MemorySubscriptionStore([reached, expired, pending])
    activity = ActivityLog(JsonFileDb(str(tmp_path / "usage.json")))
    w = SubscriptionWatcher(
        store,
        FakeSource(1040),
        FakeNotifier(),
        expiry_secs=EXPIRY_SECS,
        interval_secs=60,
        clock=lambda: (T0_MS + MINUTE_MS) / 1000,
        activity=activity,
    )

    run(w.tick())
    logs = activity.db.get("logs")
    assert [(e["activity"], e["sub"]["user_id"]) for e in logs] == [
        ("subscription_triggered", 1),
        ("subscription_expired", 2),
    ]
    assert all(e["current_number"] == 1040 for e in logs)


class PersistRecordingStore(MemorySubscriptionStore):
    def __init__(self, subs, events):
        super().__init__(subs)
        self.events = events

    def replace_all(self, subs):
        self.events.append("persist")
        return super().replace_all(subs)


class RecordingNotifier(FakeNotifier):
    def __init__(self, events):
        super().__init__()
        self.events = events

    async def notify(self, chat_id, text, reply_to=None):
        self.events.append("notify")
        return await super().notify(chat_id, text, reply_to)


def test_persist_happens_before_dispatch(run):
    events = []
    store = PersistRecordingStore([make_sub(target=1001)], events)
    w = watcher_for(store, FakeSource(1040), RecordingNotifier(events), T0_MS)
    run(w.tick())
    assert events == ["persist", "notify"]


def test_cancellation_during_fetch_is_not_resurrected(run):
    sub_a = make_sub(user_id=1, target=1100)
    sub_b = make_sub(user_id=2, target=1001)
    store = MemorySubscriptionStore([sub_a, sub_b])

    class CancellingSource(FakeSource):
        async def get_current_number(self):
            store.remove(1, 1)
            return await super().get_current_number()

    w = watcher_for(store, CancellingSource(1040), FakeNotifier(), T0_MS)
    run(w.tick())
    assert store.list_all() == []


def test_overlapping_tick_is_refused(run):
    store = MemorySubscriptionStore([make_sub(target=1100)])
    gates = {}

    class SlowSource(FakeSource):
        async def get_current_number(self):
            await gates["open"].wait()
            return await super().get_current_number()

    w = watcher_for(store, SlowSource(1040), FakeNotifier(), T0_MS)

    async def scenario():
        gates["open"] = asyncio.Event()
        first = asyncio.ensure_future(w.tick())
        await asyncio.sleep(0)
        second = await w.tick()
        gates["open"].set()
        await first
        return second

    assert run(scenario()).skipped


def test_start_and_stop_run_ticks_on_interval(run):
    store = MemorySubscriptionStore([make_sub(target=1001)])
    notifier = FakeNotifier()
    w = SubscriptionWatcher(store, FakeSource(1040), notifier, expiry_secs=EXPIRY_SECS, interval_secs=0.01)

    async def scenario():
        w.start()
        assert w.running
        for _ in range(100):
            if notifier.sent:
                break
            await asyncio.sleep(0.01)
        await w.stop()

    run(scenario())
    assert not w.running
    assert len(notifier.sent) == 1
    assert store.list_all() == []
