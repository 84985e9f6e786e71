import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from activity import ActivityLog
from notifier import Notifier
from number_feed import CurrentNumberSource
from subscriptions import Subscription, SubscriptionStore

logger = logging.getLogger(__name__)


class Outcome(enum.Enum):
    REACHED = "reached"
    EXPIRED = "expired"
    PENDING = "pending"


@dataclass
class TickResult:
    skipped: bool = False
    current_number: Optional[int] = None
    reached: List[Subscription] = field(default_factory=list)
    expired: List[Subscription] = field(default_factory=list)
    pending: List[Subscription] = field(default_factory=list)


def classify(sub: Subscription, current: int, now_ms: int, expiry_ms: int) -> Outcome:
    # reached wins even when the subscription is also past its expiry
    if current >= sub.target_number:
        return Outcome.REACHED
    if now_ms - sub.created_at > expiry_ms:
        return Outcome.EXPIRED
    return Outcome.PENDING


def reached_text(sub: Subscription) -> str:
    return f"喂～ 👑 @{sub.first_name} ，你訂的 {sub.target_number} 號到了，怕的是他。還不快去！"


def expired_text(sub: Subscription) -> str:
    return f"欸 👋 @{sub.first_name} ，你的 {sub.target_number} 號等太久了，超過五小時偶就幫你取消了，很遜欸。881。"


class SubscriptionWatcher:
    """
    Periodically reconciles every subscription against the current number.

    Each tick persists the still-pending subscriptions once and only then sends
    the notifications for the ones that were dropped.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        source: CurrentNumberSource,
        notifier: Notifier,
        expiry_secs: float,
        interval_secs: float,
        clock: Callable[[], float] = time.time,
        activity: Optional[ActivityLog] = None,
    ) -> None:
        self.store = store
        self.source = source
        self.notifier = notifier
        self.expiry_ms = int(expiry_secs * 1000)
        self.interval_secs = interval_secs
        self.clock = clock
        self.activity = activity
        self._ticking = False
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    def _record(self, activity: str, sub: Subscription, current: int) -> None:
        if self.activity is not None:
            self.activity.record(activity, sub=sub.to_dict(), current_number=current)

    async def tick(self) -> TickResult:
        if self._ticking:
            logger.warning("[watch] Previous tick still running, skipping")
            return TickResult(skipped=True)
        self._ticking = True
        try:
            return await self._tick()
        finally:
            self._ticking = False

    async def _tick(self) -> TickResult:
        if not self.store.list_all():
            return TickResult()

        current = await self.source.get_current_number()
        if current is None:
            logger.error("[watch] Current number unavailable, leaving subscriptions untouched")
            return TickResult(skipped=True)

        # Re-read after the fetch so cancellations made meanwhile are not resurrected.
        subs = self.store.list_all()
        now_ms = int(self.clock() * 1000)
        result = TickResult(current_number=current)
        outgoing: List[Tuple[Subscription, str]] = []
        for sub in subs:
            outcome = classify(sub, current, now_ms, self.expiry_ms)
            if outcome is Outcome.REACHED:
                logger.info("[watch] %s reached %s (current %s)", sub.user_id, sub.target_number, current)
                result.reached.append(sub)
                self._record("subscription_triggered", sub, current)
                outgoing.append((sub, reached_text(sub)))
            elif outcome is Outcome.EXPIRED:
                logger.info("[watch] %s gave up waiting for %s", sub.user_id, sub.target_number)
                result.expired.append(sub)
                self._record("subscription_expired", sub, current)
                outgoing.append((sub, expired_text(sub)))
            else:
                result.pending.append(sub)

        if outgoing:
            self.store.replace_all(result.pending)
            await asyncio.gather(
                *(self.notifier.notify(sub.chat_id, text, sub.message_id) for sub, text in outgoing)
            )
        return result

    # -------------------------
    # Scheduling
    # -------------------------
    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_secs)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.tick()
            except Exception:
                logger.exception("[watch] Tick failed")

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._stop_event))
        logger.info("[watch] Checking subscriptions every %ss", self.interval_secs)

    async def stop(self) -> None:
        if self._stop_event:
            self._stop_event.set()
        if self._task:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[watch] Stopped")

    @property
    def running(self) -> bool:
        return bool(self._task and not self._task.done())
