import logging
import re
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from jsondb import JsonFileDb

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_KEY = "subscriptions"

_DIGITS_RE = re.compile(r"[0-9]+")


@dataclass
class Subscription:
    chat_id: int
    user_id: int
    first_name: str
    target_number: int
    created_at: int  # epoch milliseconds
    message_id: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Subscription":
        return cls(
            chat_id=int(d["chat_id"]),
            user_id=int(d["user_id"]),
            first_name=str(d.get("first_name") or ""),
            target_number=int(d["target_number"]),
            created_at=int(d["created_at"]),
            message_id=int(d.get("message_id") or 0),
        )


class DuplicateSubscriptionError(Exception):
    def __init__(self, existing: Subscription) -> None:
        super().__init__(f"chat {existing.chat_id} user {existing.user_id} already waits for {existing.target_number}")
        self.existing = existing


def now_ms() -> int:
    return int(time.time() * 1000)


def new_subscription(
    chat_id: int,
    user_id: int,
    first_name: str,
    target_number: int,
    message_id: int,
    clock: Callable[[], int] = now_ms,
) -> Subscription:
    return Subscription(
        chat_id=chat_id,
        user_id=user_id,
        first_name=first_name,
        target_number=target_number,
        created_at=clock(),
        message_id=message_id,
    )


def validate_target_number(value: Any, current: int, min_number: int, max_number: int) -> Optional[str]:
    """Return None if `value` is a subscribable target, otherwise an error key."""
    text = str(value).strip() if value is not None else ""
    # ASCII digits only: no "1_050", no full-width digits
    if not _DIGITS_RE.fullmatch(text):
        return "not_int"
    num = int(text)
    if num < min_number or num > max_number or len(str(num)) > 4:
        return "out_of_range"
    if num <= current:
        return "already_passed"
    return None


# -------------------------
# Stores
# -------------------------
class SubscriptionStore:
    """
    All mutations go through `replace_all`; there is no partial update.
    Subclasses provide `list_all` and `replace_all`.
    """

    def list_all(self) -> List[Subscription]:
        raise NotImplementedError

    def replace_all(self, subs: Sequence[Subscription]) -> bool:
        raise NotImplementedError

    def find(self, chat_id: int, user_id: int) -> Optional[Subscription]:
        for s in self.list_all():
            if s.chat_id == chat_id and s.user_id == user_id:
                return s
        return None

    def add(self, sub: Subscription) -> Subscription:
        subs = self.list_all()
        for s in subs:
            if s.chat_id == sub.chat_id and s.user_id == sub.user_id:
                raise DuplicateSubscriptionError(s)
        subs.append(sub)
        self.replace_all(subs)
        return sub

    def remove(self, chat_id: int, user_id: int) -> Optional[Subscription]:
        subs = self.list_all()
        for idx, s in enumerate(subs):
            if s.chat_id == chat_id and s.user_id == user_id:
                removed = subs.pop(idx)
                self.replace_all(subs)
                return removed
        return None


class JsonSubscriptionStore(SubscriptionStore):
    def __init__(self, db: JsonFileDb) -> None:
        self.db = db

    def list_all(self) -> List[Subscription]:
        raw = self.db.get(SUBSCRIPTIONS_KEY) or []
        subs: List[Subscription] = []
        for d in raw:
            try:
                subs.append(Subscription.from_dict(d))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[subs] Skipping unreadable record %r: %s", d, e)
        return subs

    def replace_all(self, subs: Sequence[Subscription]) -> bool:
        ok = self.db.set(SUBSCRIPTIONS_KEY, [s.to_dict() for s in subs])
        if not ok:
            logger.error("[subs] Could not persist %d subscription(s)", len(subs))
        return ok


class MemorySubscriptionStore(SubscriptionStore):
    def __init__(self, subs: Optional[Sequence[Subscription]] = None) -> None:
        self._subs: List[Subscription] = list(subs or [])
        self.writes = 0

    def list_all(self) -> List[Subscription]:
        return list(self._subs)

    def replace_all(self, subs: Sequence[Subscription]) -> bool:
        self._subs = list(subs)
        self.writes += 1
        return True
