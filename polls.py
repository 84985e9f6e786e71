import hashlib
import socket
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from jsondb import JsonFileDb

_SALT = socket.gethostname() or "salt"

# Telegram poll fields not worth keeping on disk
_PRUNED_FIELDS = ("id", "is_anonymous", "type", "allows_multiple_answers")

BYE_OPTIONS = ["偶不吃了 😠", "怕的是他 👑", "蓋被被 😴"]
VOTE_OPTIONS = ["+1", "+2", "+4"]
RAMEN_OPTIONS = [
    "+1 | 🍜 單點",
    "+2 | 🍜 單點",
    "+1 | 🥚 加蛋",
    "+2 | 🥚 加蛋",
    "+1 | ✨ 超值",
    "+2 | ✨ 超值",
]


def short_hash(value: Any) -> str:
    """Short stable hash (8 hex chars), used in callback data."""
    h = hashlib.sha256()
    h.update((str(value) + _SALT).encode("utf-8"))
    return h.hexdigest()[:8]


def _multiplier(option_text: str) -> int:
    head = option_text.split("|", 1)[0]
    return int(head.replace("+", "").strip())


def vote_head_count(options: Sequence[Tuple[str, int]]) -> int:
    """Weighted head count of a `/vote` poll; the last option means "not coming"."""
    return sum(_multiplier(text) * count for text, count in options[:-1])


def parse_ramen_result(options: Sequence[Tuple[str, int]]) -> Tuple[int, Dict[str, int]]:
    """
    Aggregate a ramen order poll given (option text, voter count) pairs.

    Options look like "+2 | 🥚 加蛋"; each vote counts for the multiplier. The
    last option is the opt-out and is ignored.
    """
    result: Dict[str, int] = {}
    for text, count in options[:-1]:
        item = text.split("|", 1)[1].strip()
        result[item] = result.get(item, 0) + count * _multiplier(text)
    return sum(result.values()), result


def is_ramen_poll(option_texts: Iterable[str]) -> bool:
    return any("|" in t for t in option_texts)


def ramen_live_total(votes: Dict[str, List[int]], option_count: int) -> int:
    """Running head count from raw answers; options alternate +1/+2."""
    total = 0
    for option_ids in votes.values():
        for oid in option_ids:
            if oid != option_count - 1:
                total += (oid % 2) + 1
    return total


class PollStore:
    def __init__(self, db: JsonFileDb) -> None:
        self.db = db

    def all(self) -> Dict[str, Dict[str, Any]]:
        return self.db.get("polls") or {}

    def get(self, poll_id: str) -> Optional[Dict[str, Any]]:
        return self.all().get(poll_id)

    def update(self, poll_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        polls = self.all()
        merged = {**polls.get(poll_id, {}), **data, "update_time": int(time.time() * 1000)}
        for key in _PRUNED_FIELDS:
            merged.pop(key, None)
        polls[poll_id] = merged
        self.db.set("polls", polls)
        return merged

    def record_voter(self, user_id: int, first_name: Optional[str], username: Optional[str]) -> None:
        users = self.db.get("users") or {}
        users[str(user_id)] = {"first_name": first_name, "username": username}
        self.db.set("users", users)

    def record_answer(self, poll_id: str, user_id: int, option_ids: List[int]) -> Optional[Dict[str, Any]]:
        poll = self.get(poll_id)
        if poll is None:
            return None
        votes = dict(poll.get("votes") or {})
        votes[str(user_id)] = list(option_ids)
        return self.update(poll_id, {"votes": votes})
