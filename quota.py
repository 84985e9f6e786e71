from datetime import date, datetime, timezone
from typing import Any, Callable, Dict

from jsondb import JsonFileDb


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _fresh(entry: Any, today: str) -> Dict[str, Any]:
    if not isinstance(entry, dict) or entry.get("date") != today:
        return {"date": today, "count": 0}
    return entry


class UsageQuota:
    """Daily message caps for LLM chat: global, per private user, per group."""

    def __init__(
        self,
        db: JsonFileDb,
        per_user: int,
        per_group: int,
        global_limit: int,
        retention_days: int = 7,
        today: Callable[[], str] = utc_today,
    ) -> None:
        self.db = db
        self.per_user = per_user
        self.per_group = per_group
        self.global_limit = global_limit
        self.retention_days = retention_days
        self.today = today

    def _prune(self, bucket: Dict[str, Any], today: str) -> None:
        t = date.fromisoformat(today)
        for key in list(bucket):
            try:
                age = (t - date.fromisoformat(bucket[key]["date"])).days
            except (KeyError, TypeError, ValueError):
                age = self.retention_days + 1
            if age > self.retention_days:
                del bucket[key]

    def check_and_increment(self, chat_type: str, user_id: int, chat_id: int) -> bool:
        today = self.today()
        stats = self.db.get("stats") or {}
        users = stats.setdefault("users", {})
        groups = stats.setdefault("groups", {})
        stats["global"] = _fresh(stats.get("global"), today)

        if stats["global"]["count"] >= self.global_limit:
            self.db.set("stats", stats)
            return False

        self._prune(users, today)
        self._prune(groups, today)

        if chat_type == "private":
            bucket, key, limit = users, str(user_id), self.per_user
        else:
            bucket, key, limit = groups, str(chat_id), self.per_group
        entry = _fresh(bucket.get(key), today)
        if entry["count"] >= limit:
            self.db.set("stats", stats)
            return False
        entry["count"] += 1
        bucket[key] = entry

        stats["global"]["count"] += 1
        self.db.set("stats", stats)
        return True
