import logging
from datetime import datetime, timezone
from typing import Any, Dict

from jsondb import JsonFileDb

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ActivityLog:
    """Append-only usage log kept under "logs" in usage.json."""

    def __init__(self, db: JsonFileDb) -> None:
        self.db = db

    def record(self, activity: str, **data: Any) -> Dict[str, Any]:
        entry = {"timestamp": utc_now_iso(), "activity": activity, **data}
        logs = self.db.get("logs") or []
        logs.append(entry)
        self.db.set("logs", logs)
        logger.info("[activity] %s", entry)
        return entry
