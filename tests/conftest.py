import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from subscriptions import Subscription

T0_MS = 1_700_000_000_000


def make_sub(chat_id: int = 1, user_id: int = 10, target: int = 1050, created_at: int = T0_MS, message_id: int = 99) -> Subscription:
    return Subscription(
        chat_id=chat_id,
        user_id=user_id,
        first_name=f"user{user_id}",
        target_number=target,
        created_at=created_at,
        message_id=message_id,
    )


class FakeSource:
    def __init__(self, value: Optional[int]) -> None:
        self.value = value
        self.calls = 0

    async def get_current_number(self) -> Optional[int]:
        self.calls += 1
        return self.value


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: List[tuple] = []

    async def notify(self, chat_id: int, text: str, reply_to: Optional[int] = None) -> bool:
        self.sent.append((chat_id, text, reply_to))
        return True


class FakeBot:
    """Records outgoing calls; `fail_with` is raised by the next send_message call(s)."""

    def __init__(self, username: str = "sijiu_bot") -> None:
        self.username = username
        self.id = 555
        self.sent: List[Dict[str, Any]] = []
        self.edits: List[Dict[str, Any]] = []
        self.fail_with: List[Exception] = []
        self.polls: List[Dict[str, Any]] = []
        self.stopped: List[Dict[str, Any]] = []
        # what stop_poll hands back
        self.closed_poll: Any = None
        self._next_id = 1000

    async def send_message(self, chat_id: int, text: str, **kwargs: Any) -> SimpleNamespace:
        if self.fail_with:
            raise self.fail_with.pop(0)
        self._next_id += 1
        self.sent.append({"chat_id": chat_id, "text": text, **kwargs})
        return SimpleNamespace(message_id=self._next_id, chat_id=chat_id, text=text)

    async def send_chat_action(self, chat_id: int, action: Any) -> bool:
        return True

    async def edit_message_reply_markup(self, **kwargs: Any) -> bool:
        self.edits.append(kwargs)
        return True

    async def edit_message_text(self, **kwargs: Any) -> bool:
        self.edits.append(kwargs)
        return True

    async def send_poll(self, chat_id: int, question: str, options: List[str], **kwargs: Any) -> SimpleNamespace:
        self._next_id += 1
        self.polls.append({"chat_id": chat_id, "question": question, "options": list(options), **kwargs})
        data = {"id": f"poll{self._next_id}", "question": question, "options": [{"text": t, "voter_count": 0} for t in options]}
        poll = SimpleNamespace(id=data["id"], to_dict=lambda: dict(data))
        return SimpleNamespace(message_id=self._next_id, poll=poll)

    async def stop_poll(self, chat_id: int, message_id: int, **kwargs: Any) -> SimpleNamespace:
        self.stopped.append({"chat_id": chat_id, "message_id": message_id})
        return self.closed_poll


@pytest.fixture
def run():
    return asyncio.run
