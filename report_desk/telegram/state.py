"""Per-chat conversation state.

Each chat holds at most one state object. The concrete classes below form a
closed set of flows; every flow carries only the fields it needs. States live
in process memory and are lost on restart, and abandoned flows are never
expired.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional, Union


@dataclass(frozen=True)
class GroupActivationState:
    """A group chat typing the admin-group code on the keypad."""

    code: str = ""
    keyboard_message_id: Optional[int] = None


@dataclass(frozen=True)
class PersonalActivationState:
    """A private chat entering an activation code for ``target_role``."""

    target_role: str = "employee"
    code: str = ""
    keyboard_message_id: Optional[int] = None


@dataclass(frozen=True)
class ReportSubmissionState:
    order_type: str
    employee_id: int


@dataclass(frozen=True)
class OrderModificationState:
    order_id: int
    original_content: str
    admin_id: int
    surface: str
    origin_chat_id: Optional[int] = None
    origin_message_id: Optional[int] = None


ConversationState = Union[
    GroupActivationState,
    PersonalActivationState,
    ReportSubmissionState,
    OrderModificationState,
]


class ConversationStore:
    """Key/value contract for conversation state keyed by chat id."""

    def get(self, chat_id: int) -> Optional[ConversationState]:
        raise NotImplementedError

    def set(self, chat_id: int, state: ConversationState) -> Optional[ConversationState]:
        """Store ``state`` and return whatever it superseded."""
        raise NotImplementedError

    def pop(self, chat_id: int) -> Optional[ConversationState]:
        raise NotImplementedError

    def lock(self, chat_id: int) -> "ChatLock":
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class ChatLock:
    """``asyncio.Lock`` for one chat that counts its holders and waiters."""

    def __init__(self, store: "InMemoryConversationStore", chat_id: int) -> None:
        self._store = store
        self._chat_id = chat_id
        self._lock = asyncio.Lock()
        self.users = 0

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "ChatLock":
        self.users += 1
        try:
            await self._lock.acquire()
        except BaseException:
            self._release_user()
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._lock.release()
        self._release_user()

    def _release_user(self) -> None:
        self.users -= 1
        if self.users == 0:
            self._store._forget_lock(self._chat_id, self)


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._states: Dict[int, ConversationState] = {}
        self._locks: Dict[int, ChatLock] = {}

    def get(self, chat_id: int) -> Optional[ConversationState]:
        return self._states.get(chat_id)

    def set(self, chat_id: int, state: ConversationState) -> Optional[ConversationState]:
        previous = self._states.get(chat_id)
        self._states[chat_id] = state
        return previous

    def pop(self, chat_id: int) -> Optional[ConversationState]:
        return self._states.pop(chat_id, None)

    def lock(self, chat_id: int) -> ChatLock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = ChatLock(self, chat_id)
            self._locks[chat_id] = lock
        return lock

    def _forget_lock(self, chat_id: int, lock: ChatLock) -> None:
        # A newer lock may already own this chat id.
        if self._locks.get(chat_id) is lock:
            del self._locks[chat_id]

    def clear(self) -> None:
        self._states.clear()

    def lock_count(self) -> int:
        return len(self._locks)

    def __len__(self) -> int:
        return len(self._states)


def describe_state(state: Optional[ConversationState]) -> str:
    if isinstance(state, ReportSubmissionState):
        return "报备提交"
    if isinstance(state, OrderModificationState):
        return "订单修改"
    if isinstance(state, (GroupActivationState, PersonalActivationState)):
        return "激活"
    return ""


class UpdateDeduplicator:
    """Remembers the most recent ``window`` update ids."""

    def __init__(self, window: int = 1000):
        self.window = max(1, window)
        self._seen: "OrderedDict[int, None]" = OrderedDict()

    def seen(self, update_id: int) -> bool:
        """Record ``update_id``; True when it was already recorded."""
        if update_id in self._seen:
            self._seen.move_to_end(update_id)
            return True
        self._seen[update_id] = None
        while len(self._seen) > self.window:
            self._seen.popitem(last=False)
        return False

    def __contains__(self, update_id: int) -> bool:
        return update_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)
