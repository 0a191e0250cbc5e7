import itertools
from dataclasses import dataclass
from typing import Any, List, Optional

import pytest

from report_desk.telegram.bot import ReportBot
from report_desk.telegram.config import BotConfig, resolve_encryption_key
from report_desk.telegram.storage import BotStorage

from .factories import (
    ADMIN_ID,
    DASHBOARD_TOKEN,
    EMPLOYEE_ID,
    GROUP_ID,
    SECOND_ADMIN_ID,
    SECOND_GROUP_ID,
    WEBHOOK_SECRET,
)


@dataclass
class SentMessage:
    chat_id: int
    message_id: int
    text: str
    reply_markup: Any = None


@dataclass
class EditedMessage:
    chat_id: int
    message_id: int
    text: str
    reply_markup: Any = None


class FakeGateway:
    """Records outbound calls; chats in ``unreachable`` fail like a blocked bot."""

    def __init__(self):
        self.sent: List[SentMessage] = []
        self.edited: List[EditedMessage] = []
        self.keyboards: List[tuple] = []
        self.deleted: List[tuple] = []
        self.answers: List[tuple] = []
        self.unreachable = set()
        self._ids = itertools.count(100)

    async def initialize(self):
        return None

    async def shutdown(self):
        return None

    async def get_me(self):
        return None

    async def set_webhook(self, url, secret_token):
        return True

    async def send_message(self, chat_id, text, *, reply_markup=None, parse_mode=None) -> Optional[int]:
        if chat_id in self.unreachable:
            return None
        message_id = next(self._ids)
        self.sent.append(SentMessage(chat_id, message_id, text, reply_markup))
        return message_id

    async def edit_message(self, chat_id, message_id, text, *, reply_markup=None, parse_mode=None) -> bool:
        if chat_id in self.unreachable:
            return False
        self.edited.append(EditedMessage(chat_id, message_id, text, reply_markup))
        return True

    async def edit_keyboard(self, chat_id, message_id, reply_markup) -> bool:
        self.keyboards.append((chat_id, message_id, reply_markup))
        return True

    async def delete_message(self, chat_id, message_id) -> bool:
        if not message_id:
            return False
        self.deleted.append((chat_id, message_id))
        return True

    async def answer_callback(self, callback_query_id, text="", *, show_alert=False) -> bool:
        self.answers.append((callback_query_id, text, show_alert))
        return True

    def texts_for(self, chat_id):
        return [message.text for message in self.sent if message.chat_id == chat_id]

    def last_text(self, chat_id):
        texts = self.texts_for(chat_id)
        return texts[-1] if texts else None

    def reset(self):
        self.sent.clear()
        self.edited.clear()
        self.keyboards.clear()
        self.deleted.clear()
        self.answers.clear()


@pytest.fixture
def config(tmp_path):
    return BotConfig(
        token="123456:TEST",
        webhook_secret=WEBHOOK_SECRET,
        db_path=tmp_path / "report_desk.sqlite3",
        encryption_key=resolve_encryption_key(None, WEBHOOK_SECRET),
        admin_ids={ADMIN_ID},
        bot_username="report_desk_bot",
        dashboard_token=DASHBOARD_TOKEN,
    )


@pytest.fixture
def storage(config):
    return BotStorage(config.db_path, config.encryption_key)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def bot(config, storage, gateway):
    return ReportBot(config, storage=storage, gateway=gateway)


@pytest.fixture
def seeded(bot, storage):
    """Two active admin groups, one named admin and one employee."""
    storage.set_user_role(ADMIN_ID, "admin", display_name="Boss")
    storage.set_user_role(SECOND_ADMIN_ID, "admin", display_name="Deputy")
    storage.set_user_role(EMPLOYEE_ID, "employee", display_name="Alice")
    storage.activate_admin_group(GROUP_ID, title="Admins A", activated_by=ADMIN_ID)
    storage.activate_admin_group(SECOND_GROUP_ID, title="Admins B", activated_by=ADMIN_ID)
    return bot
