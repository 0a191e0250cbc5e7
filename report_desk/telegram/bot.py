from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple

from telegram import CallbackQuery, Message, ReplyKeyboardRemove, Update
from telegram.constants import ChatType

from ..services.parser import parse_order_content, validate_parse_result
from ..services.validation import validate_submission
from .approvals import (
    SURFACE_GROUP,
    SURFACE_PANEL,
    STATUS_ICONS,
    STATUS_NAMES,
    Actor,
    ApprovalError,
    ApprovalOrchestrator,
    MessageRef,
    OrderAlreadyProcessedError,
    format_resolved_order,
    user_display_name,
)
from .config import BotConfig
from .gateway import MessagingGateway, build_bot
from .keyboards import (
    BTN_HELP,
    BTN_HISTORY,
    BTN_PENDING,
    BTN_RESOLVED,
    BTN_STATS,
    CB_APPROVE,
    CB_KEYPAD,
    CB_MODIFY,
    CB_NOOP,
    CB_REJECT,
    CB_REJECT_BACK,
    CB_REJECT_REASON,
    KEYPAD_CANCEL,
    KEYPAD_CONFIRM,
    KEYPAD_DELETE,
    KEYPAD_SYMBOLS,
    MENU_LABELS,
    REJECTION_REASONS,
    REPORT_BUTTONS,
    TYPE_ICONS,
    TYPE_NAMES,
    menu_for_role,
    numeric_keypad,
    order_actions,
    rejection_reasons,
    render_template,
)
from .state import (
    ConversationStore,
    GroupActivationState,
    InMemoryConversationStore,
    OrderModificationState,
    PersonalActivationState,
    ReportSubmissionState,
    UpdateDeduplicator,
    describe_state,
)
from .storage import ADMIN_GROUP_ACTIVATION_KEY, DEFAULT_TEMPLATES, BotStorage

logger = logging.getLogger(__name__)


CANCEL_KEYWORDS = frozenset({"/cancel", "取消", "cancel", "退出"})
GROUP_COMMANDS = frozenset({"activate", "cancel", "deactivate", "help"})
PRIVATE_COMMANDS = frozenset({"start", "admin", "help"})
PERSONAL_CODE_LENGTH = 6
LIST_LIMIT = 10

ROLE_NAMES = {"employee": "员工", "admin": "管理员"}

EMPLOYEE_HELP = (
    "📖 使用帮助\n\n"
    "1. 点击「入款报备」「出款报备」或「退款报备」获取模板\n"
    "2. 按模板填写客户、项目、金额后直接发送\n"
    "3. 提交后等待管理员审批，结果会私信通知您\n"
    "4. 点击「查看历史」查看最近的报备记录\n\n"
    "随时发送 /cancel 或“取消”退出当前操作。"
)
ADMIN_HELP = (
    "📖 管理员帮助\n\n"
    "• 「待审批列表」查看并处理待审批订单\n"
    "• 「已审批列表」查看最近处理的订单\n"
    "• 「统计报表」查看今日与累计数据\n"
    "• 在群组中发送 /activate 并输入激活码，可将群组设为管理群组\n\n"
    "随时发送 /cancel 或“取消”退出当前操作。"
)
GUEST_HELP = "👋 请发送 /start 并输入6位员工激活码完成激活。\n管理员请发送 /admin 使用管理员激活码。"
GROUP_HELP = (
    "📖 群组命令\n\n"
    "/activate - 输入激活码，将本群设为管理群组\n"
    "/deactivate - 停用管理群组（仅管理员）\n"
    "/cancel - 取消当前操作"
)


class ReportBot:
    """Webhook-driven Telegram bot for order reports and their approval."""

    def __init__(
        self,
        config: BotConfig,
        *,
        storage: Optional[BotStorage] = None,
        gateway: Optional[MessagingGateway] = None,
        states: Optional[ConversationStore] = None,
    ):
        self.config = config
        self.storage = storage or BotStorage(config.db_path, config.encryption_key)
        if gateway is None:
            token = config.token or self.storage.get_bot_token()
            if not token:
                raise RuntimeError("TELEGRAM_BOT_TOKEN is required (or store one with BotStorage.store_bot_token).")
            gateway = MessagingGateway(build_bot(token))
        self.gateway = gateway
        self.states = states if states is not None else InMemoryConversationStore()
        self.approvals = ApprovalOrchestrator(self.storage, self.gateway)
        self.dedup = UpdateDeduplicator(config.dedup_window)
        self.storage.ensure_admins(config.admin_ids)

    # ------------------------------------------------------------------ runtime
    async def start(self) -> None:
        await self.gateway.initialize()
        me = await self.gateway.get_me()
        if me is not None:
            logger.info("Connected to Telegram as %s (@%s)", me.full_name, me.username)
            if not self.config.bot_username:
                self.config.bot_username = me.username
        if self.config.webhook_url:
            if await self.gateway.set_webhook(self.config.webhook_url, self.config.webhook_secret):
                logger.info("Webhook registered at %s", self.config.webhook_url)
            else:
                logger.warning("Could not register webhook at %s", self.config.webhook_url)
        removed = self.storage.delete_expired_codes()
        if removed:
            logger.info("Removed %s expired activation codes", removed)

    async def stop(self) -> None:
        await self.gateway.shutdown()

    @staticmethod
    def parse_update(payload: Any) -> Update:
        """Turn a webhook body into an Update; raises ValueError when it is not one."""
        if not isinstance(payload, dict):
            raise ValueError("Update payload must be a JSON object")
        update_id = payload.get("update_id")
        if not isinstance(update_id, int) or isinstance(update_id, bool):
            raise ValueError("Update payload has no integer update_id")
        try:
            update = Update.de_json(payload, None)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed update {update_id}: {exc}") from exc
        if update is None:
            raise ValueError(f"Malformed update {update_id}")
        return update

    async def process_update(self, payload: Any) -> bool:
        """Handle one webhook delivery; False when the update was a redelivery."""
        update = self.parse_update(payload)
        if self.dedup.seen(update.update_id):
            logger.info("Skipping duplicate update %s", update.update_id)
            return False
        try:
            await self.dispatch(update)
        except Exception:
            logger.exception("Unhandled error while processing update %s", update.update_id)
        return True

    async def dispatch(self, update: Update) -> None:
        if update.callback_query is not None:
            query = update.callback_query
            chat_id = query.message.chat.id if query.message else query.from_user.id
            async with self.states.lock(chat_id):
                await self.handle_callback(query)
            return

        message = update.message
        if message is None or message.from_user is None or message.from_user.is_bot:
            return
        async with self.states.lock(message.chat.id):
            if message.chat.type == ChatType.PRIVATE:
                await self.handle_private_message(message)
            else:
                await self.handle_group_message(message)

    # -------------------------------------------------------------------- utils
    def _parse_command(self, text: str) -> Optional[str]:
        if not text.startswith("/"):
            return None
        name, _, mention = text.split()[0][1:].partition("@")
        if mention and self.config.bot_username and mention.lower() != self.config.bot_username.lower():
            return None
        return name.lower() or None

    def _is_cancel(self, text: str) -> bool:
        lowered = text.strip().lower()
        if lowered in CANCEL_KEYWORDS:
            return True
        return self._parse_command(lowered) == "cancel" and len(lowered.split()) == 1

    def _admin_group_code(self) -> str:
        return self.storage.get_setting(ADMIN_GROUP_ACTIVATION_KEY) or self.config.admin_group_activation_code

    def _code_length(self, state) -> int:
        if isinstance(state, GroupActivationState):
            return len(self._admin_group_code())
        return PERSONAL_CODE_LENGTH

    async def _reply(self, chat_id: int, text: str, *, role: Optional[str] = None) -> Optional[int]:
        return await self.gateway.send_message(chat_id, text, reply_markup=menu_for_role(role))

    # ------------------------------------------------------------ group chats
    async def handle_group_message(self, message: Message) -> None:
        command = self._parse_command((message.text or "").strip())
        if command not in GROUP_COMMANDS:
            return
        chat_id = message.chat.id
        if command == "activate":
            await self.handle_group_activate(message)
        elif command == "cancel":
            state = self.states.pop(chat_id)
            if isinstance(state, GroupActivationState):
                await self.gateway.delete_message(chat_id, state.keyboard_message_id)
            await self.gateway.send_message(chat_id, "❌ 已取消当前操作。")
        elif command == "deactivate":
            await self.handle_group_deactivate(message)
        else:
            await self.gateway.send_message(chat_id, GROUP_HELP)

    async def handle_group_activate(self, message: Message) -> None:
        chat_id = message.chat.id
        if self.storage.is_active_admin_group(chat_id):
            await self.gateway.send_message(chat_id, "✅ 该群组已是管理群组。")
            return
        previous = self.states.get(chat_id)
        if isinstance(previous, GroupActivationState):
            await self.gateway.delete_message(chat_id, previous.keyboard_message_id)
        length = len(self._admin_group_code())
        message_id = await self.gateway.send_message(
            chat_id,
            f"🔐 请输入{length}位管理员群组激活码：",
            reply_markup=numeric_keypad("", length),
        )
        self.states.set(chat_id, GroupActivationState(keyboard_message_id=message_id))

    async def handle_group_deactivate(self, message: Message) -> None:
        chat_id = message.chat.id
        user = self.storage.get_user(message.from_user.id)
        if not user or user["role"] != "admin" or not user["is_active"]:
            await self.gateway.send_message(chat_id, "❌ 权限不足，仅管理员可以停用管理群组。")
            return
        if self.storage.deactivate_admin_group(chat_id):
            logger.info("Admin group %s deactivated by %s", chat_id, message.from_user.id)
            await self.gateway.send_message(chat_id, "✅ 已停用管理群组，本群将不再接收待审批订单。")
        else:
            await self.gateway.send_message(chat_id, "该群组尚未激活为管理群组。")

    # ---------------------------------------------------------- private chats
    async def handle_private_message(self, message: Message) -> None:
        chat_id = message.chat.id
        sender = message.from_user
        text = (message.text or "").strip()
        user = self.storage.upsert_user(sender.id, username=sender.username, full_name=sender.full_name)

        if self._is_cancel(text):
            await self.handle_cancel(chat_id, user["role"])
            return

        if not user["is_active"]:
            self.states.pop(chat_id)
            await self.gateway.send_message(chat_id, "🚫 您的账户已被禁用，请联系管理员。", reply_markup=ReplyKeyboardRemove())
            return

        state = self.states.get(chat_id)
        command = self._parse_command(text)
        if state is not None and (text in MENU_LABELS or command in PRIVATE_COMMANDS):
            self.states.pop(chat_id)
            if isinstance(state, PersonalActivationState):
                await self.gateway.delete_message(chat_id, state.keyboard_message_id)
            await self.gateway.send_message(chat_id, f"⚠️ 已放弃未完成的{describe_state(state)}流程。")
        elif isinstance(state, PersonalActivationState):
            await self.handle_activation_code(chat_id, sender.id, state, text)
            return
        elif isinstance(state, ReportSubmissionState):
            await self.handle_report_content(chat_id, user, state, text)
            return
        elif isinstance(state, OrderModificationState):
            await self.handle_modification_content(chat_id, user, state, text)
            return

        await self.handle_menu(chat_id, user, text, command)

    async def handle_cancel(self, chat_id: int, role: Optional[str]) -> None:
        state = self.states.pop(chat_id)
        if isinstance(state, PersonalActivationState):
            await self.gateway.delete_message(chat_id, state.keyboard_message_id)
        text = f"❌ 已取消{describe_state(state)}流程。" if state else "❌ 已取消当前操作。"
        await self.gateway.send_message(chat_id, text, reply_markup=menu_for_role(role) or ReplyKeyboardRemove())

    async def handle_menu(self, chat_id: int, user, text: str, command: Optional[str]) -> None:
        role = user["role"]
        if command == "start":
            await self.handle_start(chat_id, user)
        elif command == "admin":
            await self.handle_admin_activation(chat_id, user)
        elif command == "help" or text == BTN_HELP:
            help_text = {"admin": ADMIN_HELP, "employee": EMPLOYEE_HELP}.get(role, GUEST_HELP)
            await self._reply(chat_id, help_text, role=role)
        elif role is None:
            await self.gateway.send_message(chat_id, GUEST_HELP)
        elif text in REPORT_BUTTONS:
            await self.handle_report_start(chat_id, user, REPORT_BUTTONS[text])
        elif text == BTN_HISTORY:
            await self.handle_history(chat_id, user)
        elif text in (BTN_PENDING, BTN_RESOLVED, BTN_STATS):
            if role != "admin":
                await self._reply(chat_id, "❌ 权限不足，仅管理员可以使用此功能。", role=role)
            elif text == BTN_PENDING:
                await self.handle_pending_list(chat_id)
            elif text == BTN_RESOLVED:
                await self.handle_resolved_list(chat_id)
            else:
                await self.handle_stats(chat_id)
        else:
            await self._reply(chat_id, "请使用下方菜单选择操作。", role=role)

    async def handle_start(self, chat_id: int, user) -> None:
        role = user["role"]
        if role is None:
            self.states.set(chat_id, PersonalActivationState(target_role="employee"))
            await self.gateway.send_message(
                chat_id,
                "👋 欢迎使用报备系统！\n\n请输入您的6位员工激活码：",
                reply_markup=ReplyKeyboardRemove(),
            )
            return
        name = user_display_name(user)
        await self._reply(chat_id, f"👋 欢迎回来，{name}（{ROLE_NAMES.get(role, role)}）！\n\n请选择操作：", role=role)

    async def handle_admin_activation(self, chat_id: int, user) -> None:
        if user["role"] == "admin":
            await self._reply(chat_id, "✅ 您已是管理员。", role="admin")
            return
        message_id = await self.gateway.send_message(
            chat_id,
            "🔐 请输入6位管理员激活码：",
            reply_markup=numeric_keypad("", PERSONAL_CODE_LENGTH),
        )
        self.states.set(chat_id, PersonalActivationState(target_role="admin", keyboard_message_id=message_id))

    async def handle_activation_code(
        self, chat_id: int, telegram_id: int, state: PersonalActivationState, text: str
    ) -> None:
        code = text.strip()
        if len(code) != PERSONAL_CODE_LENGTH or not code.isdigit():
            await self.gateway.send_message(chat_id, "请输入正确的6位激活码，或发送 /cancel 取消：")
            return
        await self.redeem_code(chat_id, telegram_id, state, code)

    async def redeem_code(self, chat_id: int, telegram_id: int, state: PersonalActivationState, code: str) -> bool:
        """Bind ``telegram_id`` to the role behind ``code``; the state is kept on failure so the user can retry."""
        record = self.storage.get_employee_code(code)
        if record is None or record["type"] != state.target_role:
            await self.gateway.send_message(chat_id, "❌ 激活码无效，请联系管理员获取正确的激活码。")
            return False
        if record["is_used"]:
            await self.gateway.send_message(chat_id, "❌ 该激活码已被使用，请联系管理员。")
            return False
        if self.storage.code_expired(record):
            await self.gateway.send_message(chat_id, "❌ 激活码已过期，请联系管理员获取新的激活码。")
            return False
        if self.storage.use_employee_code(code, telegram_id) is None:
            await self.gateway.send_message(chat_id, "❌ 该激活码已被使用，请联系管理员。")
            return False

        role = record["type"]
        self.storage.set_user_role(telegram_id, role, display_name=record["name"])
        self.states.pop(chat_id)
        if state.keyboard_message_id:
            await self.gateway.delete_message(chat_id, state.keyboard_message_id)
        logger.info("User %s activated as %s with code %s", telegram_id, role, code)
        await self._reply(
            chat_id,
            f"✅ 激活成功！\n\n欢迎 {record['name']}，您已激活{ROLE_NAMES.get(role, role)}身份。\n\n请选择操作：",
            role=role,
        )
        return True

    # ------------------------------------------------------------ submissions
    async def handle_report_start(self, chat_id: int, user, order_type: str) -> None:
        if user["role"] != "employee":
            await self._reply(chat_id, "❌ 仅员工可以提交报备。", role=user["role"])
            return
        template = self.storage.get_template(order_type) or DEFAULT_TEMPLATES[order_type]
        rendered = render_template(template, submitter_name=user_display_name(user))
        self.states.set(chat_id, ReportSubmissionState(order_type=order_type, employee_id=user["telegram_id"]))
        await self.gateway.send_message(
            chat_id,
            f"{TYPE_ICONS[order_type]} {TYPE_NAMES[order_type]}\n\n"
            "请复制以下模板，填写完整后直接发送：\n\n"
            f"{rendered}\n\n"
            "发送 /cancel 或“取消”可退出。",
        )

    async def handle_report_content(self, chat_id: int, user, state: ReportSubmissionState, text: str) -> None:
        if user["role"] != "employee" or user["telegram_id"] != state.employee_id:
            self.states.pop(chat_id)
            await self._reply(chat_id, "❌ 权限不足，无法提交报备。", role=user["role"])
            return

        parsed = parse_order_content(text, state.order_type)
        result = validate_submission(text, parsed)
        if not result.ok:
            logger.info("Submission from %s rejected: %s", user["telegram_id"], result.reason)
            await self.gateway.send_message(chat_id, result.message)
            return
        if not validate_parse_result(parsed):
            await self.gateway.send_message(chat_id, "❌ 客户、项目或金额超出允许范围，请检查后重新发送。")
            return

        order = self.storage.create_order(
            order_type=state.order_type,
            employee_id=user["telegram_id"],
            content=text,
            parsed=parsed,
        )
        self.states.pop(chat_id)
        logger.info("Order %s created by %s", order.order_number, user["telegram_id"])
        await self._reply(
            chat_id,
            f"✅ 报备已提交！\n\n📋 订单号：{order.order_number}\n"
            f"🧾 客户：{order.customer_name}\n📁 项目：{order.project_name}\n"
            f"💵 金额：{order.amount_extracted}\n\n请等待管理员审批。",
            role="employee",
        )
        await self.approvals.broadcast_new_order(order)

    async def handle_modification_content(
        self, chat_id: int, user, state: OrderModificationState, text: str
    ) -> None:
        order = self.storage.get_order(state.order_id)
        if order is None:
            self.states.pop(chat_id)
            await self._reply(chat_id, "❌ 订单不存在", role=user["role"])
            return
        result = validate_submission(text, parse_order_content(text, order.type))
        if not result.ok:
            await self.gateway.send_message(
                chat_id, f"{result.message}\n\n（正在修改订单 {order.order_number}，发送 /cancel 可放弃修改）"
            )
            return

        actor = Actor.from_telegram(user["telegram_id"], user_display_name(user))
        origin = None
        if state.origin_chat_id is not None:
            origin = MessageRef(state.origin_chat_id, state.origin_message_id)
        try:
            updated = await self.approvals.complete_modification(
                order.id, actor, modified_content=text, surface=state.surface, origin=origin
            )
        except ApprovalError as exc:
            self.states.pop(chat_id)
            await self._reply(chat_id, f"❌ {exc.user_message}", role=user["role"])
            return
        self.states.pop(chat_id)
        await self._reply(chat_id, f"✅ 订单 {updated.order_number} 已修改并确认。", role=user["role"])

    # ------------------------------------------------------------ admin panel
    async def handle_history(self, chat_id: int, user) -> None:
        orders = self.storage.list_orders(employee_id=user["telegram_id"], limit=LIST_LIMIT)
        if not orders:
            await self._reply(chat_id, "📜 暂无报备记录。", role=user["role"])
            return
        lines = [f"📜 最近{len(orders)}条报备记录", ""]
        for order in orders:
            lines.append(
                f"{STATUS_ICONS[order.status]} {order.order_number} · {TYPE_NAMES[order.type]} · "
                f"{order.amount_extracted or order.amount} · {STATUS_NAMES[order.status]}"
            )
        await self._reply(chat_id, "\n".join(lines), role=user["role"])

    async def handle_pending_list(self, chat_id: int) -> None:
        orders = self.storage.list_orders(status="pending", limit=LIST_LIMIT)
        if not orders:
            await self._reply(chat_id, "🎉 当前没有待审批的订单。", role="admin")
            return
        await self._reply(chat_id, f"🔴 待审批订单：{len(orders)} 条", role="admin")
        for order in orders:
            employee_name = user_display_name(self.storage.get_user(order.employee_id))
            await self.gateway.send_message(
                chat_id,
                self._pending_summary(order, employee_name),
                reply_markup=order_actions(order.id),
            )

    @staticmethod
    def _pending_summary(order, employee_name: str) -> str:
        return (
            f"{TYPE_ICONS[order.type]} {TYPE_NAMES[order.type]} · {order.order_number}\n"
            f"👤 员工：{employee_name}\n"
            f"🧾 客户：{order.customer_name or '未识别'}\n"
            f"💵 金额：{order.amount_extracted or order.amount}\n\n"
            f"{order.original_content}"
        )

    async def handle_resolved_list(self, chat_id: int) -> None:
        orders = self.storage.list_orders(resolved=True, limit=LIST_LIMIT)
        if not orders:
            await self._reply(chat_id, "暂无已审批的订单。", role="admin")
            return
        lines = [f"✅ 最近{len(orders)}条已审批订单", ""]
        for order in orders:
            line = (
                f"{STATUS_ICONS[order.status]} {order.order_number} · {TYPE_NAMES[order.type]} · "
                f"{order.amount_extracted or order.amount} · {order.approver_name or order.approved_by}"
            )
            if order.rejection_reason:
                line += f" · {order.rejection_reason}"
            lines.append(line)
        await self._reply(chat_id, "\n".join(lines), role="admin")

    async def handle_stats(self, chat_id: int) -> None:
        stats = self.storage.get_dashboard_stats()
        await self._reply(
            chat_id,
            "📊 统计报表\n\n"
            f"📅 今日订单：{stats['today_orders']}\n"
            f"⏳ 待审批：{stats['pending_orders']}\n"
            f"✅ 已确认：{stats['approved_orders']}\n"
            f"❌ 已拒绝：{stats['rejected_orders']}\n"
            f"👥 在职员工：{stats['active_employees']}\n"
            f"📦 订单总数：{stats['total_orders']}",
            role="admin",
        )

    # -------------------------------------------------------------- callbacks
    async def handle_callback(self, query: CallbackQuery) -> None:
        data = query.data or ""
        if data == CB_NOOP:
            await self.gateway.answer_callback(query.id)
            return
        action, _, payload = data.partition(":")
        if action == CB_KEYPAD:
            await self.handle_keypad(query, payload)
            return

        handlers = {
            CB_APPROVE: self.handle_approve,
            CB_REJECT: self.handle_reject_picker,
            CB_REJECT_REASON: self.handle_reject,
            CB_REJECT_BACK: self.handle_reject_back,
            CB_MODIFY: self.handle_modify,
        }
        handler = handlers.get(action)
        if handler is None or query.message is None:
            await self.gateway.answer_callback(query.id, "未知操作")
            return

        order_id_text, _, extra = payload.partition(":")
        try:
            order_id = int(order_id_text)
        except ValueError:
            await self.gateway.answer_callback(query.id, "无效的订单")
            return

        user = self.storage.get_user(query.from_user.id)
        if not user or user["role"] != "admin" or not user["is_active"]:
            logger.info("Rejected %s callback from non-admin %s", action, query.from_user.id)
            await self.gateway.answer_callback(query.id, "权限不足", show_alert=True)
            return
        surface, origin = self._callback_surface(query)
        if surface == SURFACE_GROUP and not self.storage.is_active_admin_group(origin.chat_id):
            await self.gateway.answer_callback(query.id, "该群组未激活为管理群组", show_alert=True)
            return

        actor = Actor.from_telegram(user["telegram_id"], user_display_name(user))
        try:
            await handler(query, actor, order_id, extra, surface, origin)
        except ApprovalError as exc:
            await self.gateway.answer_callback(query.id, exc.user_message, show_alert=True)
            if isinstance(exc, OrderAlreadyProcessedError):
                await self._refresh_resolved(order_id, origin)

    @staticmethod
    def _callback_surface(query: CallbackQuery) -> Tuple[str, MessageRef]:
        message = query.message
        surface = SURFACE_PANEL if message.chat.type == ChatType.PRIVATE else SURFACE_GROUP
        return surface, MessageRef(message.chat.id, message.message_id)

    async def _refresh_resolved(self, order_id: int, origin: MessageRef) -> None:
        order = self.storage.get_order(order_id)
        if order is None or order.is_pending or origin.message_id is None:
            return
        employee_name = user_display_name(self.storage.get_user(order.employee_id))
        await self.gateway.edit_message(origin.chat_id, origin.message_id, format_resolved_order(order, employee_name))

    async def handle_approve(self, query, actor, order_id, extra, surface, origin) -> None:
        order = await self.approvals.approve(order_id, actor, surface=surface, origin=origin)
        await self.gateway.answer_callback(query.id, f"订单 {order.order_number} 已确认")

    async def handle_reject_picker(self, query, actor, order_id, extra, surface, origin) -> None:
        self.approvals.authorize(actor, surface=surface, origin=origin)
        self.approvals.load_pending(order_id)
        await self.gateway.edit_keyboard(origin.chat_id, origin.message_id, rejection_reasons(order_id))
        await self.gateway.answer_callback(query.id, "请选择拒绝原因")

    async def handle_reject(self, query, actor, order_id, extra, surface, origin) -> None:
        try:
            reason = REJECTION_REASONS[int(extra)]
        except (ValueError, IndexError):
            await self.gateway.answer_callback(query.id, "无效的拒绝原因")
            return
        order = await self.approvals.reject(order_id, actor, reason=reason, surface=surface, origin=origin)
        await self.gateway.answer_callback(query.id, f"订单 {order.order_number} 已拒绝")

    async def handle_reject_back(self, query, actor, order_id, extra, surface, origin) -> None:
        self.approvals.load_pending(order_id)
        await self.gateway.edit_keyboard(origin.chat_id, origin.message_id, order_actions(order_id))
        await self.gateway.answer_callback(query.id)

    async def handle_modify(self, query, actor, order_id, extra, surface, origin) -> None:
        order = self.approvals.begin_modification(order_id, actor, surface=surface, origin=origin)
        admin_chat = actor.telegram_id
        state = OrderModificationState(
            order_id=order.id,
            original_content=order.original_content,
            admin_id=admin_chat,
            surface=surface,
            origin_chat_id=origin.chat_id,
            origin_message_id=origin.message_id,
        )
        if admin_chat == origin.chat_id:
            await self._start_modification(query, admin_chat, order, state)
            return
        async with self.states.lock(admin_chat):
            await self._start_modification(query, admin_chat, order, state)

    async def _start_modification(self, query, admin_chat: int, order, state: OrderModificationState) -> None:
        sent = await self.gateway.send_message(
            admin_chat,
            f"✏️ 正在修改订单 {order.order_number}\n\n"
            "请发送修改后的完整报备内容。\n\n"
            f"📄 原始内容：\n{order.original_content}\n\n"
            "发送 /cancel 或“取消”可放弃修改。",
        )
        if sent is None:
            await self.gateway.answer_callback(query.id, "请先私聊机器人发送 /start 后再修改订单", show_alert=True)
            return
        previous = self.states.set(admin_chat, state)
        if previous is not None and previous != state:
            await self.gateway.send_message(admin_chat, f"⚠️ 之前未完成的{describe_state(previous)}流程已被替换。")
        await self.gateway.answer_callback(query.id, "请在私聊中发送修改后的内容")

    # ----------------------------------------------------------------- keypad
    async def handle_keypad(self, query: CallbackQuery, token: str) -> None:
        if query.message is None:
            await self.gateway.answer_callback(query.id)
            return
        chat_id = query.message.chat.id
        message_id = query.message.message_id
        state = self.states.get(chat_id)
        if not isinstance(state, (GroupActivationState, PersonalActivationState)):
            await self.gateway.answer_callback(query.id, "操作已过期，请重新开始")
            return

        length = self._code_length(state)
        if token == KEYPAD_CANCEL:
            self.states.pop(chat_id)
            await self.gateway.answer_callback(query.id, "已取消")
            await self.gateway.delete_message(chat_id, message_id)
            return
        if token == KEYPAD_CONFIRM:
            if len(state.code) != length:
                await self.gateway.answer_callback(query.id, f"请输入完整的{length}位激活码")
                return
            if isinstance(state, GroupActivationState):
                await self.confirm_group_activation(query, state)
            else:
                await self.gateway.answer_callback(query.id)
                await self.redeem_code(chat_id, query.from_user.id, state, state.code)
            return

        if token == KEYPAD_DELETE:
            code = state.code[:-1]
        elif token in KEYPAD_SYMBOLS:
            code = state.code + KEYPAD_SYMBOLS[token]
        elif len(token) == 1 and token.isdigit():
            code = state.code + token
        else:
            await self.gateway.answer_callback(query.id)
            return
        code = code[:length]
        self.states.set(chat_id, replace(state, code=code, keyboard_message_id=message_id))
        await self.gateway.answer_callback(query.id)
        if code != state.code:
            await self.gateway.edit_keyboard(chat_id, message_id, numeric_keypad(code, length))

    async def confirm_group_activation(self, query: CallbackQuery, state: GroupActivationState) -> None:
        chat = query.message.chat
        message_id = query.message.message_id
        self.states.pop(chat.id)
        if state.code != self._admin_group_code():
            await self.gateway.answer_callback(query.id, "激活码错误", show_alert=True)
            await self.gateway.edit_message(chat.id, message_id, "❌ 激活码错误，请发送 /activate 重新尝试。")
            return
        self.storage.activate_admin_group(chat.id, title=chat.title, activated_by=query.from_user.id)
        logger.info("Chat %s (%s) activated as admin group by %s", chat.id, chat.title, query.from_user.id)
        await self.gateway.answer_callback(query.id, "激活成功")
        text = "✅ 群组已成功激活为管理群组！\n\n本群将接收所有待审批的报备订单。"
        if not await self.gateway.edit_message(chat.id, message_id, text):
            await self.gateway.send_message(chat.id, text)


def summarize_update(payload: Dict[str, Any]) -> str:
    """Short description of an update for request logs."""
    kinds = [key for key in payload if key != "update_id"]
    return f"update {payload.get('update_id')} ({', '.join(kinds) or 'empty'})"
