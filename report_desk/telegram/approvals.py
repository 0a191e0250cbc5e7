"""Order approval lifecycle.

An order leaves ``pending`` exactly once. The storage layer's status-guarded
update decides the winner when several admins act at the same time; this
module holds no locks. Once the transition has committed every other surface
is synchronised on a best-effort basis: the originating message, the
employee, and every admin group that received the original broadcast.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, List, Optional, Sequence, Tuple

from .gateway import MessagingGateway
from .keyboards import TYPE_ICONS, TYPE_NAMES, order_actions
from .storage import BotStorage, OrderRecord

logger = logging.getLogger(__name__)


SURFACE_GROUP = "group_chat"
SURFACE_PANEL = "bot_panel"
SURFACE_WEB = "web_dashboard"

SURFACE_NAMES = {
    SURFACE_GROUP: "管理群组",
    SURFACE_PANEL: "机器人面板",
    SURFACE_WEB: "网页后台",
}
STATUS_NAMES = {
    "pending": "待处理",
    "approved": "已确认",
    "rejected": "已拒绝",
    "approved_modified": "已修改并确认",
}
STATUS_ICONS = {
    "pending": "⏳",
    "approved": "✅",
    "rejected": "❌",
    "approved_modified": "✏️",
}


class ApprovalError(Exception):
    """Base class for approval failures that are shown to the acting user."""

    user_message = "处理失败"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.user_message = message or self.user_message


class OrderNotFoundError(ApprovalError):
    user_message = "订单不存在"


class OrderAlreadyProcessedError(ApprovalError):
    user_message = "订单已处理"


class PermissionDeniedError(ApprovalError):
    user_message = "权限不足"


@dataclass(frozen=True)
class Actor:
    """Who is acting; ``telegram_id`` is None for dashboard users."""

    approver_id: str
    display_name: str
    telegram_id: Optional[int] = None

    @classmethod
    def from_telegram(cls, telegram_id: int, display_name: str) -> "Actor":
        return cls(approver_id=str(telegram_id), display_name=display_name, telegram_id=telegram_id)


@dataclass(frozen=True)
class MessageRef:
    chat_id: int
    message_id: Optional[int] = None


def user_display_name(user) -> str:
    if user is None:
        return "未知员工"
    for key in ("display_name", "full_name"):
        if user[key]:
            return user[key]
    if user["username"]:
        return f"@{user['username']}"
    return str(user["telegram_id"])


def _details(order: OrderRecord, employee_name: str) -> List[str]:
    return [
        f"📝 订单号：{order.order_number}",
        f"👤 员工：{employee_name}",
        f"🧾 客户：{order.customer_name or '未识别'}",
        f"📁 项目：{order.project_name or '未识别'}",
        f"💵 金额：{order.amount_extracted or order.amount}",
        f"⏰ 时间：{order.created_at}",
    ]


def format_new_order(order: OrderRecord, employee_name: str) -> str:
    lines = [f"🔔 新的{TYPE_ICONS[order.type]} {TYPE_NAMES[order.type]}", ""]
    lines.extend(_details(order, employee_name))
    lines.extend(["", "📄 报备内容：", order.original_content])
    return "\n".join(lines)


def format_resolved_order(order: OrderRecord, employee_name: str) -> str:
    lines = [
        f"{STATUS_ICONS[order.status]} {TYPE_NAMES[order.type]} · {STATUS_NAMES[order.status]}",
        "",
    ]
    lines.extend(_details(order, employee_name))
    lines.append(f"🛡 审批人：{order.approver_name or order.approved_by}")
    lines.append(f"📍 审批方式：{SURFACE_NAMES.get(order.approval_method or '', order.approval_method)}")
    lines.append(f"🕒 处理时间：{order.approved_at}")
    if order.status == "rejected" and order.rejection_reason:
        lines.append(f"❌ 拒绝原因：{order.rejection_reason}")
    if order.status == "approved_modified":
        lines.extend(["", "📝 修改后内容：", order.modified_content or ""])
    return "\n".join(lines)


def format_employee_status(order: OrderRecord) -> str:
    lines = [
        f"{STATUS_ICONS[order.status]} 您的报备订单状态已更新",
        "",
        f"📋 订单号：{order.order_number}",
        f"📊 状态：{STATUS_NAMES[order.status]}",
        f"👤 审批人：{order.approver_name or order.approved_by}",
        f"⏰ 更新时间：{order.approved_at}",
    ]
    if order.status == "rejected" and order.rejection_reason:
        lines.append(f"❌ 拒绝原因：{order.rejection_reason}")
    return "\n".join(lines)


def format_modification(order: OrderRecord, employee_name: str) -> str:
    return "\n".join(
        [
            f"✏️ {TYPE_NAMES[order.type]}已修改并确认",
            "",
            f"📋 订单号：{order.order_number}",
            f"👤 员工：{employee_name}",
            f"🛡 修改人：{order.approver_name or order.approved_by}",
            f"⏰ 修改时间：{order.modification_time}",
            "",
            "📄 原始内容：",
            order.original_content,
            "",
            "📝 修改后内容：",
            order.modified_content or "",
        ]
    )


class ApprovalOrchestrator:
    def __init__(self, storage: BotStorage, gateway: MessagingGateway):
        self.storage = storage
        self.gateway = gateway

    # ------------------------------------------------------------------ guards
    def authorize(self, actor: Actor, *, surface: str, origin: Optional[MessageRef] = None) -> None:
        """Raise PermissionDeniedError unless ``actor`` may act from ``surface``."""
        if actor.telegram_id is None:
            if surface != SURFACE_WEB:
                raise PermissionDeniedError()
        else:
            user = self.storage.get_user(actor.telegram_id)
            if not user or user["role"] != "admin" or not user["is_active"]:
                raise PermissionDeniedError()
        if surface == SURFACE_GROUP:
            if origin is None or not self.storage.is_active_admin_group(origin.chat_id):
                raise PermissionDeniedError("该群组未激活为管理群组")

    def load_pending(self, order_id: int) -> OrderRecord:
        order = self.storage.get_order(order_id)
        if order is None:
            raise OrderNotFoundError()
        if not order.is_pending:
            raise OrderAlreadyProcessedError()
        return order

    # ------------------------------------------------------------- transitions
    async def approve(
        self,
        order_id: int,
        actor: Actor,
        *,
        surface: str,
        origin: Optional[MessageRef] = None,
    ) -> OrderRecord:
        return await self._transition(order_id, actor, status="approved", surface=surface, origin=origin)

    async def reject(
        self,
        order_id: int,
        actor: Actor,
        *,
        reason: Optional[str],
        surface: str,
        origin: Optional[MessageRef] = None,
    ) -> OrderRecord:
        return await self._transition(
            order_id,
            actor,
            status="rejected",
            surface=surface,
            origin=origin,
            rejection_reason=(reason or "").strip() or None,
        )

    def begin_modification(
        self,
        order_id: int,
        actor: Actor,
        *,
        surface: str,
        origin: Optional[MessageRef] = None,
    ) -> OrderRecord:
        """Check that ``actor`` may modify the order; the caller keeps the flow state."""
        self.authorize(actor, surface=surface, origin=origin)
        return self.load_pending(order_id)

    async def complete_modification(
        self,
        order_id: int,
        actor: Actor,
        *,
        modified_content: str,
        surface: str,
        origin: Optional[MessageRef] = None,
    ) -> OrderRecord:
        return await self._transition(
            order_id,
            actor,
            status="approved_modified",
            surface=surface,
            origin=origin,
            modified_content=modified_content,
        )

    async def _transition(
        self,
        order_id: int,
        actor: Actor,
        *,
        status: str,
        surface: str,
        origin: Optional[MessageRef],
        rejection_reason: Optional[str] = None,
        modified_content: Optional[str] = None,
    ) -> OrderRecord:
        self.authorize(actor, surface=surface, origin=origin)
        self.load_pending(order_id)

        updated = self.storage.transition_order(
            order_id,
            status=status,
            approved_by=actor.approver_id,
            approver_name=actor.display_name,
            approval_method=surface,
            rejection_reason=rejection_reason,
            modified_content=modified_content,
        )
        if updated is None:
            logger.info("Order %s lost the race to another approver", order_id)
            raise OrderAlreadyProcessedError()

        logger.info(
            "Order %s (%s) -> %s by %s via %s",
            updated.id,
            updated.order_number,
            updated.status,
            actor.approver_id,
            surface,
        )
        await self.synchronise(updated, origin=origin)
        return updated

    # ---------------------------------------------------------------- fan-out
    async def synchronise(self, order: OrderRecord, *, origin: Optional[MessageRef] = None) -> None:
        employee = self.storage.get_user(order.employee_id)
        employee_name = user_display_name(employee)
        resolved_text = format_resolved_order(order, employee_name)

        if origin is not None:
            await self._update_origin(origin, resolved_text)

        operations: List[Tuple[str, Awaitable[object]]] = []
        if order.status == "approved_modified":
            modification_text = format_modification(order, employee_name)
            operations.append(
                (
                    f"employee {order.employee_id} modification notice",
                    self.gateway.send_message(order.employee_id, modification_text),
                )
            )
            for group in self.storage.list_active_admin_groups():
                operations.append(
                    (
                        f"group {group['chat_id']} modification notice",
                        self.gateway.send_message(group["chat_id"], modification_text),
                    )
                )
        else:
            operations.append(
                (
                    f"employee {order.employee_id} status notice",
                    self.gateway.send_message(order.employee_id, format_employee_status(order)),
                )
            )

        for chat_id, message_id in self.storage.get_group_messages(order.id).items():
            if origin is not None and origin.chat_id == chat_id and origin.message_id == message_id:
                continue
            operations.append(
                (
                    f"group {chat_id} message {message_id} resolution",
                    self.gateway.edit_message(chat_id, message_id, resolved_text),
                )
            )

        await self.best_effort(operations)

    async def _update_origin(self, origin: MessageRef, text: str) -> None:
        if origin.message_id is not None:
            if await self.gateway.edit_message(origin.chat_id, origin.message_id, text):
                return
            logger.info("Falling back to a new message in chat %s", origin.chat_id)
        await self.gateway.send_message(origin.chat_id, text)

    async def broadcast_new_order(self, order: OrderRecord) -> int:
        """Send the pending order to every active admin group and remember the message ids."""
        groups = self.storage.list_active_admin_groups()
        if not groups:
            logger.warning("No active admin groups to notify about order %s", order.order_number)
            return 0
        employee_name = user_display_name(self.storage.get_user(order.employee_id))
        text = format_new_order(order, employee_name)
        chat_ids = [group["chat_id"] for group in groups]
        results = await asyncio.gather(
            *(self.gateway.send_message(chat_id, text, reply_markup=order_actions(order.id)) for chat_id in chat_ids),
            return_exceptions=True,
        )
        delivered = 0
        for chat_id, result in zip(chat_ids, results):
            if isinstance(result, BaseException):
                logger.error("Broadcast of order %s to %s raised", order.order_number, chat_id, exc_info=result)
                continue
            if result is None:
                logger.warning("Broadcast of order %s to %s failed", order.order_number, chat_id)
                continue
            self.storage.record_group_message(order.id, chat_id, result)
            delivered += 1
        return delivered

    async def best_effort(self, operations: Sequence[Tuple[str, Awaitable[object]]]) -> int:
        """Run independent deliveries; each failure is logged and never raised."""
        if not operations:
            return 0
        results = await asyncio.gather(*(operation for _, operation in operations), return_exceptions=True)
        delivered = 0
        for (label, _), result in zip(operations, results):
            if isinstance(result, BaseException):
                logger.error("Best-effort %s raised", label, exc_info=result)
            elif result is None or result is False:
                logger.warning("Best-effort %s did not go through", label)
            else:
                delivered += 1
        return delivered
