from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, ReplyKeyboardMarkup


# Employee menu
BTN_DEPOSIT = "💰 入款报备"
BTN_WITHDRAWAL = "💸 出款报备"
BTN_REFUND = "🔄 退款报备"
BTN_HISTORY = "📜 查看历史"
BTN_HELP = "❓ 帮助"

# Admin menu
BTN_PENDING = "🔴 待审批列表"
BTN_RESOLVED = "✅ 已审批列表"
BTN_STATS = "📊 统计报表"

REPORT_BUTTONS: Dict[str, str] = {
    BTN_DEPOSIT: "deposit",
    BTN_WITHDRAWAL: "withdrawal",
    BTN_REFUND: "refund",
}
EMPLOYEE_MENU_LABELS = (BTN_DEPOSIT, BTN_WITHDRAWAL, BTN_REFUND, BTN_HISTORY, BTN_HELP)
ADMIN_MENU_LABELS = (BTN_PENDING, BTN_RESOLVED, BTN_STATS, BTN_HELP)
MENU_LABELS = frozenset(EMPLOYEE_MENU_LABELS + ADMIN_MENU_LABELS)

# Callback data
CB_APPROVE = "approve"
CB_REJECT = "reject"
CB_REJECT_REASON = "rejr"
CB_REJECT_BACK = "rejback"
CB_MODIFY = "modify"
CB_KEYPAD = "kp"
CB_NOOP = "noop"

KEYPAD_DELETE = "del"
KEYPAD_CONFIRM = "ok"
KEYPAD_CANCEL = "cancel"
KEYPAD_SYMBOLS = {"star": "*", "hash": "#"}

REJECTION_REASONS: Sequence[str] = (
    "金额有误",
    "信息不完整",
    "重复提交",
    "客户信息不符",
)

TYPE_NAMES = {
    "deposit": "入款报备",
    "withdrawal": "出款报备",
    "refund": "退款报备",
}
TYPE_ICONS = {
    "deposit": "💰",
    "withdrawal": "💸",
    "refund": "🔄",
}

TEMPLATE_PLACEHOLDERS = {
    "name": ("{用户名}", "{username}"),
    "time": ("{时间}", "{time}"),
}


def format_timestamp(value: Optional[datetime] = None) -> str:
    return (value or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


def employee_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [
            [BTN_DEPOSIT, BTN_WITHDRAWAL, BTN_REFUND],
            [BTN_HISTORY, BTN_HELP],
        ],
        resize_keyboard=True,
        is_persistent=True,
    )


def admin_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        [
            [BTN_PENDING, BTN_RESOLVED],
            [BTN_STATS, BTN_HELP],
        ],
        resize_keyboard=True,
        is_persistent=True,
    )


def menu_for_role(role: Optional[str]) -> Optional[ReplyKeyboardMarkup]:
    if role == "admin":
        return admin_menu()
    if role == "employee":
        return employee_menu()
    return None


def numeric_keypad(current: str, length: int) -> InlineKeyboardMarkup:
    """Keypad with the partial code echoed on a non-functional display row."""
    display = " ".join(current.ljust(length, "_")[:length])
    rows: List[List[InlineKeyboardButton]] = [
        [InlineKeyboardButton(f"当前输入: {display}", callback_data=CB_NOOP)],
    ]
    for digits in (("1", "2", "3"), ("4", "5", "6"), ("7", "8", "9")):
        rows.append([InlineKeyboardButton(digit, callback_data=f"{CB_KEYPAD}:{digit}") for digit in digits])
    rows.append(
        [
            InlineKeyboardButton("*", callback_data=f"{CB_KEYPAD}:star"),
            InlineKeyboardButton("0", callback_data=f"{CB_KEYPAD}:0"),
            InlineKeyboardButton("#", callback_data=f"{CB_KEYPAD}:hash"),
        ]
    )
    rows.append(
        [
            InlineKeyboardButton("⬅️ 删除", callback_data=f"{CB_KEYPAD}:{KEYPAD_DELETE}"),
            InlineKeyboardButton("✅ 确认", callback_data=f"{CB_KEYPAD}:{KEYPAD_CONFIRM}"),
            InlineKeyboardButton("❌ 取消", callback_data=f"{CB_KEYPAD}:{KEYPAD_CANCEL}"),
        ]
    )
    return InlineKeyboardMarkup(rows)


def order_actions(order_id: int, *, allow_modify: bool = True) -> InlineKeyboardMarkup:
    row = [
        InlineKeyboardButton("✅ 确认", callback_data=f"{CB_APPROVE}:{order_id}"),
        InlineKeyboardButton("❌ 拒绝", callback_data=f"{CB_REJECT}:{order_id}"),
    ]
    if allow_modify:
        row.append(InlineKeyboardButton("✏️ 修改", callback_data=f"{CB_MODIFY}:{order_id}"))
    return InlineKeyboardMarkup([row])


def rejection_reasons(order_id: int) -> InlineKeyboardMarkup:
    rows = [
        [InlineKeyboardButton(reason, callback_data=f"{CB_REJECT_REASON}:{order_id}:{index}")]
        for index, reason in enumerate(REJECTION_REASONS)
    ]
    rows.append([InlineKeyboardButton("🔙 返回", callback_data=f"{CB_REJECT_BACK}:{order_id}")])
    return InlineKeyboardMarkup(rows)


def render_template(template: str, *, submitter_name: str, now: Optional[datetime] = None) -> str:
    rendered = template
    for placeholder in TEMPLATE_PLACEHOLDERS["name"]:
        rendered = rendered.replace(placeholder, submitter_name)
    timestamp = format_timestamp(now)
    for placeholder in TEMPLATE_PLACEHOLDERS["time"]:
        rendered = rendered.replace(placeholder, timestamp)
    return rendered
