from __future__ import annotations

import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from ..services.parser import ParseResult


ORDER_TYPES = ("deposit", "withdrawal", "refund")
ORDER_STATUSES = ("pending", "approved", "rejected", "approved_modified")
APPROVAL_METHODS = ("group_chat", "bot_panel", "web_dashboard")

ADMIN_GROUP_ACTIVATION_KEY = "admin_group_activation_code"
BOT_TOKEN_KEY = "bot_token"

DEFAULT_TEMPLATES: Dict[str, str] = {
    "deposit": (
        "📋 入款报备\n"
        "提交人：{用户名}\n"
        "时间：{时间}\n"
        "客户：\n"
        "项目：\n"
        "入款金额：\n"
        "备注："
    ),
    "withdrawal": (
        "📋 出款报备\n"
        "提交人：{用户名}\n"
        "时间：{时间}\n"
        "客户：\n"
        "项目：\n"
        "出款金额：\n"
        "备注："
    ),
    "refund": (
        "📋 退款报备\n"
        "提交人：{用户名}\n"
        "时间：{时间}\n"
        "客户：\n"
        "项目：\n"
        "退款金额：\n"
        "退款原因："
    ),
}


def _format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utcnow() -> str:
    return _format_ts(datetime.now(timezone.utc))


def _generate_order_number() -> str:
    return f"#{int(time.time() * 1000)}{secrets.randbelow(1000):03d}"


@dataclass(frozen=True)
class OrderRecord:
    id: int
    order_number: str
    type: str
    status: str
    employee_id: int
    amount: str
    original_content: str
    modified_content: Optional[str]
    modification_time: Optional[str]
    approved_by: Optional[str]
    approver_name: Optional[str]
    approved_at: Optional[str]
    rejection_reason: Optional[str]
    approval_method: Optional[str]
    customer_name: Optional[str]
    project_name: Optional[str]
    amount_extracted: Optional[str]
    extraction_status: str
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OrderRecord":
        return cls(**{name: row[name] for name in cls.__dataclass_fields__})

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BotStorage:
    """SQLite-backed storage for users, orders, admin groups and settings."""

    def __init__(self, db_path: Path, encryption_key: bytes):
        self.db_path = Path(db_path)
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._fernet = Fernet(encryption_key)
        self._initialise_schema()

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _initialise_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                PRAGMA foreign_keys = ON;

                CREATE TABLE IF NOT EXISTS users (
                    telegram_id INTEGER PRIMARY KEY,
                    username TEXT,
                    full_name TEXT,
                    display_name TEXT,
                    role TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    order_number TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    employee_id INTEGER NOT NULL,
                    amount TEXT NOT NULL,
                    original_content TEXT NOT NULL,
                    modified_content TEXT,
                    modification_time TEXT,
                    approved_by TEXT,
                    approver_name TEXT,
                    approved_at TEXT,
                    rejection_reason TEXT,
                    approval_method TEXT,
                    customer_name TEXT,
                    project_name TEXT,
                    amount_extracted TEXT,
                    extraction_status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS order_group_messages (
                    order_id INTEGER NOT NULL,
                    chat_id INTEGER NOT NULL,
                    message_id INTEGER NOT NULL,
                    PRIMARY KEY (order_id, chat_id),
                    FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS admin_groups (
                    chat_id INTEGER PRIMARY KEY,
                    title TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    activated_by INTEGER,
                    activated_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS employee_codes (
                    code TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    type TEXT NOT NULL DEFAULT 'employee',
                    is_used INTEGER NOT NULL DEFAULT 0,
                    used_by INTEGER,
                    expires_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    used_at TEXT
                );

                CREATE TABLE IF NOT EXISTS report_templates (
                    type TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    template TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
                CREATE INDEX IF NOT EXISTS idx_orders_employee ON orders(employee_id);
                """
            )
            now = _utcnow()
            conn.executemany(
                """
                INSERT OR IGNORE INTO report_templates (type, name, template, is_active, updated_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                [(order_type, f"{order_type} default", text, now) for order_type, text in DEFAULT_TEMPLATES.items()],
            )

    def _encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def _decrypt(self, value: str) -> str:
        return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")

    # User operations -----------------------------------------------------------
    def upsert_user(
        self,
        telegram_id: int,
        *,
        username: Optional[str],
        full_name: Optional[str],
    ) -> sqlite3.Row:
        now = _utcnow()
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO users (telegram_id, username, full_name, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(telegram_id)
                DO UPDATE SET
                    username=excluded.username,
                    full_name=COALESCE(excluded.full_name, users.full_name),
                    updated_at=excluded.updated_at
                """,
                (telegram_id, username, full_name, now, now),
            )
            return conn.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)).fetchone()

    def get_user(self, telegram_id: int) -> Optional[sqlite3.Row]:
        with self._lock, self._connection() as conn:
            return conn.execute("SELECT * FROM users WHERE telegram_id = ?", (telegram_id,)).fetchone()

    def set_user_role(self, telegram_id: int, role: str, *, display_name: Optional[str] = None) -> None:
        if role not in ("employee", "admin"):
            raise ValueError(f"Unknown role: {role}")
        now = _utcnow()
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO users (telegram_id, display_name, role, is_active, created_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
                ON CONFLICT(telegram_id)
                DO UPDATE SET
                    role=excluded.role,
                    display_name=COALESCE(excluded.display_name, users.display_name),
                    is_active=1,
                    updated_at=excluded.updated_at
                """,
                (telegram_id, display_name, role, now, now),
            )

    def set_user_active(self, telegram_id: int, active: bool) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                "UPDATE users SET is_active = ?, updated_at = ? WHERE telegram_id = ?",
                (1 if active else 0, _utcnow(), telegram_id),
            )

    def ensure_admins(self, telegram_ids: Iterable[int]) -> None:
        for telegram_id in telegram_ids:
            user = self.get_user(telegram_id)
            if user and user["role"] == "admin":
                continue
            self.set_user_role(telegram_id, "admin")

    def list_users(self, *, role: Optional[str] = None) -> List[sqlite3.Row]:
        query = "SELECT * FROM users"
        params: List[object] = []
        if role:
            query += " WHERE role = ?"
            params.append(role)
        query += " ORDER BY created_at"
        with self._lock, self._connection() as conn:
            return list(conn.execute(query, tuple(params)).fetchall())

    # Employee activation codes -------------------------------------------------
    def create_employee_code(
        self,
        code: str,
        name: str,
        *,
        code_type: str = "employee",
        ttl_minutes: int = 15,
    ) -> sqlite3.Row:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(minutes=ttl_minutes)
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO employee_codes (code, name, type, is_used, expires_at, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (code, name, code_type, _format_ts(expires_at), _format_ts(now)),
            )
            return conn.execute("SELECT * FROM employee_codes WHERE code = ?", (code,)).fetchone()

    def get_employee_code(self, code: str) -> Optional[sqlite3.Row]:
        with self._lock, self._connection() as conn:
            return conn.execute("SELECT * FROM employee_codes WHERE code = ?", (code,)).fetchone()

    @staticmethod
    def code_expired(code_row: sqlite3.Row) -> bool:
        return code_row["expires_at"] <= _utcnow()

    def use_employee_code(self, code: str, telegram_id: int) -> Optional[sqlite3.Row]:
        now = _utcnow()
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE employee_codes
                SET is_used = 1, used_by = ?, used_at = ?
                WHERE code = ? AND is_used = 0 AND expires_at > ?
                """,
                (telegram_id, now, code, now),
            )
            if cursor.rowcount != 1:
                return None
            return conn.execute("SELECT * FROM employee_codes WHERE code = ?", (code,)).fetchone()

    def delete_expired_codes(self) -> int:
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM employee_codes WHERE is_used = 0 AND expires_at < ?",
                (_utcnow(),),
            )
            return cursor.rowcount

    # Admin groups --------------------------------------------------------------
    def activate_admin_group(self, chat_id: int, *, title: Optional[str], activated_by: Optional[int]) -> None:
        now = _utcnow()
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO admin_groups (chat_id, title, is_active, activated_by, activated_at, updated_at)
                VALUES (?, ?, 1, ?, ?, ?)
                ON CONFLICT(chat_id)
                DO UPDATE SET
                    title=COALESCE(excluded.title, admin_groups.title),
                    is_active=1,
                    activated_by=excluded.activated_by,
                    activated_at=excluded.activated_at,
                    updated_at=excluded.updated_at
                """,
                (chat_id, title, activated_by, now, now),
            )

    def deactivate_admin_group(self, chat_id: int) -> bool:
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                "UPDATE admin_groups SET is_active = 0, updated_at = ? WHERE chat_id = ? AND is_active = 1",
                (_utcnow(), chat_id),
            )
            return cursor.rowcount == 1

    def get_admin_group(self, chat_id: int) -> Optional[sqlite3.Row]:
        with self._lock, self._connection() as conn:
            return conn.execute("SELECT * FROM admin_groups WHERE chat_id = ?", (chat_id,)).fetchone()

    def is_active_admin_group(self, chat_id: int) -> bool:
        group = self.get_admin_group(chat_id)
        return bool(group and group["is_active"])

    def list_active_admin_groups(self) -> List[sqlite3.Row]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM admin_groups WHERE is_active = 1 ORDER BY activated_at DESC"
            ).fetchall()
            return list(rows)

    # Templates and settings ----------------------------------------------------
    def get_template(self, order_type: str) -> Optional[str]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT template FROM report_templates WHERE type = ? AND is_active = 1",
                (order_type,),
            ).fetchone()
            return row["template"] if row else None

    def upsert_template(self, order_type: str, *, name: str, template: str) -> None:
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Unknown order type: {order_type}")
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO report_templates (type, name, template, is_active, updated_at)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(type)
                DO UPDATE SET name=excluded.name, template=excluded.template, is_active=1, updated_at=excluded.updated_at
                """,
                (order_type, name, template, _utcnow()),
            )

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
            return row["value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, _utcnow()),
            )

    def store_bot_token(self, token: str) -> None:
        self.set_setting(BOT_TOKEN_KEY, self._encrypt(token))

    def get_bot_token(self) -> Optional[str]:
        stored = self.get_setting(BOT_TOKEN_KEY)
        if not stored:
            return None
        try:
            return self._decrypt(stored)
        except InvalidToken:
            return None

    # Orders --------------------------------------------------------------------
    def create_order(
        self,
        *,
        order_type: str,
        employee_id: int,
        content: str,
        parsed: ParseResult,
    ) -> OrderRecord:
        if order_type not in ORDER_TYPES:
            raise ValueError(f"Unknown order type: {order_type}")
        now = _utcnow()
        with self._lock, self._connection() as conn:
            for _ in range(5):
                try:
                    cursor = conn.execute(
                        """
                        INSERT INTO orders (
                            order_number,
                            type,
                            status,
                            employee_id,
                            amount,
                            original_content,
                            customer_name,
                            project_name,
                            amount_extracted,
                            extraction_status,
                            created_at,
                            updated_at
                        ) VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            _generate_order_number(),
                            order_type,
                            employee_id,
                            parsed.amount_extracted or "0",
                            content,
                            parsed.customer_name,
                            parsed.project_name,
                            parsed.amount_extracted,
                            parsed.extraction_status,
                            now,
                            now,
                        ),
                    )
                    break
                except sqlite3.IntegrityError:
                    continue
            else:
                raise RuntimeError("Could not allocate a unique order number.")
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (cursor.lastrowid,)).fetchone()
            return OrderRecord.from_row(row)

    def get_order(self, order_id: int) -> Optional[OrderRecord]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            return OrderRecord.from_row(row) if row else None

    def get_order_by_number(self, order_number: str) -> Optional[OrderRecord]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT * FROM orders WHERE order_number = ?", (order_number,)).fetchone()
            return OrderRecord.from_row(row) if row else None

    def transition_order(
        self,
        order_id: int,
        *,
        status: str,
        approved_by: str,
        approver_name: Optional[str],
        approval_method: str,
        rejection_reason: Optional[str] = None,
        modified_content: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        """Move a pending order to ``status``; None when it is no longer pending."""
        if status not in ORDER_STATUSES or status == "pending":
            raise ValueError(f"Invalid target status: {status}")
        if approval_method not in APPROVAL_METHODS:
            raise ValueError(f"Unknown approval method: {approval_method}")
        now = _utcnow()
        with self._lock, self._connection() as conn:
            cursor = conn.execute(
                """
                UPDATE orders
                SET status = ?,
                    approved_by = ?,
                    approver_name = ?,
                    approved_at = ?,
                    approval_method = ?,
                    rejection_reason = ?,
                    modified_content = ?,
                    modification_time = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (
                    status,
                    approved_by,
                    approver_name,
                    now,
                    approval_method,
                    rejection_reason if status == "rejected" else None,
                    modified_content,
                    now if modified_content is not None else None,
                    now,
                    order_id,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
            return OrderRecord.from_row(row)

    def record_group_message(self, order_id: int, chat_id: int, message_id: int) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO order_group_messages (order_id, chat_id, message_id) VALUES (?, ?, ?)
                ON CONFLICT(order_id, chat_id) DO UPDATE SET message_id=excluded.message_id
                """,
                (order_id, chat_id, message_id),
            )

    def get_group_messages(self, order_id: int) -> Dict[int, int]:
        with self._lock, self._connection() as conn:
            rows = conn.execute(
                "SELECT chat_id, message_id FROM order_group_messages WHERE order_id = ?",
                (order_id,),
            ).fetchall()
            return {row["chat_id"]: row["message_id"] for row in rows}

    def list_orders(
        self,
        *,
        status: Optional[str] = None,
        employee_id: Optional[int] = None,
        resolved: bool = False,
        limit: int = 20,
    ) -> List[OrderRecord]:
        query = "SELECT * FROM orders"
        clauses: List[str] = []
        params: List[object] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if resolved:
            clauses.append("status != 'pending'")
        if employee_id is not None:
            clauses.append("employee_id = ?")
            params.append(employee_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock, self._connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
            return [OrderRecord.from_row(row) for row in rows]

    def get_dashboard_stats(self) -> Dict[str, int]:
        today = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        with self._lock, self._connection() as conn:

            def _count(query: str, params: tuple = ()) -> int:
                return int(conn.execute(query, params).fetchone()[0])

            return {
                "today_orders": _count("SELECT COUNT(*) FROM orders WHERE created_at >= ?", (_format_ts(today),)),
                "pending_orders": _count("SELECT COUNT(*) FROM orders WHERE status = 'pending'"),
                "approved_orders": _count(
                    "SELECT COUNT(*) FROM orders WHERE status IN ('approved', 'approved_modified')"
                ),
                "rejected_orders": _count("SELECT COUNT(*) FROM orders WHERE status = 'rejected'"),
                "active_employees": _count(
                    "SELECT COUNT(*) FROM users WHERE role = 'employee' AND is_active = 1"
                ),
                "total_orders": _count("SELECT COUNT(*) FROM orders"),
            }
