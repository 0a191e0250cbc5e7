from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import hashlib
import os
from pathlib import Path
from typing import Optional, Set


DEFAULT_ADMIN_GROUP_ACTIVATION_CODE = "8888"
DEFAULT_EMPLOYEE_CODE_TTL_MINUTES = 15
DEFAULT_DEDUP_WINDOW = 1000


def _parse_int_set(value: str) -> Set[int]:
    result: Set[int] = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            result.add(int(part))
        except ValueError:
            continue
    return result


def _parse_int(value: Optional[str], default: int, *, minimum: int = 1) -> int:
    if not value:
        return default
    try:
        return max(minimum, int(value))
    except ValueError:
        return default


def _derive_encryption_key(source: str) -> bytes:
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def resolve_encryption_key(explicit: Optional[str], fallback_source: str) -> bytes:
    # Encryption key precedence: explicit base64 key > passphrase digest > fallback digest.
    if explicit:
        candidate = explicit.strip().encode("utf-8")
        try:
            decoded = base64.urlsafe_b64decode(candidate)
        except (binascii.Error, ValueError):
            return _derive_encryption_key(explicit)
        if len(decoded) != 32:
            return _derive_encryption_key(explicit)
        return candidate
    return _derive_encryption_key(fallback_source)


@dataclass
class BotConfig:
    token: Optional[str]
    webhook_secret: str
    db_path: Path
    encryption_key: bytes
    admin_ids: Set[int]
    webhook_url: Optional[str] = None
    bot_username: Optional[str] = None
    admin_group_activation_code: str = DEFAULT_ADMIN_GROUP_ACTIVATION_CODE
    employee_code_ttl_minutes: int = DEFAULT_EMPLOYEE_CODE_TTL_MINUTES
    dedup_window: int = DEFAULT_DEDUP_WINDOW
    dashboard_token: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"


def load_bot_config() -> BotConfig:
    webhook_secret = (os.getenv("TELEGRAM_WEBHOOK_SECRET") or "").strip()
    if not webhook_secret:
        raise RuntimeError("TELEGRAM_WEBHOOK_SECRET is required to accept Telegram webhooks.")

    # The token may also be stored (encrypted) from the dashboard; see BotStorage.
    token = (os.getenv("TELEGRAM_BOT_TOKEN") or "").strip() or None

    db_path = Path(os.getenv("TELEGRAM_BOT_DB_PATH", "report_desk.sqlite3")).expanduser()
    encryption_key = resolve_encryption_key(os.getenv("BOT_ENCRYPTION_KEY"), webhook_secret)

    webhook_url = (os.getenv("TELEGRAM_WEBHOOK_URL") or "").strip() or None
    bot_username = (os.getenv("TELEGRAM_BOT_USERNAME") or "").strip().lstrip("@") or None

    activation_code = (os.getenv("ADMIN_GROUP_ACTIVATION_CODE") or "").strip()
    if not activation_code:
        activation_code = DEFAULT_ADMIN_GROUP_ACTIVATION_CODE

    return BotConfig(
        token=token,
        webhook_secret=webhook_secret,
        db_path=db_path,
        encryption_key=encryption_key,
        admin_ids=_parse_int_set(os.getenv("TELEGRAM_ADMIN_IDS", "")),
        webhook_url=webhook_url,
        bot_username=bot_username,
        admin_group_activation_code=activation_code,
        employee_code_ttl_minutes=_parse_int(
            os.getenv("EMPLOYEE_CODE_TTL_MINUTES"), DEFAULT_EMPLOYEE_CODE_TTL_MINUTES
        ),
        dedup_window=_parse_int(os.getenv("UPDATE_DEDUP_WINDOW"), DEFAULT_DEDUP_WINDOW),
        dashboard_token=(os.getenv("DASHBOARD_TOKEN") or "").strip() or None,
        host=os.getenv("REPORT_DESK_HOST", "0.0.0.0").strip() or "0.0.0.0",
        port=_parse_int(os.getenv("REPORT_DESK_PORT"), 8080),
        log_level=os.getenv("TELEGRAM_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
