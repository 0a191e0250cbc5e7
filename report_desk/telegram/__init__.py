"""Telegram integration package for report_desk.

Modules in this namespace hold the webhook dispatcher, conversation state,
approval orchestration, persistent storage and the outbound gateway.
"""

from importlib import import_module
from typing import Any

__all__ = ["ApprovalOrchestrator", "BotConfig", "BotStorage", "ReportBot", "load_bot_config"]


def __getattr__(name: str) -> Any:
    if name in {"BotConfig", "load_bot_config"}:
        module = import_module(".config", __name__)
        return getattr(module, name)
    if name == "BotStorage":
        module = import_module(".storage", __name__)
        return getattr(module, name)
    if name == "ApprovalOrchestrator":
        module = import_module(".approvals", __name__)
        return getattr(module, name)
    if name == "ReportBot":
        module = import_module(".bot", __name__)
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
