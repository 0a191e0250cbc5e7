"""Telegram order reporting and approval desk."""

__version__ = "0.1.0"
