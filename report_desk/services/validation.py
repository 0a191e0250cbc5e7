from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Sequence, Tuple

from .parser import ParseResult, has_labeled_field


MIN_CONTENT_LENGTH = 30
TEMPLATE_KIND_THRESHOLD = 2

FIELD_LABELS = {
    "customer": "客户",
    "project": "项目",
    "amount": "金额",
}

PLACEHOLDER_PATTERNS: Sequence[Tuple[str, re.Pattern[str]]] = (
    ("braces", re.compile(r"\{[^{}\n]*\}")),
    ("brackets", re.compile(r"\[[^\[\]\n]*\]|【[^【】\n]*】")),
    ("empty_parens", re.compile(r"\(\s*\)|（\s*）")),
    ("underscores", re.compile(r"_{3,}")),
    ("dots", re.compile(r"\.{3,}|…|。{3,}")),
)

FORMAT_EXAMPLE = (
    "客户：张三\n"
    "项目：VIP充值\n"
    "金额：5000"
)


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    message: str = ""
    reason: Optional[str] = None
    missing_fields: List[str] = field(default_factory=list)


VALID = ValidationResult(ok=True)


def count_placeholder_kinds(text: str) -> int:
    """Number of distinct placeholder marker kinds present in ``text``."""
    return sum(1 for _, pattern in PLACEHOLDER_PATTERNS if pattern.search(text or ""))


def looks_like_template(text: str) -> bool:
    return count_placeholder_kinds(text) >= TEMPLATE_KIND_THRESHOLD


def _is_positive_amount(value: Optional[str]) -> bool:
    if not value:
        return False
    try:
        return Decimal(value) > 0
    except InvalidOperation:
        return False


def check_length(text: str) -> ValidationResult:
    length = len((text or "").strip())
    if length >= MIN_CONTENT_LENGTH:
        return VALID
    return ValidationResult(
        ok=False,
        reason="too_short",
        message=(
            f"❌ 报备内容过短（当前 {length} 个字符，至少需要 {MIN_CONTENT_LENGTH} 个字符）。\n\n"
            "请复制模板并完整填写客户、项目和金额后重新发送。"
        ),
    )


def check_labeled_fields(text: str) -> ValidationResult:
    if has_labeled_field(text):
        return VALID
    return ValidationResult(
        ok=False,
        reason="format",
        message=(
            "❌ 格式错误：未识别到任何带冒号的字段。\n\n"
            "每个字段请使用“字段名：内容”的格式，例如：\n\n"
            f"{FORMAT_EXAMPLE}"
        ),
    )


def check_required_fields(parsed: ParseResult) -> ValidationResult:
    missing: List[str] = []
    if not parsed.customer_name:
        missing.append("customer")
    if not parsed.project_name:
        missing.append("project")
    if not _is_positive_amount(parsed.amount_extracted):
        missing.append("amount")
    if not missing:
        return VALID

    names = "、".join(FIELD_LABELS[name] for name in missing)
    lines = [f"❌ 报备信息不完整，缺少：{names}", ""]
    if "amount" in missing:
        lines.append("金额必须是大于0的数字，可包含千位分隔符和小数，例如 5,000.00。")
    lines.append("请补充后重新发送完整内容。")
    return ValidationResult(ok=False, reason="missing_fields", message="\n".join(lines), missing_fields=missing)


def check_template_placeholders(text: str) -> ValidationResult:
    if not looks_like_template(text):
        return VALID
    return ValidationResult(
        ok=False,
        reason="unfilled_template",
        message=(
            "⚠️ 检测到未填写的模板占位符（如 {…}、[…]、()、___ 或 ...）。\n\n"
            "请将占位符替换为实际内容后再发送，不要直接提交模板原文。"
        ),
    )


def validate_submission(text: str, parsed: ParseResult) -> ValidationResult:
    """Run the submission rules in order and stop at the first failure."""
    for check in (
        lambda: check_length(text),
        lambda: check_labeled_fields(text),
        lambda: check_required_fields(parsed),
        lambda: check_template_placeholders(text),
    ):
        result = check()
        if not result.ok:
            return result
    return VALID
