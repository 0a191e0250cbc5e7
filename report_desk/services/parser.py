from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Sequence

logger = logging.getLogger(__name__)


ORDER_TYPES = ("deposit", "withdrawal", "refund")

CUSTOMER_LABELS = ("客户姓名", "客户名称", "客户名", "客户", "Customer's Name", "Customer Name", "Customer")
PROJECT_LABELS = ("项目名称", "项目名", "项目", "业务类型", "业务", "服务", "Project Name", "Project")
TYPE_AMOUNT_LABELS: Dict[str, Sequence[str]] = {
    "deposit": ("入款金额", "Deposit Amount"),
    "withdrawal": ("出款金额", "Withdrawal Amount"),
    "refund": ("退款金额", "Refund Amount"),
}
GENERIC_AMOUNT_LABELS = ("总金额", "总额", "金额", "Total Amount", "Amount", "Total")

MAX_CUSTOMER_LENGTH = 100
MAX_PROJECT_LENGTH = 200
MAX_AMOUNT = 999_999_999

_COLON = r"\s*[:：]"
_AMOUNT_VALUE = r"\s*([0-9][0-9,，]*(?:\.[0-9]*)?)"
_STRICT_AMOUNT = re.compile(r"^\d+(?:\.\d+)?$")


@dataclass(frozen=True)
class ParseResult:
    customer_name: Optional[str] = None
    project_name: Optional[str] = None
    amount_extracted: Optional[str] = None
    extraction_status: str = "pending"

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "customer_name": self.customer_name,
            "project_name": self.project_name,
            "amount_extracted": self.amount_extracted,
            "extraction_status": self.extraction_status,
        }


FAILED_RESULT = ParseResult(extraction_status="failed")


def _alternation(labels: Sequence[str]) -> str:
    # Longest label first so "客户名" is not shadowed by "客户".
    ordered = sorted(labels, key=len, reverse=True)
    return "|".join(r"\s*".join(re.escape(word) for word in label.split(" ")) for label in ordered)


def _field_patterns(labels: Sequence[str]) -> List[Pattern[str]]:
    alternation = _alternation(labels)
    return [
        re.compile(rf"(?:{alternation}){_COLON}[ \t]*([^\n\r]+?)[ \t]*(?:\r?\n|\r|$)", re.IGNORECASE),
        re.compile(rf"(?:{alternation}){_COLON}[ \t]*(.+?)[ \t]*$", re.IGNORECASE | re.MULTILINE),
    ]


def _amount_pattern(labels: Sequence[str], *, line_start: bool = False) -> Pattern[str]:
    prefix = r"^[ \t]*" if line_start else ""
    return re.compile(
        rf"{prefix}(?:{_alternation(labels)}){_COLON}{_AMOUNT_VALUE}",
        re.IGNORECASE | re.MULTILINE,
    )


_CUSTOMER_PATTERNS = _field_patterns(CUSTOMER_LABELS)
_PROJECT_PATTERNS = _field_patterns(PROJECT_LABELS)
_TYPE_AMOUNT_PATTERNS = {key: _amount_pattern(labels) for key, labels in TYPE_AMOUNT_LABELS.items()}
_GENERIC_AMOUNT_PATTERN = _amount_pattern(GENERIC_AMOUNT_LABELS)
_GENERIC_LINE_AMOUNT_PATTERN = _amount_pattern(GENERIC_AMOUNT_LABELS, line_start=True)

ALL_LABELS = (
    CUSTOMER_LABELS
    + PROJECT_LABELS
    + GENERIC_AMOUNT_LABELS
    + tuple(label for labels in TYPE_AMOUNT_LABELS.values() for label in labels)
)
LABELED_FIELD_PATTERN = re.compile(rf"(?:{_alternation(ALL_LABELS)}){_COLON}", re.IGNORECASE)


def _first_capture(patterns: Sequence[Pattern[str]], text: str) -> Optional[str]:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            value = match.group(1).strip()
            if value:
                return value
    return None


def _clean_amount(raw: str) -> Optional[str]:
    cleaned = raw.replace(",", "").replace("，", "").strip()
    if _STRICT_AMOUNT.match(cleaned):
        return cleaned
    return None


def _extract_amount(text: str, order_type: Optional[str]) -> Optional[str]:
    if order_type in _TYPE_AMOUNT_PATTERNS:
        patterns = [_TYPE_AMOUNT_PATTERNS[order_type], _GENERIC_LINE_AMOUNT_PATTERN]
    else:
        patterns = [_GENERIC_AMOUNT_PATTERN]

    for pattern in patterns:
        for match in pattern.finditer(text):
            amount = _clean_amount(match.group(1))
            if amount is not None:
                return amount
    return None


def has_labeled_field(text: str) -> bool:
    """True when the text carries at least one recognised ``label:`` pair."""
    if not isinstance(text, str):
        return False
    return bool(LABELED_FIELD_PATTERN.search(text))


def parse_order_content(text: object, order_type: Optional[str] = None) -> ParseResult:
    """Extract customer, project and amount from a submitted report.

    The amount label is chosen by ``order_type`` so a withdrawal report never
    picks up a deposit amount that happens to appear in the same text. Any
    unexpected input yields the failed result instead of raising.
    """
    if not isinstance(text, str) or not text.strip():
        return FAILED_RESULT

    try:
        customer = _first_capture(_CUSTOMER_PATTERNS, text)
        project = _first_capture(_PROJECT_PATTERNS, text)
        amount = _extract_amount(text, order_type)
    except Exception:  # noqa: BLE001
        logger.exception("Order content parsing failed")
        return FAILED_RESULT

    found = [value for value in (customer, project, amount) if value is not None]
    result = ParseResult(
        customer_name=customer,
        project_name=project,
        amount_extracted=amount,
        extraction_status="success" if found else "failed",
    )
    logger.debug(
        "Parsed order content type=%s length=%s customer=%s project=%s amount=%s status=%s",
        order_type or "generic",
        len(text),
        customer is not None,
        project is not None,
        amount is not None,
        result.extraction_status,
    )
    return result


def validate_parse_result(result: ParseResult) -> bool:
    if result.customer_name and len(result.customer_name) > MAX_CUSTOMER_LENGTH:
        return False
    if result.project_name and len(result.project_name) > MAX_PROJECT_LENGTH:
        return False
    if result.amount_extracted:
        try:
            amount = float(result.amount_extracted)
        except ValueError:
            return False
        if amount < 0 or amount > MAX_AMOUNT:
            return False
    return True
