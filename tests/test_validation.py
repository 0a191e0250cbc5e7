from report_desk.services.parser import parse_order_content
from report_desk.services.validation import (
    check_template_placeholders,
    count_placeholder_kinds,
    looks_like_template,
    validate_submission,
)


def _validate(text, order_type="deposit"):
    return validate_submission(text, parse_order_content(text, order_type))


def test_short_submission_reports_exact_length():
    text = "客户：张三 金额：1"
    assert len(text) == 10
    result = _validate(text)
    assert not result.ok
    assert result.reason == "too_short"
    assert "当前 10 个字符" in result.message


def test_missing_labels_is_a_format_error():
    result = _validate("this is a long free text message without any labelled fields at all")
    assert not result.ok
    assert result.reason == "format"
    assert "客户：张三" in result.message


def test_only_missing_amount_is_named():
    result = _validate("客户：张三丰\n项目：VIP月度充值服务\n备注：请尽快处理这笔订单，谢谢")
    assert not result.ok
    assert result.missing_fields == ["amount"]
    assert "缺少：金额" in result.message
    assert "客户、" not in result.message


def test_zero_amount_counts_as_missing():
    result = _validate("客户：张三丰\n项目：VIP月度充值服务\n金额：0\n备注：无特殊要求")
    assert result.missing_fields == ["amount"]


def test_complete_submission_passes():
    assert _validate("customer：Zhang San\nproject：VIP top-up\namount：5000").ok


def test_two_placeholder_kinds_is_a_template():
    text = "客户：{name}\n项目：___\n金额：100"
    assert count_placeholder_kinds(text) == 2
    assert looks_like_template(text)
    assert not check_template_placeholders(text).ok


def test_single_placeholder_kind_is_not_a_template():
    text = "客户：{name}\n项目：VIP\n金额：100"
    assert count_placeholder_kinds(text) == 1
    assert not looks_like_template(text)


def test_filled_text_with_two_placeholder_kinds_is_rejected():
    text = "客户：张三 [VIP]\n项目：充值 ___ 待定\n金额：100"
    result = _validate(text)
    assert not result.ok
    assert result.reason == "unfilled_template"
