import pytest

from report_desk.services.parser import (
    FAILED_RESULT,
    ParseResult,
    has_labeled_field,
    parse_order_content,
    validate_parse_result,
)


SAMPLE = "customer：Zhang San\nproject：VIP top-up\namount：5000"


def test_parsing_is_idempotent():
    first = parse_order_content(SAMPLE, "deposit")
    second = parse_order_content(SAMPLE, "deposit")
    assert first == second
    assert first.as_dict() == second.as_dict()


def test_end_to_end_sample_fields():
    result = parse_order_content(SAMPLE, "deposit")
    assert result.customer_name == "Zhang San"
    assert result.project_name == "VIP top-up"
    assert result.amount_extracted == "5000"
    assert result.extraction_status == "success"


def test_amount_follows_order_type():
    text = "客户：李四\n项目：充值\ndeposit amount: 100\nwithdrawal amount: 200"
    assert parse_order_content(text, "withdrawal").amount_extracted == "200"
    assert parse_order_content(text, "deposit").amount_extracted == "100"


def test_chinese_labels_and_thousands_separators():
    text = "客户名称：王五\n业务类型：月度套餐\n入款金额：12,500.50"
    result = parse_order_content(text, "deposit")
    assert result.customer_name == "王五"
    assert result.project_name == "月度套餐"
    assert result.amount_extracted == "12500.50"


def test_generic_amount_without_type():
    result = parse_order_content("客户：张三\n项目：VIP\n金额：300", None)
    assert result.amount_extracted == "300"


def test_type_specific_label_wins_over_generic_line():
    text = "客户：张三\n项目：VIP\n金额：300\n退款金额：120"
    assert parse_order_content(text, "refund").amount_extracted == "120"


@pytest.mark.parametrize("value", [None, "", "   ", 42, ["客户：张三"]])
def test_malformed_input_yields_failed_result(value):
    assert parse_order_content(value) == FAILED_RESULT


def test_text_without_fields_is_failed():
    result = parse_order_content("hello there, nothing structured in this text", "deposit")
    assert result.extraction_status == "failed"
    assert result.customer_name is None


def test_non_numeric_amount_is_ignored():
    result = parse_order_content("客户：张三\n项目：VIP\n金额：五千", "deposit")
    assert result.amount_extracted is None
    assert result.extraction_status == "success"


def test_has_labeled_field():
    assert has_labeled_field("项目: 月卡")
    assert not has_labeled_field("just some words")
    assert not has_labeled_field(None)


def test_validate_parse_result_limits():
    assert validate_parse_result(ParseResult("张三", "VIP", "5000", "success"))
    assert not validate_parse_result(ParseResult("x" * 101, "VIP", "5000", "success"))
    assert not validate_parse_result(ParseResult("张三", "p" * 201, "5000", "success"))
    assert not validate_parse_result(ParseResult("张三", "VIP", "1000000000", "success"))
