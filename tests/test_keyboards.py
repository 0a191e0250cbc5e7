from datetime import datetime

from telegram import InlineKeyboardMarkup, ReplyKeyboardMarkup

from report_desk.telegram.keyboards import (
    BTN_DEPOSIT,
    BTN_PENDING,
    admin_menu,
    employee_menu,
    menu_for_role,
    numeric_keypad,
    order_actions,
    rejection_reasons,
    render_template,
)


def _callback_data(markup):
    return [button.callback_data for row in markup.inline_keyboard for button in row]


def test_keypad_echoes_partial_code():
    markup = numeric_keypad("12", 4)
    assert isinstance(markup, InlineKeyboardMarkup)
    display = markup.inline_keyboard[0][0]
    assert display.text == "当前输入: 1 2 _ _"
    assert display.callback_data == "noop"
    data = _callback_data(markup)
    for token in ["kp:0", "kp:9", "kp:star", "kp:hash", "kp:del", "kp:ok", "kp:cancel"]:
        assert token in data


def test_menus_have_two_persistent_rows():
    for markup in (employee_menu(), admin_menu()):
        assert isinstance(markup, ReplyKeyboardMarkup)
        assert len(markup.keyboard) == 2
        assert markup.is_persistent
    assert employee_menu().keyboard[0][0].text == BTN_DEPOSIT
    assert admin_menu().keyboard[0][0].text == BTN_PENDING
    assert menu_for_role(None) is None


def test_order_actions_and_reason_picker():
    assert _callback_data(order_actions(42)) == ["approve:42", "reject:42", "modify:42"]
    assert _callback_data(order_actions(42, allow_modify=False)) == ["approve:42", "reject:42"]
    reasons = _callback_data(rejection_reasons(42))
    assert reasons[0] == "rejr:42:0"
    assert reasons[-1] == "rejback:42"


def test_render_template_replaces_placeholders():
    rendered = render_template(
        "提交人：{用户名}\n时间：{时间}\nby {username} at {time}",
        submitter_name="Alice",
        now=datetime(2024, 5, 1, 9, 30, 0),
    )
    assert rendered == "提交人：Alice\n时间：2024-05-01 09:30:00\nby Alice at 2024-05-01 09:30:00"
