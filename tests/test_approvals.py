import asyncio

import pytest

from report_desk.services.parser import parse_order_content
from report_desk.telegram.approvals import (
    SURFACE_GROUP,
    SURFACE_PANEL,
    SURFACE_WEB,
    Actor,
    MessageRef,
    OrderAlreadyProcessedError,
    OrderNotFoundError,
    PermissionDeniedError,
)

from .factories import ADMIN_ID, EMPLOYEE_ID, GROUP_ID, SECOND_ADMIN_ID, SECOND_GROUP_ID

CONTENT = "customer：Zhang San\nproject：VIP top-up\namount：5000"

BOSS = Actor.from_telegram(ADMIN_ID, "Boss")
DEPUTY = Actor.from_telegram(SECOND_ADMIN_ID, "Deputy")


def _create_order(storage, content=CONTENT, order_type="deposit"):
    return storage.create_order(
        order_type=order_type,
        employee_id=EMPLOYEE_ID,
        content=content,
        parsed=parse_order_content(content, order_type),
    )


async def _broadcast(bot, storage):
    order = _create_order(storage)
    delivered = await bot.approvals.broadcast_new_order(order)
    return order, delivered


@pytest.mark.asyncio
async def test_broadcast_reaches_every_admin_group(seeded, storage, gateway):
    order, delivered = await _broadcast(seeded, storage)

    assert delivered == 2
    group_messages = storage.get_group_messages(order.id)
    assert set(group_messages) == {GROUP_ID, SECOND_GROUP_ID}
    for message in gateway.sent:
        assert "Zhang San" in message.text
        data = [button.callback_data for row in message.reply_markup.inline_keyboard for button in row]
        assert f"approve:{order.id}" in data
        assert f"reject:{order.id}" in data


@pytest.mark.asyncio
async def test_broadcast_tolerates_unreachable_group(seeded, storage, gateway):
    gateway.unreachable.add(SECOND_GROUP_ID)
    order, delivered = await _broadcast(seeded, storage)
    assert delivered == 1
    assert storage.get_group_messages(order.id) == {GROUP_ID: gateway.sent[0].message_id}


@pytest.mark.asyncio
async def test_group_approval_synchronises_every_surface(seeded, storage, gateway):
    order, _ = await _broadcast(seeded, storage)
    messages = storage.get_group_messages(order.id)
    gateway.reset()

    origin = MessageRef(GROUP_ID, messages[GROUP_ID])
    approved = await seeded.approvals.approve(order.id, BOSS, surface=SURFACE_GROUP, origin=origin)

    assert approved.status == "approved"
    assert approved.approval_method == SURFACE_GROUP
    edits = {(edit.chat_id, edit.message_id): edit for edit in gateway.edited}
    assert set(edits) == {(GROUP_ID, messages[GROUP_ID]), (SECOND_GROUP_ID, messages[SECOND_GROUP_ID])}
    for edit in edits.values():
        assert edit.reply_markup is None
        assert "已确认" in edit.text
    employee_notice = gateway.last_text(EMPLOYEE_ID)
    assert "已确认" in employee_notice
    assert "Boss" in employee_notice


@pytest.mark.asyncio
async def test_rejection_reason_reaches_employee(seeded, storage, gateway):
    order, _ = await _broadcast(seeded, storage)
    messages = storage.get_group_messages(order.id)

    rejected = await seeded.approvals.reject(
        order.id,
        BOSS,
        reason="duplicate submission",
        surface=SURFACE_GROUP,
        origin=MessageRef(SECOND_GROUP_ID, messages[SECOND_GROUP_ID]),
    )

    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "duplicate submission"
    assert "duplicate submission" in gateway.last_text(EMPLOYEE_ID)


@pytest.mark.asyncio
async def test_concurrent_approvals_have_one_winner(seeded, storage, gateway):
    order, _ = await _broadcast(seeded, storage)
    messages = storage.get_group_messages(order.id)

    results = await asyncio.gather(
        seeded.approvals.approve(
            order.id, BOSS, surface=SURFACE_GROUP, origin=MessageRef(GROUP_ID, messages[GROUP_ID])
        ),
        seeded.approvals.reject(
            order.id,
            DEPUTY,
            reason="金额有误",
            surface=SURFACE_GROUP,
            origin=MessageRef(SECOND_GROUP_ID, messages[SECOND_GROUP_ID]),
        ),
        return_exceptions=True,
    )

    winners = [result for result in results if not isinstance(result, Exception)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], OrderAlreadyProcessedError)
    assert losers[0].user_message == "订单已处理"
    final = storage.get_order(order.id)
    assert final.status == winners[0].status
    assert final.approved_by == winners[0].approved_by


@pytest.mark.asyncio
async def test_modification_notifies_with_before_and_after(seeded, storage, gateway):
    order, _ = await _broadcast(seeded, storage)
    gateway.reset()
    origin = MessageRef(ADMIN_ID, 77)
    seeded.approvals.begin_modification(order.id, BOSS, surface=SURFACE_PANEL, origin=origin)
    assert storage.get_order(order.id).status == "pending"

    modified = "customer：Zhang San\nproject：VIP top-up\namount：4500"
    updated = await seeded.approvals.complete_modification(
        order.id, BOSS, modified_content=modified, surface=SURFACE_PANEL, origin=origin
    )

    assert updated.status == "approved_modified"
    assert updated.modified_content == modified
    assert updated.original_content == CONTENT
    for chat_id in (EMPLOYEE_ID, GROUP_ID, SECOND_GROUP_ID):
        notice = gateway.last_text(chat_id)
        assert "amount：5000" in notice
        assert "amount：4500" in notice
    assert any(edit.chat_id == ADMIN_ID and edit.message_id == 77 for edit in gateway.edited)


@pytest.mark.asyncio
async def test_origin_falls_back_to_new_message(seeded, storage, gateway):
    order = _create_order(storage)
    gateway.unreachable.add(GROUP_ID)
    await seeded.approvals.approve(order.id, BOSS, surface=SURFACE_GROUP, origin=MessageRef(GROUP_ID, 5))
    # the origin chat refuses both edit and send, the transition still stands
    assert storage.get_order(order.id).status == "approved"
    assert gateway.last_text(EMPLOYEE_ID) is not None


@pytest.mark.asyncio
async def test_employee_cannot_approve(seeded, storage, gateway):
    order = _create_order(storage)
    with pytest.raises(PermissionDeniedError):
        await seeded.approvals.approve(
            order.id, Actor.from_telegram(EMPLOYEE_ID, "Alice"), surface=SURFACE_PANEL, origin=MessageRef(EMPLOYEE_ID, 1)
        )
    assert storage.get_order(order.id).status == "pending"
    assert gateway.sent == []


@pytest.mark.asyncio
async def test_disabled_admin_cannot_approve(seeded, storage):
    order = _create_order(storage)
    storage.set_user_active(SECOND_ADMIN_ID, False)
    with pytest.raises(PermissionDeniedError):
        await seeded.approvals.approve(order.id, DEPUTY, surface=SURFACE_PANEL)


@pytest.mark.asyncio
async def test_inactive_group_cannot_approve(seeded, storage):
    order = _create_order(storage)
    storage.deactivate_admin_group(GROUP_ID)
    with pytest.raises(PermissionDeniedError) as excinfo:
        await seeded.approvals.approve(order.id, BOSS, surface=SURFACE_GROUP, origin=MessageRef(GROUP_ID, 3))
    assert excinfo.value.user_message == "该群组未激活为管理群组"


@pytest.mark.asyncio
async def test_dashboard_actor_and_missing_order(seeded, storage):
    web = Actor(approver_id="web:ops", display_name="ops")
    with pytest.raises(OrderNotFoundError):
        await seeded.approvals.approve(999, web, surface=SURFACE_WEB)
    with pytest.raises(PermissionDeniedError):
        await seeded.approvals.approve(999, web, surface=SURFACE_GROUP, origin=MessageRef(GROUP_ID, 1))

    order = _create_order(storage)
    approved = await seeded.approvals.approve(order.id, web, surface=SURFACE_WEB)
    assert approved.approved_by == "web:ops"
    assert approved.approval_method == SURFACE_WEB
