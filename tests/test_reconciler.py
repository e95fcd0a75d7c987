import asyncio

import pytest
from sqlalchemy import select

from app.core.exceptions import GatewayUnavailable, IllegalTransition
from app.models import GatewayStatus, OrderStatus, OrderStatusHistory
from app.services.orders import get_order
from app.services.reconciler import ReconcileOutcome, StatusReconciler
from app.services.state_machine import StatusSource


async def attach_session(orchestrator, session_maker, order_id):
    async with session_maker() as session:
        return await orchestrator.initiate_checkout(session, order_id)


async def history(db, order_id):
    result = await db.execute(
        select(OrderStatusHistory)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.id)
    )
    return result.scalars().all()


async def test_paid_observation_confirms_the_order(db, reconciler, make_order, effects):
    order = await get_order(db, (await make_order()).id)

    result = await reconciler.apply_observed_status(
        db, order, GatewayStatus.PAID, StatusSource.WEBHOOK, transaction_id="txn_1"
    )

    assert result.outcome == ReconcileOutcome.APPLIED
    assert result.previous_status == OrderStatus.AWAITING_PAYMENT
    assert order.status == OrderStatus.PAYMENT_CONFIRMED
    assert order.transaction_id == "txn_1"
    assert len(effects["placed"]) == 1
    assert effects["placed"][0]["order_id"] == order.id


async def test_repeated_observation_is_a_noop(db, reconciler, make_order, effects):
    order = await get_order(db, (await make_order()).id)

    first = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)
    second = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)
    third = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.POLL)

    assert first.applied
    assert second.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert third.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert order.status == OrderStatus.PAYMENT_CONFIRMED
    assert len(effects["placed"]) == 1
    assert len(await history(db, order.id)) == 1


async def test_late_confirmation_does_not_move_a_ready_order_back(db, reconciler, make_order, effects):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)
    for target in (OrderStatus.CONFIRMED, OrderStatus.PREPARING, OrderStatus.READY):
        await reconciler.apply_restaurant_action(db, order, target)

    result = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.POLL)

    assert result.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert order.status == OrderStatus.READY
    assert len(effects["placed"]) == 1


async def test_failure_after_confirmation_is_stale(db, reconciler, make_order, effects):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)

    result = await reconciler.apply_observed_status(db, order, GatewayStatus.FAILED, StatusSource.WEBHOOK)

    assert result.outcome == ReconcileOutcome.STALE
    assert order.status == OrderStatus.PAYMENT_CONFIRMED
    assert effects["failed"] == []


async def test_failed_payment_can_still_be_confirmed(db, reconciler, make_order, effects):
    order = await get_order(db, (await make_order()).id)

    await reconciler.apply_observed_status(db, order, GatewayStatus.FAILED, StatusSource.WEBHOOK)
    assert order.status == OrderStatus.PAYMENT_FAILED
    assert len(effects["failed"]) == 1

    result = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.VERIFY)
    assert result.applied
    assert order.status == OrderStatus.PAYMENT_CONFIRMED


async def test_failed_payment_is_final_without_retry(db, gateway, make_order):
    reconciler = StatusReconciler(gateway, allow_retry=False)
    order = await get_order(db, (await make_order()).id)

    await reconciler.apply_observed_status(db, order, GatewayStatus.FAILED, StatusSource.WEBHOOK)
    result = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)

    assert result.outcome == ReconcileOutcome.STALE
    assert order.status == OrderStatus.PAYMENT_FAILED


async def test_pending_and_expired_do_not_move_the_order(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)

    for observed in (GatewayStatus.PENDING, GatewayStatus.EXPIRED):
        result = await reconciler.apply_observed_status(db, order, observed, StatusSource.POLL)
        assert result.outcome == ReconcileOutcome.IGNORED

    assert order.status == OrderStatus.AWAITING_PAYMENT


async def test_history_records_each_transition(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(
        db, order, GatewayStatus.PAID, StatusSource.WEBHOOK, session_id="chk_1"
    )
    await reconciler.apply_restaurant_action(db, order, OrderStatus.CONFIRMED)

    rows = await history(db, order.id)

    assert [(r.from_status, r.to_status, r.source) for r in rows] == [
        (OrderStatus.AWAITING_PAYMENT, OrderStatus.PAYMENT_CONFIRMED, "webhook"),
        (OrderStatus.PAYMENT_CONFIRMED, OrderStatus.CONFIRMED, "restaurant"),
    ]
    assert rows[0].observed_status == "PAID"
    assert rows[0].session_id == "chk_1"


async def test_concurrent_observations_converge_on_one_transition(
    session_maker, gateway, make_order, orchestrator, effects
):
    order_id = (await make_order()).id
    session = await attach_session(orchestrator, session_maker, order_id)
    gateway.mark_paid(session.session_id)

    async def observe(source):
        async with session_maker() as db:
            order = await get_order(db, order_id)
            return await StatusReconciler(gateway).apply_observed_status(
                db, order, GatewayStatus.PAID, source, session_id=session.session_id
            )

    async def verify():
        async with session_maker() as db:
            order = await get_order(db, order_id)
            return await StatusReconciler(gateway).verify_with_gateway(db, order)

    results = await asyncio.gather(observe(StatusSource.WEBHOOK), verify(), observe(StatusSource.WEBHOOK))

    assert sum(r.applied for r in results) == 1
    assert all(r.order.status == OrderStatus.PAYMENT_CONFIRMED for r in results)
    assert len(effects["placed"]) == 1
    async with session_maker() as db:
        assert len(await history(db, order_id)) == 1


async def test_auto_accept_confirms_paid_orders(db, gateway, make_order, effects):
    reconciler = StatusReconciler(gateway, auto_accept=True)
    order = await get_order(db, (await make_order()).id)

    result = await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)

    assert result.applied
    assert order.status == OrderStatus.CONFIRMED
    assert len(effects["placed"]) == 1


async def test_verify_asks_the_gateway(db, session_maker, gateway, reconciler, orchestrator, make_order):
    order_id = (await make_order()).id
    session = await attach_session(orchestrator, session_maker, order_id)
    gateway.mark_paid(session.session_id)
    order = await get_order(db, order_id)

    result = await reconciler.verify_with_gateway(db, order)

    assert result.applied
    assert result.session.status == GatewayStatus.PAID
    assert order.transaction_id == result.session.transaction_id
    assert order.checkout_session_status == GatewayStatus.PAID


async def test_verify_skips_the_gateway_for_paid_orders(db, gateway, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)
    gateway.unavailable = True

    result = await reconciler.verify_with_gateway(db, order)

    assert result.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert result.session is None


async def test_verify_without_session_is_ignored(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)

    result = await reconciler.verify_with_gateway(db, order)

    assert result.outcome == ReconcileOutcome.IGNORED
    assert order.status == OrderStatus.AWAITING_PAYMENT


async def test_verify_does_not_assume_success_when_gateway_is_down(
    db, session_maker, gateway, reconciler, orchestrator, make_order
):
    order_id = (await make_order()).id
    await attach_session(orchestrator, session_maker, order_id)
    order = await get_order(db, order_id)
    gateway.unavailable = True

    with pytest.raises(GatewayUnavailable):
        await reconciler.verify_with_gateway(db, order)

    await db.refresh(order)
    assert order.status == OrderStatus.AWAITING_PAYMENT


async def test_failure_of_superseded_session_is_ignored(
    db, session_maker, gateway, reconciler, orchestrator, make_order
):
    order_id = (await make_order()).id
    first = await attach_session(orchestrator, session_maker, order_id)
    gateway.mark_expired(first.session_id)
    order = await get_order(db, order_id)
    await reconciler.apply_observed_status(
        db, order, GatewayStatus.EXPIRED, StatusSource.POLL, session_id=first.session_id
    )
    second = await attach_session(orchestrator, session_maker, order_id)
    assert second.session_id != first.session_id

    await db.refresh(order)
    result = await reconciler.apply_observed_status(
        db, order, GatewayStatus.FAILED, StatusSource.WEBHOOK, session_id=first.session_id
    )

    assert result.outcome == ReconcileOutcome.IGNORED
    assert order.status == OrderStatus.AWAITING_PAYMENT


async def test_restaurant_cannot_skip_payment(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)

    with pytest.raises(IllegalTransition):
        await reconciler.apply_restaurant_action(db, order, OrderStatus.PREPARING)

    assert order.status == OrderStatus.AWAITING_PAYMENT


async def test_restaurant_cannot_cancel_once_preparing(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)
    await reconciler.apply_restaurant_action(db, order, OrderStatus.PREPARING)

    with pytest.raises(IllegalTransition):
        await reconciler.apply_restaurant_action(db, order, OrderStatus.CANCELLED)


async def test_repeated_restaurant_action_is_accepted(db, reconciler, make_order):
    order = await get_order(db, (await make_order()).id)
    await reconciler.apply_observed_status(db, order, GatewayStatus.PAID, StatusSource.WEBHOOK)

    await reconciler.apply_restaurant_action(db, order, OrderStatus.CONFIRMED)
    result = await reconciler.apply_restaurant_action(db, order, OrderStatus.CONFIRMED)

    assert result.outcome == ReconcileOutcome.ALREADY_APPLIED
    assert order.status == OrderStatus.CONFIRMED


async def test_payment_on_cancelled_order_is_reported(
    db, session_maker, gateway, reconciler, orchestrator, make_order, effects, caplog
):
    order_id = (await make_order()).id
    session = await attach_session(orchestrator, session_maker, order_id)
    order = await get_order(db, order_id)
    await reconciler.apply_restaurant_action(db, order, OrderStatus.CANCELLED)

    with caplog.at_level("ERROR", logger="app.services.reconciler"):
        result = await reconciler.apply_observed_status(
            db, order, GatewayStatus.PAID, StatusSource.WEBHOOK,
            session_id=session.session_id, transaction_id="txn_late",
        )

    assert result.outcome == ReconcileOutcome.STALE
    assert order.status == OrderStatus.CANCELLED
    assert effects["placed"] == []
    assert "cancelled order" in caplog.text
    assert "txn_late" in caplog.text
