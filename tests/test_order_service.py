"""
Tests for order pricing and the order lifecycle: totals, discounts, payments,
completion (including concurrent completion) and cancellation.
"""

from decimal import Decimal

import anyio
import pytest
from sqlalchemy import func, select

from cash_service import end_shift
from conftest import stock_of, update_settings
from exceptions import (
    InvalidDiscountError, InvalidOrderTypeError, NoActiveShiftError, OrderNotProcessingError,
    TableAlreadyReservedError
)
from inventory_service import add_stock
from models import (
    DineTable, OrderStatus, OrderStatusHistory, OrderType, Payment, PaymentMethod,
    PaymentStatus, ProductType, Shift
)
from order_service import (
    apply_discount, cancel_completed_order, cancel_order, change_order_type, complete_order,
    create_order, generate_receipt_data, list_partial_paid_orders, pay_order_balance, save_order_items
)
from recipe_service import create_product

pytestmark = pytest.mark.anyio


@pytest.fixture
async def steak(session):
    """Priced at 100 so the totals are easy to read."""
    product = await create_product(session, "Steak", ProductType.CONSUMABLE, price=100, cost=40)
    return product.id


async def payments_of(session, order_id):
    res = await session.execute(
        select(Payment.method, Payment.paid).where(Payment.order_id == order_id).order_by(Payment.id)
    )
    return [(method, paid) for method, paid in res.all()]


# =============================================================================
# Totals
# =============================================================================


class TestTotals:

    async def test_service_and_discount(self, session, shift, steak):
        await update_settings(session, dine_in_service_charge=Decimal("0.10"))
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="1",
                                   items=[{"product_id": steak, "quantity": 1}])
        assert order.sub_total == 100
        assert order.service == 10
        assert order.total == 110

        order = await apply_discount(session, order.id, 5)
        assert order.discount == 5
        assert order.total == 105
        assert order.sub_total + order.service + order.tax - order.discount <= order.total

    async def test_total_is_rounded_up(self, session, shift, steak):
        await update_settings(session, tax_rate=Decimal("0.0015"))
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        assert order.tax == Decimal("0.15")
        assert order.total == 101
        assert order.profit == Decimal("61")

    async def test_total_is_ceiled_before_cent_rounding(self, session, shift):
        await update_settings(session, dine_in_service_charge=Decimal("0.12"))
        dish = await create_product(session, "Mezze", ProductType.CONSUMABLE, price="89.29", cost=30)
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="3",
                                   items=[{"product_id": dish.id, "quantity": 1}])
        # 89.29 * 1.12 = 100.0048
        assert order.service == Decimal("10.71")
        assert order.total == 101

    async def test_discounts_are_exclusive(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 2}])

        order = await apply_discount(session, order.id, 10, "percent")
        assert order.temp_discount_percent == 10
        assert order.discount == 20
        assert order.total == 180

        order = await apply_discount(session, order.id, 5, "fixed")
        assert order.temp_discount_percent == 0
        assert order.discount == 5
        assert order.total == 195

        # No payment is created by a discount
        assert await payments_of(session, order.id) == []

    async def test_invalid_discount(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        with pytest.raises(InvalidDiscountError):
            await apply_discount(session, order.id, 120, "percent")
        with pytest.raises(InvalidDiscountError):
            await apply_discount(session, order.id, -1)

    async def test_items_snapshot_price(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        order = await save_order_items(session, order.id, [{"product_id": steak, "quantity": 3}])
        assert order.sub_total == 300


# =============================================================================
# Creation rules
# =============================================================================


class TestCreateOrder:

    async def test_numbering_within_shift(self, session, shift, steak):
        first = await create_order(session, shift, OrderType.TAKEAWAY)
        second = await create_order(session, shift, OrderType.TAKEAWAY)
        assert (first.order_number, second.order_number) == (1, 2)

    async def test_dine_in_reserves_table(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="7")
        order_id = order.id
        with pytest.raises(TableAlreadyReservedError) as exc:
            await create_order(session, shift, OrderType.DINE_IN, table_number="7")
        assert exc.value.order_id == order_id

    async def test_web_type_is_rejected(self, session, shift):
        with pytest.raises(InvalidOrderTypeError):
            await create_order(session, shift, OrderType.WEB_DELIVERY)

    async def test_closed_shift_is_rejected(self, session, shift):
        await end_shift(session, 100)
        with pytest.raises(NoActiveShiftError):
            await create_order(session, shift, OrderType.TAKEAWAY)

    async def test_change_type_moves_table(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="1",
                                   items=[{"product_id": steak, "quantity": 1}])
        order = await change_order_type(session, order.id, OrderType.DINE_IN, "2")
        tables = dict((await session.execute(select(DineTable.table_number, DineTable.order_id))).all())
        assert tables == {"1": None, "2": order.id}

        order = await change_order_type(session, order.id, OrderType.TAKEAWAY)
        assert order.dine_table_number is None
        assert order.service == 0


# =============================================================================
# Completion
# =============================================================================


class TestCompleteOrder:

    async def test_burger_sale_decrements_leaves(self, session, shift, burger):
        await add_stock(session, burger.bun_id, 10)
        await add_stock(session, burger.patty_id, 10)
        order = await create_order(session, shift, OrderType.TAKEAWAY,
                                   items=[{"product_id": burger.burger_id, "quantity": 3}])

        order = await complete_order(session, order.id, shift, {"cash": 30})

        assert order.status == OrderStatus.COMPLETED
        assert order.payment_status == PaymentStatus.FULL_PAID
        assert order.profit == Decimal("22.5")
        assert await stock_of(session, burger.bun_id) == 7
        assert await stock_of(session, burger.patty_id) == 7

    async def test_cash_is_capped_at_what_is_left(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        await complete_order(session, order.id, shift, {"card": 30, "cash": 500})
        assert await payments_of(session, order.id) == [
            (PaymentMethod.CARD, Decimal("30")), (PaymentMethod.CASH, Decimal("70"))
        ]

    async def test_partial_payment(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        order = await complete_order(session, order.id, shift, {"cash": 40})
        assert order.payment_status == PaymentStatus.PARTIAL_PAID
        assert [o.id for o in await list_partial_paid_orders(session)] == [order.id]

        order = await pay_order_balance(session, order.id, shift, 60, "card")
        assert order.payment_status == PaymentStatus.FULL_PAID

    async def test_completion_frees_table(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="3",
                                   items=[{"product_id": steak, "quantity": 1}])
        await complete_order(session, order.id, shift, {"cash": 112})
        assert await session.scalar(select(DineTable.order_id).where(DineTable.table_number == "3")) is None

    async def test_second_completion_is_rejected(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        order_id = order.id
        await complete_order(session, order_id, shift, {"cash": 100})
        with pytest.raises(OrderNotProcessingError):
            await complete_order(session, order_id, shift, {"cash": 100})

    async def test_concurrent_completion_happens_once(self, session_maker, session, shift, burger):
        await add_stock(session, burger.bun_id, 10)
        order = await create_order(session, shift, OrderType.TAKEAWAY,
                                   items=[{"product_id": burger.burger_id, "quantity": 1}])
        order_id, shift_id = order.id, shift.id
        outcomes = []

        async def attempt():
            async with session_maker() as other:
                current = await other.get(Shift, shift_id)
                try:
                    await complete_order(other, order_id, current, {"cash": 10})
                    outcomes.append("completed")
                except OrderNotProcessingError:
                    outcomes.append("rejected")

        async with anyio.create_task_group() as tg:
            tg.start_soon(attempt)
            tg.start_soon(attempt)

        assert sorted(outcomes) == ["completed", "rejected"]
        assert len(await payments_of(session, order_id)) == 1
        assert await stock_of(session, burger.bun_id) == 9
        history = await session.scalar(
            select(func.count(OrderStatusHistory.id))
            .where(OrderStatusHistory.order_id == order_id, OrderStatusHistory.to_status == OrderStatus.COMPLETED)
        )
        assert history == 1


# =============================================================================
# Cancellation
# =============================================================================


class TestCancel:

    async def test_cancel_processing_order(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.DINE_IN, table_number="4",
                                   items=[{"product_id": steak, "quantity": 1}])
        order = await cancel_order(session, order.id, actor="manager")
        assert order.status == OrderStatus.CANCELLED
        assert order.profit == 0
        assert await session.scalar(select(DineTable.order_id).where(DineTable.table_number == "4")) is None

    async def test_cancel_completed_restores_stock_and_reconciles_shift(self, session, shift, burger):
        await add_stock(session, burger.bun_id, 5)
        order = await create_order(session, shift, OrderType.TAKEAWAY,
                                   items=[{"product_id": burger.burger_id, "quantity": 2}])
        await complete_order(session, order.id, shift, {"cash": 20})
        closed = await end_shift(session, 120)
        assert closed.losses_amount == 0

        order = await cancel_completed_order(session, order.id, actor="manager")

        assert order.status == OrderStatus.CANCELLED
        assert await payments_of(session, order.id) == []
        assert await stock_of(session, burger.bun_id) == 5
        reconciled = await session.get(Shift, shift.id)
        assert reconciled.end_cash == 100
        # Drawer now holds 20 more than the books
        assert reconciled.losses_amount == -20
        assert reconciled.has_deficit is False

    async def test_cancel_completed_requires_completed(self, session, shift, steak):
        order = await create_order(session, shift, OrderType.TAKEAWAY, items=[{"product_id": steak, "quantity": 1}])
        with pytest.raises(OrderNotProcessingError):
            await cancel_completed_order(session, order.id, actor="manager")


class TestReceipt:

    async def test_receipt(self, session, shift, burger):
        await update_settings(session, receipt_footer="Thank you!")
        order = await create_order(session, shift, OrderType.TAKEAWAY,
                                   items=[{"product_id": burger.burger_id, "quantity": 2}])
        await complete_order(session, order.id, shift, {"cash": 20})

        receipt = await generate_receipt_data(session, order.id)

        assert receipt["items"][0]["name"] == "Burger"
        assert receipt["total"] == 20
        assert receipt["paid"] == 20
        assert receipt["footer"] == "Thank you!"
