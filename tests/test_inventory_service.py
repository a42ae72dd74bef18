"""
Tests for the inventory ledger: stock documents, the purchase-cost cascade
into recipes, and the negative stock policy.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from conftest import stock_of, update_settings
from exceptions import (
    DayClosedError, DocumentStillOpenError, InsufficientStockError, InvalidProductTypeError,
    InvoiceAlreadyClosedError
)
from inventory_models import InventoryMovement, PurchaseInvoice
from inventory_service import (
    add_stock, apply_return, apply_waste, close_purchase_invoice, close_return_invoice,
    close_stocktaking, close_waste, create_purchase_invoice, create_return_invoice,
    create_stocktaking, create_supplier, create_waste, decrement_for_sale, delete_purchase_invoice,
    get_stock_levels, pay_purchase_invoice, remove_stock, update_purchase_invoice
)
from models import PaymentStatus, Product

pytestmark = pytest.mark.anyio


@pytest.fixture
async def supplier(session):
    return await create_supplier(session, "Bakery", "555-0100")


# =============================================================================
# Purchase invoices
# =============================================================================


class TestPurchaseInvoice:

    async def test_requires_open_day(self, session, burger, supplier):
        with pytest.raises(DayClosedError):
            await create_purchase_invoice(session, supplier.id, [{"product_id": burger.bun_id, "quantity": 1, "cost": 1}])

    async def test_close_adds_stock_and_rerolls_recipes(self, session, day, burger, supplier):
        invoice = await create_purchase_invoice(
            session, supplier.id,
            [{"product_id": burger.bun_id, "quantity": 10, "cost": "0.6"},
             {"product_id": burger.patty_id, "quantity": 4, "cost": "2.5"}],
        )
        assert invoice.total == Decimal("16.00")
        # Nothing moves before the invoice is closed
        assert await stock_of(session, burger.bun_id) == 0

        await close_purchase_invoice(session, invoice.id)

        assert await stock_of(session, burger.bun_id) == 10
        assert await stock_of(session, burger.patty_id) == 4
        burger_cost = await session.scalar(select(Product.cost).where(Product.id == burger.burger_id))
        assert burger_cost == Decimal("3.1")
        movements = (await session.execute(
            select(InventoryMovement.reason).where(InventoryMovement.reference == f"purchase_invoice:{invoice.id}")
        )).scalars().all()
        assert movements == ["purchase", "purchase"]

    async def test_closed_invoice_is_frozen(self, session, day, burger, supplier):
        invoice = await create_purchase_invoice(session, supplier.id, [{"product_id": burger.bun_id, "quantity": 1, "cost": 1}])
        invoice_id = invoice.id
        await close_purchase_invoice(session, invoice_id)

        with pytest.raises(InvoiceAlreadyClosedError):
            await close_purchase_invoice(session, invoice_id)
        with pytest.raises(InvoiceAlreadyClosedError):
            await update_purchase_invoice(session, invoice_id, [])
        with pytest.raises(InvoiceAlreadyClosedError):
            await delete_purchase_invoice(session, invoice_id)
        assert await stock_of(session, burger.bun_id) == 1

    async def test_manufactured_product_cannot_be_purchased(self, session, day, burger, supplier):
        with pytest.raises(InvalidProductTypeError):
            await create_purchase_invoice(session, supplier.id, [{"product_id": burger.burger_id, "quantity": 1, "cost": 1}])

    async def test_payments(self, session, day, burger, supplier):
        invoice = await create_purchase_invoice(session, supplier.id, [{"product_id": burger.bun_id, "quantity": 10, "cost": 1}])
        assert invoice.status == PaymentStatus.PENDING

        invoice = await pay_purchase_invoice(session, invoice.id, 4)
        assert invoice.status == PaymentStatus.PARTIAL_PAID

        invoice = await pay_purchase_invoice(session, invoice.id)
        assert invoice.paid == Decimal("10")
        assert invoice.status == PaymentStatus.FULL_PAID

    async def test_delete_open_invoice(self, session, day, burger, supplier):
        invoice = await create_purchase_invoice(session, supplier.id, [{"product_id": burger.bun_id, "quantity": 1, "cost": 1}])
        await delete_purchase_invoice(session, invoice.id)
        assert await session.scalar(select(PurchaseInvoice.id)) is None


# =============================================================================
# Returns, waste, stocktaking
# =============================================================================


class TestStockDocuments:

    async def test_return_reduces_stock(self, session, day, burger, supplier):
        await add_stock(session, burger.bun_id, 10)
        invoice = await create_return_invoice(session, supplier.id, [{"product_id": burger.bun_id, "quantity": 3}])
        assert invoice.total == Decimal("1.50")

        await close_return_invoice(session, invoice.id)
        assert await stock_of(session, burger.bun_id) == 7

        with pytest.raises(InvoiceAlreadyClosedError):
            await apply_return(session, invoice.id, burger.bun_id, 1)
        assert await stock_of(session, burger.bun_id) == 7

    async def test_waste_reduces_stock(self, session, day, burger):
        await add_stock(session, burger.patty_id, 5)
        waste = await create_waste(session, [{"product_id": burger.patty_id, "quantity": 2}], "cook")
        waste_id = waste.id
        assert waste.total == Decimal("4.00")

        with pytest.raises(DocumentStillOpenError):
            await create_waste(session, [{"product_id": burger.patty_id, "quantity": 1}])

        await close_waste(session, waste_id)
        assert await stock_of(session, burger.patty_id) == 3

        with pytest.raises(InvoiceAlreadyClosedError):
            await apply_waste(session, waste_id, burger.patty_id, 1)
        assert await stock_of(session, burger.patty_id) == 3

    async def test_stocktaking_sets_counted_quantity(self, session, day, burger):
        await add_stock(session, burger.bun_id, 10)
        stocktaking = await create_stocktaking(session, [{"product_id": burger.bun_id, "counted_quantity": 7}])
        stocktaking_id = stocktaking.id
        assert stocktaking.total == Decimal("-1.50")

        with pytest.raises(DocumentStillOpenError):
            await create_stocktaking(session, [])

        closed = await close_stocktaking(session, stocktaking_id)
        assert closed.closed
        assert closed.total == Decimal("-1.50")
        assert await stock_of(session, burger.bun_id) == 7


# =============================================================================
# Sales and the negative stock policy
# =============================================================================


class TestStockPolicy:

    async def test_sale_decrements_leaves(self, session, burger):
        await add_stock(session, burger.bun_id, 10)
        await add_stock(session, burger.patty_id, 10)

        await decrement_for_sale(session, burger.burger_id, 3)
        await session.commit()

        assert await stock_of(session, burger.bun_id) == 7
        assert await stock_of(session, burger.patty_id) == 7

    async def test_negative_stock_allowed_by_default(self, session, burger):
        await decrement_for_sale(session, burger.burger_id, 2)
        await session.commit()
        assert await stock_of(session, burger.bun_id) == -2

    async def test_negative_stock_rejected_when_disabled(self, session, burger):
        await update_settings(session, allow_negative_stock=False)
        await add_stock(session, burger.bun_id, 1)

        with pytest.raises(InsufficientStockError) as exc:
            await remove_stock(session, burger.bun_id, 2)
        assert exc.value.product_id == burger.bun_id
        assert await stock_of(session, burger.bun_id) == 1

    async def test_stock_levels_flag_low_stock(self, session, burger):
        bun = await session.get(Product, burger.bun_id)
        bun.min_stock = Decimal("5")
        await session.commit()
        await add_stock(session, burger.bun_id, 2)

        levels = {row["product_id"]: row for row in await get_stock_levels(session)}
        assert levels[burger.bun_id]["low"] is True
        assert levels[burger.patty_id]["low"] is False
