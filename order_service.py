# order_service.py
"""
Order pricing and lifecycle.

    pending -> processing -> completed | cancelled
    processing -> out_for_delivery -> completed      (web delivery)

Totals:
    sub_total = sum(price * quantity)
    service   = dine-in charge * sub_total | customer delivery cost | 0
    tax       = tax_rate * sub_total
    discount  = percent / 100 * sub_total when a percent is set, else the fixed value
    total     = ceil(sub_total + service + tax - discount)
    profit    = total - sum(cost * quantity)
"""

import logging
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cash_service import recalculate_shift_cash
from day_service import exit_if_day_closed
from exceptions import (
    DocumentNotFoundError, InvalidDiscountError, InvalidOrderTypeError, InvalidQuantityError,
    NoActiveShiftError, OrderNotFoundError, OrderNotProcessingError, ProductNotFoundError,
    TableAlreadyReservedError
)
from inventory_service import decrement_for_order, restock_for_order
from locks import order_locks
from models import (
    Customer, DineTable, Order, OrderItem, OrderStatus, OrderStatusHistory, OrderType,
    Payment, PaymentMethod, PaymentStatus, Product, Settings, Shift
)
from settings_service import get_settings

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def payment_status_for(total: Decimal, paid: Decimal) -> PaymentStatus:
    if paid >= total:
        return PaymentStatus.FULL_PAID
    if paid > 0:
        return PaymentStatus.PARTIAL_PAID
    return PaymentStatus.PENDING


# --- LOOKUPS ---

async def get_order(session: AsyncSession, order_id: int, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.id == order_id)
    if lock:
        # Re-read the row even if it sits in the identity map: another request may have changed it
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = (await session.execute(stmt)).scalars().first()
    if not order:
        raise OrderNotFoundError(order_id)
    return order


async def get_order_items(session: AsyncSession, order_id: int) -> List[OrderItem]:
    res = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id))
    return list(res.scalars().all())


async def get_order_payments(session: AsyncSession, order_id: int) -> List[Payment]:
    res = await session.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.id))
    return list(res.scalars().all())


async def get_paid_amount(session: AsyncSession, order_id: int) -> Decimal:
    paid = await session.scalar(
        select(func.coalesce(func.sum(Payment.paid), 0)).where(Payment.order_id == order_id)
    )
    return _dec(paid)


async def list_shift_orders(session: AsyncSession, shift_id: int) -> List[Order]:
    res = await session.execute(select(Order).where(Order.shift_id == shift_id).order_by(Order.id))
    return list(res.scalars().all())


async def list_partial_paid_orders(session: AsyncSession) -> List[Order]:
    """Completed orders of any shift that still owe money."""
    res = await session.execute(
        select(Order)
        .where(Order.status == OrderStatus.COMPLETED, Order.payment_status == PaymentStatus.PARTIAL_PAID)
        .order_by(Order.created_at.desc())
    )
    return list(res.scalars().all())


def set_status(session: AsyncSession, order: Order, new_status: OrderStatus, actor: str):
    session.add(OrderStatusHistory(
        order_id=order.id,
        from_status=order.status,
        to_status=new_status,
        actor_info=actor or "system",
    ))
    order.status = new_status


def require_status(order: Order, action: str, *allowed: OrderStatus):
    if order.status not in allowed:
        raise OrderNotProcessingError(order.id, order.status.value, action)


def _require_open_shift(shift: Optional[Shift]) -> Shift:
    if shift is None or shift.closed:
        raise NoActiveShiftError()
    return shift


# --- TABLES ---

async def _reserve_table(session: AsyncSession, table_number: str, order: Order):
    res = await session.execute(
        select(DineTable).where(DineTable.table_number == table_number).with_for_update()
    )
    table = res.scalars().first()
    if not table:
        table = DineTable(table_number=table_number)
        session.add(table)
        await session.flush()

    if table.order_id and table.order_id != order.id:
        raise TableAlreadyReservedError(table_number, table.order_id)

    table.order_id = order.id
    order.dine_table_number = table_number


async def _free_table(session: AsyncSession, order: Order):
    await session.execute(update(DineTable).where(DineTable.order_id == order.id).values(order_id=None))


# --- TOTALS ---

async def recompute_totals(session: AsyncSession, order: Order, items: Optional[List[OrderItem]] = None,
                           paid=None, settings: Optional[Settings] = None) -> Order:
    """Recomputes every money field of the order from its lines. Does not commit."""
    if items is None:
        items = await get_order_items(session, order.id)
    settings = settings or await get_settings(session)
    if paid is None:
        paid = await get_paid_amount(session, order.id)

    sub_total = sum((_dec(i.price) * _dec(i.quantity) for i in items), ZERO)
    cost = sum((_dec(i.cost) * _dec(i.quantity) for i in items), ZERO)

    service = ZERO
    if order.type == OrderType.DINE_IN:
        service = _dec(settings.dine_in_service_charge) * sub_total
    elif order.type == OrderType.DELIVERY and order.customer_id:
        customer = await session.get(Customer, order.customer_id)
        if customer:
            service = _dec(customer.delivery_cost)

    tax = _dec(settings.tax_rate) * sub_total

    percent = _dec(order.temp_discount_percent)
    discount = percent / 100 * sub_total if percent != 0 else _dec(order.discount)

    order.sub_total = to_money(sub_total)
    order.service = to_money(service)
    order.tax = to_money(tax)
    order.discount = to_money(discount)
    # Rounded up from the unrounded parts
    order.total = (sub_total + service + tax - discount).to_integral_value(rounding=ROUND_CEILING)
    order.profit = to_money(order.total - cost)
    order.payment_status = payment_status_for(order.total, _dec(paid))
    return order


async def _write_items(session: AsyncSession, order: Order, items: List[dict]) -> List[OrderItem]:
    """Lines with price and cost snapshotted from the catalog."""
    product_ids = {int(i['product_id']) for i in items}
    products = {}
    if product_ids:
        res = await session.execute(select(Product).where(Product.id.in_(product_ids)))
        products = {p.id: p for p in res.scalars().all()}
    missing = sorted(product_ids - set(products))
    if missing:
        raise ProductNotFoundError(missing)

    written = []
    for raw in items:
        product = products[int(raw['product_id'])]
        quantity = _dec(raw['quantity'])
        if quantity <= 0:
            raise InvalidQuantityError(f"Quantity of product #{product.id} must be positive")
        line = OrderItem(
            order_id=order.id,
            product_id=product.id,
            quantity=quantity,
            price=_dec(product.price),
            cost=_dec(product.cost),
            total=to_money(_dec(product.price) * quantity),
            notes=raw.get('notes'),
        )
        session.add(line)
        written.append(line)
    await session.flush()
    return written


# --- OPERATIONS ---

async def create_order(session: AsyncSession, shift: Shift, order_type, user_name: str = None,
                       table_number: str = None, customer_id: int = None, items: List[dict] = None,
                       kitchen_notes: str = None, order_notes: str = None) -> Order:
    """New POS order in `processing`, numbered inside the shift."""
    order_type = OrderType(order_type)
    try:
        await exit_if_day_closed(session)
        _require_open_shift(shift)
        if order_type.is_web:
            raise InvalidOrderTypeError("Web orders come in through the ordering channel")
        if order_type == OrderType.DINE_IN and not table_number:
            raise InvalidOrderTypeError("Dine-in orders need a table number")
        if customer_id is not None and not await session.get(Customer, customer_id):
            raise DocumentNotFoundError("Customer", customer_id)

        shift_orders = await session.scalar(select(func.count(Order.id)).where(Order.shift_id == shift.id))
        order = Order(
            shift_id=shift.id,
            customer_id=customer_id,
            user_name=user_name,
            order_number=(shift_orders or 0) + 1,
            type=order_type,
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.PENDING,
            kitchen_notes=kitchen_notes,
            order_notes=order_notes,
        )
        session.add(order)
        await session.flush()
        session.add(OrderStatusHistory(
            order_id=order.id, from_status=None, to_status=OrderStatus.PROCESSING, actor_info=user_name or "pos"
        ))

        if order_type == OrderType.DINE_IN:
            await _reserve_table(session, table_number, order)

        lines = await _write_items(session, order, items or [])
        await recompute_totals(session, order, lines, paid=ZERO)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(f"Order #{order.id} ({order_type.value}) created in shift #{shift.id} as number {order.order_number}")
    return order


async def save_order_items(session: AsyncSession, order_id: int, items: List[dict]) -> Order:
    """Replaces the lines of a processing order."""
    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            require_status(order, "edit items", OrderStatus.PROCESSING)
            if order.type.is_web:
                raise InvalidOrderTypeError("Items of a web order are set by the ordering channel")

            await session.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
            lines = await _write_items(session, order, items)
            await recompute_totals(session, order, lines, paid=ZERO)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Order #{order_id} items saved: {len(lines)} lines, total {order.total}")
    return order


async def change_order_type(session: AsyncSession, order_id: int, new_type, table_number: str = None) -> Order:
    new_type = OrderType(new_type)
    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            require_status(order, "change type", OrderStatus.PROCESSING)
            if new_type.is_web or order.type.is_web:
                raise InvalidOrderTypeError("Web orders cannot change type")
            if new_type == OrderType.DINE_IN and not table_number:
                raise InvalidOrderTypeError("Dine-in orders need a table number")

            if new_type == OrderType.DINE_IN:
                if order.dine_table_number != table_number:
                    await _reserve_table(session, table_number, order)
                    # Only the new table stays linked
                    await session.execute(
                        update(DineTable)
                        .where(DineTable.order_id == order.id, DineTable.table_number != table_number)
                        .values(order_id=None)
                    )
            else:
                await _free_table(session, order)
                order.dine_table_number = None

            order.type = new_type
            await recompute_totals(session, order)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Order #{order_id} type changed to {new_type.value}")
    return order


async def apply_discount(session: AsyncSession, order_id: int, value, kind: str = 'fixed') -> Order:
    """
    Percent and fixed discounts are exclusive: both are reset before the new one is stored.
    No payment is created.
    """
    value = _dec(value)
    if value < 0:
        raise InvalidDiscountError("Discount cannot be negative")
    if kind not in ('percent', 'fixed'):
        raise InvalidDiscountError(f"Unknown discount type: {kind}")
    if kind == 'percent' and value > 100:
        raise InvalidDiscountError("Discount percent cannot exceed 100")

    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            if order.type.is_web:
                raise InvalidOrderTypeError("Use the web discount for web orders")
            require_status(order, "apply a discount", OrderStatus.PROCESSING)

            order.discount = ZERO
            order.temp_discount_percent = ZERO
            if kind == 'percent':
                order.temp_discount_percent = value
            else:
                order.discount = value
            await recompute_totals(session, order, paid=ZERO)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Discount {value} ({kind}) applied to order #{order_id}, total {order.total}")
    return order


def _parse_payments(payments: dict) -> dict:
    parsed = {}
    for method in PaymentMethod:
        amount = _dec((payments or {}).get(method.value, 0))
        if amount < 0:
            raise InvalidQuantityError(f"{method.value} payment cannot be negative")
        parsed[method] = amount
    return parsed


async def complete_order(session: AsyncSession, order_id: int, shift: Shift, payments: dict,
                         actor: str = "pos",
                         before_commit: Optional[Callable[[Order], Awaitable[None]]] = None) -> Order:
    """
    Takes the payments, frees the table, decrements stock and completes the order,
    all in one transaction under the order lock.

    payments = {'cash': 50, 'card': 20, 'talabat_card': 0}; card payments are taken
    as given, cash is capped at what is left to pay.
    """
    amounts = _parse_payments(payments)

    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            allowed = [OrderStatus.PROCESSING]
            if order.type.is_web:
                allowed.append(OrderStatus.OUT_FOR_DELIVERY)
            require_status(order, "complete", *allowed)
            _require_open_shift(shift)

            items = await get_order_items(session, order_id)
            if not order.type.is_web:
                await recompute_totals(session, order, items, paid=ZERO)

            total = _dec(order.total)
            recorded = ZERO
            for method in (PaymentMethod.CARD, PaymentMethod.TALABAT_CARD):
                if amounts[method] > 0:
                    session.add(Payment(order_id=order_id, shift_id=shift.id, method=method, paid=amounts[method]))
                    recorded += amounts[method]
            if amounts[PaymentMethod.CASH] > 0:
                remaining = max(total - recorded, ZERO)
                cash = min(amounts[PaymentMethod.CASH], remaining)
                if cash > 0:
                    session.add(Payment(order_id=order_id, shift_id=shift.id, method=PaymentMethod.CASH, paid=cash))
                    recorded += cash

            order.payment_status = payment_status_for(total, recorded)
            await _free_table(session, order)
            await decrement_for_order(session, [(i.product_id, i.quantity) for i in items], order_id)
            set_status(session, order, OrderStatus.COMPLETED, actor)
            await session.flush()

            if before_commit:
                await before_commit(order)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(f"Order #{order_id} completed: total {order.total}, paid {recorded}, {order.payment_status.value}")
    return order


async def cancel_order(session: AsyncSession, order_id: int, actor: str = "pos") -> Order:
    """Cancels a processing order. Stock is untouched and the order earns nothing."""
    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            require_status(order, "cancel", OrderStatus.PROCESSING)
            if not order.type.is_web:
                await recompute_totals(session, order, paid=ZERO)
            order.profit = ZERO
            await _free_table(session, order)
            set_status(session, order, OrderStatus.CANCELLED, actor)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Order #{order_id} cancelled by {actor}")
    return order


async def cancel_completed_order(session: AsyncSession, order_id: int, actor: str) -> Order:
    """
    Reverses a completed order: payments deleted, stock restored, and the drawer
    reconciliation of every closed shift that held those payments re-run.
    """
    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            require_status(order, "cancel a completed order", OrderStatus.COMPLETED)

            payments = await get_order_payments(session, order_id)
            shift_ids = sorted({p.shift_id for p in payments})
            refunded = sum((_dec(p.paid) for p in payments), ZERO)
            await session.execute(delete(Payment).where(Payment.order_id == order_id))

            items = await get_order_items(session, order_id)
            await restock_for_order(session, [(i.product_id, i.quantity) for i in items], order_id)

            order.profit = ZERO
            order.payment_status = PaymentStatus.PENDING
            set_status(session, order, OrderStatus.CANCELLED, actor)
            await session.flush()

            for shift_id in shift_ids:
                await recalculate_shift_cash(session, shift_id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.warning(f"Completed order #{order_id} cancelled by {actor}: {refunded} refunded from shifts {shift_ids}")
    return order


async def pay_order_balance(session: AsyncSession, order_id: int, shift: Shift, amount, method=PaymentMethod.CASH) -> Order:
    """Takes a payment for an earlier completed order that was not fully paid."""
    amount = _dec(amount)
    method = PaymentMethod(method)
    if amount <= 0:
        raise InvalidQuantityError("Payment must be positive")

    async with order_locks.hold(order_id):
        try:
            _require_open_shift(shift)
            order = await get_order(session, order_id, lock=True)
            require_status(order, "take a payment", OrderStatus.COMPLETED)
            if order.payment_status == PaymentStatus.FULL_PAID:
                raise InvalidQuantityError(f"Order #{order_id} is already fully paid")

            session.add(Payment(order_id=order_id, shift_id=shift.id, method=method, paid=amount))
            await session.flush()
            order.payment_status = payment_status_for(_dec(order.total), await get_paid_amount(session, order_id))
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Order #{order_id} paid {amount} ({method.value}) in shift #{shift.id}, {order.payment_status.value}")
    return order


async def generate_receipt_data(session: AsyncSession, order_id: int) -> dict:
    """Everything a receipt printer needs, as plain data."""
    order = await get_order(session, order_id)
    settings = await get_settings(session)

    res = await session.execute(
        select(OrderItem, Product.name)
        .join(Product, Product.id == OrderItem.product_id)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.id)
    )
    items = [
        {
            "product_id": item.product_id,
            "name": name,
            "quantity": item.quantity,
            "price": item.price,
            "total": item.total,
            "notes": item.notes,
        }
        for item, name in res.all()
    ]
    payments = [{"method": p.method.value, "paid": p.paid} for p in await get_order_payments(session, order_id)]

    customer = await session.get(Customer, order.customer_id) if order.customer_id else None

    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "external_number": order.external_number,
        "type": order.type.value,
        "status": order.status.value,
        "table_number": order.dine_table_number,
        "customer": {"name": customer.name, "phone": customer.phone, "address": customer.address} if customer else None,
        "created_at": order.created_at,
        "items": items,
        "sub_total": order.sub_total,
        "service": order.service,
        "tax": order.tax,
        "discount": order.discount,
        "total": order.total,
        "payments": payments,
        "paid": sum((p["paid"] for p in payments), ZERO),
        "payment_status": order.payment_status.value,
        "footer": settings.receipt_footer,
    }
