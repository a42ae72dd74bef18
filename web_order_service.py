# web_order_service.py
"""
Orders from the restaurant website.

The website prices the order itself; we keep its totals and record how far they
drift from our catalog (web_pos_diff). Every status change is pushed back to the
website through the status webhook.
"""

import asyncio
import logging
from decimal import ROUND_CEILING, Decimal
from typing import Optional

import aiohttp
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cash_service import get_current_shift
from day_service import day_is_open, exit_if_day_closed
from exceptions import (
    InvalidDiscountError, InvalidOrderTypeError, InvalidQuantityError, ProductNotFoundError,
    ShiftMismatchError, StatusNotificationError
)
from locks import order_locks
from models import (
    Customer, Order, OrderItem, OrderStatus, OrderStatusHistory, OrderType, Payment,
    PaymentStatus, Product, Shift
)
from order_service import (
    complete_order, get_order, get_order_items, require_status, set_status, to_money
)
from settings_service import get_settings

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


class StatusNotifier:
    """POSTs {orderNumber, status} to {website_url}/api/order-status with bounded retries."""

    def __init__(self, timeout: float = 10, backoff: float = 0.5):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.backoff = backoff

    async def send(self, website_url: str, payload: dict, retries: int = 3):
        url = website_url.rstrip('/') + '/api/order-status'
        last_error = None
        attempts = max(int(retries), 1)
        for attempt in range(1, attempts + 1):
            try:
                async with aiohttp.ClientSession(timeout=self.timeout) as http:
                    async with http.post(url, json=payload) as resp:
                        resp.raise_for_status()
                        logger.info(f"Status webhook sent: {payload}")
                        return
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_error = e
                logger.warning(f"Status webhook attempt {attempt}/{attempts} to {url} failed: {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.backoff * attempt)
        raise StatusNotificationError(f"Could not notify the website about order {payload.get('orderNumber')}: {last_error}")


async def notify_status_change(session: AsyncSession, order: Order, notifier: Optional[StatusNotifier] = None):
    """Tells the website about the order's current status. Raises StatusNotificationError."""
    settings = await get_settings(session)
    if not settings.website_url:
        logger.warning(f"Website URL is not configured, status of order #{order.id} not sent")
        return
    notifier = notifier or StatusNotifier()
    await notifier.send(
        settings.website_url,
        {"orderNumber": order.external_number, "status": order.status.value},
        retries=settings.status_webhook_retries or 1,
    )


async def get_or_create_customer(session: AsyncSession, data: dict) -> Customer:
    """Finds the customer by phone, refreshing the address; creates a new one otherwise."""
    phone = str(data['phone']).strip()
    res = await session.execute(select(Customer).where(Customer.phone == phone))
    customer = res.scalars().first()
    if not customer:
        customer = Customer(phone=phone, name=data.get('name'), delivery_cost=ZERO)
        session.add(customer)
    if data.get('name'):
        customer.name = data['name']
    customer.address = data.get('address', customer.address)
    customer.region = data.get('area', data.get('region', customer.region))
    await session.flush()
    return customer


async def place_external_order(session: AsyncSession, customer: dict, payload: dict, staff_notifier=None) -> Order:
    """
    customer = {'name', 'phone', 'area', 'address'}
    payload = {
        'type': 'web_delivery', 'shift_id': 3, 'order_number': 'W-1001',
        'sub_total', 'tax', 'service', 'discount', 'total', 'note',
        'items': [{'quantity': 2, 'notes': '', 'pos_ref_obj': [{'product_ref': 'burger', 'quantity': 1}]}]
    }
    """
    try:
        await exit_if_day_closed(session)
        shift = await get_current_shift(session)
        if not shift or int(payload.get('shift_id') or 0) != shift.id:
            raise ShiftMismatchError(payload.get('shift_id'), shift.id if shift else None)

        order_type = OrderType(payload['type'])
        if not order_type.is_web:
            raise InvalidOrderTypeError(f"{order_type.value} is not a web order type")

        refs = [ref['product_ref'] for item in payload.get('items', []) for ref in item.get('pos_ref_obj', [])]
        res = await session.execute(select(Product).where(Product.product_ref.in_(set(refs))))
        by_ref = {p.product_ref: p for p in res.scalars().all()}
        missing = sorted(set(refs) - set(by_ref))
        if missing:
            raise ProductNotFoundError(missing)

        db_customer = await get_or_create_customer(session, customer)
        shift_orders = await session.scalar(select(func.count(Order.id)).where(Order.shift_id == shift.id))
        order = Order(
            shift_id=shift.id,
            customer_id=db_customer.id,
            user_name="web",
            order_number=(shift_orders or 0) + 1,
            external_number=str(payload.get('order_number')),
            type=order_type,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            order_notes=payload.get('note'),
        )
        session.add(order)
        await session.flush()
        session.add(OrderStatusHistory(order_id=order.id, from_status=None, to_status=OrderStatus.PENDING, actor_info="web"))

        pos_sub_total = ZERO
        cost = ZERO
        for item in payload.get('items', []):
            item_qty = _dec(item.get('quantity', 1))
            if item_qty <= 0:
                raise InvalidQuantityError("Web order item quantity must be positive")
            for ref in item.get('pos_ref_obj', []):
                product = by_ref[ref['product_ref']]
                quantity = item_qty * _dec(ref.get('quantity', 1))
                line_total = to_money(_dec(product.price) * quantity)
                session.add(OrderItem(
                    order_id=order.id, product_id=product.id, quantity=quantity,
                    price=_dec(product.price), cost=_dec(product.cost), total=line_total,
                    notes=item.get('notes'),
                ))
                pos_sub_total += line_total
                cost += _dec(product.cost) * quantity

        # The channel's own totals are kept
        order.sub_total = _dec(payload.get('sub_total'))
        order.tax = _dec(payload.get('tax'))
        order.service = _dec(payload.get('service'))
        order.discount = _dec(payload.get('discount'))
        order.total = _dec(payload.get('total'))
        order.web_pos_diff = order.sub_total - pos_sub_total
        order.profit = to_money(order.total - cost)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    if order.web_pos_diff != 0:
        logger.warning(f"Web order #{order.id} ({order.external_number}) differs from POS prices by {order.web_pos_diff}")
    logger.info(f"Web order #{order.id} ({order.external_number}) placed, total {order.total}")

    if staff_notifier:
        await staff_notifier.new_web_order(order, db_customer.name)
    return order


async def _transition(session: AsyncSession, order_id: int, new_status: OrderStatus, action: str,
                      allowed: tuple, notifier: Optional[StatusNotifier], actor: str) -> Order:
    """Moves a web order to `new_status`; rolled back when the website cannot be told."""
    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            if not order.type.is_web:
                raise InvalidOrderTypeError(f"Order #{order_id} is not a web order")
            require_status(order, action, *allowed)

            if new_status == OrderStatus.CANCELLED:
                await session.execute(delete(Payment).where(Payment.order_id == order_id))
                order.profit = ZERO
            set_status(session, order, new_status, actor)
            await session.flush()

            await notify_status_change(session, order, notifier)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Web order #{order_id} is now {new_status.value}")
    return order


async def accept_order(session: AsyncSession, order_id: int, notifier: StatusNotifier = None, actor: str = "pos") -> Order:
    return await _transition(session, order_id, OrderStatus.PROCESSING, "accept",
                             (OrderStatus.PENDING,), notifier, actor)


async def reject_order(session: AsyncSession, order_id: int, notifier: StatusNotifier = None, actor: str = "pos") -> Order:
    return await _transition(session, order_id, OrderStatus.CANCELLED, "reject",
                             (OrderStatus.PENDING, OrderStatus.PROCESSING), notifier, actor)


async def mark_out_for_delivery(session: AsyncSession, order_id: int, notifier: StatusNotifier = None, actor: str = "pos") -> Order:
    order = await get_order(session, order_id)
    if order.type != OrderType.WEB_DELIVERY:
        raise InvalidOrderTypeError(f"Order #{order_id} is not a web delivery")
    return await _transition(session, order_id, OrderStatus.OUT_FOR_DELIVERY, "send out for delivery",
                             (OrderStatus.PROCESSING,), notifier, actor)


async def complete_web_order(session: AsyncSession, order_id: int, shift: Shift, payments: dict,
                             notifier: StatusNotifier = None, actor: str = "pos") -> Order:
    """Completes like a POS order (payments, stock) keeping the channel totals, then tells the website."""
    order = await get_order(session, order_id)
    if not order.type.is_web:
        raise InvalidOrderTypeError(f"Order #{order_id} is not a web order")

    async def _notify(completed: Order):
        await notify_status_change(session, completed, notifier)

    return await complete_order(session, order_id, shift, payments, actor=actor, before_commit=_notify)


async def apply_web_discount(session: AsyncSession, order_id: int, value, kind: str = 'fixed') -> Order:
    """Discount on top of the channel totals; percent is taken from the channel sub total."""
    value = _dec(value)
    if value < 0 or kind not in ('percent', 'fixed') or (kind == 'percent' and value > 100):
        raise InvalidDiscountError(f"Invalid {kind} discount: {value}")

    async with order_locks.hold(order_id):
        try:
            order = await get_order(session, order_id, lock=True)
            if not order.type.is_web:
                raise InvalidOrderTypeError(f"Order #{order_id} is not a web order")
            require_status(order, "apply a discount", OrderStatus.PENDING, OrderStatus.PROCESSING,
                            OrderStatus.OUT_FOR_DELIVERY)

            sub_total = _dec(order.sub_total)
            order.discount = to_money(sub_total * value / 100 if kind == 'percent' else value)
            order.total = (sub_total + _dec(order.tax) + _dec(order.service) - order.discount).to_integral_value(
                rounding=ROUND_CEILING
            )
            items = await get_order_items(session, order_id)
            cost = sum((_dec(i.cost) * _dec(i.quantity) for i in items), ZERO)
            order.profit = to_money(order.total - cost)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    logger.info(f"Web discount {value} ({kind}) applied to order #{order_id}, total {order.total}")
    return order


async def can_accept_orders(session: AsyncSession) -> dict:
    """What the website asks before sending an order: is the day open, and which shift to use."""
    shift = await get_current_shift(session)
    return {"accepting": await day_is_open(session) and shift is not None, "shift_id": shift.id if shift else None}
