# cash_service.py

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from day_service import exit_if_day_closed
from exceptions import (
    DocumentNotFoundError, InvalidQuantityError, NoActiveShiftError,
    OrdersStillProcessingError, ShiftAlreadyOpenError
)
from locks import admin_lock
from models import (
    OPEN_ORDER_STATUSES, WEB_ORDER_TYPES, Expense, ExpenseType, Order, OrderStatus,
    OrderType, Payment, PaymentMethod, Shift
)
from settings_service import get_settings

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')


def _dec(value) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


async def get_current_shift(session: AsyncSession) -> Shift | None:
    """The single open shift, or None."""
    result = await session.execute(select(Shift).where(Shift.closed == False).limit(1))
    return result.scalars().first()


async def require_current_shift(session: AsyncSession) -> Shift:
    shift = await get_current_shift(session)
    if not shift:
        raise NoActiveShiftError()
    return shift


async def transfer_web_orders(session: AsyncSession, shift_id: int) -> int:
    """
    Moves unfinished web orders of the last closed shift into the new shift.
    Returns the number of moved orders.
    """
    last_closed_id = await session.scalar(
        select(Shift.id).where(Shift.closed == True, Shift.id != shift_id).order_by(Shift.id.desc()).limit(1)
    )
    if last_closed_id is None:
        return 0

    result = await session.execute(
        update(Order)
        .where(
            Order.shift_id == last_closed_id,
            Order.type.in_(WEB_ORDER_TYPES),
            Order.status.in_(OPEN_ORDER_STATUSES),
        )
        .values(shift_id=shift_id)
    )
    if result.rowcount:
        logger.info(f"{result.rowcount} unfinished web orders moved from shift #{last_closed_id} to #{shift_id}")
    return result.rowcount or 0


async def start_shift(session: AsyncSession, start_cash, user_name: str = None) -> Shift:
    """Opens the shift. Only one shift may be open at a time, and only inside an open day."""
    async with admin_lock():
        await exit_if_day_closed(session)

        active_shift = await get_current_shift(session)
        if active_shift:
            raise ShiftAlreadyOpenError(active_shift.id)

        start_cash = _dec(start_cash)
        if start_cash < 0:
            raise InvalidQuantityError("Start cash cannot be negative")

        new_shift = Shift(
            user_name=user_name,
            start_at=datetime.now(),
            start_cash=start_cash,
            closed=False,
            open_marker=1,
        )
        session.add(new_shift)
        try:
            await session.flush()
        except IntegrityError:
            # Another process opened a shift between the check and the insert
            await session.rollback()
            raise ShiftAlreadyOpenError()

        try:
            settings = await get_settings(session)
            if settings.transfer_web_orders_on_shift_start:
                await transfer_web_orders(session, new_shift.id)
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(f"Shift #{new_shift.id} opened by {user_name or 'unknown'} with {start_cash}")
    return new_shift


async def get_expected_cash(session: AsyncSession, shift: Shift) -> Decimal:
    """start_cash + cash payments of completed orders taken in the shift - expenses"""
    cash_in = await session.scalar(
        select(func.coalesce(func.sum(Payment.paid), 0))
        .select_from(Payment)
        .join(Order, Order.id == Payment.order_id)
        .where(
            Payment.shift_id == shift.id,
            Payment.method == PaymentMethod.CASH,
            Order.status == OrderStatus.COMPLETED,
        )
    )
    expenses = await session.scalar(
        select(func.coalesce(func.sum(Expense.amount), 0)).where(Expense.shift_id == shift.id)
    )
    return _dec(shift.start_cash) + _dec(cash_in) - _dec(expenses)


def _reconcile(shift: Shift, end_cash: Decimal, real_cash: Decimal):
    # Positive losses: the drawer holds less than expected
    shift.end_cash = end_cash
    shift.real_cash = real_cash
    shift.losses_amount = end_cash - real_cash
    shift.has_deficit = shift.losses_amount > 0


async def end_shift(session: AsyncSession, real_cash, notifier=None) -> Shift:
    """
    Closes the current shift and reconciles the drawer.
    `notifier` (StaffNotifier) is told about a deficit after the commit.
    """
    async with admin_lock():
        shift = await require_current_shift(session)
        settings = await get_settings(session)

        open_orders = select(Order.id).where(
            Order.shift_id == shift.id,
            Order.status.in_(OPEN_ORDER_STATUSES),
        )
        if settings.transfer_web_orders_on_shift_start:
            # They move to the next shift
            open_orders = open_orders.where(Order.type.not_in(WEB_ORDER_TYPES))
        still_open = (await session.execute(open_orders.order_by(Order.id))).scalars().all()
        if still_open:
            raise OrdersStillProcessingError(list(still_open))

        try:
            end_cash = await get_expected_cash(session, shift)
            _reconcile(shift, end_cash, _dec(real_cash))
            shift.closed = True
            shift.end_at = datetime.now()
            shift.open_marker = None
            await session.commit()
        except Exception:
            await session.rollback()
            raise

    logger.info(
        f"Shift #{shift.id} closed: expected {shift.end_cash}, counted {shift.real_cash}, "
        f"losses {shift.losses_amount}"
    )
    if shift.has_deficit:
        logger.warning(f"Shift #{shift.id} closed with a deficit of {shift.losses_amount}")
        if notifier:
            await notifier.shift_deficit(shift)
    return shift


async def recalculate_shift_cash(session: AsyncSession, shift_id: int) -> Shift:
    """
    Re-runs the drawer reconciliation of a closed shift against its counted cash,
    after payments of the shift changed. Does not commit.
    """
    shift = await session.get(Shift, shift_id)
    if not shift or not shift.closed:
        return shift
    end_cash = await get_expected_cash(session, shift)
    _reconcile(shift, end_cash, _dec(shift.real_cash))
    logger.info(f"Closed shift #{shift_id} reconciled again: expected {end_cash}, losses {shift.losses_amount}")
    return shift


async def add_expense(session: AsyncSession, shift: Shift, expense_type_id: int, amount, notes: str = None) -> Expense:
    """Cash taken out of the drawer during the shift."""
    amount = _dec(amount)
    if amount <= 0:
        raise InvalidQuantityError("Expense amount must be positive")
    if shift.closed:
        raise NoActiveShiftError(f"Shift #{shift.id} is closed")
    if not await session.get(ExpenseType, expense_type_id):
        raise DocumentNotFoundError("Expense type", expense_type_id)

    expense = Expense(shift_id=shift.id, expense_type_id=expense_type_id, amount=amount, notes=notes)
    session.add(expense)
    await session.commit()
    logger.info(f"Expense {amount} (type #{expense_type_id}) added to shift #{shift.id}")
    return expense


def _bucket():
    return {"count": 0, "value": ZERO, "profit": ZERO}


async def aggregate_stats(session: AsyncSession, shift_ids: Iterable[int]) -> dict:
    """
    Shift report over one or more shifts:
    orders per status and (completed only) per type, payments per method,
    expenses, discounts, average receipt and profit percent.
    """
    shift_ids = list(shift_ids)

    by_status = {s.value: _bucket() for s in OrderStatus}
    status_res = await session.execute(
        select(Order.status, func.count(Order.id), func.sum(Order.total), func.sum(Order.profit))
        .where(Order.shift_id.in_(shift_ids))
        .group_by(Order.status)
    )
    for status, count, value, profit in status_res.all():
        by_status[status.value] = {"count": count, "value": _dec(value), "profit": _dec(profit)}

    by_type = {t.value: _bucket() for t in OrderType}
    type_res = await session.execute(
        select(Order.type, func.count(Order.id), func.sum(Order.total), func.sum(Order.profit))
        .where(Order.shift_id.in_(shift_ids), Order.status == OrderStatus.COMPLETED)
        .group_by(Order.type)
    )
    for order_type, count, value, profit in type_res.all():
        by_type[order_type.value] = {"count": count, "value": _dec(value), "profit": _dec(profit)}

    payments = {m.value: ZERO for m in PaymentMethod}
    pay_res = await session.execute(
        select(Payment.method, func.sum(Payment.paid))
        .where(Payment.shift_id.in_(shift_ids))
        .group_by(Payment.method)
    )
    for method, amount in pay_res.all():
        payments[method.value] = _dec(amount)

    expenses = _dec(await session.scalar(
        select(func.coalesce(func.sum(Expense.amount), 0)).where(Expense.shift_id.in_(shift_ids))
    ))
    discounts = _dec(await session.scalar(
        select(func.coalesce(func.sum(Order.discount), 0))
        .where(Order.shift_id.in_(shift_ids), Order.status == OrderStatus.COMPLETED)
    ))
    web_pos_diff = _dec(await session.scalar(
        select(func.coalesce(func.sum(Order.web_pos_diff), 0))
        .where(Order.shift_id.in_(shift_ids), Order.status == OrderStatus.COMPLETED)
    ))

    completed = by_status[OrderStatus.COMPLETED.value]
    average_receipt = ZERO
    profit_percent = ZERO
    if completed["count"]:
        average_receipt = (completed["value"] / completed["count"]).quantize(Decimal('0.01'))
    if completed["value"]:
        profit_percent = (completed["profit"] / completed["value"] * 100).quantize(Decimal('0.01'))

    return {
        "shift_ids": shift_ids,
        "by_status": by_status,
        "by_type": by_type,
        "payments": payments,
        "expenses": expenses,
        "discounts": discounts,
        "web_pos_diff": web_pos_diff,
        "average_receipt": average_receipt,
        "profit_percent": profit_percent,
    }


async def get_shift_statistics(session: AsyncSession, shift_id: int) -> dict:
    """X-report of a single shift: aggregate stats plus the drawer position."""
    shift = await session.get(Shift, shift_id)
    if not shift:
        raise DocumentNotFoundError("Shift", shift_id)

    stats = await aggregate_stats(session, [shift_id])
    stats.update({
        "shift_id": shift.id,
        "start_at": shift.start_at,
        "end_at": shift.end_at,
        "start_cash": _dec(shift.start_cash),
        "expected_cash": shift.end_cash if shift.closed else await get_expected_cash(session, shift),
        "real_cash": shift.real_cash,
        "losses_amount": _dec(shift.losses_amount),
        "has_deficit": shift.has_deficit,
        "closed": shift.closed,
    })
    return stats


async def get_day_shift_ids(session: AsyncSession, since: Optional[datetime]) -> list[int]:
    stmt = select(Shift.id).order_by(Shift.id)
    if since is not None:
        stmt = stmt.where(Shift.start_at >= since)
    return list((await session.execute(stmt)).scalars().all())
