# day_service.py
"""
Accounting day: no day -> open -> closed.

Every other ledger (orders, shifts, stock documents) can only be created while a
day is open, and a day can only be closed once all of them are closed. Each day
keeps a snapshot of leaf stock at open and close.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import (
    AccountingAlreadyStartedError, DayAlreadyOpenError, DayClosedError, OpenDocumentsError
)
from inventory_models import InventoryItem, PurchaseInvoice, ReturnPurchaseInvoice, Stocktaking, Waste
from locks import admin_lock
from models import DailySnapshot, Product, Shift

logger = logging.getLogger(__name__)

# Documents that must be closed before the day can be
CLOSABLE_LEDGERS = (
    (PurchaseInvoice, "purchase invoices"),
    (ReturnPurchaseInvoice, "return invoices"),
    (Stocktaking, "stocktakings"),
    (Waste, "wastes"),
    (Shift, "shifts"),
)


async def get_open_day(session: AsyncSession) -> Optional[DailySnapshot]:
    res = await session.execute(select(DailySnapshot).where(DailySnapshot.closed == False).limit(1))
    return res.scalars().first()


async def get_today_snapshot(session: AsyncSession) -> Optional[DailySnapshot]:
    """The open day, or the last closed one."""
    snapshot = await get_open_day(session)
    if snapshot:
        return snapshot
    res = await session.execute(select(DailySnapshot).order_by(DailySnapshot.id.desc()).limit(1))
    return res.scalars().first()


async def day_is_open(session: AsyncSession) -> bool:
    return await get_open_day(session) is not None


async def exit_if_day_closed(session: AsyncSession):
    if not await day_is_open(session):
        raise DayClosedError()


async def _current_leaf_stock(session: AsyncSession) -> Dict[int, tuple]:
    """{product_id: (quantity, cost)} for every leaf with an inventory row."""
    res = await session.execute(
        select(InventoryItem.product_id, InventoryItem.quantity, Product.cost)
        .join(Product, Product.id == InventoryItem.product_id)
        .order_by(InventoryItem.product_id)
    )
    return {pid: (Decimal(str(qty)), Decimal(str(cost or 0))) for pid, qty, cost in res.all()}


def _entry(product_id: int, start, end, cost) -> dict:
    return {
        "product_id": product_id,
        "start_quantity": str(start),
        "end_quantity": None if end is None else str(end),
        "cost": str(cost),
    }


async def open_day(session: AsyncSession) -> DailySnapshot:
    """Opens a new accounting day, carrying over yesterday's closing quantities."""
    async with admin_lock():
        current = await get_open_day(session)
        if current:
            raise DayAlreadyOpenError(current.id)

        res = await session.execute(
            select(DailySnapshot).where(DailySnapshot.closed == True).order_by(DailySnapshot.id.desc()).limit(1)
        )
        previous = res.scalars().first()

        data: List[dict] = []
        if previous is not None:
            carried = set()
            for row in previous.data or []:
                start = row.get("end_quantity")
                if start is None:
                    start = row.get("start_quantity", "0")
                data.append(_entry(row["product_id"], start, None, row.get("cost", "0")))
                carried.add(row["product_id"])
            # Leaves created since the last close start from their live quantity
            for product_id, (quantity, cost) in (await _current_leaf_stock(session)).items():
                if product_id not in carried:
                    data.append(_entry(product_id, quantity, None, cost))

        snapshot = DailySnapshot(data=data, closed=False, open_marker=1, created_at=datetime.now())
        session.add(snapshot)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            current = await get_open_day(session)
            raise DayAlreadyOpenError(current.id if current else 0)

    logger.info(f"Accounting day #{snapshot.id} opened ({len(data)} products carried over)")
    return snapshot


async def start_accounting(session: AsyncSession) -> DailySnapshot:
    """First day only: records the live leaf quantities as the opening stock."""
    async with admin_lock():
        snapshot = await get_open_day(session)
        if not snapshot:
            raise DayClosedError()
        total = await session.scalar(select(func.count(DailySnapshot.id)))
        if total != 1:
            raise AccountingAlreadyStartedError()

        snapshot.data = [
            _entry(pid, quantity, None, cost)
            for pid, (quantity, cost) in (await _current_leaf_stock(session)).items()
        ]
        await session.commit()

    logger.info(f"Accounting started on day #{snapshot.id} with {len(snapshot.data)} products")
    return snapshot


async def get_open_ledgers(session: AsyncSession) -> List[str]:
    open_kinds = []
    for model, kind in CLOSABLE_LEDGERS:
        found = await session.scalar(select(model.id).where(model.closed == False).limit(1))
        if found is not None:
            open_kinds.append(kind)
    return open_kinds


async def close_day(session: AsyncSession) -> DailySnapshot:
    async with admin_lock():
        snapshot = await get_open_day(session)
        if not snapshot:
            raise DayClosedError("No accounting day is open")

        open_kinds = await get_open_ledgers(session)
        if open_kinds:
            raise OpenDocumentsError(open_kinds)

        stock = await _current_leaf_stock(session)
        data = []
        seen = set()
        for row in snapshot.data or []:
            pid = row["product_id"]
            quantity, cost = stock.get(pid, (Decimal(0), Decimal(row.get("cost", "0"))))
            data.append(_entry(pid, row["start_quantity"], quantity, cost))
            seen.add(pid)
        for pid, (quantity, cost) in stock.items():
            if pid not in seen:
                # No opening figure recorded: start equals end
                data.append(_entry(pid, quantity, quantity, cost))

        # JSON column: assign a new list so the change is detected
        snapshot.data = data
        snapshot.closed = True
        snapshot.open_marker = None
        snapshot.closed_at = datetime.now()
        await session.commit()

    logger.info(f"Accounting day #{snapshot.id} closed")
    return snapshot
