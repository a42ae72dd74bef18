# admin_cash.py

from fastapi import APIRouter, Body, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import ExpenseType, Shift
from dependencies import get_db_session, check_credentials, get_staff_notifier
from cash_service import (
    get_current_shift, require_current_shift, start_shift, end_shift, add_expense,
    aggregate_stats, get_shift_statistics
)

router = APIRouter(prefix="/api/shifts", tags=["shifts"])


def shift_to_dict(shift: Shift) -> dict:
    return {
        "id": shift.id,
        "user_name": shift.user_name,
        "start_at": shift.start_at,
        "end_at": shift.end_at,
        "start_cash": shift.start_cash,
        "end_cash": shift.end_cash,
        "real_cash": shift.real_cash,
        "losses_amount": shift.losses_amount,
        "has_deficit": shift.has_deficit,
        "closed": shift.closed,
    }


@router.get("/current")
async def current_shift(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    shift = await get_current_shift(session)
    return {"shift": shift_to_dict(shift) if shift else None}


@router.post("/start")
async def api_start_shift(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    shift = await start_shift(session, data.get("start_cash", 0), data.get("user_name") or username)
    return shift_to_dict(shift)


@router.post("/end")
async def api_end_shift(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    notifier=Depends(get_staff_notifier)
):
    shift = await end_shift(session, data["real_cash"], notifier=notifier)
    return shift_to_dict(shift)


@router.get("/expense-types")
async def expense_types(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    res = await session.execute(select(ExpenseType).order_by(ExpenseType.id))
    return [{"id": t.id, "name": t.name} for t in res.scalars().all()]


@router.post("/expenses")
async def api_add_expense(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    shift = await require_current_shift(session)
    expense = await add_expense(session, shift, int(data["expense_type_id"]), data["amount"], data.get("notes"))
    return {"id": expense.id, "shift_id": expense.shift_id, "amount": expense.amount, "notes": expense.notes}


@router.get("/stats")
async def api_aggregate_stats(
    ids: str,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """?ids=1,2,3"""
    shift_ids = [int(i) for i in ids.split(",") if i.strip()]
    return await aggregate_stats(session, shift_ids)


@router.get("/{shift_id}/stats")
async def api_shift_stats(
    shift_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return await get_shift_statistics(session, shift_id)
