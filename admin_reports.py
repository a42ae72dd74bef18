# admin_reports.py

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from models import DailySnapshot
from dependencies import get_db_session, check_credentials
from day_service import open_day, close_day, start_accounting, get_today_snapshot, get_open_ledgers
from cash_service import aggregate_stats, get_day_shift_ids

router = APIRouter(prefix="/api/day", tags=["day"])


def snapshot_to_dict(snapshot: DailySnapshot) -> dict:
    return {
        "id": snapshot.id,
        "closed": snapshot.closed,
        "created_at": snapshot.created_at,
        "closed_at": snapshot.closed_at,
        "data": snapshot.data or [],
    }


@router.get("")
async def api_today(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    snapshot = await get_today_snapshot(session)
    return {
        "day": snapshot_to_dict(snapshot) if snapshot else None,
        "open_ledgers": await get_open_ledgers(session),
    }


@router.post("/open")
async def api_open_day(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return snapshot_to_dict(await open_day(session))


@router.post("/start-accounting")
async def api_start_accounting(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return snapshot_to_dict(await start_accounting(session))


@router.post("/close")
async def api_close_day(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return snapshot_to_dict(await close_day(session))


@router.get("/report")
async def api_day_report(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """Shift report over every shift started since the current (or last) day was opened."""
    snapshot = await get_today_snapshot(session)
    shift_ids = await get_day_shift_ids(session, snapshot.created_at if snapshot else None)
    return await aggregate_stats(session, shift_ids)
