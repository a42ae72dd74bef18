# web_api.py

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from admin_order_management import order_to_dict
from cash_service import require_current_shift
from dependencies import get_db_session, check_credentials, get_staff_notifier, get_status_notifier
from web_order_service import (
    can_accept_orders, place_external_order, accept_order, reject_order,
    mark_out_for_delivery, complete_web_order, apply_web_discount
)

router = APIRouter(prefix="/api/web", tags=["web"])


@router.get("/can-accept")
async def api_can_accept(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return await can_accept_orders(session)


@router.post("/orders")
async def api_place_order(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    staff_notifier=Depends(get_staff_notifier)
):
    """{"customer": {"name", "phone", "area", "address"}, "order": {...}}"""
    order = await place_external_order(session, data["customer"], data["order"], staff_notifier=staff_notifier)
    return order_to_dict(order)


@router.post("/orders/{order_id}/accept")
async def api_accept(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    notifier=Depends(get_status_notifier)
):
    return order_to_dict(await accept_order(session, order_id, notifier, actor=username))


@router.post("/orders/{order_id}/reject")
async def api_reject(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    notifier=Depends(get_status_notifier)
):
    return order_to_dict(await reject_order(session, order_id, notifier, actor=username))


@router.post("/orders/{order_id}/out-for-delivery")
async def api_out_for_delivery(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    notifier=Depends(get_status_notifier)
):
    return order_to_dict(await mark_out_for_delivery(session, order_id, notifier, actor=username))


@router.post("/orders/{order_id}/complete")
async def api_complete(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials),
    notifier=Depends(get_status_notifier)
):
    shift = await require_current_shift(session)
    order = await complete_web_order(session, order_id, shift, data, notifier, actor=username)
    return order_to_dict(order)


@router.post("/orders/{order_id}/discount")
async def api_web_discount(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return order_to_dict(await apply_web_discount(session, order_id, data["value"], data.get("kind", "fixed")))
