# admin_order_management.py

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from models import Order
from dependencies import get_db_session, check_credentials
from cash_service import require_current_shift
from order_service import (
    get_order, get_order_items, get_order_payments, list_shift_orders, list_partial_paid_orders,
    create_order, save_order_items, change_order_type, apply_discount, complete_order,
    cancel_order, cancel_completed_order, pay_order_balance, generate_receipt_data
)

router = APIRouter(prefix="/api/orders", tags=["orders"])


def order_to_dict(order: Order) -> dict:
    return {
        "id": order.id,
        "shift_id": order.shift_id,
        "order_number": order.order_number,
        "external_number": order.external_number,
        "type": order.type.value,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "customer_id": order.customer_id,
        "table_number": order.dine_table_number,
        "sub_total": order.sub_total,
        "service": order.service,
        "tax": order.tax,
        "discount": order.discount,
        "temp_discount_percent": order.temp_discount_percent,
        "total": order.total,
        "profit": order.profit,
        "web_pos_diff": order.web_pos_diff,
        "created_at": order.created_at,
    }


@router.get("")
async def current_shift_orders(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    shift = await require_current_shift(session)
    return [order_to_dict(o) for o in await list_shift_orders(session, shift.id)]


@router.get("/partial-paid")
async def partial_paid_orders(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return [order_to_dict(o) for o in await list_partial_paid_orders(session)]


@router.post("")
async def api_create_order(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """{"type": "dine_in", "table_number": "5", "customer_id": null, "items": [{"product_id": 1, "quantity": 2}]}"""
    shift = await require_current_shift(session)
    order = await create_order(
        session, shift, data["type"],
        user_name=username,
        table_number=data.get("table_number"),
        customer_id=data.get("customer_id"),
        items=data.get("items"),
        kitchen_notes=data.get("kitchen_notes"),
        order_notes=data.get("order_notes"),
    )
    return order_to_dict(order)


@router.get("/{order_id}")
async def api_get_order(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    order = await get_order(session, order_id)
    result = order_to_dict(order)
    result["items"] = [
        {"product_id": i.product_id, "quantity": i.quantity, "price": i.price, "cost": i.cost,
         "total": i.total, "notes": i.notes}
        for i in await get_order_items(session, order_id)
    ]
    result["payments"] = [
        {"method": p.method.value, "paid": p.paid, "shift_id": p.shift_id}
        for p in await get_order_payments(session, order_id)
    ]
    return result


@router.put("/{order_id}/items")
async def api_save_items(
    order_id: int,
    items: list = Body(..., embed=True),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return order_to_dict(await save_order_items(session, order_id, items))


@router.post("/{order_id}/type")
async def api_change_type(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return order_to_dict(await change_order_type(session, order_id, data["type"], data.get("table_number")))


@router.post("/{order_id}/discount")
async def api_apply_discount(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """{"value": 10, "kind": "percent" | "fixed"}"""
    return order_to_dict(await apply_discount(session, order_id, data["value"], data.get("kind", "fixed")))


@router.post("/{order_id}/complete")
async def api_complete_order(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """{"cash": 50, "card": 0, "talabat_card": 0}"""
    shift = await require_current_shift(session)
    order = await complete_order(session, order_id, shift, data, actor=username)
    return order_to_dict(order)


@router.post("/{order_id}/cancel")
async def api_cancel_order(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return order_to_dict(await cancel_order(session, order_id, actor=username))


@router.post("/{order_id}/cancel-completed")
async def api_cancel_completed_order(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return order_to_dict(await cancel_completed_order(session, order_id, actor=username))


@router.post("/{order_id}/pay")
async def api_pay_balance(
    order_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """{"amount": 20, "method": "cash"}"""
    shift = await require_current_shift(session)
    order = await pay_order_balance(session, order_id, shift, data["amount"], data.get("method", "cash"))
    return order_to_dict(order)


@router.get("/{order_id}/receipt")
async def api_receipt(
    order_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return await generate_receipt_data(session, order_id)
