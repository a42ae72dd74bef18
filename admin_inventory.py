# admin_inventory.py

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from models import Product
from dependencies import get_db_session, check_credentials
from recipe_service import (
    create_product, set_components, update_product_cost, flatten_recipe, get_product, load_graph
)
from inventory_service import (
    get_stock_levels, add_stock, remove_stock, create_supplier,
    create_purchase_invoice, update_purchase_invoice, close_purchase_invoice,
    pay_purchase_invoice, delete_purchase_invoice,
    create_return_invoice, update_return_invoice, close_return_invoice,
    create_waste, update_waste, close_waste,
    create_stocktaking, update_stocktaking, close_stocktaking
)

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


def product_to_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "type": product.type.value,
        "unit": product.unit,
        "price": product.price,
        "cost": product.cost,
        "min_stock": product.min_stock,
        "product_ref": product.product_ref,
        "legacy": product.legacy,
    }


def document_to_dict(doc) -> dict:
    result = {"id": doc.id, "total": doc.total, "closed": doc.closed, "created_at": doc.created_at}
    for field in ("supplier_id", "paid", "status", "user_name"):
        if hasattr(doc, field):
            value = getattr(doc, field)
            result[field] = value.value if hasattr(value, "value") else value
    return result


# --- PRODUCTS & RECIPES ---

@router.post("/products")
async def api_create_product(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    product = await create_product(
        session,
        name=data["name"],
        product_type=data["type"],
        price=data.get("price", 0),
        cost=data.get("cost", 0),
        unit=data.get("unit", "piece"),
        product_ref=data.get("product_ref"),
        min_stock=data.get("min_stock", 0),
        components=data.get("components"),
    )
    return product_to_dict(product)


@router.put("/products/{product_id}/components")
async def api_set_components(
    product_id: int,
    components: list = Body(..., embed=True),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    """{"components": [{"component_id": 2, "quantity": 0.15}]}"""
    return product_to_dict(await set_components(session, product_id, components))


@router.put("/products/{product_id}/cost")
async def api_update_cost(
    product_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    recalculated = await update_product_cost(session, product_id, data["cost"])
    return {"product_id": product_id, "recalculated": recalculated}


@router.get("/products/{product_id}/recipe")
async def api_recipe(
    product_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    product = await get_product(session, product_id)
    graph = await load_graph(session)
    return {
        "product": product_to_dict(product),
        "components": [{"component_id": cid, "quantity": qty} for cid, qty in graph.components(product_id)],
        "leaves": [{"product_id": l.product_id, "quantity": l.quantity} for l in await flatten_recipe(session, product_id, graph)],
    }


# --- STOCK ---

@router.get("/stock")
async def api_stock(
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return await get_stock_levels(session)


@router.post("/stock/{product_id}/add")
async def api_add_stock(
    product_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    item = await add_stock(session, product_id, data["quantity"], data.get("note"))
    return {"product_id": product_id, "quantity": item.quantity}


@router.post("/stock/{product_id}/remove")
async def api_remove_stock(
    product_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    item = await remove_stock(session, product_id, data["quantity"], data.get("note"))
    return {"product_id": product_id, "quantity": item.quantity}


@router.post("/suppliers")
async def api_create_supplier(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    supplier = await create_supplier(session, data["name"], data.get("phone"))
    return {"id": supplier.id, "name": supplier.name, "phone": supplier.phone}


# --- PURCHASE INVOICES ---

@router.post("/purchase-invoices")
async def api_create_purchase_invoice(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    invoice = await create_purchase_invoice(
        session, int(data["supplier_id"]), data.get("items", []), data.get("paid", 0), username
    )
    return document_to_dict(invoice)


@router.put("/purchase-invoices/{invoice_id}")
async def api_update_purchase_invoice(
    invoice_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    invoice = await update_purchase_invoice(session, invoice_id, data.get("items", []), data.get("paid"))
    return document_to_dict(invoice)


@router.post("/purchase-invoices/{invoice_id}/close")
async def api_close_purchase_invoice(
    invoice_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await close_purchase_invoice(session, invoice_id))


@router.post("/purchase-invoices/{invoice_id}/pay")
async def api_pay_purchase_invoice(
    invoice_id: int,
    data: dict = Body(default={}),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await pay_purchase_invoice(session, invoice_id, data.get("amount")))


@router.delete("/purchase-invoices/{invoice_id}")
async def api_delete_purchase_invoice(
    invoice_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    await delete_purchase_invoice(session, invoice_id)
    return {"deleted": invoice_id}


# --- RETURNS ---

@router.post("/return-invoices")
async def api_create_return_invoice(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    invoice = await create_return_invoice(session, int(data["supplier_id"]), data.get("items", []), username)
    return document_to_dict(invoice)


@router.put("/return-invoices/{invoice_id}")
async def api_update_return_invoice(
    invoice_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await update_return_invoice(session, invoice_id, data.get("items", [])))


@router.post("/return-invoices/{invoice_id}/close")
async def api_close_return_invoice(
    invoice_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await close_return_invoice(session, invoice_id))


# --- WASTE ---

@router.post("/wastes")
async def api_create_waste(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await create_waste(session, data.get("items", []), username))


@router.put("/wastes/{waste_id}")
async def api_update_waste(
    waste_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await update_waste(session, waste_id, data.get("items", [])))


@router.post("/wastes/{waste_id}/close")
async def api_close_waste(
    waste_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await close_waste(session, waste_id))


# --- STOCKTAKING ---

@router.post("/stocktakings")
async def api_create_stocktaking(
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await create_stocktaking(session, data.get("items", []), username))


@router.put("/stocktakings/{stocktaking_id}")
async def api_update_stocktaking(
    stocktaking_id: int,
    data: dict = Body(...),
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await update_stocktaking(session, stocktaking_id, data.get("items", [])))


@router.post("/stocktakings/{stocktaking_id}/close")
async def api_close_stocktaking(
    stocktaking_id: int,
    session: AsyncSession = Depends(get_db_session),
    username: str = Depends(check_credentials)
):
    return document_to_dict(await close_stocktaking(session, stocktaking_id))
