# inventory_service.py

import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from day_service import exit_if_day_closed
from exceptions import (
    DocumentNotFoundError, DocumentStillOpenError, InsufficientStockError,
    InvalidProductTypeError, InvalidQuantityError, InvoiceAlreadyClosedError, ProductNotFoundError
)
from inventory_models import (
    InventoryItem, InventoryMovement, PurchaseInvoice, PurchaseInvoiceItem,
    ReturnPurchaseInvoice, ReturnPurchaseInvoiceItem, Stocktaking, StocktakingItem,
    Supplier, Waste, WastedItem
)
from models import PaymentStatus, Product, ProductType
from product_graph import ProductGraph
from recipe_service import load_graph, recalculate_dependents
from settings_service import get_settings

logger = logging.getLogger(__name__)

MONEY_PLACES = Decimal('0.01')


def _dec(value) -> Decimal:
    return Decimal(str(value or 0))


# --- STOCK ROWS ---

async def get_inventory_item(session: AsyncSession, product_id: int, lock: bool = True) -> InventoryItem:
    """
    Inventory row of a leaf product, locked for update (SELECT ... FOR UPDATE).
    A missing row is created with zero quantity.
    """
    stmt = select(InventoryItem).where(InventoryItem.product_id == product_id)
    if lock:
        stmt = stmt.with_for_update()
    item = (await session.execute(stmt)).scalars().first()

    if not item:
        product = await session.get(Product, product_id)
        if not product:
            raise ProductNotFoundError(product_id)
        if not product.is_leaf:
            raise InvalidProductTypeError(f"Manufactured product #{product_id} carries no inventory")
        item = InventoryItem(product_id=product_id, quantity=Decimal('0'))
        session.add(item)
        await session.flush()

    return item


async def _move(session: AsyncSession, item: InventoryItem, delta: Decimal, reason: str,
                reference: Optional[str], allow_negative: bool = True) -> InventoryItem:
    """Applies a signed quantity change and writes the movement audit row."""
    current = _dec(item.quantity)
    new_quantity = current + delta
    if delta < 0 and new_quantity < 0:
        if not allow_negative:
            raise InsufficientStockError(item.product_id, current, -delta)
        logger.warning(f"Stock of product #{item.product_id} goes negative: {current} -> {new_quantity} ({reason}, {reference})")

    item.quantity = new_quantity
    session.add(InventoryMovement(
        product_id=item.product_id,
        quantity=delta,
        balance_after=new_quantity,
        reason=reason,
        reference=reference,
    ))
    return item


async def _apply_deltas(session: AsyncSession, deltas: Dict[int, Decimal], reason: str, reference: Optional[str]):
    """Locks every affected row in product id order and moves them in one go."""
    settings = await get_settings(session)
    for product_id in sorted(deltas):
        delta = deltas[product_id]
        if delta == 0:
            continue
        item = await get_inventory_item(session, product_id)
        await _move(session, item, delta, reason, reference, settings.allow_negative_stock)


def leaf_quantities(graph: ProductGraph, lines: Iterable[Tuple[int, Decimal]]) -> Dict[int, Decimal]:
    """Sums the leaf quantities needed for [(product_id, quantity)] sale lines."""
    totals: Dict[int, Decimal] = defaultdict(Decimal)
    for product_id, quantity in lines:
        for line in graph.flatten(product_id):
            totals[line.product_id] += line.quantity * _dec(quantity)
    return dict(totals)


# --- SALES ---

async def decrement_for_sale(session: AsyncSession, product_id: int, quantity, reason: str = 'sale',
                             order_id: Optional[int] = None):
    """Single product version of decrement_for_order."""
    await decrement_for_order(session, [(product_id, quantity)], order_id, reason)


async def decrement_for_order(session: AsyncSession, lines: Iterable[Tuple[int, Decimal]],
                              order_id: Optional[int] = None, reason: str = 'sale') -> Dict[int, Decimal]:
    """
    Decrements the leaves behind every sold product.
    Does not commit: runs inside the caller's (order completion) transaction.
    """
    graph = await load_graph(session)
    needed = leaf_quantities(graph, lines)
    await _apply_deltas(session, {pid: -qty for pid, qty in needed.items()}, reason, f"order:{order_id}")
    logger.info(f"Stock decremented for order #{order_id}: {len(needed)} leaf products")
    return needed


async def restock_for_order(session: AsyncSession, lines: Iterable[Tuple[int, Decimal]],
                            order_id: Optional[int] = None) -> Dict[int, Decimal]:
    """Puts back what decrement_for_order took (cancelled completed order)."""
    graph = await load_graph(session)
    needed = leaf_quantities(graph, lines)
    await _apply_deltas(session, needed, 'sale_reversal', f"order:{order_id}")
    logger.info(f"Stock restored for order #{order_id}")
    return needed


# --- DOCUMENT LINES ---

async def apply_purchase(session: AsyncSession, product_id: int, quantity, unit_cost,
                         reference: Optional[str] = None) -> int:
    """
    Adds purchased stock. Last purchase cost wins; raw materials are also priced at cost.
    Returns the product id so the caller can re-roll dependent recipes.
    """
    product = await session.get(Product, product_id)
    if not product:
        raise ProductNotFoundError(product_id)
    if not product.is_leaf:
        raise InvalidProductTypeError(f"Manufactured product #{product_id} cannot be purchased")

    item = await get_inventory_item(session, product_id)
    await _move(session, item, _dec(quantity), 'purchase', reference)

    product.cost = _dec(unit_cost)
    if product.type == ProductType.RAW_MATERIAL:
        product.price = product.cost
    return product_id


async def apply_return(session: AsyncSession, return_invoice_id: int, product_id: int, quantity):
    invoice = await _get_document(session, ReturnPurchaseInvoice, return_invoice_id, "Return invoice")
    if invoice.closed:
        raise InvoiceAlreadyClosedError("Return invoice", return_invoice_id)
    settings = await get_settings(session)
    item = await get_inventory_item(session, product_id)
    await _move(session, item, -_dec(quantity), 'purchase_return', f"return_invoice:{return_invoice_id}",
                settings.allow_negative_stock)


async def apply_waste(session: AsyncSession, waste_id: int, product_id: int, quantity):
    waste = await _get_document(session, Waste, waste_id, "Waste")
    if waste.closed:
        raise InvoiceAlreadyClosedError("Waste", waste_id)
    settings = await get_settings(session)
    item = await get_inventory_item(session, product_id)
    await _move(session, item, -_dec(quantity), 'waste', f"waste:{waste_id}", settings.allow_negative_stock)


async def apply_stocktaking_adjustment(session: AsyncSession, product_id: int, counted_quantity,
                                       reference: Optional[str] = None) -> Tuple[Decimal, Decimal, Decimal]:
    """
    Sets the stock to the counted quantity.
    Returns (delta, cost, total) where total = delta * cost, negative for shrinkage.
    """
    counted = _dec(counted_quantity)
    if counted < 0:
        raise InvalidQuantityError(f"Counted quantity of product #{product_id} cannot be negative")

    item = await get_inventory_item(session, product_id)
    product = await session.get(Product, product_id)
    delta = counted - _dec(item.quantity)
    cost = _dec(product.cost)
    if delta != 0:
        await _move(session, item, delta, 'stocktaking', reference)
    return delta, cost, (delta * cost).quantize(MONEY_PLACES)


# --- MANUAL ADJUSTMENTS ---

async def add_stock(session: AsyncSession, product_id: int, quantity, note: str = None) -> InventoryItem:
    qty = _dec(quantity)
    if qty <= 0:
        raise InvalidQuantityError("Quantity must be positive")
    try:
        item = await get_inventory_item(session, product_id)
        await _move(session, item, qty, 'manual_in', note)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Manual stock in: product #{product_id} +{qty}")
    return item


async def remove_stock(session: AsyncSession, product_id: int, quantity, note: str = None) -> InventoryItem:
    qty = _dec(quantity)
    if qty <= 0:
        raise InvalidQuantityError("Quantity must be positive")
    try:
        settings = await get_settings(session)
        item = await get_inventory_item(session, product_id)
        await _move(session, item, -qty, 'manual_out', note, settings.allow_negative_stock)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Manual stock out: product #{product_id} -{qty}")
    return item


async def get_stock_levels(session: AsyncSession) -> List[dict]:
    res = await session.execute(
        select(InventoryItem, Product).join(Product, Product.id == InventoryItem.product_id).order_by(Product.id)
    )
    return [
        {
            "product_id": product.id,
            "name": product.name,
            "unit": product.unit,
            "quantity": item.quantity,
            "cost": product.cost,
            "min_stock": product.min_stock,
            "low": item.quantity < product.min_stock,
        }
        for item, product in res.all()
    ]


# --- DOCUMENT HELPERS ---

async def _get_document(session: AsyncSession, model, doc_id: int, kind: str, lock: bool = False):
    stmt = select(model).where(model.id == doc_id)
    if lock:
        stmt = stmt.with_for_update()
    doc = (await session.execute(stmt)).scalars().first()
    if not doc:
        raise DocumentNotFoundError(kind, doc_id)
    return doc


async def _require_supplier(session: AsyncSession, supplier_id: int) -> Supplier:
    supplier = await session.get(Supplier, supplier_id)
    if not supplier:
        raise DocumentNotFoundError("Supplier", supplier_id)
    return supplier


async def _require_leaves(session: AsyncSession, product_ids: Iterable[int]) -> Dict[int, Product]:
    ids = set(product_ids)
    if not ids:
        return {}
    res = await session.execute(select(Product).where(Product.id.in_(ids)))
    products = {p.id: p for p in res.scalars().all()}
    missing = sorted(ids - set(products))
    if missing:
        raise ProductNotFoundError(missing)
    for product in products.values():
        if not product.is_leaf:
            raise InvalidProductTypeError(f"Manufactured product #{product.id} carries no inventory")
    return products


def _positive(value, what: str) -> Decimal:
    value = _dec(value)
    if value <= 0:
        raise InvalidQuantityError(f"{what} must be positive")
    return value


def _payment_status(total: Decimal, paid: Decimal) -> PaymentStatus:
    if paid >= total:
        return PaymentStatus.FULL_PAID
    if paid > 0:
        return PaymentStatus.PARTIAL_PAID
    return PaymentStatus.PENDING


async def create_supplier(session: AsyncSession, name: str, phone: str = None) -> Supplier:
    supplier = Supplier(name=name, phone=phone)
    session.add(supplier)
    await session.commit()
    return supplier


# --- PURCHASE INVOICES ---

async def _write_purchase_items(session: AsyncSession, invoice: PurchaseInvoice, items: List[dict]) -> Decimal:
    await _require_leaves(session, [int(i['product_id']) for i in items])
    total = Decimal(0)
    for raw in items:
        qty = _positive(raw['quantity'], "Quantity")
        cost = _dec(raw.get('cost'))
        if cost < 0:
            raise InvalidQuantityError("Cost cannot be negative")
        line_total = (qty * cost).quantize(MONEY_PLACES)
        session.add(PurchaseInvoiceItem(
            purchase_invoice_id=invoice.id, product_id=int(raw['product_id']),
            quantity=qty, cost=cost, total=line_total
        ))
        total += line_total
    return total


async def create_purchase_invoice(session: AsyncSession, supplier_id: int, items: List[dict],
                                  paid=0, user_name: str = None) -> PurchaseInvoice:
    """items = [{'product_id': 1, 'quantity': 2.5, 'cost': 10}, ...]"""
    try:
        await exit_if_day_closed(session)
        await _require_supplier(session, supplier_id)

        invoice = PurchaseInvoice(supplier_id=supplier_id, user_name=user_name, closed=False)
        session.add(invoice)
        await session.flush()

        invoice.total = await _write_purchase_items(session, invoice, items)
        invoice.paid = _dec(paid)
        invoice.status = _payment_status(invoice.total, invoice.paid)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Purchase invoice #{invoice.id} created, total {invoice.total}")
    return invoice


async def update_purchase_invoice(session: AsyncSession, invoice_id: int, items: List[dict], paid=None) -> PurchaseInvoice:
    try:
        invoice = await _get_document(session, PurchaseInvoice, invoice_id, "Purchase invoice", lock=True)
        if invoice.closed:
            raise InvoiceAlreadyClosedError("Purchase invoice", invoice_id)

        await session.execute(delete(PurchaseInvoiceItem).where(PurchaseInvoiceItem.purchase_invoice_id == invoice_id))
        invoice.total = await _write_purchase_items(session, invoice, items)
        if paid is not None:
            invoice.paid = _dec(paid)
        invoice.status = _payment_status(invoice.total, _dec(invoice.paid))
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return invoice


async def close_purchase_invoice(session: AsyncSession, invoice_id: int) -> PurchaseInvoice:
    """Books the invoice: stock in, costs updated, dependent recipes re-rolled."""
    try:
        invoice = await _get_document(session, PurchaseInvoice, invoice_id, "Purchase invoice", lock=True)
        if invoice.closed:
            raise InvoiceAlreadyClosedError("Purchase invoice", invoice_id)

        res = await session.execute(
            select(PurchaseInvoiceItem)
            .where(PurchaseInvoiceItem.purchase_invoice_id == invoice_id)
            .order_by(PurchaseInvoiceItem.product_id, PurchaseInvoiceItem.id)
        )
        touched = []
        for item in res.scalars().all():
            touched.append(await apply_purchase(
                session, item.product_id, item.quantity, item.cost, f"purchase_invoice:{invoice_id}"
            ))
        await session.flush()
        await recalculate_dependents(session, touched)

        invoice.closed = True
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Purchase invoice #{invoice_id} closed ({len(touched)} lines)")
    return invoice


async def pay_purchase_invoice(session: AsyncSession, invoice_id: int, amount=None) -> PurchaseInvoice:
    """Pays `amount` (default: the whole remainder) of the invoice."""
    try:
        invoice = await _get_document(session, PurchaseInvoice, invoice_id, "Purchase invoice", lock=True)
        remaining = _dec(invoice.total) - _dec(invoice.paid)
        amount = remaining if amount is None else _dec(amount)
        if amount <= 0:
            raise InvalidQuantityError("Nothing to pay")
        invoice.paid = _dec(invoice.paid) + amount
        invoice.status = _payment_status(_dec(invoice.total), invoice.paid)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Purchase invoice #{invoice_id} paid {amount}, status {invoice.status.value}")
    return invoice


async def delete_purchase_invoice(session: AsyncSession, invoice_id: int):
    try:
        invoice = await _get_document(session, PurchaseInvoice, invoice_id, "Purchase invoice", lock=True)
        if invoice.closed:
            raise InvoiceAlreadyClosedError("Purchase invoice", invoice_id)
        await session.execute(delete(PurchaseInvoiceItem).where(PurchaseInvoiceItem.purchase_invoice_id == invoice_id))
        await session.delete(invoice)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Purchase invoice #{invoice_id} deleted")


# --- RETURN INVOICES ---

async def _write_return_items(session: AsyncSession, invoice: ReturnPurchaseInvoice, items: List[dict]) -> Decimal:
    products = await _require_leaves(session, [int(i['product_id']) for i in items])
    total = Decimal(0)
    for raw in items:
        product_id = int(raw['product_id'])
        qty = _positive(raw['quantity'], "Quantity")
        price = _dec(raw['price']) if raw.get('price') is not None else _dec(products[product_id].cost)
        line_total = (qty * price).quantize(MONEY_PLACES)
        session.add(ReturnPurchaseInvoiceItem(
            return_purchase_invoice_id=invoice.id, product_id=product_id,
            quantity=qty, price=price, total=line_total
        ))
        total += line_total
    return total


async def create_return_invoice(session: AsyncSession, supplier_id: int, items: List[dict],
                                user_name: str = None) -> ReturnPurchaseInvoice:
    """items = [{'product_id': 1, 'quantity': 1, 'price': 10}, ...]; price defaults to current cost"""
    try:
        await exit_if_day_closed(session)
        await _require_supplier(session, supplier_id)
        invoice = ReturnPurchaseInvoice(supplier_id=supplier_id, user_name=user_name, closed=False)
        session.add(invoice)
        await session.flush()
        invoice.total = await _write_return_items(session, invoice, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Return invoice #{invoice.id} created, total {invoice.total}")
    return invoice


async def update_return_invoice(session: AsyncSession, invoice_id: int, items: List[dict]) -> ReturnPurchaseInvoice:
    try:
        invoice = await _get_document(session, ReturnPurchaseInvoice, invoice_id, "Return invoice", lock=True)
        if invoice.closed:
            raise InvoiceAlreadyClosedError("Return invoice", invoice_id)
        await session.execute(
            delete(ReturnPurchaseInvoiceItem).where(ReturnPurchaseInvoiceItem.return_purchase_invoice_id == invoice_id)
        )
        invoice.total = await _write_return_items(session, invoice, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return invoice


async def close_return_invoice(session: AsyncSession, invoice_id: int) -> ReturnPurchaseInvoice:
    try:
        invoice = await _get_document(session, ReturnPurchaseInvoice, invoice_id, "Return invoice", lock=True)
        if invoice.closed:
            raise InvoiceAlreadyClosedError("Return invoice", invoice_id)
        res = await session.execute(
            select(ReturnPurchaseInvoiceItem)
            .where(ReturnPurchaseInvoiceItem.return_purchase_invoice_id == invoice_id)
            .order_by(ReturnPurchaseInvoiceItem.product_id)
        )
        for item in res.scalars().all():
            await apply_return(session, invoice_id, item.product_id, item.quantity)
        invoice.closed = True
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Return invoice #{invoice_id} closed")
    return invoice


# --- WASTE ---

async def _write_waste_items(session: AsyncSession, waste: Waste, items: List[dict]) -> Decimal:
    products = await _require_leaves(session, [int(i['product_id']) for i in items])
    total = Decimal(0)
    for raw in items:
        product_id = int(raw['product_id'])
        qty = _positive(raw['quantity'], "Quantity")
        cost = _dec(products[product_id].cost)
        line_total = (qty * cost).quantize(MONEY_PLACES)
        session.add(WastedItem(waste_id=waste.id, product_id=product_id, quantity=qty, cost=cost, total=line_total))
        total += line_total
    return total


async def get_open_waste(session: AsyncSession) -> Optional[Waste]:
    res = await session.execute(select(Waste).where(Waste.closed == False).limit(1))
    return res.scalars().first()


async def create_waste(session: AsyncSession, items: List[dict], user_name: str = None) -> Waste:
    """items = [{'product_id': 1, 'quantity': 0.5}, ...], valued at current cost"""
    try:
        await exit_if_day_closed(session)
        open_waste = await get_open_waste(session)
        if open_waste:
            raise DocumentStillOpenError("Waste", open_waste.id)

        waste = Waste(user_name=user_name, closed=False)
        session.add(waste)
        await session.flush()
        waste.total = await _write_waste_items(session, waste, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Waste #{waste.id} created, total {waste.total}")
    return waste


async def update_waste(session: AsyncSession, waste_id: int, items: List[dict]) -> Waste:
    try:
        waste = await _get_document(session, Waste, waste_id, "Waste", lock=True)
        if waste.closed:
            raise InvoiceAlreadyClosedError("Waste", waste_id)
        await session.execute(delete(WastedItem).where(WastedItem.waste_id == waste_id))
        waste.total = await _write_waste_items(session, waste, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return waste


async def close_waste(session: AsyncSession, waste_id: int) -> Waste:
    try:
        waste = await _get_document(session, Waste, waste_id, "Waste", lock=True)
        if waste.closed:
            raise InvoiceAlreadyClosedError("Waste", waste_id)
        res = await session.execute(
            select(WastedItem).where(WastedItem.waste_id == waste_id).order_by(WastedItem.product_id)
        )
        for item in res.scalars().all():
            await apply_waste(session, waste_id, item.product_id, item.quantity)
        waste.closed = True
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Waste #{waste_id} closed, total {waste.total}")
    return waste


# --- STOCKTAKING ---

async def _write_stocktaking_items(session: AsyncSession, stocktaking: Stocktaking, items: List[dict]) -> Decimal:
    products = await _require_leaves(session, [int(i['product_id']) for i in items])
    total = Decimal(0)
    for raw in items:
        product_id = int(raw['product_id'])
        counted = _dec(raw['counted_quantity'])
        if counted < 0:
            raise InvalidQuantityError(f"Counted quantity of product #{product_id} cannot be negative")
        stock = await get_inventory_item(session, product_id, lock=False)
        delta = counted - _dec(stock.quantity)
        cost = _dec(products[product_id].cost)
        line_total = (delta * cost).quantize(MONEY_PLACES)
        session.add(StocktakingItem(
            stocktaking_id=stocktaking.id, product_id=product_id,
            counted_quantity=counted, quantity=delta, cost=cost, total=line_total
        ))
        total += line_total
    return total


async def get_open_stocktaking(session: AsyncSession) -> Optional[Stocktaking]:
    res = await session.execute(select(Stocktaking).where(Stocktaking.closed == False).limit(1))
    return res.scalars().first()


async def create_stocktaking(session: AsyncSession, items: List[dict], user_name: str = None) -> Stocktaking:
    """items = [{'product_id': 1, 'counted_quantity': 12}, ...]"""
    try:
        await exit_if_day_closed(session)
        open_doc = await get_open_stocktaking(session)
        if open_doc:
            raise DocumentStillOpenError("Stocktaking", open_doc.id)

        stocktaking = Stocktaking(user_name=user_name, closed=False)
        session.add(stocktaking)
        await session.flush()
        stocktaking.total = await _write_stocktaking_items(session, stocktaking, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Stocktaking #{stocktaking.id} created, preview total {stocktaking.total}")
    return stocktaking


async def update_stocktaking(session: AsyncSession, stocktaking_id: int, items: List[dict]) -> Stocktaking:
    try:
        stocktaking = await _get_document(session, Stocktaking, stocktaking_id, "Stocktaking", lock=True)
        if stocktaking.closed:
            raise InvoiceAlreadyClosedError("Stocktaking", stocktaking_id)
        await session.execute(delete(StocktakingItem).where(StocktakingItem.stocktaking_id == stocktaking_id))
        stocktaking.total = await _write_stocktaking_items(session, stocktaking, items)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return stocktaking


async def close_stocktaking(session: AsyncSession, stocktaking_id: int) -> Stocktaking:
    """Sets every counted product to its counted quantity; deltas are refreshed against the live stock."""
    try:
        stocktaking = await _get_document(session, Stocktaking, stocktaking_id, "Stocktaking", lock=True)
        if stocktaking.closed:
            raise InvoiceAlreadyClosedError("Stocktaking", stocktaking_id)

        res = await session.execute(
            select(StocktakingItem)
            .where(StocktakingItem.stocktaking_id == stocktaking_id)
            .order_by(StocktakingItem.product_id)
        )
        total = Decimal(0)
        for item in res.scalars().all():
            delta, cost, line_total = await apply_stocktaking_adjustment(
                session, item.product_id, item.counted_quantity, f"stocktaking:{stocktaking_id}"
            )
            item.quantity = delta
            item.cost = cost
            item.total = line_total
            total += line_total

        stocktaking.total = total
        stocktaking.closed = True
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info(f"Stocktaking #{stocktaking_id} closed, difference {stocktaking.total}")
    return stocktaking
