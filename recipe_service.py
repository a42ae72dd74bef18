# recipe_service.py

import logging
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import (
    CyclicRecipeError, InvalidProductTypeError, InvalidQuantityError, ProductNotFoundError
)
from inventory_models import InventoryItem
from models import Product, ProductComponent, ProductType
from product_graph import ProductGraph, RecipeLine

logger = logging.getLogger(__name__)

COST_PLACES = Decimal('0.0001')


async def load_graph(session: AsyncSession) -> ProductGraph:
    return await ProductGraph.load(session)


async def get_product(session: AsyncSession, product_id: int) -> Product:
    product = await session.get(Product, product_id)
    if not product:
        raise ProductNotFoundError(product_id)
    return product


async def flatten_recipe(session: AsyncSession, product_id: int, graph: Optional[ProductGraph] = None) -> List[RecipeLine]:
    """Leaf products (and quantity per one unit) that `product_id` is made of."""
    graph = graph or await load_graph(session)
    return graph.flatten(product_id)


async def recalculate_cost(session: AsyncSession, product_id: int, graph: Optional[ProductGraph] = None) -> Decimal:
    """
    cost = sum(leaf.cost * quantity) over the flattened recipe, rounded once.
    Leaf products keep their purchase cost.
    """
    product = await get_product(session, product_id)
    if product.is_leaf:
        return product.cost

    graph = graph or await load_graph(session)
    lines = graph.flatten(product_id)
    if not lines:
        product.cost = Decimal('0.0000')
        await session.flush()
        return product.cost

    res = await session.execute(select(Product).where(Product.id.in_([l.product_id for l in lines])))
    by_id = {p.id: p for p in res.scalars().all()}

    # Intermediate products are not rounded into their parents
    cost = Decimal(0)
    for line in lines:
        leaf = by_id.get(line.product_id)
        if leaf is None:
            raise ProductNotFoundError(line.product_id)
        cost += Decimal(str(leaf.cost or 0)) * line.quantity

    product.cost = cost.quantize(COST_PLACES)
    await session.flush()
    return product.cost


async def recalculate_dependents(session: AsyncSession, product_ids: Iterable[int], graph: Optional[ProductGraph] = None) -> List[int]:
    """
    Re-rolls the cost of every manufactured product containing any of `product_ids`,
    components first. Returns the ids that were recalculated, in that order.
    """
    graph = graph or await load_graph(session)
    ordered = graph.topological_order(graph.dependents(product_ids))
    for product_id in ordered:
        await recalculate_cost(session, product_id, graph)
    if ordered:
        logger.info(f"Recipe costs recalculated for products {ordered}")
    return ordered


def _parse_components(components) -> List[tuple]:
    """Accepts [(component_id, qty)] or [{'component_id': .., 'quantity': ..}]."""
    parsed = []
    for comp in components:
        if isinstance(comp, dict):
            component_id, quantity = comp['component_id'], comp['quantity']
        else:
            component_id, quantity = comp
        quantity = Decimal(str(quantity))
        if quantity <= 0:
            raise InvalidQuantityError(f"Component #{component_id} quantity must be positive")
        parsed.append((int(component_id), quantity))
    return parsed


async def _write_components(session: AsyncSession, product: Product, components) -> list:
    """Validates and writes the recipe, then re-rolls costs. Does not commit."""
    if product.is_leaf:
        raise InvalidProductTypeError(f"Product #{product.id} is {product.type.value}, only manufactured products have components")

    parsed = _parse_components(components)
    seen = set()
    for component_id, _ in parsed:
        if component_id in seen:
            raise InvalidQuantityError(f"Component #{component_id} listed twice")
        seen.add(component_id)

    graph = await load_graph(session)
    missing = [cid for cid, _ in parsed if cid not in graph.types]
    if missing:
        raise ProductNotFoundError(missing)

    candidate = graph.with_components(product.id, parsed)
    cycle = candidate.find_cycle(product.id)
    if cycle:
        raise CyclicRecipeError(cycle)

    await session.execute(delete(ProductComponent).where(ProductComponent.product_id == product.id))
    for component_id, quantity in parsed:
        session.add(ProductComponent(product_id=product.id, component_id=component_id, quantity=quantity))
    await session.flush()

    await recalculate_cost(session, product.id, candidate)
    await recalculate_dependents(session, [product.id], candidate)
    return parsed


async def set_components(session: AsyncSession, product_id: int, components) -> Product:
    """Replaces the recipe of a manufactured product and re-rolls costs up the graph."""
    try:
        product = await get_product(session, product_id)
        parsed = await _write_components(session, product, components)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(f"Recipe of product #{product_id} set to {parsed}, cost {product.cost}")
    return product


async def create_product(session: AsyncSession, name: str, product_type: ProductType, price=0, cost=0,
                         unit: str = 'piece', product_ref: str = None, min_stock=0, components=None) -> Product:
    """
    New product. Leaf products get an empty inventory row right away;
    manufactured ones derive their cost from `components`.
    """
    product_type = ProductType(product_type)
    if product_type == ProductType.MANUFACTURED and Decimal(str(cost or 0)) != 0:
        raise InvalidProductTypeError("Cost of a manufactured product is derived from its recipe")
    if product_type != ProductType.MANUFACTURED and components:
        raise InvalidProductTypeError("Only manufactured products have components")

    try:
        product = Product(
            name=name,
            type=product_type,
            unit=unit,
            price=Decimal(str(price or 0)),
            cost=Decimal(str(cost or 0)),
            min_stock=Decimal(str(min_stock or 0)),
            product_ref=product_ref,
        )
        # Raw materials are sold at cost
        if product_type == ProductType.RAW_MATERIAL and not price:
            product.price = product.cost
        session.add(product)
        await session.flush()

        if product.is_leaf:
            session.add(InventoryItem(product_id=product.id, quantity=Decimal('0')))
        if components:
            await _write_components(session, product, components)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(f"Product #{product.id} '{name}' ({product_type.value}) created, cost {product.cost}")
    return product


async def update_product_cost(session: AsyncSession, product_id: int, cost) -> List[int]:
    """Sets the cost of a leaf product by hand and re-rolls every recipe using it."""
    try:
        product = await get_product(session, product_id)
        if not product.is_leaf:
            raise InvalidProductTypeError(f"Cost of manufactured product #{product_id} is derived from its recipe")
        product.cost = Decimal(str(cost))
        if product.type == ProductType.RAW_MATERIAL:
            product.price = product.cost
        await session.flush()
        recalculated = await recalculate_dependents(session, [product_id])
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    return recalculated
