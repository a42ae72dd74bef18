# product_graph.py
"""
Recipe graph of manufactured products.

Products are nodes indexed by id; an edge ``product -> component`` carries the
quantity of the component needed for one unit of the product. Leaf products
(raw materials and consumables) have no outgoing edges and are the only nodes
that carry inventory.
"""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from exceptions import CyclicRecipeError, ProductNotFoundError
from models import Product, ProductComponent, ProductType


@dataclass(frozen=True)
class RecipeLine:
    product_id: int
    quantity: Decimal


class ProductGraph:
    def __init__(self, types: Dict[int, ProductType], edges: Dict[int, List[Tuple[int, Decimal]]]):
        self.types = dict(types)
        self.edges: Dict[int, List[Tuple[int, Decimal]]] = defaultdict(list)
        self.parents: Dict[int, set] = defaultdict(set)
        for product_id, components in edges.items():
            for component_id, quantity in components:
                self.edges[product_id].append((component_id, Decimal(str(quantity))))
                self.parents[component_id].add(product_id)

    @classmethod
    async def load(cls, session: AsyncSession) -> "ProductGraph":
        """Reads every product type and recipe edge in two queries."""
        types_res = await session.execute(select(Product.id, Product.type))
        types = {pid: ptype for pid, ptype in types_res.all()}

        edges_res = await session.execute(
            select(ProductComponent.product_id, ProductComponent.component_id, ProductComponent.quantity)
            .order_by(ProductComponent.id)
        )
        edges: Dict[int, List[Tuple[int, Decimal]]] = defaultdict(list)
        for product_id, component_id, quantity in edges_res.all():
            edges[product_id].append((component_id, quantity))
        return cls(types, edges)

    def _require(self, product_id: int):
        if product_id not in self.types:
            raise ProductNotFoundError(product_id)

    def is_leaf(self, product_id: int) -> bool:
        self._require(product_id)
        return self.types[product_id] != ProductType.MANUFACTURED

    def components(self, product_id: int) -> List[Tuple[int, Decimal]]:
        return list(self.edges.get(product_id, []))

    def with_components(self, product_id: int, components: Iterable[Tuple[int, Decimal]]) -> "ProductGraph":
        """Copy of the graph with the recipe of `product_id` replaced."""
        edges = {pid: list(comps) for pid, comps in self.edges.items()}
        edges[product_id] = [(cid, Decimal(str(qty))) for cid, qty in components]
        return ProductGraph(self.types, edges)

    def find_cycle(self, start: Optional[int] = None) -> Optional[List[int]]:
        """Returns one cycle as a list of ids (first == last), or None."""
        white, grey, black = 0, 1, 2
        color: Dict[int, int] = defaultdict(int)
        path: List[int] = []

        def visit(node: int) -> Optional[List[int]]:
            color[node] = grey
            path.append(node)
            for child, _ in self.edges.get(node, []):
                if color[child] == grey:
                    return path[path.index(child):] + [child]
                if color[child] == white:
                    found = visit(child)
                    if found:
                        return found
            path.pop()
            color[node] = black
            return None

        roots = [start] if start is not None else list(self.edges.keys())
        for root in roots:
            if color[root] == white:
                found = visit(root)
                if found:
                    return found
        return None

    def flatten(self, product_id: int) -> List[RecipeLine]:
        """
        Expands a product down to leaf products.
        Quantities multiply along the path; the same leaf reached through
        several paths is merged into one line (first-seen order).
        """
        self._require(product_id)
        if self.is_leaf(product_id):
            return [RecipeLine(product_id, Decimal(1))]

        totals: Dict[int, Decimal] = {}
        trail: List[int] = []

        def expand(node: int, multiplier: Decimal):
            if node in trail:
                raise CyclicRecipeError(trail[trail.index(node):] + [node])
            trail.append(node)
            for child, quantity in self.edges.get(node, []):
                self._require(child)
                amount = multiplier * quantity
                if self.types[child] == ProductType.MANUFACTURED:
                    expand(child, amount)
                else:
                    totals[child] = totals.get(child, Decimal(0)) + amount
            trail.pop()

        expand(product_id, Decimal(1))
        return [RecipeLine(pid, qty) for pid, qty in totals.items()]

    def dependents(self, product_ids: Iterable[int]) -> set:
        """Every product that contains any of `product_ids`, directly or transitively."""
        seen: set = set()
        stack = list(product_ids)
        while stack:
            node = stack.pop()
            for parent in self.parents.get(node, ()):
                if parent not in seen:
                    seen.add(parent)
                    stack.append(parent)
        return seen

    def topological_order(self, product_ids: Iterable[int]) -> List[int]:
        """Orders `product_ids` so that components come before the products using them."""
        wanted = set(product_ids)
        ordered: List[int] = []
        done: set = set()
        trail: List[int] = []

        def visit(node: int):
            if node in done:
                return
            if node in trail:
                raise CyclicRecipeError(trail[trail.index(node):] + [node])
            trail.append(node)
            for child, _ in self.edges.get(node, []):
                visit(child)
            trail.pop()
            done.add(node)
            if node in wanted:
                ordered.append(node)

        for node in sorted(wanted):
            visit(node)
        return ordered
