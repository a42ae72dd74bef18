"""
Tests for the recipe graph.

Pure graph operations: flattening to leaves, cycle detection, dependents and
topological order. No database.
"""

from decimal import Decimal

import pytest

from exceptions import CyclicRecipeError, ProductNotFoundError
from models import ProductType
from product_graph import ProductGraph, RecipeLine

RAW = ProductType.RAW_MATERIAL
MAN = ProductType.MANUFACTURED

# 1 Bun, 2 Patty, 3 Burger, 4 Sauce (made of 5 Mayo + 6 Ketchup), 7 Combo
TYPES = {1: RAW, 2: RAW, 3: MAN, 4: MAN, 5: ProductType.CONSUMABLE, 6: RAW, 7: MAN}
EDGES = {
    3: [(1, Decimal("1")), (2, Decimal("1")), (4, Decimal("0.5"))],
    4: [(5, Decimal("0.2")), (6, Decimal("0.3"))],
    7: [(3, Decimal("2")), (6, Decimal("0.1"))],
}


@pytest.fixture
def graph():
    return ProductGraph(TYPES, EDGES)


# =============================================================================
# Flatten
# =============================================================================


class TestFlatten:

    def test_leaf_flattens_to_itself(self, graph):
        assert graph.flatten(1) == [RecipeLine(1, Decimal(1))]

    def test_direct_components(self, graph):
        leaves = {line.product_id: line.quantity for line in graph.flatten(4)}
        assert leaves == {5: Decimal("0.2"), 6: Decimal("0.3")}

    def test_nested_quantities_multiply(self, graph):
        leaves = {line.product_id: line.quantity for line in graph.flatten(3)}
        assert leaves == {1: Decimal("1"), 2: Decimal("1"), 5: Decimal("0.1"), 6: Decimal("0.15")}

    def test_same_leaf_through_two_paths_is_merged(self, graph):
        lines = graph.flatten(7)
        leaves = {line.product_id: line.quantity for line in lines}
        # 2 burgers * 0.5 sauce * 0.3 ketchup + 0.1 ketchup directly
        assert leaves[6] == Decimal("0.4")
        assert len(lines) == len(leaves)

    def test_unknown_product(self, graph):
        with pytest.raises(ProductNotFoundError):
            graph.flatten(99)

    def test_cycle_raises(self):
        graph = ProductGraph({1: MAN, 2: MAN, 3: RAW}, {1: [(2, 1)], 2: [(1, 1), (3, 1)]})
        with pytest.raises(CyclicRecipeError) as exc:
            graph.flatten(1)
        assert exc.value.cycle[0] == exc.value.cycle[-1]


# =============================================================================
# Cycles
# =============================================================================


class TestFindCycle:

    def test_acyclic(self, graph):
        assert graph.find_cycle() is None

    def test_self_reference(self):
        graph = ProductGraph({1: MAN}, {1: [(1, 1)]})
        assert graph.find_cycle(1) == [1, 1]

    def test_replacing_a_recipe_can_close_a_cycle(self, graph):
        # Sauce made of Combo: 7 -> 3 -> 4 -> 7
        candidate = graph.with_components(4, [(7, 1)])
        cycle = candidate.find_cycle(4)
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {3, 4, 7}

    def test_with_components_leaves_original_untouched(self, graph):
        graph.with_components(4, [(7, 1)])
        assert graph.find_cycle() is None
        assert graph.components(4) == EDGES[4]


# =============================================================================
# Dependents and ordering
# =============================================================================


class TestDependents:

    def test_transitive_parents(self, graph):
        assert graph.dependents([5]) == {3, 4, 7}

    def test_leaf_without_parents(self, graph):
        assert graph.dependents([2]) == {3, 7}
        assert graph.dependents([7]) == set()

    def test_components_come_first(self, graph):
        order = graph.topological_order({3, 4, 7})
        assert order.index(4) < order.index(3) < order.index(7)
