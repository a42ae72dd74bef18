"""
HTTP layer: routers, the admin guard and the JSON error mapping, driven
through httpx against the ASGI app.
"""

import os

import httpx
import pytest

from dependencies import get_db_session
from main import app

pytestmark = pytest.mark.anyio


@pytest.fixture
async def client(session_maker):
    async def test_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = test_session
    auth = (os.environ["ADMIN_USER"], os.environ["ADMIN_PASS"])
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", auth=auth) as client:
        yield client
    app.dependency_overrides.clear()


async def make_burger(client):
    bun = (await client.post("/api/inventory/products", json={"name": "Bun", "type": "raw_material", "cost": 0.5})).json()
    patty = (await client.post("/api/inventory/products", json={"name": "Patty", "type": "raw_material", "cost": 2})).json()
    burger = (await client.post("/api/inventory/products", json={
        "name": "Burger", "type": "manufactured", "price": 10, "product_ref": "burger",
        "components": [{"component_id": bun["id"], "quantity": 1}, {"component_id": patty["id"], "quantity": 1}],
    })).json()
    return bun, patty, burger


class TestGuard:

    async def test_wrong_password(self, client):
        response = await client.get("/api/shifts/current", auth=("admin", "nope"))
        assert response.status_code == 401


class TestErrors:

    async def test_domain_error_is_mapped(self, client):
        response = await client.post("/api/shifts/start", json={"start_cash": 0})
        assert response.status_code == 409
        assert response.json()["error"] == "DAY_CLOSED"

    async def test_not_found(self, client):
        response = await client.get("/api/orders/999")
        assert response.status_code == 404
        assert response.json() == {"error": "ORDER_NOT_FOUND", "detail": "Order #999 not found"}

    async def test_cyclic_recipe(self, client):
        bun, patty, burger = await make_burger(client)
        combo = (await client.post("/api/inventory/products", json={
            "name": "Combo", "type": "manufactured", "components": [{"component_id": burger["id"], "quantity": 1}],
        })).json()

        response = await client.put(f"/api/inventory/products/{burger['id']}/components",
                                    json={"components": [{"component_id": combo["id"], "quantity": 1}]})
        assert response.status_code == 422
        assert response.json()["error"] == "CYCLIC_RECIPE"


class TestDayFlow:

    async def test_full_day(self, client):
        assert (await client.post("/api/day/open")).status_code == 200
        bun, patty, burger = await make_burger(client)
        assert burger["cost"] == 2.5

        recipe = (await client.get(f"/api/inventory/products/{burger['id']}/recipe")).json()
        assert {l["product_id"] for l in recipe["leaves"]} == {bun["id"], patty["id"]}

        shift = (await client.post("/api/shifts/start", json={"start_cash": 100})).json()
        assert shift["closed"] is False

        order = (await client.post("/api/orders", json={
            "type": "takeaway", "items": [{"product_id": burger["id"], "quantity": 3}],
        })).json()
        assert order["total"] == 30

        completed = await client.post(f"/api/orders/{order['id']}/complete", json={"cash": 30})
        assert completed.json()["status"] == "completed"
        again = await client.post(f"/api/orders/{order['id']}/complete", json={"cash": 30})
        assert again.status_code == 409
        assert again.json()["error"] == "ORDER_NOT_PROCESSING"

        stock = {row["product_id"]: row["quantity"] for row in (await client.get("/api/inventory/stock")).json()}
        assert stock[bun["id"]] == -3
        assert stock[patty["id"]] == -3

        ended = (await client.post("/api/shifts/end", json={"real_cash": 130})).json()
        assert ended["losses_amount"] == 0
        assert ended["has_deficit"] is False

        report = (await client.get("/api/day/report")).json()
        assert report["by_status"]["completed"]["count"] == 1
        assert report["payments"]["cash"] == 30

        closed = (await client.post("/api/day/close")).json()
        assert closed["closed"] is True
        assert {row["product_id"] for row in closed["data"]} == {bun["id"], patty["id"]}

    async def test_purchase_invoice_flow(self, client):
        await client.post("/api/day/open")
        bun, patty, burger = await make_burger(client)
        supplier = (await client.post("/api/inventory/suppliers", json={"name": "Bakery"})).json()

        invoice = (await client.post("/api/inventory/purchase-invoices", json={
            "supplier_id": supplier["id"], "items": [{"product_id": bun["id"], "quantity": 20, "cost": 1}],
        })).json()
        assert invoice["total"] == 20
        assert invoice["status"] == "pending"

        closed = await client.post(f"/api/inventory/purchase-invoices/{invoice['id']}/close")
        assert closed.json()["closed"] is True

        recipe = (await client.get(f"/api/inventory/products/{burger['id']}/recipe")).json()
        assert recipe["product"]["cost"] == 3

        paid = (await client.post(f"/api/inventory/purchase-invoices/{invoice['id']}/pay", json={})).json()
        assert paid["status"] == "full_paid"

    async def test_web_order_flow(self, client):
        await client.post("/api/day/open")
        bun, patty, burger = await make_burger(client)
        shift = (await client.post("/api/shifts/start", json={"start_cash": 0})).json()

        state = (await client.get("/api/web/can-accept")).json()
        assert state == {"accepting": True, "shift_id": shift["id"]}

        order = await client.post("/api/web/orders", json={
            "customer": {"name": "Ann", "phone": "555-0101"},
            "order": {"type": "web_takeaway", "shift_id": shift["id"], "order_number": "W-7",
                      "sub_total": 10, "total": 10,
                      "items": [{"quantity": 1, "pos_ref_obj": [{"product_ref": "burger", "quantity": 1}]}]},
        })
        assert order.status_code == 200
        order_id = order.json()["id"]

        accepted = (await client.post(f"/api/web/orders/{order_id}/accept")).json()
        assert accepted["status"] == "processing"
        done = (await client.post(f"/api/web/orders/{order_id}/complete", json={"cash": 10})).json()
        assert done["status"] == "completed"
        assert done["external_number"] == "W-7"

        stock = {row["product_id"]: row["quantity"] for row in (await client.get("/api/inventory/stock")).json()}
        assert stock[bun["id"]] == -1
