import pytest

from conftest import make_product, order_payload
from errors import InsufficientStockError, NotFoundError, ValidationError
from models import Products

NEW_PRODUCT = {
    "name": "Canvas Tote",
    "description": "Heavy canvas tote bag with inner pocket",
    "price": 24.5,
    "category": "bags",
    "brand": "Carry",
    "images": ["https://cdn.shop.io/tote.jpg"],
    "stock": 10,
}


@pytest.fixture
def catalog(db):
    return [
        make_product(db, name="Trail Runner", price=50, category="shoes", brand="Stride", is_featured=True),
        make_product(db, name="Road Racer", price=120, category="shoes", brand="Pace", is_sale=True, sale_percentage=20),
        make_product(db, name="Rain Shell", price=80, category="jackets", brand="Stride", is_new=True),
    ]


def test_create_product_requires_admin(client, customer, admin):
    assert client.post("/api/products", json=NEW_PRODUCT).status_code == 401

    res = client.post("/api/products", json=NEW_PRODUCT, headers=customer[1])
    assert res.status_code == 403
    assert res.json()["message"] == "Admin access required"

    res = client.post("/api/products", json=NEW_PRODUCT, headers=admin[1])
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["images"] == ["https://cdn.shop.io/tote.jpg"]
    assert data["is_active"] is True


def test_create_product_validation(client, admin):
    res = client.post("/api/products", json=dict(NEW_PRODUCT, price=-1, images=[]), headers=admin[1])

    assert res.status_code == 400
    assert "price" in res.json()["errors"]
    assert "images" in res.json()["errors"]


def test_list_products_filters(client, catalog):
    res = client.get("/api/products", params={"category": "shoes"})
    data = res.json()["data"]
    assert {p["name"] for p in data["products"]} == {"Trail Runner", "Road Racer"}
    assert data["pagination"] == {"page": 1, "limit": 12, "total": 2, "pages": 1}

    res = client.get("/api/products", params={"min_price": 60, "max_price": 100})
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Rain Shell"]

    res = client.get("/api/products", params={"sort_by": "price", "sort_order": 1})
    assert [p["price"] for p in res.json()["data"]["products"]] == [50, 80, 120]

    res = client.get("/api/products", params={"brand": "Stride", "limit": 1, "page": 2})
    assert len(res.json()["data"]["products"]) == 1
    assert res.json()["data"]["pagination"]["pages"] == 2


def test_list_products_rejects_bad_query(client):
    res = client.get("/api/products", params={"sort_order": 2})
    assert res.status_code == 400
    assert res.json()["message"] == "Validation error"


def test_flagged_lists_and_facets(client, catalog):
    assert [p["name"] for p in client.get("/api/products/featured").json()["data"]] == ["Trail Runner"]
    assert [p["name"] for p in client.get("/api/products/sale").json()["data"]] == ["Road Racer"]
    assert [p["name"] for p in client.get("/api/products/new-arrivals").json()["data"]] == ["Rain Shell"]
    assert client.get("/api/products/categories").json()["data"] == ["jackets", "shoes"]
    assert client.get("/api/products/brands").json()["data"] == ["Pace", "Stride"]


def test_search_escapes_pattern(client, catalog):
    res = client.get("/api/products/search", params={"q": "racer"})
    assert [p["name"] for p in res.json()["data"]["products"]] == ["Road Racer"]

    res = client.get("/api/products/search", params={"q": "(.*"})
    assert res.status_code == 200
    assert res.json()["data"]["products"] == []


def test_product_detail_includes_related(client, catalog):
    res = client.get(f"/api/products/{catalog[0]['_id']}")

    data = res.json()["data"]
    assert data["product"]["name"] == "Trail Runner"
    assert [p["name"] for p in data["related_products"]] == ["Road Racer"]


def test_product_detail_not_found(client):
    assert client.get("/api/products/not-an-id").status_code == 404
    assert client.get("/api/products/0123456789abcdef01234567").json()["message"] == "Product not found"


def test_update_and_soft_delete(client, db, admin, catalog):
    pid = str(catalog[0]["_id"])
    res = client.put(f"/api/products/{pid}", json={"price": 55}, headers=admin[1])
    assert res.json()["data"]["price"] == 55

    assert client.put(f"/api/products/{pid}", json={}, headers=admin[1]).status_code == 400

    assert client.delete(f"/api/products/{pid}", headers=admin[1]).status_code == 200
    assert client.get(f"/api/products/{pid}").status_code == 404
    # the record is kept
    assert db["product"].find_one({"_id": catalog[0]["_id"]})["is_active"] is False


def test_update_rejects_null_for_required_fields(client, db, admin, customer, catalog):
    pid = str(catalog[0]["_id"])

    res = client.put(f"/api/products/{pid}", json={"price": None, "stock": None, "name": None}, headers=admin[1])

    assert res.status_code == 400
    assert res.json()["message"] == "Validation error"
    assert "price" in res.json()["errors"]
    assert "stock" in res.json()["errors"]
    stored = db["product"].find_one({"_id": catalog[0]["_id"]})
    assert (stored["name"], stored["price"], stored["stock"]) == ("Trail Runner", 50, 5)

    # still sellable afterwards
    res = client.post("/api/orders", json=order_payload((pid, 1)), headers=customer[1])
    assert res.status_code == 201


def test_update_can_clear_optional_fields(client, db, admin, catalog):
    pid = str(catalog[0]["_id"])
    client.put(f"/api/products/{pid}", json={"sku": "TR-1"}, headers=admin[1])

    res = client.put(f"/api/products/{pid}", json={"sku": None}, headers=admin[1])

    assert res.status_code == 200
    assert res.json()["data"]["sku"] is None


def test_stock_endpoint(client, admin, catalog):
    pid = str(catalog[0]["_id"])
    res = client.put(f"/api/products/{pid}/stock", json={"quantity": 3, "operation": "increase"}, headers=admin[1])
    assert res.json()["data"]["stock"] == 8

    res = client.put(f"/api/products/{pid}/stock", json={"quantity": 9}, headers=admin[1])
    assert res.status_code == 400
    assert res.json()["message"] == "Insufficient stock for Trail Runner. Available: 8"
    assert res.json()["errors"] == {"product_id": pid, "available": 8}

    res = client.put(f"/api/products/{pid}/stock", json={"quantity": 0}, headers=admin[1])
    assert res.status_code == 400


def test_adjust_stock_never_goes_negative(db):
    product = make_product(db, stock=2)

    assert Products.adjust_stock(db, product["_id"], 2) == 0
    with pytest.raises(InsufficientStockError) as exc:
        Products.adjust_stock(db, product["_id"], 1)
    assert exc.value.available == 0
    assert Products.find_by_id(db, product["_id"])["stock"] == 0


def test_adjust_stock_errors(db):
    product = make_product(db)

    with pytest.raises(ValidationError):
        Products.adjust_stock(db, product["_id"], 0)
    with pytest.raises(ValidationError):
        Products.adjust_stock(db, product["_id"], 1, "sideways")
    with pytest.raises(NotFoundError):
        Products.adjust_stock(db, "0123456789abcdef01234567", 1)


def test_restock_inactive_product(db):
    product = make_product(db, stock=1)
    Products.delete_by_id(db, product["_id"])

    assert Products.adjust_stock(db, product["_id"], 4, "increase") == 5
    with pytest.raises(NotFoundError):
        Products.adjust_stock(db, product["_id"], 1)
