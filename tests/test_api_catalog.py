import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

import database


@pytest.fixture
def tree(make_category):
    electronics = make_category("Electronics")
    laptops = make_category("Laptops", parent=electronics["id"], display_order=2)
    mobiles = make_category("Mobiles", parent=electronics["id"], display_order=1)
    gaming = make_category("Gaming Laptops", parent=laptops["id"])
    fashion = make_category("Fashion", display_order=5)
    return {"electronics": electronics, "laptops": laptops, "mobiles": mobiles, "gaming": gaming, "fashion": fashion}


def stored(category):
    return database.db["category"].find_one({"_id": ObjectId(category["id"])})


def test_category_create_derives_level_and_path(tree):
    assert tree["gaming"]["slug"] == "gaming-laptops"
    assert tree["gaming"]["level"] == 2
    assert tree["gaming"]["path"] == "electronics/laptops/gaming-laptops"
    assert tree["gaming"]["parent"]["slug"] == "laptops"


def test_storefront_tree(client, tree):
    categories = client.get("/api/categories").json()["data"]["categories"]
    assert [c["slug"] for c in categories] == ["electronics", "fashion"]
    assert [c["slug"] for c in categories[0]["children"]] == ["mobiles", "laptops"]
    assert categories[0]["children"][1]["children"][0]["slug"] == "gaming-laptops"


def test_duplicate_slug_and_missing_parent(client, admin_headers, tree):
    res = client.post("/api/admin/categories", json={"name": "electronics"}, headers=admin_headers)
    assert res.status_code == 400
    res = client.post("/api/admin/categories", json={"name": "Orphan", "parent": str(ObjectId())}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Parent category not found"


def test_category_cannot_move_under_its_descendant(client, admin_headers, tree):
    res = client.put(f"/api/admin/categories/{tree['electronics']['id']}", json={"parent": tree["gaming"]["id"]},
                     headers=admin_headers)
    assert res.status_code == 400
    res = client.put(f"/api/admin/categories/{tree['laptops']['id']}", json={"parent": tree["laptops"]["id"]},
                     headers=admin_headers)
    assert res.status_code == 400
    assert stored(tree["electronics"])["parent"] is None


def test_moving_a_category_rewrites_the_subtree(client, admin_headers, tree):
    res = client.put(f"/api/admin/categories/{tree['laptops']['id']}", json={"parent": tree["fashion"]["id"]},
                     headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["path"] == "fashion/laptops"
    assert stored(tree["gaming"])["path"] == "fashion/laptops/gaming-laptops"
    assert stored(tree["gaming"])["level"] == 2

    res = client.put(f"/api/admin/categories/{tree['laptops']['id']}", json={"parent": None, "slug": "Notebooks"},
                     headers=admin_headers)
    assert res.json()["data"]["level"] == 0
    assert stored(tree["gaming"])["path"] == "notebooks/gaming-laptops"
    assert stored(tree["gaming"])["level"] == 1


def test_admin_category_detail_derives_children(client, admin_headers, tree):
    data = client.get(f"/api/admin/categories/{tree['electronics']['id']}", headers=admin_headers).json()["data"]
    assert [c["slug"] for c in data["children"]] == ["mobiles", "laptops"]
    nested = client.get("/api/admin/categories?include_subcategories=true", headers=admin_headers).json()["data"]
    assert nested["categories"][0]["children"][0]["slug"] == "mobiles"


def test_delete_with_children_needs_cascade(client, admin_headers, tree, make_product):
    product = make_product(categories=[tree["gaming"]["id"], tree["fashion"]["id"]])
    res = client.delete(f"/api/admin/categories/{tree['electronics']['id']}", headers=admin_headers)
    assert res.status_code == 400

    res = client.delete(f"/api/admin/categories/{tree['electronics']['id']}?cascade=true", headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["deleted_count"] == 4
    assert database.db["category"].count_documents({}) == 1
    left = database.db["product"].find_one({"_id": ObjectId(product["id"])})
    assert left["categories"] == [tree["fashion"]["id"]]


def test_interrupted_cascade_delete_finishes_on_retry(client, admin_headers, tree, make_product, monkeypatch):
    product = make_product(categories=[tree["gaming"]["id"]])
    original = mongomock.Collection.delete_many
    calls = {"n": 0}

    def flaky(self, *args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise AutoReconnect("connection dropped")
        return original(self, *args, **kwargs)

    monkeypatch.setattr(mongomock.Collection, "delete_many", flaky)
    url = f"/api/admin/categories/{tree['electronics']['id']}?cascade=true"
    res = client.delete(url, headers=admin_headers)
    assert res.status_code == 500
    assert res.json()["success"] is False

    # marked categories are hidden and products no longer point at them
    assert database.db["category"].count_documents({"pending_delete": True}) == 4
    assert [c["slug"] for c in client.get("/api/categories").json()["data"]["categories"]] == ["fashion"]
    assert database.db["product"].find_one({"_id": ObjectId(product["id"])})["categories"] == []

    res = client.delete(url, headers=admin_headers)
    assert res.status_code == 200
    assert database.db["category"].count_documents({}) == 1


def test_category_page_includes_subcategory_products(client, tree, make_product):
    make_product("Gaming Rig", categories=[tree["gaming"]["id"]])
    make_product("Phone", categories=[tree["mobiles"]["id"]])
    make_product("Scarf", categories=[tree["fashion"]["id"]])

    data = client.get("/api/categories/electronics").json()["data"]
    assert sorted(p["name"] for p in data["products"]) == ["Gaming Rig", "Phone"]
    assert [c["slug"] for c in data["category"]["subcategories"]] == ["mobiles", "laptops"]

    data = client.get("/api/categories/laptops").json()["data"]
    assert [p["name"] for p in data["products"]] == ["Gaming Rig"]
    assert data["category"]["parent"]["slug"] == "electronics"


def test_unknown_category_page(client):
    assert client.get("/api/categories/nowhere").status_code == 404


def test_price_filter_and_sort_use_lowest_variant_price(client, make_product):
    make_product("Bundle", price=100, variants=[{"name": "Basic", "price": 20}])
    make_product("Widget", price=50)
    make_product("Gadget", price=5)

    data = client.get("/api/products?min_price=10&max_price=30").json()["data"]
    assert [p["name"] for p in data["products"]] == ["Bundle"]

    data = client.get("/api/products?sort_by=price&sort_order=asc").json()["data"]
    assert [p["name"] for p in data["products"]] == ["Gadget", "Bundle", "Widget"]
    data = client.get("/api/products?sort_by=price&sort_order=desc").json()["data"]
    assert [p["name"] for p in data["products"]] == ["Widget", "Bundle", "Gadget"]


def test_product_listing_pagination_and_lenient_params(client, make_product):
    for _ in range(3):
        make_product()
    page1 = client.get("/api/products?limit=2&page=1").json()["data"]["pagination"]
    assert page1["total_pages"] == 2
    assert page1["has_next_page"] is True
    page2 = client.get("/api/products?limit=2&page=2").json()["data"]["pagination"]
    assert page2["has_next_page"] is False

    res = client.get("/api/products?min_price=cheap&page=zero&limit=-1")
    assert res.status_code == 200
    assert res.json()["data"]["pagination"]["current_page"] == 1


def test_search_treats_input_literally(client, make_product):
    make_product("C++ Primer (5th)", tags=["books"])
    make_product("Cookbook")
    data = client.get("/api/products", params={"search": "++ primer ("}).json()["data"]
    assert [p["name"] for p in data["products"]] == ["C++ Primer (5th)"]
    assert client.get("/api/products", params={"search": ".*"}).json()["data"]["products"] == []


def test_in_stock_filter(client, make_product):
    make_product("Sold Out", quantity=0)
    make_product("Backorder", quantity=0, allow_backorder=True)
    make_product("Plenty", quantity=50)
    names = {p["name"] for p in client.get("/api/products?in_stock=true").json()["data"]["products"]}
    assert names == {"Backorder", "Plenty"}


def test_products_filter_by_category_slug(client, tree, make_product):
    make_product("Phone", categories=[tree["mobiles"]["id"]])
    make_product("Scarf", categories=[tree["fashion"]["id"]])
    data = client.get("/api/products?category=mobiles").json()["data"]
    assert [p["name"] for p in data["products"]] == ["Phone"]
    assert client.get("/api/products?category=unknown").json()["data"]["products"] == []
    assert len(client.get("/api/products?category=all").json()["data"]["products"]) == 2


def test_draft_products_are_hidden(client, make_product):
    make_product("Secret", status="draft")
    assert client.get("/api/products").json()["data"]["products"] == []
    assert client.get("/api/products/secret").status_code == 404


def test_product_admin_rules(client, admin_headers, make_product):
    product = make_product("Desk Lamp", sku="lamp-01", images=[{"url": "a.jpg"}, {"url": "b.jpg"}])
    assert product["sku"] == "LAMP-01"
    assert product["slug"] == "desk-lamp"
    assert [i["is_primary"] for i in product["images"]] == [True, False]

    dup = client.post("/api/admin/products", json={
        "name": "Other Lamp", "description": "x", "price": 1, "sku": "Lamp-01",
    }, headers=admin_headers)
    assert dup.status_code == 400
    assert dup.json()["error"] == "Product with this SKU already exists"

    res = client.put(f"/api/admin/products/{product['id']}", json={"variants": [{"name": "Small", "price": 4}]},
                     headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["data"]["price_floor"] == 4

    assert client.delete(f"/api/admin/products/{product['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/admin/products/{product['id']}", headers=admin_headers).status_code == 404


def test_product_detail_and_reviews(client, user_headers, make_product):
    make_product("Desk Lamp")
    make_product("Floor Lamp")
    res = client.post("/api/products/desk-lamp/reviews", json={"rating": 4, "title": "Good", "content": "Bright"},
                      headers=user_headers)
    assert res.status_code == 201
    assert res.json()["data"]["verified"] is False
    again = client.post("/api/products/desk-lamp/reviews", json={"rating": 1, "title": "Hmm", "content": "x"},
                        headers=user_headers)
    assert again.status_code == 400

    detail = client.get("/api/products/desk-lamp").json()["data"]
    assert detail["product"]["rating"] == {"average": 4.0, "count": 1}
    assert detail["reviews"][0]["user"]["name"] == "Jane Shopper"
    assert client.get("/api/products/desk-lamp/reviews").json()["data"]["pagination"]["total_products"] == 1


def test_search_suggestions(client, make_product):
    make_product("Desk Lamp", tags=["lighting"])
    assert client.post("/api/search/suggestions", json={"query": "d"}).json()["data"]["suggestions"] == []
    suggestions = client.post("/api/search/suggestions", json={"query": "light"}).json()["data"]["suggestions"]
    assert [s["name"] for s in suggestions] == ["Desk Lamp"]


def test_min_rating_filter(client, make_product):
    p1 = make_product("Desk Lamp", price=10, quantity=5)
    p2 = make_product("Floor Lamp", price=100, quantity=0)
    for product, average in ((p1, 4.5), (p2, 2.0)):
        database.db["product"].update_one({"_id": ObjectId(product["id"])},
                                          {"$set": {"rating": {"average": average, "count": 2}}})

    params = {"min_price": 0, "max_price": 50, "min_rating": 4, "in_stock": "true"}
    products = client.get("/api/products", params=params).json()["data"]["products"]
    assert [p["name"] for p in products] == ["Desk Lamp"]
    products = client.get("/api/products", params={"min_rating": 2}).json()["data"]["products"]
    assert {p["name"] for p in products} == {"Desk Lamp", "Floor Lamp"}
    assert client.get("/api/products", params={"min_rating": 4.6}).json()["data"]["products"] == []


def test_last_partial_page(client, make_product):
    for _ in range(25):
        make_product()
    data = client.get("/api/products?limit=10&page=3").json()["data"]
    assert len(data["products"]) == 5
    pagination = data["pagination"]
    assert pagination["total_pages"] == 3
    assert pagination["total_products"] == 25
    assert pagination["has_next_page"] is False
    assert pagination["has_previous_page"] is True


def test_product_update_rejects_empty_slug(client, admin_headers, make_product):
    product = make_product("Desk Lamp")
    res = client.put(f"/api/admin/products/{product['id']}", json={"slug": "!!!"}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Slug must contain letters or numbers"
    assert database.db["product"].find_one({"_id": ObjectId(product["id"])})["slug"] == "desk-lamp"


def test_product_update_clears_optional_fields(client, admin_headers, make_product):
    product = make_product(compare_price=20, weight=1.5, dimensions={"length": 1, "width": 2, "height": 3})
    url = f"/api/admin/products/{product['id']}"
    res = client.put(url, json={"compare_price": None, "weight": None, "dimensions": None}, headers=admin_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["compare_price"] is None
    assert data["weight"] is None
    assert data["dimensions"] is None
    assert data["price"] == 10.0

    res = client.put(url, json={"price": None}, headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "price cannot be null"
