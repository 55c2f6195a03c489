import content
import database


def test_settings_are_created_with_defaults(client, admin_headers):
    data = client.get("/api/admin/settings", headers=admin_headers).json()["data"]
    assert data["shipping"]["free_shipping_threshold"] == 100
    assert data["currency"]["code"] == "USD"
    assert len(data["homepage"]["hero_slider"]) == 3


def test_settings_update_merges_sections(client, admin_headers):
    res = client.put("/api/admin/settings", json={"shipping": {"standard_shipping_cost": 7}}, headers=admin_headers)
    assert res.status_code == 200
    shipping = res.json()["data"]["shipping"]
    assert shipping["standard_shipping_cost"] == 7
    assert shipping["free_shipping_threshold"] == 100


def test_settings_update_rejects_bad_input(client, admin_headers):
    assert client.put("/api/admin/settings", json={"colors": {}}, headers=admin_headers).status_code == 400
    assert client.put("/api/admin/settings", json={"taxes": 5}, headers=admin_headers).status_code == 400
    res = client.put("/api/admin/settings", json={"homepage": {"hero_slider": [{"subtitle": "no id"}]}},
                     headers=admin_headers)
    assert res.status_code == 400


def test_hero_slider_hides_inactive_slides(client, admin_headers):
    slides = [
        {"id": "b", "title": "Second", "order": 2},
        {"id": "a", "title": "First", "order": 1},
        {"id": "c", "title": "Hidden", "order": 0, "is_active": False},
    ]
    client.put("/api/admin/settings", json={"homepage": {"hero_slider": slides}}, headers=admin_headers)
    data = client.get("/api/content/hero-slider").json()["data"]
    assert [s["id"] for s in data] == ["a", "b"]


def test_featured_products_prefer_configured_ids(client, admin_headers, make_product):
    flagged = make_product("Flagged", featured=True)
    chosen = make_product("Chosen")
    assert [p["name"] for p in client.get("/api/content/featured-products").json()["data"]] == ["Flagged"]

    client.put("/api/admin/settings", json={"homepage": {"featured_products": {"product_ids": [chosen["id"]]}}},
               headers=admin_headers)
    assert [p["id"] for p in client.get("/api/content/featured-products").json()["data"]] == [chosen["id"]]
    assert flagged["id"] != chosen["id"]


def test_flash_deals_need_a_discount(client, make_product):
    make_product("Deal", price=80, compare_price=100)
    make_product("Not A Deal", price=80, compare_price=60)
    make_product("Full Price", price=80)
    assert [p["name"] for p in client.get("/api/content/flash-deals").json()["data"]] == ["Deal"]


def test_category_showcase_defaults_to_root_categories(client, make_category):
    root = make_category("Home")
    make_category("Kitchen", parent=root["id"])
    assert [c["slug"] for c in client.get("/api/content/category-showcase").json()["data"]] == ["home"]


def test_sitemap_lists_active_pages(client, make_category, make_product):
    make_category("Garden")
    make_product("Hose")
    make_product("Hidden Thing", status="draft")
    res = client.get("/sitemap.xml")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("application/xml")
    assert f"<loc>{content.SITE_URL}/products/hose</loc>" in res.text
    assert f"<loc>{content.SITE_URL}/categories/garden</loc>" in res.text
    assert "hidden-thing" not in res.text


def test_robots_txt(client, admin_headers):
    res = client.get("/robots.txt")
    assert "Disallow: /api/admin" in res.text
    assert f"Sitemap: {content.SITE_URL}/sitemap.xml" in res.text
    client.put("/api/admin/settings", json={"seo": {"robots_txt": "User-agent: *\nDisallow: /\n"}}, headers=admin_headers)
    assert client.get("/robots.txt").text == "User-agent: *\nDisallow: /\n"


def test_render_sitemap_escapes_urls():
    xml = content.render_sitemap([{"slug": "a&b"}], [], base_url="https://shop.test")
    assert "<loc>https://shop.test/products/a&amp;b</loc>" in xml


def test_newsletter_subscribe_is_idempotent(client):
    first = client.post("/api/newsletter/subscribe", json={"email": "Fan@Example.com"})
    assert first.json()["message"] == "Successfully subscribed to newsletter"
    second = client.post("/api/newsletter/subscribe", json={"email": "fan@example.com"})
    assert second.status_code == 200
    assert second.json()["message"] == "Already subscribed to newsletter"


def test_wishlist(client, user_headers, make_product):
    product = make_product("Desk Lamp")
    assert client.post("/api/wishlist", json={"product_id": product["id"]}, headers=user_headers).status_code == 200
    client.post("/api/wishlist", json={"product_id": product["id"]}, headers=user_headers)
    data = client.get("/api/wishlist", headers=user_headers).json()["data"]
    assert data["count"] == 1
    client.delete(f"/api/wishlist?product_id={product['id']}", headers=user_headers)
    assert client.get("/api/wishlist", headers=user_headers).json()["data"]["count"] == 0


def test_concurrent_first_reads_create_one_settings_document(run_concurrently):
    ids = run_concurrently(lambda: content.get_settings()["_id"])
    assert ids == [content.SETTINGS_ID] * 8
    assert database.db["settings"].count_documents({}) == 1
