"""
Site-wide settings document, homepage content and crawler files
(sitemap.xml, robots.txt).
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import db
from schemas import HeroSlide, ProductList, Settings, ShowcaseEntry

logger = logging.getLogger(__name__)

SETTINGS_ID = "site"
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000").rstrip("/")


def default_settings() -> Dict[str, Any]:
    slides = [
        HeroSlide(id="default-1", title="Summer Sale", subtitle="Get up to 50% off on selected items",
                  button_text="Shop Now", button_link="/products?sale=true", order=1),
        HeroSlide(id="default-2", title="New Arrivals", subtitle="Check out our latest collection",
                  button_text="Explore", button_link="/products?new=true", order=2),
        HeroSlide(id="default-3", title="Flash Deals", subtitle="Limited time offers - Shop now!",
                  button_text="View Deals", button_link="/products?flash=true", order=3),
    ]
    return Settings(
        site={
            "name": "Premium E-Commerce",
            "description": "Your trusted online shopping destination",
            "contact_email": "info@example.com",
            "contact_phone": "+1 (555) 123-4567",
            "address": {"street": "123 Main Street", "city": "New York", "state": "NY",
                        "zip_code": "10001", "country": "United States"},
            "social_links": {},
        },
        seo={"meta_title": "Premium E-Commerce", "meta_description": "", "keywords": [], "robots_txt": None},
        homepage={
            "hero_slider": [s.model_dump() for s in slides],
            "category_showcase": [],
            "featured_products": ProductList(title="Featured Products").model_dump(),
            "trending_products": ProductList(title="Trending Now").model_dump(),
        },
        footer={
            "content": {"about": "Quality products delivered to your door.", "quick_links": [], "customer_service": []},
            "copyright": f"© {datetime.now(timezone.utc).year} Premium E-Commerce. All rights reserved.",
            "payment_methods": ["cod"],
        },
        shipping={
            "free_shipping_threshold": 100,
            "standard_shipping_cost": 10,
            "express_shipping_cost": 25,
            "estimated_delivery": {"standard": "3-5 business days", "express": "1-2 business days"},
        },
        payment={"methods": ["cod"], "cod": {"instructions": "Pay with cash upon delivery."}},
        taxes={"enabled": False, "rate": 0, "included_in_price": True},
        currency={"code": "USD", "symbol": "$", "position": "before"},
        email={
            "from_name": "Premium E-Commerce",
            "from_email": "orders@example.com",
            "templates": {},
        },
    ).model_dump()


def get_settings() -> Dict[str, Any]:
    """Return the settings document, creating it with defaults on first read.

    The document lives under a fixed ``_id`` and is created with a single
    upsert, so concurrent first reads all see the same document.
    """
    settings = db["settings"].find_one({"_id": SETTINGS_ID})
    if settings is not None:
        return settings
    defaults = {**default_settings(), "updated_at": datetime.now(timezone.utc)}
    try:
        settings = db["settings"].find_one_and_update(
            {"_id": SETTINGS_ID},
            {"$setOnInsert": defaults},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        # another upsert created it first
        settings = db["settings"].find_one({"_id": SETTINGS_ID})
    logger.info("Created default settings document")
    return settings


def deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_homepage(homepage: Dict[str, Any]):
    """Raise pydantic.ValidationError if a homepage section is malformed."""
    for slide in homepage.get("hero_slider") or []:
        HeroSlide(**slide)
    for entry in homepage.get("category_showcase") or []:
        ShowcaseEntry(**entry)
    for section in ("featured_products", "trending_products"):
        if homepage.get(section) is not None:
            ProductList(**homepage[section])


def update_settings(changes: Dict[str, Any]) -> Dict[str, Any]:
    current = get_settings()
    merged = deep_merge({k: v for k, v in current.items() if k != "_id"}, changes)
    validate_homepage(merged.get("homepage") or {})
    merged["updated_at"] = datetime.now(timezone.utc)
    db["settings"].replace_one({"_id": current["_id"]}, merged)
    return db["settings"].find_one({"_id": current["_id"]})


def active_hero_slides(settings: Dict[str, Any]) -> List[Dict[str, Any]]:
    slides = (settings.get("homepage") or {}).get("hero_slider") or []
    return sorted((s for s in slides if s.get("is_active", True)), key=lambda s: s.get("order", 0))


def configured_product_ids(settings: Dict[str, Any], section: str) -> List[str]:
    return list(((settings.get("homepage") or {}).get(section) or {}).get("product_ids") or [])


def active_showcase_ids(settings: Dict[str, Any]) -> List[str]:
    entries = (settings.get("homepage") or {}).get("category_showcase") or []
    active = sorted((e for e in entries if e.get("is_active", True)), key=lambda e: e.get("order", 0))
    return [e["category_id"] for e in active]


def _url(loc: str, lastmod: str, changefreq: str, priority: str) -> str:
    return (
        "  <url>\n"
        f"    <loc>{escape(loc)}</loc>\n"
        f"    <lastmod>{lastmod}</lastmod>\n"
        f"    <changefreq>{changefreq}</changefreq>\n"
        f"    <priority>{priority}</priority>\n"
        "  </url>"
    )


def _lastmod(doc: Dict[str, Any], fallback: str) -> str:
    updated = doc.get("updated_at")
    return updated.isoformat() if isinstance(updated, datetime) else fallback


def render_sitemap(products: List[Dict[str, Any]], categories: List[Dict[str, Any]], base_url: Optional[str] = None) -> str:
    base_url = base_url or SITE_URL
    now = datetime.now(timezone.utc).isoformat()
    urls = [_url(base_url, now, "daily", "1.0")]
    urls += [_url(f"{base_url}/products/{p['slug']}", _lastmod(p, now), "weekly", "0.8") for p in products]
    urls += [_url(f"{base_url}/categories/{c['slug']}", _lastmod(c, now), "weekly", "0.7") for c in categories]
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        '<urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">\n'
        + "\n".join(urls)
        + "\n</urlset>"
    )


def render_robots(settings: Dict[str, Any], base_url: Optional[str] = None) -> str:
    custom = (settings.get("seo") or {}).get("robots_txt")
    if custom:
        return custom
    base_url = base_url or SITE_URL
    return f"User-agent: *\nAllow: /\nDisallow: /api/admin\n\n# Sitemap\nSitemap: {base_url}/sitemap.xml\n"
