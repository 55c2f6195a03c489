"""
Catalog logic: the category tree and the product query builder.

Everything here is pure. Functions take plain Mongo documents (dicts) and
return plain data, so route handlers only fetch, call and respond.
"""
import math
import re
import unicodedata
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

MAX_PRICE = 999999.0
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
LOW_STOCK_THRESHOLD = 20

SORTABLE_FIELDS = {
    "created_at": "created_at",
    "name": "name",
    "price": "price_floor",
    "rating": "rating.average",
    "sales": "sales_count",
}


class CategoryCycleError(ValueError):
    pass


def doc_id(doc: Dict[str, Any]) -> str:
    return str(doc.get("_id", doc.get("id")))


def slugify(value: str) -> str:
    ascii_value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
        .lower()
    )
    return re.sub(r"[^a-z0-9]+", "-", ascii_value).strip("-")


# Category tree

def sort_categories(categories: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(categories, key=lambda c: (c.get("display_order", 0), c.get("name", "")))


def _group_by_parent(categories: Iterable[Dict[str, Any]]) -> Dict[Optional[str], List[Dict[str, Any]]]:
    groups: Dict[Optional[str], List[Dict[str, Any]]] = defaultdict(list)
    for cat in categories:
        parent = cat.get("parent")
        groups[str(parent) if parent else None].append(cat)
    return groups


def build_category_tree(categories: Iterable[Dict[str, Any]], parent_id: Optional[str] = None) -> List[Dict[str, Any]]:
    """Nest a flat list of categories under their parents.

    Siblings keep the order of the flat input after one sort by
    (display_order, name). The input documents are not modified; every node
    in the result is a shallow copy with a ``children`` list.

    A category reachable from itself is not expanded a second time, so a
    corrupted parent chain yields a truncated tree instead of unbounded
    recursion.
    """
    groups = _group_by_parent(sort_categories(categories))

    def build(pid: Optional[str], ancestors: Set[str]) -> List[Dict[str, Any]]:
        nodes = []
        for cat in groups.get(pid, []):
            cid = doc_id(cat)
            if cid in ancestors:
                continue
            node = dict(cat)
            node["children"] = build(cid, ancestors | {cid})
            nodes.append(node)
        return nodes

    return build(str(parent_id) if parent_id else None, set())


def collect_descendant_ids(root_id: str, categories: Iterable[Dict[str, Any]]) -> List[str]:
    """Return ``root_id`` followed by the ids of every category beneath it."""
    groups = _group_by_parent(categories)
    root_id = str(root_id)
    result = [root_id]
    seen = {root_id}
    stack = [root_id]
    while stack:
        current = stack.pop()
        for child in groups.get(current, []):
            cid = doc_id(child)
            if cid not in seen:
                seen.add(cid)
                result.append(cid)
                stack.append(cid)
    return result


def would_create_cycle(category_id: str, new_parent_id: Optional[str], categories: Iterable[Dict[str, Any]]) -> bool:
    """True if making ``new_parent_id`` the parent of ``category_id`` closes a loop."""
    if not new_parent_id:
        return False
    parents = {doc_id(c): (str(c["parent"]) if c.get("parent") else None) for c in categories}
    current: Optional[str] = str(new_parent_id)
    visited = set()
    while current and current not in visited:
        if current == str(category_id):
            return True
        visited.add(current)
        current = parents.get(current)
    return False


def check_reparent(category_id: str, new_parent_id: Optional[str], categories: Iterable[Dict[str, Any]]):
    if would_create_cycle(category_id, new_parent_id, categories):
        raise CategoryCycleError("A category cannot be moved under itself or its descendants")


def compute_level_and_path(slug: str, parent: Optional[Dict[str, Any]]) -> Tuple[int, str]:
    if not parent:
        return 0, slug
    return parent.get("level", 0) + 1, f"{parent['path']}/{slug}"


def rebuild_subtree_paths(root: Dict[str, Any], categories: Iterable[Dict[str, Any]]) -> Dict[str, Tuple[int, str]]:
    """Recompute level and path for every descendant of ``root``.

    ``root`` must already carry its new level and path. Returns a mapping of
    descendant id to (level, path); the root itself is not included.
    """
    groups = _group_by_parent(categories)
    updates: Dict[str, Tuple[int, str]] = {}
    stack = [(doc_id(root), root["level"], root["path"])]
    seen = {doc_id(root)}
    while stack:
        pid, level, path = stack.pop()
        for child in groups.get(pid, []):
            cid = doc_id(child)
            if cid in seen:
                continue
            seen.add(cid)
            child_level, child_path = level + 1, f"{path}/{child['slug']}"
            updates[cid] = (child_level, child_path)
            stack.append((cid, child_level, child_path))
    return updates


# Product queries

@dataclass
class ProductQuery:
    search: str = ""
    category: str = ""
    min_price: float = 0.0
    max_price: float = MAX_PRICE
    min_rating: float = 0.0
    in_stock: bool = False
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    limit: int = DEFAULT_LIMIT

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.limit


def parse_float(value: Optional[str], default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_bool(value: Optional[str]) -> bool:
    return str(value).lower() in ("true", "1", "yes")


def parse_product_query(params: Dict[str, Optional[str]]) -> ProductQuery:
    """Read list-endpoint parameters leniently; bad numbers fall back to defaults."""
    page = parse_int(params.get("page"), 1)
    limit = parse_int(params.get("limit"), DEFAULT_LIMIT)
    sort_order = (params.get("sort_order") or "desc").lower()
    return ProductQuery(
        search=(params.get("search") or "").strip(),
        category=(params.get("category") or "").strip(),
        min_price=max(parse_float(params.get("min_price"), 0.0), 0.0),
        max_price=parse_float(params.get("max_price"), MAX_PRICE),
        min_rating=parse_float(params.get("min_rating"), 0.0),
        in_stock=parse_bool(params.get("in_stock")),
        sort_by=params.get("sort_by") or "created_at",
        sort_order="asc" if sort_order == "asc" else "desc",
        page=max(page, 1),
        limit=min(max(limit, 1), MAX_LIMIT),
    )


def text_search_clause(search: str, fields: Iterable[str]) -> Dict[str, Any]:
    pattern = re.escape(search)
    return {"$or": [{field: {"$regex": pattern, "$options": "i"}} for field in fields]}


def build_product_filter(query: ProductQuery, category_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    clauses: List[Dict[str, Any]] = [{"status": "active"}]
    if query.search:
        clauses.append(text_search_clause(query.search, ("name", "description", "tags", "sku")))
    if category_ids is not None:
        clauses.append({"categories": {"$in": list(category_ids)}})
    if query.min_price > 0 or query.max_price < MAX_PRICE:
        clauses.append({"price_floor": {"$gte": query.min_price, "$lte": query.max_price}})
    if query.min_rating > 0:
        clauses.append({"rating.average": {"$gte": query.min_rating}})
    if query.in_stock:
        clauses.append({"$or": [
            {"quantity": {"$gt": 0}},
            {"track_quantity": False},
            {"allow_backorder": True},
        ]})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def build_sort(sort_by: str, sort_order: str) -> List[Tuple[str, int]]:
    """Map a requested sort onto a whitelisted field.

    ``-price`` is shorthand for price descending. Unknown fields sort by
    creation time. Ties are broken by id so pages are stable.
    """
    direction = 1 if sort_order == "asc" else -1
    if sort_by.startswith("-"):
        sort_by, direction = sort_by[1:], -1
    field = SORTABLE_FIELDS.get(sort_by, "created_at")
    return [(field, direction), ("_id", direction)]


def paginate(total: int, page: int, limit: int) -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        "total_products": total,
        "has_next_page": page < total_pages,
        "has_previous_page": page > 1,
        "limit": limit,
    }


# Product presentation

def price_floor(price: float, variants: Iterable[Dict[str, Any]]) -> float:
    prices = [price] + [v["price"] for v in variants if v.get("price") is not None]
    return min(prices)


def normalize_images(images: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Make exactly one image primary, defaulting to the first."""
    if not images:
        return []
    primary = next((i for i, img in enumerate(images) if img.get("is_primary")), 0)
    return [{**img, "is_primary": i == primary} for i, img in enumerate(images)]


def discount_percentage(price: float, compare_price: Optional[float]) -> int:
    if compare_price and compare_price > price:
        return round((compare_price - price) / compare_price * 100)
    return 0


def stock_status(product: Dict[str, Any]) -> str:
    if not product.get("track_quantity", True):
        return "in_stock"
    quantity = product.get("quantity", 0)
    if quantity > LOW_STOCK_THRESHOLD:
        return "in_stock"
    if quantity > 0:
        return "low_stock"
    if product.get("allow_backorder"):
        return "backorder"
    return "out_of_stock"


def primary_image(product: Dict[str, Any]) -> Optional[str]:
    images = product.get("images") or []
    for img in images:
        if img.get("is_primary"):
            return img.get("url")
    return images[0].get("url") if images else None


def product_card(product: Dict[str, Any]) -> Dict[str, Any]:
    """Storefront listing shape of a product document."""
    rating = product.get("rating") or {}
    status = stock_status(product)
    return {
        "id": doc_id(product),
        "name": product.get("name"),
        "slug": product.get("slug"),
        "description": product.get("description", ""),
        "image": primary_image(product),
        "images": [img.get("url") for img in product.get("images", [])],
        "price": product.get("price"),
        "price_floor": product.get("price_floor", product.get("price")),
        "original_price": product.get("compare_price") or product.get("price"),
        "discount": discount_percentage(product.get("price", 0), product.get("compare_price")),
        "average_rating": rating.get("average", 0),
        "review_count": rating.get("count", 0),
        "stock_status": status,
        "in_stock": status in ("in_stock", "low_stock", "backorder"),
        "is_featured": product.get("featured", False),
        "tags": product.get("tags", []),
    }
