"""
Catalog lookups shared by the shopping assistant and the MCP helpers.

These are the two operations the assistant exposes as callable tools:
``searchProducts`` and ``checkAvailability``.
"""

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from pymongo.database import Database

MAX_SEARCH_LIMIT = 20


class SearchProductsArgs(BaseModel):
    query: Optional[str] = None
    maxPrice: Optional[float] = None
    category: Optional[str] = None
    limit: Optional[int] = None


class CheckAvailabilityArgs(BaseModel):
    sku: Optional[str] = None
    title: Optional[str] = None


def clamp_limit(limit: Optional[int], default: int = 5) -> int:
    if limit is None:
        limit = default
    return max(1, min(MAX_SEARCH_LIMIT, int(limit)))


def icontains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def _first_image(p: Dict[str, Any]) -> Optional[str]:
    images = p.get("images")
    return p.get("image_url") or (images[0] if isinstance(images, list) and images else None)


def search_products(
    db: Database,
    query: Optional[str] = None,
    max_price: Optional[float] = None,
    category: Optional[str] = None,
    limit: Optional[int] = 5,
) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"is_active": True}
    if query:
        filt["title"] = icontains(query)
    if category:
        filt["category"] = icontains(category)
    if max_price is not None:
        filt["price_inr"] = {"$lte": max_price}

    cursor = db["product"].find(filt).limit(clamp_limit(limit))
    return [
        {
            "id": str(p["_id"]),
            "title": p.get("title"),
            "sku": p.get("sku"),
            "price_inr": p.get("price_inr"),
            "price_usd": p.get("price_usd"),
            "stock": p.get("stock", 0),
            "category": p.get("category"),
            "image": _first_image(p),
        }
        for p in cursor
    ]


def check_availability(db: Database, sku: Optional[str] = None, title: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Exact SKU match wins; the title is only consulted when the SKU finds nothing."""
    product = None
    if sku:
        product = db["product"].find_one({"sku": sku})
    if not product and title:
        product = db["product"].find_one({"title": icontains(title.strip())})
    if not product:
        return None
    return {
        "id": str(product["_id"]),
        "title": product.get("title"),
        "sku": product.get("sku"),
        "stock": product.get("stock", 0),
        "price_inr": product.get("price_inr"),
        "price_usd": product.get("price_usd"),
        "category": product.get("category"),
    }


def rating_summary(reviews: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Average and count over a product's reviews; no reviews means zero."""
    if not reviews:
        return {"average": 0, "count": 0}
    return {"average": sum(r["rating"] for r in reviews) / len(reviews), "count": len(reviews)}
