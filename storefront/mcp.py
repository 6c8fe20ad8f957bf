"""
Product helpers for the chat widget: structured search, recommendations and
per-product availability.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo.database import Database

from .catalog import icontains
from .database import doc_to_public, get_db, to_object_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp", tags=["mcp"])

INTENT_SORTS = {
    "buy": [("rating.average", -1), ("price_inr", 1)],
    "compare": [("rating.average", -1), ("created_at", -1)],
    "browse": [("is_trending", -1), ("rating.average", -1), ("created_at", -1)],
}

RECOMMENDATION_SORT = [("rating.average", -1), ("is_trending", -1), ("is_new", -1), ("created_at", -1)]


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def search_insights(products: List[Dict[str, Any]]) -> Dict[str, Any]:
    prices = [p["price_inr"] for p in products if p.get("price_inr") is not None]
    return {
        "total_found": len(products),
        "price_range": {"min": min(prices) if prices else None, "max": max(prices) if prices else None},
        "categories": sorted({p["category"] for p in products if p.get("category")}),
        "brands": sorted({p["brand"] for p in products if p.get("brand")}),
    }


@router.get("/smart-search")
def smart_search(
    query: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    in_stock: bool = Query(True),
    limit: int = Query(10, ge=1, le=50),
    intent: Optional[str] = Query(None, description="buy | compare | browse"),
    db: Database = Depends(get_db),
):
    try:
        filt: Dict[str, Any] = {"is_active": True}
        if query:
            terms = [t for t in query.lower().split() if t]
            filt["$or"] = [
                {"title": icontains(query)},
                {"description": icontains(query)},
                {"brand": icontains(query)},
                {"features": icontains(query)},
                {"tags": {"$in": terms}},
            ]
        if category:
            filt["category"] = category
        if min_price is not None or max_price is not None:
            filt["price_inr"] = {}
            if min_price is not None:
                filt["price_inr"]["$gte"] = min_price
            if max_price is not None:
                filt["price_inr"]["$lte"] = max_price
        if in_stock:
            filt["stock"] = {"$gt": 0}

        sort = INTENT_SORTS.get(intent or "browse", INTENT_SORTS["browse"])
        products = [doc_to_public(p) for p in db["product"].find(filt).sort(sort).limit(limit)]
        return {
            "success": True,
            "count": len(products),
            "data": products,
            "insights": search_insights(products),
            "search_context": {
                "query": query,
                "intent": intent or "browse",
                "filters": {"category": category, "min_price": min_price, "max_price": max_price, "in_stock": in_stock},
            },
        }
    except Exception:
        logger.exception("MCP smart search failed")
        raise HTTPException(status_code=500, detail="Failed to perform smart search")


@router.get("/ai-recommendations")
def ai_recommendations(
    query: Optional[str] = Query(None),
    categories: Optional[str] = Query(None, description="Comma separated categories from the local wishlist"),
    brands: Optional[str] = Query(None, description="Comma separated brands from the local wishlist"),
    exclude: Optional[str] = Query(None, description="Comma separated product ids to leave out"),
    limit: int = Query(5, ge=1, le=50),
    db: Database = Depends(get_db),
):
    try:
        wanted_categories, wanted_brands = _split(categories), _split(brands)
        has_preferences = bool(wanted_categories or wanted_brands)

        filt: Dict[str, Any] = {"is_active": True}
        clauses: List[Dict[str, Any]] = []
        if query:
            clauses += [{"title": icontains(query)}, {"description": icontains(query)}]
        if wanted_categories:
            clauses.append({"category": {"$in": wanted_categories}})
        if wanted_brands:
            clauses.append({"brand": {"$in": wanted_brands}})
        if clauses:
            filt["$or"] = clauses

        excluded = [oid for oid in (to_object_id(x) for x in _split(exclude)) if oid]
        if excluded:
            filt["_id"] = {"$nin": excluded}

        items = [doc_to_public(p) for p in db["product"].find(filt).sort(RECOMMENDATION_SORT).limit(limit)]
        return {
            "success": True,
            "count": len(items),
            "data": items,
            "context": {"based_on": "user_preferences" if has_preferences else "trending", "query": query},
        }
    except Exception:
        logger.exception("MCP recommendations failed")
        raise HTTPException(status_code=500, detail="Failed to get AI recommendations")


@router.get("/products/{product_id}/availability")
def product_availability(product_id: str, quantity: int = Query(1, ge=1), db: Database = Depends(get_db)):
    oid = to_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid else None
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    stock = product.get("stock", 0)
    return {
        "success": True,
        "data": {
            "product": doc_to_public(product),
            "availability": {
                "in_stock": bool(product.get("is_active")) and stock >= quantity,
                "available_quantity": stock,
            },
        },
    }
