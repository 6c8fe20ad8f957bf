"""
Knowledge ingestion and search for the shopping assistant.

Snippets live in the "doc" collection. When embedding credentials are
configured each snippet is stored with its embedding and searches rank the
whole collection by cosine similarity; otherwise search falls back to a
case-insensitive containment match on the text.
"""

import logging
import math
import re
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException, Query
from langchain_openai import OpenAIEmbeddings
from pydantic import BaseModel
from pymongo.database import Database

from .auth import get_current_admin
from .catalog import clamp_limit, icontains
from .config import Config
from .database import create_document, get_db
from .events import EventBus, get_event_bus
from .schemas import Doc

logger = logging.getLogger(__name__)

GROUNDING_KEYWORDS = 6
GROUNDING_DOCS = 5
GROUNDING_MAX_CHARS = 4000
FALLBACK_TEXT_CHARS = 500


def cosine_sim(a: Sequence[float] = (), b: Sequence[float] = ()) -> float:
    dot = na = nb = 0.0
    for x, y in zip(a or (), b or ()):
        dot += x * y
        na += x * x
        nb += y * y
    return dot / (math.sqrt(na * nb) or 1)


class Embedder:
    """Thin wrapper over the OpenAI embeddings endpoint."""

    def __init__(self, api_key: str, model: str = "text-embedding-3-small", base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.client = OpenAIEmbeddings(model=model, api_key=api_key, base_url=base_url, timeout=timeout)

    def embed(self, text: str) -> Optional[List[float]]:
        vector = self.client.embed_query(text)
        return list(vector) if vector else None


@lru_cache(maxsize=1)
def build_embedder() -> Optional[Embedder]:
    if not Config.llm_enabled():
        return None
    return Embedder(
        api_key=Config.OPENAI_API_KEY,
        model=Config.OPENAI_EMBEDDING_MODEL,
        base_url=Config.OPENAI_BASE_URL,
        timeout=Config.LLM_TIMEOUT,
    )


def product_snippet(p: Dict[str, Any]) -> str:
    price = p.get("price_inr")
    return (
        f"{p.get('title')}\n"
        f"Category: {p.get('category') or ''}\n"
        f"Description: {p.get('description') or ''}\n"
        f"Price (INR): {'' if price is None else price}\n"
        f"SKU: {p.get('sku') or ''}"
    )


class KnowledgeBase:
    def __init__(self, db: Database, embedder: Optional[Embedder] = None):
        self.db = db
        self.embedder = embedder

    def _embed(self, text: str) -> Optional[List[float]]:
        if self.embedder is None:
            return None
        return self.embedder.embed(text)

    def ingest(self, docs: Optional[List[Dict[str, Any]]] = None, include_products: bool = True) -> List[Dict[str, Any]]:
        payloads: List[Dict[str, Any]] = []
        for d in docs or []:
            if not d or not d.get("text"):
                continue
            payloads.append({"title": d.get("title"), "text": str(d["text"]), "source": d.get("source") or "custom"})

        if include_products:
            for p in self.db["product"].find({"is_active": True}):
                payloads.append({"title": p.get("title"), "text": product_snippet(p), "source": "product"})

        results = []
        for payload in payloads:
            doc = Doc(**payload, embedding=self._embed(payload["text"]))
            doc_id = create_document(self.db, "doc", doc.model_dump())
            results.append({"id": doc_id, "title": doc.title, "source": doc.source})
        logger.info("Ingested %d knowledge snippets", len(results))
        return results

    def search(self, query: str, limit: Optional[int] = 5) -> List[Dict[str, Any]]:
        if not query:
            return []
        limit = clamp_limit(limit)

        if self.embedder is None:
            cursor = self.db["doc"].find({"text": icontains(query)}).limit(limit)
            return [
                {"id": str(d["_id"]), "title": d.get("title"), "text": d.get("text", "")[:FALLBACK_TEXT_CHARS], "source": d.get("source")}
                for d in cursor
            ]

        query_vector = self._embed(query) or []
        # full scan of the doc collection
        ranked = sorted(
            ((cosine_sim(query_vector, d.get("embedding") or []), d) for d in self.db["doc"].find({})),
            key=lambda pair: pair[0],
            reverse=True,
        )[:limit]
        return [
            {"id": str(d["_id"]), "title": d.get("title"), "text": d.get("text"), "score": score, "source": d.get("source")}
            for score, d in ranked
        ]

    def grounding_context(self, message: str) -> str:
        """Store knowledge whose text mentions any of the first few words of ``message``."""
        words = [re.sub(r"[^\w]", "", w) for w in str(message or "").split()[:GROUNDING_KEYWORDS]]
        keywords = "|".join(w for w in words if w)
        if not keywords:
            return ""
        docs = self.db["doc"].find({"text": {"$regex": keywords, "$options": "i"}}).limit(GROUNDING_DOCS)
        return "\n---\n".join(d.get("text", "") for d in docs)[:GROUNDING_MAX_CHARS]


def get_embedder() -> Optional[Embedder]:
    return build_embedder()


def get_knowledge_base(db: Database = Depends(get_db), embedder: Optional[Embedder] = Depends(get_embedder)) -> KnowledgeBase:
    return KnowledgeBase(db, embedder)


# ----------------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------------

router = APIRouter(prefix="/api/knowledge", tags=["knowledge"])


class IngestDoc(BaseModel):
    text: Optional[str] = None
    title: Optional[str] = None
    source: Optional[str] = None


class IngestRequest(BaseModel):
    docs: List[IngestDoc] = []
    include_products: bool = True


@router.post("/ingest")
def ingest(
    body: IngestRequest,
    kb: KnowledgeBase = Depends(get_knowledge_base),
    bus: EventBus = Depends(get_event_bus),
    admin=Depends(get_current_admin),
):
    try:
        data = kb.ingest([d.model_dump() for d in body.docs], include_products=body.include_products)
    except Exception:
        logger.exception("Knowledge ingest failed")
        raise HTTPException(status_code=500, detail="Ingest failed")
    bus.broadcast("knowledge.updated", {"count": len(data)})
    return {"success": True, "data": data}


@router.get("/search")
def search(q: str = Query(""), limit: int = Query(5), kb: KnowledgeBase = Depends(get_knowledge_base)):
    try:
        return {"success": True, "data": kb.search(q, limit)}
    except Exception:
        logger.exception("Knowledge search failed")
        raise HTTPException(status_code=500, detail="Search failed")
