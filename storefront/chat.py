"""
Conversational product assistant.

Two responders share one interface. With language-model credentials the
conversation goes to a tool-calling chat model that can search the catalog
and check availability; without them a small rule-based responder answers
the two questions it recognises (price ceilings and availability). The
responder is chosen once per request, before any upstream call.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError
from pymongo.database import Database

from .catalog import CheckAvailabilityArgs, SearchProductsArgs, check_availability, search_products
from .config import Config
from .database import get_db
from .knowledge import KnowledgeBase, get_knowledge_base
from .payments import format_inr

logger = logging.getLogger(__name__)

FALLBACK_RESULTS = 5

PRICE_CEILING_PATTERNS = [
    re.compile(r"under\s*₹?\s*(\d+)", re.IGNORECASE),
    re.compile(r"below\s*(\d+)", re.IGNORECASE),
]
SKU_PATTERN = re.compile(r"sku\s*[:#-]?\s*([a-z0-9\-]+)", re.IGNORECASE)
TITLE_PATTERN = re.compile(r"(?:have|stock|available)\s+([^?]+)\??", re.IGNORECASE)

HELP_MESSAGE = (
    'Ask me about availability (by SKU or name) or say "earphones under ₹1500". '
    "Configure OPENAI_API_KEY for richer answers."
)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "searchProducts",
            "description": "Search products by text, category, or max price (INR)",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string"},
                    "maxPrice": {"type": "number"},
                    "category": {"type": "string"},
                    "limit": {"type": "number"},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "checkAvailability",
            "description": "Check a single product availability/price by SKU or title",
            "parameters": {
                "type": "object",
                "properties": {"sku": {"type": "string"}, "title": {"type": "string"}},
            },
        },
    },
]


class ChatMessage(BaseModel):
    # roles other than assistant and system are treated as the user speaking
    role: str = "user"
    content: Optional[str] = ""


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = []


class ToolResult(BaseModel):
    id: Optional[str] = None
    name: str
    data: Any = None


class ChatReply(BaseModel):
    reply: str
    tool_results: List[ToolResult] = []


def last_content(messages: List[ChatMessage]) -> str:
    return (messages[-1].content or "") if messages else ""


class ResponderStrategy(ABC):
    @abstractmethod
    def respond(self, messages: List[ChatMessage]) -> ChatReply:
        ...


class RuleBasedResponder(ResponderStrategy):
    """Answers price-ceiling and availability questions straight from the catalog."""

    def __init__(self, db: Database):
        self.db = db

    def respond(self, messages: List[ChatMessage]) -> ChatReply:
        text = last_content(messages)

        ceiling = self._price_ceiling(text)
        if ceiling is not None:
            results = search_products(self.db, query="", max_price=ceiling, limit=FALLBACK_RESULTS)
            if not results:
                return ChatReply(reply=f"I couldn't find items under ₹{ceiling}. Try a higher budget or a different category.")
            lines = "\n".join(f"• {r['title']} - ₹{format_inr(r['price_inr'])} (stock: {r['stock']})" for r in results)
            return ChatReply(
                reply=f"Here are some options under ₹{format_inr(ceiling)}:\n{lines}",
                tool_results=[ToolResult(name="searchProducts", data=results)],
            )

        sku_match = SKU_PATTERN.search(text)
        title_match = None if sku_match else TITLE_PATTERN.search(text)
        data = check_availability(
            self.db,
            sku=sku_match.group(1) if sku_match else None,
            title=title_match.group(1) if title_match else None,
        )
        if data:
            verdict = "In stock" if (data["stock"] or 0) > 0 else "Out of stock"
            price = f", ₹{format_inr(data['price_inr'])}" if data.get("price_inr") else ""
            return ChatReply(reply=f"{data['title']}: {verdict}{price}.", tool_results=[ToolResult(name="checkAvailability", data=data)])

        return ChatReply(reply=HELP_MESSAGE)

    @staticmethod
    def _price_ceiling(text: str) -> Optional[int]:
        for pattern in PRICE_CEILING_PATTERNS:
            m = pattern.search(text)
            if m:
                return int(m.group(1))
        return None


class ToolCallingResponder(ResponderStrategy):
    """Forwards the conversation to a chat model with catalog tools bound."""

    def __init__(self, db: Database, llm, knowledge: Optional[KnowledgeBase] = None, store_name: str = "our store"):
        self.db = db
        self.llm = llm
        self.knowledge = knowledge
        self.store_name = store_name

    def system_prompt(self) -> str:
        return (
            f"You are an ecommerce assistant for {self.store_name}. Be concise and factual. "
            "Use tools to check stock and prices from the database. Currency default is INR. "
            "Never invent stock or price."
        )

    def _grounding(self, messages: List[ChatMessage]) -> str:
        if self.knowledge is None:
            return ""
        try:
            return self.knowledge.grounding_context(last_content(messages))
        except Exception:
            logger.warning("Knowledge lookup failed; answering without store context", exc_info=True)
            return ""

    def build_messages(self, messages: List[ChatMessage]) -> List[BaseMessage]:
        out: List[BaseMessage] = [SystemMessage(content=self.system_prompt())]
        context = self._grounding(messages)
        if context:
            out.append(SystemMessage(content=f"Store knowledge to reference:\n{context}"))
        for m in messages:
            if m.role == "assistant":
                out.append(AIMessage(content=m.content or ""))
            elif m.role == "system":
                out.append(SystemMessage(content=m.content or ""))
            else:
                out.append(HumanMessage(content=m.content or ""))
        return out

    def run_tool(self, name: str, args: Any) -> Any:
        """Execute one tool call. Arguments that fail validation give an empty result."""
        if name == "searchProducts":
            try:
                parsed = SearchProductsArgs.model_validate(args)
            except ValidationError:
                return []
            return search_products(self.db, query=parsed.query, max_price=parsed.maxPrice, category=parsed.category, limit=parsed.limit)
        if name == "checkAvailability":
            try:
                parsed = CheckAvailabilityArgs.model_validate(args)
            except ValidationError:
                return None
            return check_availability(self.db, sku=parsed.sku, title=parsed.title)
        logger.warning("Model requested unknown tool %r", name)
        return None

    def respond(self, messages: List[ChatMessage]) -> ChatReply:
        history = self.build_messages(messages)
        first = self.llm.bind_tools(TOOLS, tool_choice="auto").invoke(history)

        calls: List[Dict[str, Any]] = list(getattr(first, "tool_calls", None) or [])
        # unparseable JSON arguments land here; they still need an answer
        for bad in getattr(first, "invalid_tool_calls", None) or []:
            calls.append({"id": bad.get("id"), "name": bad.get("name"), "args": None})

        if not calls:
            return ChatReply(reply=first.content or "")

        results: List[ToolResult] = []
        tool_messages: List[ToolMessage] = []
        for call in calls:
            data = self.run_tool(call.get("name"), call.get("args"))
            results.append(ToolResult(id=call.get("id"), name=call.get("name") or "", data=data))
            tool_messages.append(ToolMessage(content=json.dumps(data, default=str), tool_call_id=call.get("id") or "", name=call.get("name")))

        second = self.llm.invoke(history + [first] + tool_messages)
        return ChatReply(reply=second.content or "", tool_results=results)


@lru_cache(maxsize=1)
def build_chat_model() -> Optional[ChatOpenAI]:
    if not Config.llm_enabled():
        return None
    return ChatOpenAI(
        model=Config.OPENAI_MODEL,
        api_key=Config.OPENAI_API_KEY,
        base_url=Config.OPENAI_BASE_URL,
        temperature=0.2,
        timeout=Config.LLM_TIMEOUT,
    )


def select_responder(db: Database, llm=None, knowledge: Optional[KnowledgeBase] = None) -> ResponderStrategy:
    if llm is None:
        return RuleBasedResponder(db)
    return ToolCallingResponder(db, llm, knowledge=knowledge, store_name=Config.STORE_NAME)


def get_chat_model():
    return build_chat_model()


def get_responder(
    db: Database = Depends(get_db),
    knowledge: KnowledgeBase = Depends(get_knowledge_base),
    llm=Depends(get_chat_model),
) -> ResponderStrategy:
    return select_responder(db, llm=llm, knowledge=knowledge)


# ----------------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------------

router = APIRouter(prefix="/api/chat", tags=["chat"])


@router.post("", response_model=ChatReply)
def chat(body: ChatRequest, responder: ResponderStrategy = Depends(get_responder)):
    try:
        return responder.respond(body.messages)
    except Exception:
        logger.exception("Chat error")
        raise HTTPException(status_code=500, detail="Chat error")
