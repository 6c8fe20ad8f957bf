"""
Tests for the shopping assistant.

Covers:
- the rule-based responder used when no language model is configured
- the tool-calling responder against a stubbed chat model
- responder selection and the /api/chat endpoint
"""

import json
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from storefront.chat import (
    HELP_MESSAGE,
    TOOLS,
    ChatMessage,
    RuleBasedResponder,
    ToolCallingResponder,
    get_chat_model,
    get_responder,
    select_responder,
)
from storefront.knowledge import KnowledgeBase
from storefront.main import app


def user_says(text):
    return [ChatMessage(role="user", content=text)]


def stub_llm(first, second=None):
    llm = MagicMock()
    llm.bind_tools.return_value.invoke.return_value = first
    llm.invoke.return_value = second or AIMessage(content="")
    return llm


class TestRuleBasedResponder:
    """Replies built straight from the catalog"""

    def test_price_ceiling_lists_only_affordable_items(self, db, make_product):
        make_product(title="Wireless Earbuds", price_inr=1499, stock=45)
        make_product(title="Cotton Tee", price_inr=749, stock=200)
        make_product(title="Headphones", price_inr=7399)

        reply = RuleBasedResponder(db).respond(user_says("earphones under ₹1500"))

        assert reply.reply.startswith("Here are some options under ₹1,500:")
        assert "• Wireless Earbuds - ₹1,499 (stock: 45)" in reply.reply
        assert "Headphones" not in reply.reply
        (result,) = reply.tool_results
        assert result.name == "searchProducts"
        assert all(item["price_inr"] <= 1500 for item in result.data)

    def test_price_ceiling_returns_at_most_five_items(self, db, make_product):
        for _ in range(8):
            make_product(price_inr=100)

        reply = RuleBasedResponder(db).respond(user_says("gifts under 500"))

        assert len(reply.tool_results[0].data) == 5
        assert reply.reply.count("•") == 5

    def test_below_is_also_a_price_ceiling(self, db, make_product):
        make_product(title="Socks", price_inr=199)

        reply = RuleBasedResponder(db).respond(user_says("anything below 800?"))

        assert "Socks - ₹199" in reply.reply

    def test_no_match_under_ceiling(self, db, make_product):
        make_product(price_inr=1999)

        reply = RuleBasedResponder(db).respond(user_says("shoes under 800"))

        assert reply.reply == "I couldn't find items under ₹800. Try a higher budget or a different category."
        assert reply.tool_results == []

    def test_availability_by_sku(self, db, make_product):
        make_product(title="Wireless Earbuds", sku="ELECTRONICS-EARBUDS-001", price_inr=1499, stock=45)

        reply = RuleBasedResponder(db).respond(user_says("Is SKU: ELECTRONICS-EARBUDS-001 in stock?"))

        assert reply.reply == "Wireless Earbuds: In stock, ₹1,499."
        assert reply.tool_results[0].name == "checkAvailability"

    def test_availability_by_title_out_of_stock(self, db, make_product):
        make_product(title="Running Shoes", price_inr=3499, stock=0)

        reply = RuleBasedResponder(db).respond(user_says("Do you have running shoes?"))

        assert reply.reply == "Running Shoes: Out of stock, ₹3,499."

    def test_help_message_when_nothing_recognised(self, db):
        reply = RuleBasedResponder(db).respond(user_says("hello there"))
        assert reply.reply == HELP_MESSAGE

    def test_only_last_message_is_considered(self, db, make_product):
        make_product(title="Socks", price_inr=199)
        history = [
            ChatMessage(role="user", content="anything under 500?"),
            ChatMessage(role="assistant", content="Here are some options"),
            ChatMessage(role="user", content="thanks"),
        ]

        assert RuleBasedResponder(db).respond(history).reply == HELP_MESSAGE

    def test_empty_conversation_gets_help(self, db):
        assert RuleBasedResponder(db).respond([]).reply == HELP_MESSAGE


class TestToolCallingResponder:
    """Conversation forwarded to a chat model with tools bound"""

    def test_plain_answer_skips_second_round(self, db):
        llm = stub_llm(AIMessage(content="Hi! How can I help?"))

        reply = ToolCallingResponder(db, llm).respond(user_says("hi"))

        assert reply.reply == "Hi! How can I help?"
        assert reply.tool_results == []
        llm.bind_tools.assert_called_once_with(TOOLS, tool_choice="auto")
        llm.invoke.assert_not_called()

    def test_search_tool_call_feeds_results_back(self, db, make_product):
        make_product(title="Wireless Earbuds", price_inr=1499)
        make_product(title="Headphones", price_inr=7399)
        first = AIMessage(
            content="",
            tool_calls=[{"name": "searchProducts", "args": {"query": "earbuds", "maxPrice": 1500}, "id": "call_1"}],
        )
        llm = stub_llm(first, AIMessage(content="Wireless Earbuds are ₹1,499."))

        reply = ToolCallingResponder(db, llm).respond(user_says("earbuds under 1500?"))

        assert reply.reply == "Wireless Earbuds are ₹1,499."
        (result,) = reply.tool_results
        assert result.id == "call_1"
        assert [p["title"] for p in result.data] == ["Wireless Earbuds"]

        sent = llm.invoke.call_args[0][0]
        assert sent[-2] is first
        tool_message = sent[-1]
        assert isinstance(tool_message, ToolMessage)
        assert tool_message.tool_call_id == "call_1"
        assert json.loads(tool_message.content)[0]["title"] == "Wireless Earbuds"

    def test_every_tool_call_gets_an_answer(self, db, make_product):
        make_product(title="Running Shoes", sku="SHOES-1", stock=0)
        first = AIMessage(
            content="",
            tool_calls=[
                {"name": "checkAvailability", "args": {"sku": "SHOES-1"}, "id": "a"},
                {"name": "searchProducts", "args": {"category": "shoes"}, "id": "b"},
            ],
        )
        llm = stub_llm(first, AIMessage(content="Sorry, out of stock."))

        reply = ToolCallingResponder(db, llm).respond(user_says("running shoes?"))

        assert [r.id for r in reply.tool_results] == ["a", "b"]
        assert reply.tool_results[0].data["stock"] == 0
        tool_messages = [m for m in llm.invoke.call_args[0][0] if isinstance(m, ToolMessage)]
        assert [m.tool_call_id for m in tool_messages] == ["a", "b"]

    def test_unparseable_arguments_give_empty_result(self, db, make_product):
        make_product()
        first = AIMessage(
            content="",
            invalid_tool_calls=[{"name": "searchProducts", "args": "{not json", "id": "bad", "error": None}],
        )
        llm = stub_llm(first, AIMessage(content="Could you rephrase?"))

        reply = ToolCallingResponder(db, llm).respond(user_says("?"))

        assert reply.tool_results[0].data == []
        assert reply.reply == "Could you rephrase?"

    def test_run_tool_validation(self, db, make_product):
        make_product(sku="SKU-1")
        responder = ToolCallingResponder(db, MagicMock())

        assert responder.run_tool("searchProducts", {"maxPrice": "cheap"}) == []
        assert responder.run_tool("checkAvailability", None) is None
        assert responder.run_tool("checkAvailability", {"sku": "SKU-1"})["sku"] == "SKU-1"
        assert responder.run_tool("deleteEverything", {}) is None

    def test_system_prompt_names_the_store(self, db):
        responder = ToolCallingResponder(db, MagicMock(), store_name="Acme Mart")

        history = responder.build_messages(user_says("hi"))

        assert isinstance(history[0], SystemMessage)
        assert "Acme Mart" in history[0].content
        assert "Never invent stock or price" in history[0].content
        assert isinstance(history[-1], HumanMessage)

    def test_history_roles_are_preserved(self, db):
        responder = ToolCallingResponder(db, MagicMock())
        history = responder.build_messages([
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="assistant", content="hello"),
            ChatMessage(role="user", content="earbuds?"),
        ])
        assert [type(m) for m in history[1:]] == [HumanMessage, AIMessage, HumanMessage]

    def test_other_roles_become_user_turns(self, db):
        responder = ToolCallingResponder(db, MagicMock())
        history = responder.build_messages([
            ChatMessage(role="tool", content=None),
            ChatMessage(role="system", content="be brief"),
        ])
        assert [type(m) for m in history[1:]] == [HumanMessage, SystemMessage]
        assert history[1].content == ""

    def test_store_knowledge_is_added_to_prompt(self, db):
        kb = KnowledgeBase(db)
        kb.ingest([{"text": "Returns are accepted within 30 days."}], include_products=False)
        responder = ToolCallingResponder(db, MagicMock(), knowledge=kb)

        history = responder.build_messages(user_says("What is your returns policy?"))

        assert isinstance(history[1], SystemMessage)
        assert "Returns are accepted within 30 days." in history[1].content

    def test_knowledge_failure_does_not_block_reply(self, db):
        kb = MagicMock()
        kb.grounding_context.side_effect = RuntimeError("mongo down")
        responder = ToolCallingResponder(db, MagicMock(), knowledge=kb)

        history = responder.build_messages(user_says("hi"))

        assert len(history) == 2

    def test_model_failure_propagates(self, db):
        llm = MagicMock()
        llm.bind_tools.return_value.invoke.side_effect = TimeoutError("upstream")
        responder = ToolCallingResponder(db, llm)

        with pytest.raises(TimeoutError):
            responder.respond(user_says("hi"))


class TestSelectResponder:
    def test_no_model_means_rule_based(self, db):
        assert isinstance(select_responder(db, llm=None), RuleBasedResponder)

    def test_model_means_tool_calling(self, db):
        assert isinstance(select_responder(db, llm=MagicMock()), ToolCallingResponder)


class TestChatEndpoint:
    """POST /api/chat"""

    def test_rule_based_reply(self, client, make_product):
        make_product(title="Wireless Earbuds", price_inr=1499)

        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "earphones under ₹1500"}]})

        assert response.status_code == 200
        data = response.json()
        assert "Wireless Earbuds" in data["reply"]
        assert data["tool_results"][0]["name"] == "searchProducts"

    def test_empty_body_gets_help(self, client):
        response = client.post("/api/chat", json={})
        assert response.status_code == 200
        assert response.json()["reply"] == HELP_MESSAGE

    def test_unknown_roles_and_null_content_are_accepted(self, client):
        response = client.post(
            "/api/chat",
            json={"messages": [{"role": "tool", "content": None}, {"role": "function", "content": "earbuds?"}]},
        )

        assert response.status_code == 200
        assert response.json()["reply"] == HELP_MESSAGE

    def test_null_last_message_gets_help(self, client):
        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": None}]})
        assert response.json()["reply"] == HELP_MESSAGE

    def test_configured_model_is_used(self, client):
        llm = stub_llm(AIMessage(content="Hello from the model"))
        app.dependency_overrides[get_chat_model] = lambda: llm

        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.json() == {"reply": "Hello from the model", "tool_results": []}

    def test_upstream_failure_is_500(self, client):
        broken = MagicMock()
        broken.respond.side_effect = RuntimeError("boom")
        app.dependency_overrides[get_responder] = lambda: broken

        response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

        assert response.status_code == 500
        assert response.json()["detail"] == "Chat error"
