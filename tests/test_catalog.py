"""
Tests for the catalog tools used by the shopping assistant.
"""

from storefront.catalog import MAX_SEARCH_LIMIT, check_availability, clamp_limit, search_products
from storefront.knowledge import KnowledgeBase


class TestSearchProducts:
    """searchProducts tool"""

    def test_price_ceiling_only_returns_cheaper_items(self, db, make_product):
        for price in (499, 1499, 1500, 1501, 7399):
            make_product(price_inr=price)

        results = search_products(db, max_price=1500, limit=10)

        assert {r["price_inr"] for r in results} == {499, 1499, 1500}

    def test_products_without_inr_price_never_match_a_ceiling(self, db, make_product):
        make_product(price_inr=None)
        assert search_products(db, max_price=100000) == []

    def test_inactive_products_are_hidden(self, db, make_product):
        make_product(title="Old Lamp", is_active=False)
        make_product(title="New Lamp")

        titles = [r["title"] for r in search_products(db, query="lamp")]

        assert titles == ["New Lamp"]

    def test_query_and_category_are_case_insensitive_substrings(self, db, make_product):
        make_product(title="Wireless Earbuds", category="electronics")
        make_product(title="Wireless Mouse", category="computers")

        results = search_products(db, query="WIRELESS", category="ELEC")

        assert [r["title"] for r in results] == ["Wireless Earbuds"]

    def test_query_is_matched_literally(self, db, make_product):
        make_product(title="C++ Primer (5th ed.)")
        assert len(search_products(db, query="C++ Primer (5th")) == 1

    def test_limit_is_capped(self, db, make_product):
        for _ in range(MAX_SEARCH_LIMIT + 5):
            make_product()
        assert len(search_products(db, limit=500)) == MAX_SEARCH_LIMIT
        assert len(search_products(db, limit=0)) == 1

    def test_result_shape(self, db, make_product):
        make_product(title="Backpack", sku="BAG-1", images=["a.jpg", "b.jpg"])
        (result,) = search_products(db, query="Backpack")
        assert set(result) == {"id", "title", "sku", "price_inr", "price_usd", "stock", "category", "image"}
        assert result["image"] == "a.jpg"


class TestClampLimit:
    def test_bounds(self):
        assert clamp_limit(None) == 5
        assert clamp_limit(-3) == 1
        assert clamp_limit(7) == 7
        assert clamp_limit(99) == 20


class TestCheckAvailability:
    """checkAvailability tool"""

    def test_sku_takes_precedence_over_title(self, db, make_product):
        make_product(title="Running Shoes", sku="SHOES-1")
        make_product(title="Trail Boots", sku="BOOTS-1")

        result = check_availability(db, sku="SHOES-1", title="Trail Boots")

        assert result["sku"] == "SHOES-1"
        assert result["title"] == "Running Shoes"

    def test_falls_back_to_title_when_sku_unknown(self, db, make_product):
        make_product(title="Trail Boots", sku="BOOTS-1")

        result = check_availability(db, sku="NOPE", title="trail")

        assert result["sku"] == "BOOTS-1"

    def test_sku_match_is_exact(self, db, make_product):
        make_product(sku="SHOES-10")
        assert check_availability(db, sku="SHOES-1") is None

    def test_missing_product_returns_none(self, db):
        assert check_availability(db, sku="X", title="Y") is None
        assert check_availability(db) is None

    def test_ingested_doc_and_sku_lookup_agree(self, db, make_product):
        make_product(title="Wireless Earbuds", sku="ELECTRONICS-EARBUDS-001", stock=4)
        KnowledgeBase(db).ingest(
            [{"text": "Wireless Earbuds SKU: ELECTRONICS-EARBUDS-001", "source": "product"}],
            include_products=False,
        )

        result = check_availability(db, sku="ELECTRONICS-EARBUDS-001")

        assert result is not None
        assert result["sku"] == "ELECTRONICS-EARBUDS-001"
        assert result["stock"] == 4
