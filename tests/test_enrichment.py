"""Tests for hint extraction, history filtering and profile enrichment."""
from context.enrichment import (
    PROFILE_MARKER, build_profile_summary, eligible_history, enrich_with_profile,
    extract_customer_info, merge_hints,
)
from models.schemas import CustomerContext

SUBJECT = "phone_+14155550100"


class TestExtractCustomerInfo:

    def test_all_hints(self):
        hints = extract_customer_info("Order #AB12345 never came. Reach me at jane@example.com or 415-555-0100")
        assert hints == {
            "email": "jane@example.com",
            "order_number": "AB12345",
            "phone": "415-555-0100",
        }

    def test_order_keyword_without_hash(self):
        assert extract_customer_info("where is order XY-998877?")["order_number"] == "XY-998877"

    def test_short_references_are_not_orders(self):
        assert "order_number" not in extract_customer_info("ticket #123")

    def test_nothing_found(self):
        assert extract_customer_info("hello there") == {}


class TestMergeHints:

    def test_maps_to_metadata_keys(self):
        metadata = {}
        updated = merge_hints(metadata, {"email": "a@b.co", "order_number": "AB12345"})
        assert metadata == {"customer_email": "a@b.co", "current_order": "AB12345"}
        assert updated == ["customer_email", "current_order"]

    def test_empty_hint_never_clobbers(self):
        metadata = {"customer_email": "a@b.co"}
        assert merge_hints(metadata, {"email": ""}) == []
        assert metadata["customer_email"] == "a@b.co"

    def test_newer_hint_overwrites(self):
        metadata = {"current_order": "AB12345"}
        merge_hints(metadata, {"order_number": "CD67890"})
        assert metadata["current_order"] == "CD67890"


class TestEligibleHistory:

    def test_keeps_only_role_and_content_messages(self):
        history = [
            {"role": "user", "content": "hi"},
            {"type": "tool_call", "name": "refund_order"},
            {"role": "assistant", "content": ""},
            {"role": "", "content": "orphan"},
            "not a dict",
            {"role": "assistant", "content": "hello", "extra": True},
        ]
        assert eligible_history(history) == [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

    def test_returns_copies(self):
        history = [{"role": "user", "content": "hi"}]
        eligible_history(history)[0]["content"] = "changed"
        assert history[0]["content"] == "hi"


class TestProfileSummary:

    def test_existing_customer_summary(self):
        summary = build_profile_summary({
            "is_existing_customer": True,
            "first_name": "Jane",
            "last_name": "Doe",
            "email": "jane@example.com",
            "customer_tier": "gold",
            "purchase_history": ["AB12345"],
            "all_traits": {"firstName": "Jane", "favoriteStore": "Downtown", "empty": ""},
        })
        assert summary.startswith(f"{PROFILE_MARKER}:")
        assert "- This is an existing customer" in summary
        assert "- Name: Jane Doe" in summary
        assert "- Email: jane@example.com" in summary
        assert "- Customer Tier: gold" in summary
        assert '- Purchase History: ["AB12345"]' in summary
        assert "- Additional Customer Data: favoriteStore: Downtown" in summary
        assert "firstName: Jane" not in summary
        assert "do NOT need to use lookup tools" in summary

    def test_camel_case_profile(self):
        summary = build_profile_summary({"isExistingCustomer": True, "firstName": "Jane", "customerTier": "silver"})
        assert "- Name: Jane" in summary
        assert "- Customer Tier: silver" in summary

    def test_new_customer(self):
        assert "- This is a new customer" in build_profile_summary({"name": "Sam"})


class TestEnrichWithProfile:

    def _context(self, profile=None):
        ctx = CustomerContext.new(SUBJECT)
        if profile:
            ctx.metadata["customer_profile"] = profile
        return ctx

    def test_no_profile_returns_input(self):
        items = [{"role": "user", "content": "hi"}]
        assert enrich_with_profile(items, self._context()) is items

    def test_inserted_after_leading_system_messages(self):
        items = [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "hi"},
        ]
        enriched = enrich_with_profile(items, self._context({"is_existing_customer": True, "first_name": "Jane"}))
        assert len(enriched) == 3
        assert enriched[0] == items[0]
        assert enriched[1]["role"] == "system"
        assert PROFILE_MARKER in enriched[1]["content"]
        assert enriched[2] == items[1]
        assert len(items) == 2

    def test_only_system_messages_appends(self):
        items = [{"role": "system", "content": "You are helpful."}]
        enriched = enrich_with_profile(items, self._context({"first_name": "Jane"}))
        assert enriched[-1]["content"].startswith(PROFILE_MARKER)

    def test_not_inserted_twice(self):
        ctx = self._context({"first_name": "Jane"})
        once = enrich_with_profile([{"role": "user", "content": "hi"}], ctx)
        assert enrich_with_profile(once, ctx) is once
