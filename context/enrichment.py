"""
Turn input preparation — free-text hints, engine-safe history, profile summary.

    hints = extract_customer_info("my order #AB12345, mail me at a@b.co")
    merge_hints(context.metadata, hints)
    run_input = enrich_with_profile(eligible_history(context.conversation_history), context)
"""
from __future__ import annotations

import json
import re
import structlog
from typing import Any, Optional

from models.schemas import CustomerContext

logger = structlog.get_logger()

PROFILE_MARKER = "Customer Profile"

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")
ORDER_RE = re.compile(r"(?:order|order #|order number|#)[\s:]?([A-Za-z0-9-]{6,})", re.IGNORECASE)
PHONE_RE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")

# hint name → context.metadata key
HINT_KEYS = {
    "email": "customer_email",
    "order_number": "current_order",
    "phone": "customer_phone",
}

_IDENTITY_TRAITS = {"firstName", "lastName", "first_name", "last_name", "email", "phone", "name"}


# ──────────────────────────────────────────────────────────────
#  Hints
# ──────────────────────────────────────────────────────────────

def extract_customer_info(text: str) -> dict[str, str]:
    """Pull email, order number and phone out of a user message (first match each)."""
    found: dict[str, str] = {}
    email = EMAIL_RE.search(text)
    if email:
        found["email"] = email.group(0)
    order = ORDER_RE.search(text)
    if order:
        found["order_number"] = order.group(1)
    phone = PHONE_RE.search(text)
    if phone:
        found["phone"] = phone.group(0)
    return found


def merge_hints(metadata: dict[str, Any], hints: dict[str, str]) -> list[str]:
    """Write non-empty hints into metadata; never clobbers a value with an empty one."""
    updated = []
    for hint, key in HINT_KEYS.items():
        value = hints.get(hint)
        if value:
            metadata[key] = value
            updated.append(key)
    return updated


# ──────────────────────────────────────────────────────────────
#  History
# ──────────────────────────────────────────────────────────────

def eligible_history(history: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Keep only well-formed message items (a role and non-empty content),
    copied to plain dicts. Engine-produced items such as tool calls carry
    no role/content pair and stay out of the next turn's input.
    """
    return [
        {"role": item["role"], "content": item["content"]}
        for item in history
        if isinstance(item, dict) and isinstance(item.get("role"), str)
        and item.get("role") and item.get("content")
    ]


# ──────────────────────────────────────────────────────────────
#  Profile summary
# ──────────────────────────────────────────────────────────────

def _field(profile: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = profile.get(key)
        if value:
            return value
    return None


def _has_profile_marker(items: list[dict[str, Any]]) -> bool:
    return any(
        item.get("role") == "system"
        and isinstance(item.get("content"), str)
        and PROFILE_MARKER in item["content"]
        for item in items
    )


def build_profile_summary(profile: dict[str, Any]) -> str:
    lines = [f"{PROFILE_MARKER}:"]
    if _field(profile, "is_existing_customer", "isExistingCustomer"):
        lines.append("- This is an existing customer")
    else:
        lines.append("- This is a new customer")

    first = _field(profile, "first_name", "firstName")
    if first:
        last = _field(profile, "last_name", "lastName")
        lines.append(f"- Name: {first} {last}" if last else f"- Name: {first}")
    elif profile.get("name"):
        lines.append(f"- Name: {profile['name']}")

    if profile.get("email"):
        lines.append(f"- Email: {profile['email']}")
    if profile.get("phone"):
        lines.append(f"- Phone: {profile['phone']}")

    tier = _field(profile, "customer_tier", "customerTier")
    if tier:
        lines.append(f"- Customer Tier: {tier}")
    for label, keys in (
        ("Purchase History", ("purchase_history", "purchaseHistory")),
        ("Previous Support Tickets", ("support_tickets", "supportTickets")),
        ("Customer Preferences", ("preferences",)),
    ):
        value = _field(profile, *keys)
        if value:
            lines.append(f"- {label}: {json.dumps(value, default=str)}")

    traits = _field(profile, "all_traits", "allTraits") or {}
    extra = ", ".join(
        f"{k}: {v}" for k, v in traits.items()
        if v and k not in _IDENTITY_TRAITS
    )
    if extra:
        lines.append(f"- Additional Customer Data: {extra}")

    return "\n".join(lines) + (
        "\n\nIMPORTANT: This customer is already identified and their profile "
        "information is provided above. You do NOT need to use lookup tools to "
        "find their information - it is already available in this context. Use "
        "this information to provide personalized customer service."
    )


def enrich_with_profile(items: list[dict[str, Any]], context: CustomerContext) -> list[dict[str, Any]]:
    """
    Insert a profile summary system message after the leading system
    messages. Returns the input unchanged when there is no profile or a
    summary is already present.
    """
    profile: Optional[dict[str, Any]] = context.metadata.get("customer_profile")
    if not profile or _has_profile_marker(items):
        return items

    insert_at = next((i for i, item in enumerate(items) if item.get("role") != "system"), len(items))
    enriched = list(items)
    enriched.insert(insert_at, {"role": "system", "content": build_profile_summary(profile)})

    logger.debug("input_enriched_with_profile",
                 subject_id=context.subject_id,
                 is_existing_customer=bool(_field(profile, "is_existing_customer", "isExistingCustomer")),
                 input_length=len(enriched))
    return enriched
