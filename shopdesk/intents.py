from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .utils import normalize_phone, normalize_text, unique_preserving_order

INTENT_PRODUCT_DISCOVERY = "product_discovery"
INTENT_PRODUCT_QUESTION = "product_question"
INTENT_COMPARISON = "comparison"
INTENT_PRICING_AVAILABILITY = "pricing_availability"
INTENT_ORDER_STATUS = "order_status"
INTENT_CANCEL_ORDER = "cancel_order"
INTENT_CHANGE_ORDER = "change_order"
INTENT_RETURN_REFUND = "return_refund"
INTENT_REFUND_STATUS = "refund_status"
INTENT_SHIPPING_INFO = "shipping_info"
INTENT_COMPLAINT_SUPPORT = "complaint_support"
INTENT_LEAD_CAPTURE = "lead_capture"
INTENT_HANDOFF_HUMAN = "handoff_human"
INTENT_OTHER = "other"
INTENT_IDENTITY_INTERRUPT = "identity_interrupt"

FIELD_NAME = "name"
FIELD_EMAIL = "email"
FIELD_PHONE = "phone"
FIELD_ORDER_ID = "order_id"
FIELD_ITEM = "item"
FIELD_REASON = "reason"
FIELD_ADDRESS = "address"

TOOL_ORDER_LOOKUP = "order_lookup"
TOOL_CRM = "crm"
TOOL_HELPDESK = "helpdesk"
TOOL_EMAIL = "email"

# Ordered keyword groups; the first group with a hit decides the intent.
INTENT_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (
        INTENT_ORDER_STATUS,
        ("track", "where is my order", "delivery", "order status", "is late", "running late", "not arrived"),
    ),
    (INTENT_RETURN_REFUND, ("return", "refund", "exchange", "cancel")),
    (INTENT_COMPLAINT_SUPPORT, ("complaint", "damaged", "wrong item", "not received")),
    (INTENT_LEAD_CAPTURE, ("bulk", "wholesale", "call me", "contact me")),
    (INTENT_COMPARISON, ("compare", "vs ")),
    (INTENT_PRICING_AVAILABILITY, ("price", "in stock")),
    (INTENT_PRODUCT_DISCOVERY, ("recommend", "suggest", "best for", "help me choose")),
)


@dataclass(frozen=True)
class ToolPlan:
    """At most one integration flag is set per plan."""
    order_lookup: bool = False
    crm_upsert: bool = False
    create_ticket: bool = False
    send_email: bool = False

    def selected(self) -> Optional[str]:
        if self.order_lookup:
            return TOOL_ORDER_LOOKUP
        if self.crm_upsert:
            return TOOL_CRM
        if self.create_ticket:
            return TOOL_HELPDESK
        if self.send_email:
            return TOOL_EMAIL
        return None


@dataclass(frozen=True)
class IntentSpec:
    """Required fields, clarifying questions and tool plan for one intent."""
    intent: str
    all_of: Tuple[str, ...] = ()
    any_of: Tuple[Tuple[str, ...], ...] = ()
    clarify_questions: Tuple[str, ...] = ()
    tool_plan: ToolPlan = field(default_factory=ToolPlan)


ROUTING_TABLE: Dict[str, IntentSpec] = {
    INTENT_PRODUCT_DISCOVERY: IntentSpec(
        intent=INTENT_PRODUCT_DISCOVERY,
        clarify_questions=(
            "What’s your goal (e.g., bone health, sleep, immunity)?",
            "Any preferences (budget, form, allergies, vegetarian/vegan)?",
        ),
    ),
    INTENT_ORDER_STATUS: IntentSpec(
        intent=INTENT_ORDER_STATUS,
        any_of=((FIELD_ORDER_ID,), (FIELD_EMAIL,), (FIELD_PHONE,)),
        clarify_questions=(
            "Please share your Order ID (best). If you don’t have it, share the email or phone used at checkout.",
            "If multiple orders exist, please share the approximate order date.",
        ),
        tool_plan=ToolPlan(order_lookup=True),
    ),
    INTENT_RETURN_REFUND: IntentSpec(
        intent=INTENT_RETURN_REFUND,
        all_of=(FIELD_ORDER_ID, FIELD_ITEM, FIELD_REASON),
        clarify_questions=(
            "Please share the Order ID.",
            "Which item is it, and what’s the reason for return/refund/exchange?",
        ),
        tool_plan=ToolPlan(create_ticket=True),
    ),
    INTENT_COMPLAINT_SUPPORT: IntentSpec(
        intent=INTENT_COMPLAINT_SUPPORT,
        any_of=((FIELD_PHONE,), (FIELD_EMAIL,)),
        clarify_questions=(
            "Sorry about that—can you share your Order ID (if applicable) and what went wrong?",
            "What’s the best contact method—email or phone?",
        ),
        tool_plan=ToolPlan(create_ticket=True),
    ),
    INTENT_LEAD_CAPTURE: IntentSpec(
        intent=INTENT_LEAD_CAPTURE,
        any_of=((FIELD_PHONE,), (FIELD_EMAIL,)),
        clarify_questions=(
            "Sure—what’s the best email or phone number to reach you?",
            "May I have your name as well?",
        ),
        tool_plan=ToolPlan(crm_upsert=True),
    ),
    INTENT_OTHER: IntentSpec(
        intent=INTENT_OTHER,
        clarify_questions=("Is this about (1) choosing a product, (2) order status, or (3) returns/support?",),
    ),
}


def classify_intent(text: str) -> str:
    """Purpose: Map a raw message to an intent by ordered keyword matching.
    Inputs/Outputs: Input is the raw user text; output is an intent constant.
    Side Effects / State: None.
    Dependencies: INTENT_KEYWORDS order and normalize_text.
    Failure Modes: None; unmatched text is INTENT_OTHER.
    If Removed: Every turn routes to the generic reply.
    Testing Notes: "where is my order, I want a refund" is order_status (first group wins).
    """
    # First matching group wins, so group order encodes priority.
    lowered = normalize_text(text)
    for intent, keywords in INTENT_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return intent
    return INTENT_OTHER


def resolve_spec(intent: str) -> IntentSpec:
    """Return the routing spec for an intent, falling back to the generic one."""
    return ROUTING_TABLE.get(intent) or ROUTING_TABLE[INTENT_OTHER]


def _has_value(facts: Dict[str, str], field_name: str, channel_phone: Optional[str]) -> bool:
    if (facts.get(field_name) or "").strip():
        return True
    return field_name == FIELD_PHONE and bool(normalize_phone(channel_phone or ""))


def missing_fields(spec: IntentSpec, facts: Dict[str, str], channel_phone: Optional[str] = None) -> List[str]:
    """Purpose: Compute which fields still block the intent's action.
    Inputs/Outputs: Inputs are the intent spec, merged conversation facts and the
        optional channel phone; output is a de-duplicated list of field names.
    Side Effects / State: None.
    Dependencies: IntentSpec.all_of / any_of.
    Failure Modes: None; an empty list means the gate is open.
    If Removed: Integrations would run without the data they need.
    Testing Notes: order_status with only a channel phone reports nothing missing.
    """
    # all_of fields are each required; any_of needs one fully satisfied group.
    missing = [name for name in spec.all_of if not _has_value(facts, name, channel_phone)]
    if spec.any_of:
        satisfied = any(
            all(_has_value(facts, name, channel_phone) for name in group) for group in spec.any_of
        )
        if not satisfied:
            missing.extend(name for name in spec.any_of[0] if not _has_value(facts, name, channel_phone))
    return unique_preserving_order(missing)


def ask_for_missing(spec: IntentSpec, missing: Sequence[str]) -> str:
    """Pick the single clarifying question for this turn."""
    if spec.clarify_questions:
        return spec.clarify_questions[0]
    return "I need a bit more info: " + ", ".join(missing)
