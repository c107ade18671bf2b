import pytest

from shopdesk.intents import (
    INTENT_COMPARISON,
    INTENT_COMPLAINT_SUPPORT,
    INTENT_LEAD_CAPTURE,
    INTENT_ORDER_STATUS,
    INTENT_OTHER,
    INTENT_PRICING_AVAILABILITY,
    INTENT_PRODUCT_DISCOVERY,
    INTENT_RETURN_REFUND,
    TOOL_CRM,
    TOOL_HELPDESK,
    TOOL_ORDER_LOOKUP,
    ROUTING_TABLE,
    IntentSpec,
    ask_for_missing,
    classify_intent,
    missing_fields,
    resolve_spec,
)


@pytest.mark.parametrize(
    "text,intent",
    [
        ("Can you track my parcel?", INTENT_ORDER_STATUS),
        ("Hi, my order 12345 is late", INTENT_ORDER_STATUS),
        ("I want a refund", INTENT_RETURN_REFUND),
        ("The box arrived damaged", INTENT_COMPLAINT_SUPPORT),
        ("Do you sell wholesale?", INTENT_LEAD_CAPTURE),
        ("vitamin d vs d3", INTENT_COMPARISON),
        ("What's the price of this?", INTENT_PRICING_AVAILABILITY),
        ("Can you recommend something for sleep?", INTENT_PRODUCT_DISCOVERY),
        ("hello there", INTENT_OTHER),
    ],
)
def test_classify_intent(text, intent):
    assert classify_intent(text) == intent


def test_first_group_wins():
    assert classify_intent("where is my order? otherwise I want a refund") == INTENT_ORDER_STATUS


def test_unspecified_intents_fall_back_to_other():
    assert resolve_spec(INTENT_COMPARISON).intent == INTENT_OTHER
    assert resolve_spec(INTENT_PRICING_AVAILABILITY).intent == INTENT_OTHER


def test_order_status_any_of():
    spec = ROUTING_TABLE[INTENT_ORDER_STATUS]
    assert missing_fields(spec, {}) == ["order_id"]
    assert missing_fields(spec, {"email": "a@b.com"}) == []
    assert missing_fields(spec, {}, channel_phone="+4915112345") == []


def test_return_refund_all_of():
    spec = ROUTING_TABLE[INTENT_RETURN_REFUND]
    assert missing_fields(spec, {"order_id": "12345"}) == ["item", "reason"]
    assert missing_fields(spec, {"order_id": "1", "item": "mug", "reason": "broken"}) == []


def test_missing_fields_are_deduplicated():
    spec = IntentSpec(intent="x", all_of=("email",), any_of=(("email", "phone"),))
    assert missing_fields(spec, {}) == ["email", "phone"]


def test_ask_for_missing():
    assert ask_for_missing(ROUTING_TABLE[INTENT_RETURN_REFUND], ["order_id"]) == "Please share the Order ID."
    bare = IntentSpec(intent="x", all_of=("item", "reason"))
    assert ask_for_missing(bare, ["item", "reason"]) == "I need a bit more info: item, reason"


def test_tool_plans_select_one_integration():
    assert ROUTING_TABLE[INTENT_ORDER_STATUS].tool_plan.selected() == TOOL_ORDER_LOOKUP
    assert ROUTING_TABLE[INTENT_RETURN_REFUND].tool_plan.selected() == TOOL_HELPDESK
    assert ROUTING_TABLE[INTENT_COMPLAINT_SUPPORT].tool_plan.selected() == TOOL_HELPDESK
    assert ROUTING_TABLE[INTENT_LEAD_CAPTURE].tool_plan.selected() == TOOL_CRM
    assert ROUTING_TABLE[INTENT_PRODUCT_DISCOVERY].tool_plan.selected() is None
