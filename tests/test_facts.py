from shopdesk.facts import EXTRACTION_FIELDS, contact_candidates, extract_facts, extract_with_patterns

from conftest import FakeLLM


def test_worked_example_regex_facts():
    facts = extract_with_patterns("Hi, my order 12345 is late, email is a@B.com")
    assert facts == {"order_id": "12345", "email": "a@b.com"}


def test_phone_is_normalized():
    facts = extract_with_patterns("call me at +1 415-555-0100 please")
    assert facts["phone"] == "+14155550100"


def test_order_number_is_not_mistaken_for_phone():
    facts = extract_with_patterns("order 1234567890 never arrived")
    assert facts == {"order_id": "1234567890"}


def test_order_status_words_are_not_an_order_id():
    assert "order_id" not in extract_with_patterns("what is my order status")


def test_name_phrase_and_hash_order():
    facts = extract_with_patterns("Hi, my name is Jane Doe. Order #AB-1234")
    assert facts["name"] == "Jane Doe"
    assert facts["order_id"] == "AB-1234"


def test_overlong_name_is_ignored():
    text = "my name is " + "x" * 80
    assert "name" not in extract_with_patterns(text)


def test_channel_phone_is_authoritative():
    extractor = FakeLLM(extracted={"phone": "+1 999 999 9999"})
    result = extract_facts("reach me on +1 415 555 0100", channel_phone="+49 151 1234567", extractor=extractor)
    assert result.facts["phone"] == "+491511234567"
    assert result.error is None


def test_model_values_overlay_regex_values():
    extractor = FakeLLM(extracted={"email": "X@Y.COM", "item": " blue mug ", "reason": "damaged", "name": "  "})
    result = extract_facts("email a@b.com, order 12345", extractor=extractor)
    assert result.facts == {
        "email": "x@y.com",
        "order_id": "12345",
        "item": "blue mug",
        "reason": "damaged",
    }
    assert extractor.extract_calls == ["email a@b.com, order 12345"]


def test_extractor_failure_keeps_regex_facts(failing_extractor):
    result = extract_facts("my order 12345, email a@b.com", extractor=failing_extractor)
    assert result.facts == {"order_id": "12345", "email": "a@b.com"}
    assert result.error == "extractor failed: timeout"


def test_extraction_is_idempotent():
    extractor = FakeLLM(extracted={"item": "lamp"})
    first = extract_facts("order 55555 lamp broke, a@b.com", extractor=extractor)
    second = extract_facts("order 55555 lamp broke, a@b.com", extractor=extractor)
    assert first.facts == second.facts


def test_schema_is_fixed():
    assert EXTRACTION_FIELDS == ("name", "email", "phone", "order_id", "item", "reason", "address")


def test_contact_candidates_order():
    assert contact_candidates({"phone": "+1 415 555 0100", "email": "A@b.com"}) == [
        ("email", "a@b.com"),
        ("phone", "+14155550100"),
    ]


def test_dates_and_times_are_not_phones():
    assert "phone" not in extract_with_patterns("my parcel was due on 2024-01-15")
    assert "phone" not in extract_with_patterns("it was promised for 15.01.2024")
    assert "phone" not in extract_with_patterns("delivered 01/15/2024 around noon")
    assert "phone" not in extract_with_patterns("window was 2024-01-15 10:30 to 12:00")


def test_short_digit_runs_need_a_country_prefix():
    assert "phone" not in extract_with_patterns("the code on the box is 1234 56789")
    assert extract_with_patterns("whatsapp me on +44 791 1234")["phone"] == "+447911234"
