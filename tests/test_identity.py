from shopdesk.audit import (
    EVENT_CONFLICT,
    EVENT_IDENTITY_RESOLVED,
    EVENT_KEY_ADDED,
    EVENT_SWITCH_CONFIRMED,
    EVENT_SWITCH_DECLINED,
    EVENT_TOOL_CALL,
)
from shopdesk.errors import DuplicateKeyError
from shopdesk.identity import (
    CONFLICT_REPLY,
    STATE_ANONYMOUS_BOUND,
    STATE_CONFLICT_PENDING,
    STATE_IDENTIFIED,
    IdentityResolver,
    Inbound,
    classify_switch_answer,
    derive_identity_state,
)
from shopdesk.models import AppUser, IdentityStatus
from shopdesk.store import JsonStore

from conftest import FakeLLM


def web(session_id, text):
    return Inbound(channel="web", session_id=session_id, user_text=text)


def event_types(store):
    return [event.event_type for event in store.events()]


def seed_owner(store, email="a@b.com"):
    owner = store.create_anonymous_user("other-session", "web")
    store.insert_identity_key(owner.id, "email", email)
    return owner


def test_first_message_creates_anonymous_user_and_session(store):
    resolution = IdentityResolver(store).resolve(web("s1", "hello"))
    assert resolution.interrupt is None
    assert resolution.user.identity_tier == 0
    assert resolution.user.primary_identifier == "session:s1"
    assert resolution.state == STATE_ANONYMOUS_BOUND
    assert len(store.app_users()) == 1
    assert store.get_user_session("s1").user_id == resolution.user.id


def test_same_session_resolves_to_same_user(store):
    resolver = IdentityResolver(store)
    first = resolver.resolve(web("s1", "hello"))
    second = resolver.resolve(web("s1", "hello again"))
    assert first.user.id == second.user.id
    assert len(store.app_users()) == 1


def test_new_contact_is_claimed_and_user_identified(store):
    resolution = IdentityResolver(store).resolve(web("s1", "my email is A@B.com"))
    user = store.get_app_user(resolution.user.id)
    assert store.lookup_identity_key("email", "a@b.com").user_id == user.id
    assert user.identity_tier == 2
    assert user.identity_status == IdentityStatus.IDENTIFIED
    assert user.confidence_score == 80
    assert user.primary_identifier == "a@b.com"
    assert resolution.state == STATE_IDENTIFIED
    assert EVENT_KEY_ADDED in event_types(store)
    assert EVENT_IDENTITY_RESOLVED in event_types(store)


def test_conflicting_email_interrupts_without_mutation(store):
    owner = seed_owner(store)
    resolver = IdentityResolver(store)
    current = resolver.resolve(web("s1", "hello")).user

    resolution = resolver.resolve(web("s1", "I'm a@b.com"))

    assert resolution.interrupt == CONFLICT_REPLY
    assert resolution.state == STATE_CONFLICT_PENDING
    assert store.get_app_user(current.id).email is None
    assert store.lookup_identity_key("email", "a@b.com").user_id == owner.id
    pending = store.get_user_session("s1").pending_switch
    assert pending.target_user_id == owner.id
    assert (pending.key_type, pending.key_value) == ("email", "a@b.com")
    conflict = [event for event in store.events() if event.event_type == EVENT_CONFLICT][0]
    assert conflict.payload["other_user_id"] == owner.id


def test_switch_rebinds_session(store):
    owner = seed_owner(store)
    resolver = IdentityResolver(store)
    current = resolver.resolve(web("s1", "hello")).user
    resolver.resolve(web("s1", "a@b.com"))

    resolution = resolver.resolve(web("s1", "  SWITCH "))

    assert resolution.interrupt is None
    assert resolution.user.id == owner.id
    session = store.get_user_session("s1")
    assert session.user_id == owner.id
    assert session.pending_switch is None
    confirmed = [event for event in store.events() if event.event_type == EVENT_SWITCH_CONFIRMED][0]
    assert confirmed.payload == {"from_user_id": current.id, "to_user_id": owner.id}


def test_guest_keeps_original_binding(store):
    seed_owner(store)
    resolver = IdentityResolver(store)
    current = resolver.resolve(web("s1", "hello")).user
    resolver.resolve(web("s1", "a@b.com"))

    resolution = resolver.resolve(web("s1", "guest"))

    assert resolution.interrupt is None
    assert resolution.user.id == current.id
    session = store.get_user_session("s1")
    assert session.user_id == current.id
    assert session.pending_switch is None
    assert EVENT_SWITCH_DECLINED in event_types(store)


def test_unrelated_reply_repeats_prompt_and_keeps_pending(store):
    seed_owner(store)
    resolver = IdentityResolver(store)
    resolver.resolve(web("s1", "hello"))
    resolver.resolve(web("s1", "a@b.com"))
    before = store.get_user_session("s1")

    resolution = resolver.resolve(web("s1", "what is my order status"))

    assert resolution.interrupt == CONFLICT_REPLY
    after = store.get_user_session("s1")
    assert after.pending_switch == before.pending_switch
    assert (after.user_id, after.metadata) == (before.user_id, before.metadata)


def test_email_conflict_wins_before_phone(store):
    email_owner = seed_owner(store)
    phone_owner = store.create_anonymous_user("third-session", "web")
    store.insert_identity_key(phone_owner.id, "phone", "+14155550100")
    resolver = IdentityResolver(store)
    resolver.resolve(web("s1", "hi"))

    resolver.resolve(web("s1", "a@b.com or +1 415 555 0100"))

    assert store.get_user_session("s1").pending_switch.target_user_id == email_owner.id


def test_channel_phone_identifies_user(store):
    inbound = Inbound(channel="whatsapp", session_id="wa:+4915112345678", user_text="hi", channel_phone="+4915112345678")
    resolution = IdentityResolver(store).resolve(inbound)
    assert resolution.user.phone == "+4915112345678"
    assert resolution.user.identity_tier == 2


def test_bootstrap_duplicate_anchor_reads_existing_row():
    class RacingStore(JsonStore):
        def create_anonymous_user(self, anonymous_id, channel):
            super().create_anonymous_user(anonymous_id, channel)
            raise DuplicateKeyError("app_users: duplicate anonymous_id", status_code=409)

    store = RacingStore(None)
    resolution = IdentityResolver(store).resolve(web("s1", "hello"))
    assert resolution.user.anonymous_id == "s1"
    assert len(store.app_users()) == 1


def test_derive_identity_state_ladder():
    assert derive_identity_state(AppUser(id="u", email="A@B.com", phone="+1 415 555 0100"), "s").primary_identifier == "a@b.com"
    phone_only = derive_identity_state(AppUser(id="u", phone="+1 415 555 0100"), "s")
    assert (phone_only.tier, phone_only.primary_identifier) == (2, "+14155550100")
    named = derive_identity_state(AppUser(id="u", name="Jane"), "s")
    assert (named.tier, named.status, named.confidence) == (1, IdentityStatus.NAMED, 50)
    anonymous = derive_identity_state(AppUser(id="u"), "s9")
    assert (anonymous.tier, anonymous.primary_identifier) == (0, "session:s9")


def test_classify_switch_answer():
    assert classify_switch_answer("Use that account") == "confirm"
    assert classify_switch_answer(" continue ") == "decline"
    assert classify_switch_answer("switch please") is None


def test_same_date_from_two_visitors_is_not_an_identity(store):
    resolver = IdentityResolver(store)
    first = resolver.resolve(web("alice", "my parcel was due on 2024-01-15"))
    second = resolver.resolve(web("bob", "my parcel was due on 2024-01-15"))

    assert "phone" not in first.facts
    assert second.interrupt is None
    assert store.get_user_session("bob").pending_switch is None
    assert store.get_app_user(first.user.id).identity_tier == 0
    assert store.lookup_identity_key("phone", "20240115") is None


def test_extractor_calls_are_audited(store, failing_extractor):
    IdentityResolver(store, extractor=FakeLLM(extracted={"email": "a@b.com"})).resolve(web("s1", "hi"))
    IdentityResolver(store, extractor=failing_extractor).resolve(web("s2", "hi"))

    calls = [event.payload for event in store.events() if event.event_type == EVENT_TOOL_CALL]
    assert [(call["tool_name"], call["status"]) for call in calls] == [
        ("fact_extractor", "success"),
        ("fact_extractor", "error"),
    ]
    assert calls[0]["fields"] == ["email"]
    assert calls[1]["error"] == "extractor failed: timeout"
    assert all(call["latency_ms"] >= 0 for call in calls)


def test_no_tool_call_event_without_extractor(store):
    IdentityResolver(store).resolve(web("s1", "hi"))
    assert EVENT_TOOL_CALL not in event_types(store)
