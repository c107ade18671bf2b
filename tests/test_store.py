import pytest

from shopdesk.errors import StoreError
from shopdesk.models import PendingSwitch
from shopdesk.store import JsonStore


def test_anonymous_user_anchor_is_unique(store):
    first = store.create_anonymous_user("s1", "web")
    second = store.create_anonymous_user("s1", "web")
    assert first.id == second.id
    assert first.primary_identifier == "session:s1"
    assert store.get_app_user_by_anonymous_id("s1").id == first.id


def test_identity_key_first_writer_keeps_ownership(store):
    store.insert_identity_key("u1", "email", "a@b.com")
    store.insert_identity_key("u2", "email", "a@b.com")
    assert store.lookup_identity_key("email", "a@b.com").user_id == "u1"
    assert store.lookup_identity_key("phone", "+1") is None


def test_session_pending_switch_roundtrip(store):
    store.upsert_user_session("s1", "u1", "web")
    store.patch_user_session("s1", {"pending_switch": PendingSwitch(target_user_id="u2", key_type="email", key_value="a@b.com")})
    assert store.get_user_session("s1").pending_switch.target_user_id == "u2"
    store.patch_user_session("s1", {"pending_switch": None})
    assert store.get_user_session("s1").pending_switch is None


def test_patch_rejects_unknown_columns(store):
    store.upsert_user_session("s1", "u1", "web")
    with pytest.raises(StoreError):
        store.patch_user_session("s1", {"bogus": 1})


def test_one_open_conversation_per_user_and_channel(store):
    first = store.get_or_create_open_conversation("u1", "s1", "web", "en")
    again = store.get_or_create_open_conversation("u1", "s1", "web", "en")
    whatsapp = store.get_or_create_open_conversation("u1", "s1", "whatsapp", "en")
    assert first.id == again.id
    assert whatsapp.id != first.id

    assert store.close_open_conversations("u1") == 2
    reopened = store.get_or_create_open_conversation("u1", "s1", "web", "en")
    assert reopened.id != first.id


def test_recent_messages_are_chronological_and_bounded(store):
    conversation = store.get_or_create_open_conversation("u1", "s1", "web", "en")
    for index in range(5):
        store.insert_message(conversation.id, "user", f"m{index}")
    recent = store.fetch_recent_messages(conversation.id, 3)
    assert [message.content for message in recent] == ["m2", "m3", "m4"]


def test_idempotency_check_and_insert(store):
    assert store.check_and_insert_idempotency("wa_msg:1") is False
    assert store.check_and_insert_idempotency("wa_msg:1") is True


def test_json_file_persists_between_instances(tmp_path):
    path = tmp_path / "store.json"
    store = JsonStore(path)
    user = store.create_anonymous_user("s1", "web")
    store.upsert_user_session("s1", user.id, "web")
    conversation = store.get_or_create_open_conversation(user.id, "s1", "web", "en")
    store.update_conversation(conversation.id, {"facts": {"order_id": "12345"}, "summary": "A: hi"})
    store.check_and_insert_idempotency("wa_msg:9")

    reloaded = JsonStore(path)
    assert reloaded.get_user_session("s1").user_id == user.id
    restored = reloaded.get_or_create_open_conversation(user.id, "s1", "web", "en")
    assert restored.facts == {"order_id": "12345"}
    assert restored.summary == "A: hi"
    assert reloaded.check_and_insert_idempotency("wa_msg:9") is True


def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")
    assert JsonStore(path).app_users() == []


def test_audit_trail_is_capped():
    store = JsonStore(None, max_events=3)
    for index in range(5):
        store.insert_event("u1", "identity.resolved", {"n": index})
    assert [event.payload["n"] for event in store.events()] == [2, 3, 4]


def test_expired_idempotency_keys_are_forgotten(monkeypatch):
    store = JsonStore(None, idempotency_ttl_seconds=60)
    clock = [1000.0]
    monkeypatch.setattr("shopdesk.store.time.time", lambda: clock[0])
    assert store.check_and_insert_idempotency("wa_msg:1") is False
    clock[0] += 30
    assert store.check_and_insert_idempotency("wa_msg:1") is True
    clock[0] += 120
    assert store.check_and_insert_idempotency("wa_msg:1") is False


def test_events_are_flushed_on_close(tmp_path):
    path = tmp_path / "store.json"
    store = JsonStore(path)
    store.create_anonymous_user("s1", "web")
    store.insert_event("u1", "identity.resolved", {"tier": 0})
    assert JsonStore(path).events() == []

    store.close()
    assert [event.event_type for event in JsonStore(path).events()] == ["identity.resolved"]
