import json

import httpx
import pytest

from shopdesk.errors import StoreError
from shopdesk.models import IdentityStatus
from shopdesk.supabase_store import SupabaseStore

DUPLICATE = {"code": "23505", "message": "duplicate key value violates unique constraint"}


def make_store(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SupabaseStore("https://project.supabase.co/", "service-key", client=client)


def test_requests_carry_auth_and_rest_prefix():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    store = make_store(handler)
    assert store.get_user_session("s1") is None

    request = seen[0]
    assert request.url.path == "/rest/v1/user_sessions"
    assert request.url.params["session_id"] == "eq.s1"
    assert request.headers["apikey"] == "service-key"
    assert request.headers["authorization"] == "Bearer service-key"


def test_anonymous_user_race_reads_existing_row():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(409, json=DUPLICATE)
        return httpx.Response(200, json=[{"id": "u1", "anonymous_id": "s1", "identity_status": "anonymous"}])

    user = make_store(handler).create_anonymous_user("s1", "web")
    assert user.id == "u1"
    assert user.identity_status == IdentityStatus.ANONYMOUS


def test_idempotency_reports_duplicates():
    calls = []

    def handler(request):
        calls.append(json.loads(request.content))
        if len(calls) == 1:
            return httpx.Response(201)
        return httpx.Response(409, json=DUPLICATE)

    store = make_store(handler)
    assert store.check_and_insert_idempotency("wa_msg:1") is False
    assert store.check_and_insert_idempotency("wa_msg:1") is True
    assert calls[0] == {"key": "wa_msg:1"}


def test_pending_switch_lives_in_session_metadata():
    patches = []
    row = {
        "session_id": "s1",
        "user_id": "u1",
        "channel": "web",
        "metadata": {
            "pending_switch": {"target_user_id": "u2", "key_type": "email", "key_value": "a@b.com"},
            "source": "widget",
        },
    }

    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=[row])
        patches.append(json.loads(request.content))
        return httpx.Response(204)

    store = make_store(handler)
    session = store.get_user_session("s1")
    assert session.pending_switch.target_user_id == "u2"
    assert session.metadata == {"source": "widget"}

    store.patch_user_session("s1", {"pending_switch": None})
    assert patches[0]["metadata"] == {"source": "widget"}


def test_update_conversation_folds_facts_into_metadata():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(204)

    make_store(handler).update_conversation(
        "c1", {"summary": "A: hi", "facts": {"order_id": "12345"}, "metadata": {"session_id": "s1"}}
    )
    body = bodies[0]
    assert body["metadata"] == {"session_id": "s1", "facts": {"order_id": "12345"}}
    assert "facts" not in body
    assert body["summary"] == "A: hi"


def test_recent_messages_are_returned_oldest_first():
    def handler(request):
        assert request.url.params["order"] == "created_at.desc"
        return httpx.Response(
            200,
            json=[
                {"role": "assistant", "content": "second", "created_at": "2024-01-01T00:00:02+00:00"},
                {"role": "user", "content": "first", "created_at": "2024-01-01T00:00:01+00:00"},
            ],
        )

    messages = make_store(handler).fetch_recent_messages("c1", 10)
    assert [message.content for message in messages] == ["first", "second"]


def test_server_errors_raise_store_error_and_fail_ping():
    store = make_store(lambda request: httpx.Response(503, text="unavailable"))
    with pytest.raises(StoreError) as excinfo:
        store.get_app_user("u1")
    assert excinfo.value.status_code == 503
    assert store.ping() is False


def test_missing_credentials_are_rejected():
    with pytest.raises(ValueError):
        SupabaseStore("", "key")
