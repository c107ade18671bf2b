"""Supabase (PostgREST) implementation of the store contract.

Expected tables: app_users, user_sessions, identity_keys, conversations,
messages, events, idempotency_keys. Typed fields that have no column of their
own travel inside the JSON ``metadata`` columns: the pending switch on
user_sessions and the accumulated facts on conversations.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx

from .errors import DuplicateKeyError, StoreError
from .models import AppUser, Conversation, IdentityKey, PendingSwitch, StoredMessage, UserSession
from .store import APP_USER_FIELDS, CONVERSATION_FIELDS, SESSION_FIELDS, Store, _check_patch

logger = logging.getLogger("shopdesk.store.supabase")

APP_USER_SELECT = (
    "id,anonymous_id,name,email,phone,identity_tier,identity_status,confidence_score,"
    "primary_identifier,profile,crm_contact_id,desk_contact_id"
)
CONVERSATION_SELECT = "id,user_id,status,summary,last_intent,channel,locale,metadata"
PENDING_SWITCH_META_KEY = "pending_switch"
FACTS_META_KEY = "facts"


def iso_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _iso_from_epoch(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(microsecond=0).isoformat()


def is_duplicate_key_error(response: httpx.Response) -> bool:
    """Postgres unique violations surface as HTTP 409 with code 23505."""
    return response.status_code == 409 and '"code":"23505"' in response.text.replace(" ", "")


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class SupabaseStore(Store):
    """Store backed by the Supabase REST API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 25.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        """Purpose: Build an HTTP client bound to the project's REST endpoint.
        Inputs/Outputs: Inputs are base URL, service key, timeout and an optional
            preconfigured httpx.Client (tests inject a MockTransport); no return.
        Side Effects / State: Holds one pooled httpx.Client for the process.
        Dependencies: httpx.
        Failure Modes: Raises ValueError if URL or key is missing.
        If Removed: Only the single-process JSON store remains available.
        Testing Notes: Inject httpx.Client(transport=httpx.MockTransport(handler)).
        """
        # Fail fast on missing credentials rather than on the first request.
        if not base_url or not api_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")
        headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if client is None:
            client = httpx.Client(timeout=timeout_seconds)
        client.base_url = f"{base_url.rstrip('/')}/rest/v1"
        client.headers.update(headers)
        self._client = client

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        table: str,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
        prefer: str = "",
    ) -> httpx.Response:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = self._client.request(method, f"/{table}", params=params, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise StoreError(f"supabase {method} {table} failed: {exc}") from exc
        if response.status_code >= 300:
            message = f"supabase {method} {table} ({response.status_code}): {response.text[:500]}"
            if is_duplicate_key_error(response):
                raise DuplicateKeyError(message, response.status_code, response.text)
            raise StoreError(message, response.status_code, response.text)
        return response

    def _rows(self, response: httpx.Response) -> List[Dict[str, Any]]:
        if not response.content:
            return []
        try:
            data = response.json()
        except ValueError as exc:
            raise StoreError(f"supabase returned malformed JSON: {exc}") from exc
        if not isinstance(data, list):
            raise StoreError("supabase returned a non-list payload")
        return [row for row in data if isinstance(row, dict)]

    def _select(self, table: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        return self._rows(self._request("GET", table, params=params))

    def get_user_session(self, session_id: str) -> Optional[UserSession]:
        rows = self._select(
            "user_sessions",
            {"session_id": f"eq.{session_id}", "select": "session_id,user_id,channel,metadata", "limit": "1"},
        )
        if not rows:
            return None
        return _session_from_row(rows[0])

    def upsert_user_session(
        self,
        session_id: str,
        user_id: str,
        channel: str,
        pending_switch: Optional[PendingSwitch] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserSession:
        session = UserSession(
            session_id=session_id,
            user_id=user_id,
            channel=channel,
            pending_switch=pending_switch,
            metadata=dict(metadata or {}),
        )
        body = {
            "session_id": session_id,
            "user_id": user_id,
            "channel": channel,
            "metadata": _session_metadata(session),
            "last_seen_at": iso_now(),
        }
        self._request("POST", "user_sessions", body=body, prefer="resolution=merge-duplicates")
        return session

    def patch_user_session(self, session_id: str, patch: Dict[str, Any]) -> None:
        """Purpose: Patch a session row, folding typed fields back into metadata.
        Inputs/Outputs: Inputs are the session key and a field patch; no return.
        Side Effects / State: One GET (only when metadata must be rebuilt) and one PATCH.
        Dependencies: _session_metadata for the metadata column layout.
        Failure Modes: StoreError on transport or status failures, or a missing row.
        If Removed: Pending switches could not be recorded or cleared.
        Testing Notes: Patch pending_switch=None and assert the metadata key is dropped.
        """
        # pending_switch lives inside metadata, so rebuild the column from the current row.
        _check_patch(patch, SESSION_FIELDS, "user_sessions")
        body: Dict[str, Any] = {"last_seen_at": iso_now()}
        if "user_id" in patch:
            body["user_id"] = patch["user_id"]
        if "channel" in patch:
            body["channel"] = patch["channel"]
        if "pending_switch" in patch or "metadata" in patch:
            current = self.get_user_session(session_id)
            if current is None:
                raise StoreError(f"user_sessions: no row for session {session_id}")
            merged = current.dict()
            merged.update({key: value for key, value in patch.items() if key in {"pending_switch", "metadata"}})
            body["metadata"] = _session_metadata(UserSession(**merged))
        self._request("PATCH", "user_sessions", params={"session_id": f"eq.{session_id}"}, body=body)

    def create_anonymous_user(self, anonymous_id: str, channel: str) -> AppUser:
        """Purpose: Insert a tier-0 user, tolerating a concurrent insert of the same anchor.
        Inputs/Outputs: Inputs are the anonymous anchor and channel; output is the AppUser.
        Side Effects / State: One POST; on a unique violation, one GET.
        Dependencies: is_duplicate_key_error via DuplicateKeyError.
        Failure Modes: StoreError when the insert fails for any other reason or returns no row.
        If Removed: First contact cannot create an identity.
        Testing Notes: Return 409/23505 from the mock and assert the existing row comes back.
        """
        # Duplicate anchors mean another worker won the race; read its row.
        body = {
            "anonymous_id": anonymous_id,
            "identity_tier": 0,
            "identity_status": "anonymous",
            "confidence_score": 20,
            "primary_identifier": f"session:{anonymous_id}",
            "profile": {"channel": channel},
            "last_seen_at": iso_now(),
        }
        try:
            response = self._request("POST", "app_users", body=body, prefer="return=representation")
        except DuplicateKeyError:
            existing = self.get_app_user_by_anonymous_id(anonymous_id)
            if existing is not None:
                logger.info("anonymous user race resolved anchor=%s user=%s", anonymous_id, existing.id)
                return existing
            raise
        rows = self._rows(response)
        if not rows:
            raise StoreError("insert app_users returned empty")
        return _user_from_row(rows[0])

    def get_app_user(self, user_id: str) -> AppUser:
        rows = self._select("app_users", {"id": f"eq.{user_id}", "select": APP_USER_SELECT, "limit": "1"})
        if not rows:
            raise StoreError(f"app_users: user {user_id} not found")
        return _user_from_row(rows[0])

    def get_app_user_by_anonymous_id(self, anonymous_id: str) -> Optional[AppUser]:
        rows = self._select(
            "app_users", {"anonymous_id": f"eq.{anonymous_id}", "select": APP_USER_SELECT, "limit": "1"}
        )
        return _user_from_row(rows[0]) if rows else None

    def update_app_user(self, user_id: str, patch: Dict[str, Any]) -> None:
        _check_patch(patch, APP_USER_FIELDS, "app_users")
        body = {key: _jsonable(value) for key, value in patch.items()}
        if "last_seen_at" in body:
            body["last_seen_at"] = _iso_from_epoch(body["last_seen_at"])
        self._request("PATCH", "app_users", params={"id": f"eq.{user_id}"}, body=body)

    def lookup_identity_key(self, key_type: str, key_value: str) -> Optional[IdentityKey]:
        rows = self._select(
            "identity_keys",
            {
                "key_type": f"eq.{key_type}",
                "key_value": f"eq.{key_value}",
                "select": "user_id,key_type,key_value,verified",
                "limit": "1",
            },
        )
        if not rows:
            return None
        row = rows[0]
        return IdentityKey(
            key_type=row.get("key_type") or key_type,
            key_value=row.get("key_value") or key_value,
            user_id=str(row.get("user_id") or ""),
            verified=bool(row.get("verified")),
        )

    def insert_identity_key(self, user_id: str, key_type: str, key_value: str, verified: bool = False) -> None:
        body = {"user_id": user_id, "key_type": key_type, "key_value": key_value, "verified": verified}
        self._request("POST", "identity_keys", body=body, prefer="resolution=ignore-duplicates")

    def get_or_create_open_conversation(
        self, user_id: str, session_id: str, channel: str, locale: str
    ) -> Conversation:
        rows = self._select(
            "conversations",
            {
                "user_id": f"eq.{user_id}",
                "status": "eq.open",
                "channel": f"eq.{channel}",
                "select": CONVERSATION_SELECT,
                "order": "updated_at.desc",
                "limit": "1",
            },
        )
        if rows:
            return _conversation_from_row(rows[0])
        body = {
            "user_id": user_id,
            "status": "open",
            "channel": channel,
            "locale": locale,
            "metadata": {"session_id": session_id, FACTS_META_KEY: {}},
        }
        created = self._rows(self._request("POST", "conversations", body=body, prefer="return=representation"))
        if not created:
            raise StoreError("insert conversations returned empty")
        return _conversation_from_row(created[0])

    def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        # facts are stored under metadata.facts; merge them into the outgoing metadata.
        _check_patch(patch, CONVERSATION_FIELDS, "conversations")
        body = {key: value for key, value in patch.items() if key != "facts"}
        if "facts" in patch:
            metadata = dict(patch.get("metadata") or {})
            metadata[FACTS_META_KEY] = dict(patch["facts"])
            body["metadata"] = metadata
        body["updated_at"] = iso_now()
        self._request("PATCH", "conversations", params={"id": f"eq.{conversation_id}"}, body=body)

    def close_open_conversations(self, user_id: str) -> int:
        response = self._request(
            "PATCH",
            "conversations",
            params={"user_id": f"eq.{user_id}", "status": "eq.open"},
            body={"status": "closed", "updated_at": iso_now()},
            prefer="return=representation",
        )
        return len(self._rows(response))

    def insert_message(
        self, conversation_id: str, role: str, content: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        body = {"conversation_id": conversation_id, "role": role, "content": content, "payload": payload or {}}
        self._request("POST", "messages", body=body)

    def fetch_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        rows = self._select(
            "messages",
            {
                "conversation_id": f"eq.{conversation_id}",
                "select": "role,content,payload,created_at",
                "order": "created_at.desc",
                "limit": str(limit),
            },
        )
        messages = [
            StoredMessage(
                conversation_id=conversation_id,
                role=str(row.get("role") or ""),
                content=str(row.get("content") or ""),
                payload=row.get("payload") or {},
                created_at=_epoch_from_iso(row.get("created_at")),
            )
            for row in rows
        ]
        messages.reverse()
        return messages

    def insert_event(
        self,
        user_id: str,
        event_type: str,
        payload: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        body = {
            "user_id": user_id,
            "conversation_id": conversation_id,
            "event_type": event_type,
            "payload": payload,
        }
        self._request("POST", "events", body=body)

    def check_and_insert_idempotency(self, key: str) -> bool:
        """Purpose: Record a delivery key, reporting whether it was already processed.
        Inputs/Outputs: Input is the opaque key; output is True for a duplicate.
        Side Effects / State: One POST against idempotency_keys(key unique).
        Dependencies: The unique constraint on idempotency_keys.key.
        Failure Modes: StoreError for failures other than the unique violation.
        If Removed: Retried webhook deliveries would produce duplicate turns.
        Testing Notes: Mock 201 then 409/23505 and assert False then True.
        """
        # The unique constraint makes check-and-insert a single atomic round trip.
        try:
            self._request("POST", "idempotency_keys", body={"key": key}, prefer="return=minimal")
        except DuplicateKeyError:
            return True
        return False

    def ping(self) -> bool:
        try:
            self._select("app_users", {"select": "id", "limit": "1"})
        except StoreError as exc:
            logger.warning("supabase ping failed error=%s", exc)
            return False
        return True


def _epoch_from_iso(value: Any) -> float:
    if not value:
        return 0.0
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def _user_from_row(row: Dict[str, Any]) -> AppUser:
    data = {key: value for key, value in row.items() if key in AppUser.__fields__ and value is not None}
    data.pop("last_seen_at", None)
    try:
        return AppUser(**data)
    except ValueError as exc:
        raise StoreError(f"malformed app_users row: {exc}") from exc


def _session_from_row(row: Dict[str, Any]) -> UserSession:
    metadata = dict(row.get("metadata") or {})
    raw_pending = metadata.pop(PENDING_SWITCH_META_KEY, None)
    pending = None
    if isinstance(raw_pending, dict) and raw_pending.get("target_user_id"):
        pending = PendingSwitch(**raw_pending)
    return UserSession(
        session_id=str(row.get("session_id") or ""),
        user_id=str(row.get("user_id") or ""),
        channel=str(row.get("channel") or "web"),
        pending_switch=pending,
        metadata=metadata,
    )


def _session_metadata(session: UserSession) -> Dict[str, Any]:
    metadata = dict(session.metadata)
    metadata.pop(PENDING_SWITCH_META_KEY, None)
    if session.pending_switch is not None:
        metadata[PENDING_SWITCH_META_KEY] = session.pending_switch.dict()
    return metadata


def _conversation_from_row(row: Dict[str, Any]) -> Conversation:
    metadata = dict(row.get("metadata") or {})
    raw_facts = metadata.pop(FACTS_META_KEY, None) or {}
    facts = {str(key): value for key, value in raw_facts.items() if isinstance(value, str) and value}
    return Conversation(
        id=str(row.get("id") or ""),
        user_id=str(row.get("user_id") or ""),
        status=str(row.get("status") or "open"),
        summary=str(row.get("summary") or ""),
        last_intent=row.get("last_intent"),
        channel=str(row.get("channel") or "web"),
        locale=str(row.get("locale") or "en"),
        facts=facts,
        metadata=metadata,
    )
