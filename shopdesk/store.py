from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import StoreError
from .models import (
    AppUser,
    Conversation,
    Event,
    IdentityKey,
    IdentityStatus,
    PendingSwitch,
    StoredMessage,
    UserSession,
)

logger = logging.getLogger("shopdesk.store")

APP_USER_FIELDS = set(AppUser.__fields__) - {"id"}
SESSION_FIELDS = {"user_id", "channel", "pending_switch", "metadata", "last_seen_at"}
CONVERSATION_FIELDS = {"status", "summary", "last_intent", "facts", "metadata", "locale", "channel"}
MAX_EVENTS = 5000
IDEMPOTENCY_TTL_SECONDS = 7 * 24 * 3600


class Store:
    """Read/write contract the routing engine needs from persistence.

    Implementations raise StoreError for transport failures, non-2xx answers
    and malformed payloads. Lookups return None for a missing row; getters by
    primary id raise StoreError instead.
    """

    def get_user_session(self, session_id: str) -> Optional[UserSession]:
        raise NotImplementedError

    def upsert_user_session(
        self,
        session_id: str,
        user_id: str,
        channel: str,
        pending_switch: Optional[PendingSwitch] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserSession:
        raise NotImplementedError

    def patch_user_session(self, session_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    def create_anonymous_user(self, anonymous_id: str, channel: str) -> AppUser:
        raise NotImplementedError

    def get_app_user(self, user_id: str) -> AppUser:
        raise NotImplementedError

    def get_app_user_by_anonymous_id(self, anonymous_id: str) -> Optional[AppUser]:
        raise NotImplementedError

    def update_app_user(self, user_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    def lookup_identity_key(self, key_type: str, key_value: str) -> Optional[IdentityKey]:
        raise NotImplementedError

    def insert_identity_key(self, user_id: str, key_type: str, key_value: str, verified: bool = False) -> None:
        raise NotImplementedError

    def get_or_create_open_conversation(
        self, user_id: str, session_id: str, channel: str, locale: str
    ) -> Conversation:
        raise NotImplementedError

    def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        raise NotImplementedError

    def close_open_conversations(self, user_id: str) -> int:
        raise NotImplementedError

    def insert_message(
        self, conversation_id: str, role: str, content: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        raise NotImplementedError

    def fetch_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        raise NotImplementedError

    def insert_event(
        self,
        user_id: str,
        event_type: str,
        payload: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def check_and_insert_idempotency(self, key: str) -> bool:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        """Release connections or flush buffered writes; called on app shutdown."""


def _check_patch(patch: Dict[str, Any], allowed: set, table: str) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise StoreError(f"{table}: unknown columns {sorted(unknown)}")


class JsonStore(Store):
    """File-backed store for single-process deployments and tests."""

    def __init__(
        self,
        path: Optional[Path] = None,
        max_events: int = MAX_EVENTS,
        idempotency_ttl_seconds: float = IDEMPOTENCY_TTL_SECONDS,
    ) -> None:
        """Purpose: Initialize the store and hydrate from disk if available.
        Inputs/Outputs: Inputs are an optional file path (None keeps data in memory
            only), the audit-trail cap and the idempotency-key retention window.
        Side Effects / State: Loads and caches every table in memory.
        Dependencies: Calls _load; relies on the pydantic record models.
        Failure Modes: A corrupt file is logged and ignored, leaving empty tables.
        If Removed: The engine has no default persistence outside Supabase.
        Testing Notes: Write a few rows, build a second store on the same path, read back.
        """
        # Keep the backing path and preload persisted tables if present.
        self._path = path
        self._lock = threading.RLock()
        self._users: Dict[str, AppUser] = {}
        self._sessions: Dict[str, UserSession] = {}
        self._identity_keys: Dict[str, IdentityKey] = {}
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[StoredMessage]] = {}
        self._events: List[Event] = []
        self._idempotency: Dict[str, float] = {}
        self._max_events = max_events
        self._idempotency_ttl = idempotency_ttl_seconds
        self._dirty = False
        self._load()

    def _load(self) -> None:
        # Read and decode persisted JSON if present.
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("store file=%s is not valid JSON; starting empty", self._path)
            return
        self._users = {row["id"]: AppUser(**row) for row in data.get("app_users", [])}
        self._sessions = {row["session_id"]: UserSession(**row) for row in data.get("user_sessions", [])}
        for row in data.get("identity_keys", []):
            key = IdentityKey(**row)
            self._identity_keys[_identity_key_id(key.key_type, key.key_value)] = key
        self._conversations = {row["id"]: Conversation(**row) for row in data.get("conversations", [])}
        for row in data.get("messages", []):
            message = StoredMessage(**row)
            self._messages.setdefault(message.conversation_id, []).append(message)
        self._events = [Event(**row) for row in data.get("events", [])]
        idempotency = data.get("idempotency_keys", {})
        if isinstance(idempotency, dict):
            self._idempotency = {str(key): float(ts) for key, ts in idempotency.items()}

    def _persist(self) -> None:
        # Serialize every table; callers hold the lock.
        self._dirty = False
        if not self._path:
            return
        payload = {
            "app_users": [user.dict() for user in self._users.values()],
            "user_sessions": [session.dict() for session in self._sessions.values()],
            "identity_keys": [key.dict() for key in self._identity_keys.values()],
            "conversations": [conversation.dict() for conversation in self._conversations.values()],
            "messages": [message.dict() for rows in self._messages.values() for message in rows],
            "events": [event.dict() for event in self._events],
            "idempotency_keys": self._idempotency,
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self._path)

    def get_user_session(self, session_id: str) -> Optional[UserSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return session.copy(deep=True) if session else None

    def upsert_user_session(
        self,
        session_id: str,
        user_id: str,
        channel: str,
        pending_switch: Optional[PendingSwitch] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UserSession:
        """Purpose: Create or replace the session row for a session key.
        Inputs/Outputs: Inputs are the session key, bound user, channel, pending
            switch and metadata; output is the stored UserSession.
        Side Effects / State: Mutates the session table and persists to disk.
        Dependencies: Uses _persist.
        Failure Modes: IO errors propagate.
        If Removed: First contact cannot bind a session to its anonymous user.
        Testing Notes: Upsert twice with different users and check the last wins.
        """
        # Merge-duplicates semantics: the latest write wins for the whole row.
        with self._lock:
            session = UserSession(
                session_id=session_id,
                user_id=user_id,
                channel=channel,
                pending_switch=pending_switch,
                metadata=dict(metadata or {}),
                last_seen_at=time.time(),
            )
            self._sessions[session_id] = session
            self._persist()
            return session.copy(deep=True)

    def patch_user_session(self, session_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise StoreError(f"user_sessions: no row for session {session_id}")
            _check_patch(patch, SESSION_FIELDS, "user_sessions")
            merged = session.dict()
            merged.update(patch)
            if "last_seen_at" not in patch:
                merged["last_seen_at"] = time.time()
            self._sessions[session_id] = UserSession(**merged)
            self._persist()

    def create_anonymous_user(self, anonymous_id: str, channel: str) -> AppUser:
        """Purpose: Insert a tier-0 AppUser anchored on a session key.
        Inputs/Outputs: Inputs are the anonymous anchor and channel; output is the AppUser.
        Side Effects / State: Adds a user row and persists.
        Dependencies: Uses IdentityStatus defaults.
        Failure Modes: None for duplicates: an existing anchor returns the existing row,
            matching the race-tolerant fallback of the HTTP store.
        If Removed: New visitors cannot be given an identity.
        Testing Notes: Create twice with the same anchor; both calls return one id.
        """
        # The unique anchor makes concurrent first contacts converge on one row.
        with self._lock:
            for user in self._users.values():
                if user.anonymous_id == anonymous_id:
                    return user.copy(deep=True)
            user = AppUser(
                id=uuid.uuid4().hex,
                anonymous_id=anonymous_id,
                identity_tier=0,
                identity_status=IdentityStatus.ANONYMOUS,
                confidence_score=20,
                primary_identifier=f"session:{anonymous_id}",
                profile={"channel": channel},
                last_seen_at=time.time(),
            )
            self._users[user.id] = user
            self._persist()
            return user.copy(deep=True)

    def get_app_user(self, user_id: str) -> AppUser:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise StoreError(f"app_users: user {user_id} not found")
            return user.copy(deep=True)

    def get_app_user_by_anonymous_id(self, anonymous_id: str) -> Optional[AppUser]:
        with self._lock:
            for user in self._users.values():
                if user.anonymous_id == anonymous_id:
                    return user.copy(deep=True)
            return None

    def update_app_user(self, user_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                raise StoreError(f"app_users: user {user_id} not found")
            _check_patch(patch, APP_USER_FIELDS, "app_users")
            merged = user.dict()
            merged.update(patch)
            self._users[user_id] = AppUser(**merged)
            self._persist()

    def lookup_identity_key(self, key_type: str, key_value: str) -> Optional[IdentityKey]:
        with self._lock:
            key = self._identity_keys.get(_identity_key_id(key_type, key_value))
            return key.copy() if key else None

    def insert_identity_key(self, user_id: str, key_type: str, key_value: str, verified: bool = False) -> None:
        # Ignore-duplicates: the first owner keeps the key.
        with self._lock:
            key_id = _identity_key_id(key_type, key_value)
            if key_id in self._identity_keys:
                return
            self._identity_keys[key_id] = IdentityKey(
                key_type=key_type, key_value=key_value, user_id=user_id, verified=verified
            )
            self._persist()

    def get_or_create_open_conversation(
        self, user_id: str, session_id: str, channel: str, locale: str
    ) -> Conversation:
        """Purpose: Return the user's open conversation on a channel, creating it if absent.
        Inputs/Outputs: Inputs are user, session key, channel and locale; output is a Conversation.
        Side Effects / State: May insert a conversation row and persist.
        Dependencies: None beyond the in-memory tables.
        Failure Modes: IO errors propagate.
        If Removed: Turns cannot be grouped into threads and facts are lost between turns.
        Testing Notes: Two calls return the same id; closing then calling returns a new id.
        """
        # Most recently updated open conversation wins when several exist.
        with self._lock:
            candidates = [
                conversation
                for conversation in self._conversations.values()
                if conversation.user_id == user_id
                and conversation.status == "open"
                and conversation.channel == channel
            ]
            if candidates:
                latest = max(candidates, key=lambda c: c.updated_at or 0.0)
                return latest.copy(deep=True)
            conversation = Conversation(
                id=uuid.uuid4().hex,
                user_id=user_id,
                channel=channel,
                locale=locale,
                metadata={"session_id": session_id},
                updated_at=time.time(),
            )
            self._conversations[conversation.id] = conversation
            self._persist()
            return conversation.copy(deep=True)

    def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                raise StoreError(f"conversations: {conversation_id} not found")
            _check_patch(patch, CONVERSATION_FIELDS, "conversations")
            merged = conversation.dict()
            merged.update(patch)
            merged["updated_at"] = time.time()
            self._conversations[conversation_id] = Conversation(**merged)
            self._persist()

    def close_open_conversations(self, user_id: str) -> int:
        with self._lock:
            closed = 0
            for conversation_id, conversation in list(self._conversations.items()):
                if conversation.user_id == user_id and conversation.status == "open":
                    self._conversations[conversation_id] = conversation.copy(
                        update={"status": "closed", "updated_at": time.time()}
                    )
                    closed += 1
            if closed:
                self._persist()
            return closed

    def insert_message(
        self, conversation_id: str, role: str, content: str, payload: Optional[Dict[str, Any]] = None
    ) -> None:
        with self._lock:
            message = StoredMessage(
                conversation_id=conversation_id,
                role=role,
                content=content,
                payload=dict(payload or {}),
                created_at=time.time(),
            )
            self._messages.setdefault(conversation_id, []).append(message)
            self._persist()

    def fetch_recent_messages(self, conversation_id: str, limit: int) -> List[StoredMessage]:
        # Newest-first window, returned in chronological order.
        with self._lock:
            rows = self._messages.get(conversation_id, [])
            newest_first = list(reversed(rows))[: max(limit, 0)]
            return [message.copy() for message in reversed(newest_first)]

    def insert_event(
        self,
        user_id: str,
        event_type: str,
        payload: Dict[str, Any],
        conversation_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._events.append(
                Event(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    event_type=event_type,
                    payload=dict(payload),
                    created_at=time.time(),
                )
            )
            # Oldest events drop off; the trail is flushed with the next write or on close.
            if len(self._events) > self._max_events:
                del self._events[: len(self._events) - self._max_events]
            self._dirty = True

    def check_and_insert_idempotency(self, key: str) -> bool:
        """Purpose: Atomically mark a delivery key as processed.
        Inputs/Outputs: Input is an opaque key; output is True if it was already present.
        Side Effects / State: Drops keys older than the retention window, then
            inserts the key and persists when it is new.
        Dependencies: Holds the store lock across the check and the insert.
        Failure Modes: IO errors propagate.
        If Removed: Channel retries would be processed twice.
        Testing Notes: First call False, second call True.
        """
        # Check and insert under one lock so concurrent retries see one winner.
        with self._lock:
            now = time.time()
            cutoff = now - self._idempotency_ttl
            expired = [stale for stale, seen_at in self._idempotency.items() if seen_at < cutoff]
            for stale in expired:
                del self._idempotency[stale]
            if key in self._idempotency:
                return True
            self._idempotency[key] = now
            self._persist()
            return False

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            if self._dirty:
                self._persist()

    def events(self) -> List[Event]:
        """Snapshot of the audit trail, for operators and tests."""
        with self._lock:
            return [event.copy() for event in self._events]

    def app_users(self) -> List[AppUser]:
        with self._lock:
            return [user.copy(deep=True) for user in self._users.values()]

    def message_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._messages.get(conversation_id, []))


def _identity_key_id(key_type: str, key_value: str) -> str:
    return f"{key_type}:{key_value}"
