"""Audit event names and the best-effort event writer."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import best_effort

logger = logging.getLogger("shopdesk.audit")

EVENT_IDENTITY_RESOLVED = "identity.resolved"
EVENT_KEY_ADDED = "identity.key_added"
EVENT_CONFLICT = "identity.conflict"
EVENT_SWITCH_CONFIRMED = "identity.switch_confirmed"
EVENT_SWITCH_DECLINED = "identity.switch_declined"
EVENT_USER_CREATED = "identity.user_created"
EVENT_INTEGRATION_FAILED = "router.integration_failed"
EVENT_TURN_FAILED = "router.turn_failed"
EVENT_CONVERSATION_CLOSED = "conversation.closed"
EVENT_SESSION_CREATED = "session.created"
EVENT_CONVERSATION_RESUMED = "conversation.resumed"
EVENT_TOOL_CALL = "tool.call"

EVENT_TYPES = {
    EVENT_IDENTITY_RESOLVED,
    EVENT_KEY_ADDED,
    EVENT_CONFLICT,
    EVENT_SWITCH_CONFIRMED,
    EVENT_SWITCH_DECLINED,
    EVENT_USER_CREATED,
    EVENT_INTEGRATION_FAILED,
    EVENT_TURN_FAILED,
    EVENT_CONVERSATION_CLOSED,
    EVENT_SESSION_CREATED,
    EVENT_CONVERSATION_RESUMED,
    EVENT_TOOL_CALL,
}


def record_event(
    store,
    user_id: str,
    event_type: str,
    payload: Optional[Dict[str, Any]] = None,
    conversation_id: Optional[str] = None,
) -> None:
    """Purpose: Append an audit event without letting failures reach the caller.
    Inputs/Outputs: Inputs are the store, owning user, event name, payload and
        optional conversation; no return value.
    Side Effects / State: One insert_event call on the store.
    Dependencies: Uses errors.best_effort for the non-critical policy.
    Failure Modes: Unknown event names raise ValueError (programming error);
        store failures are logged and swallowed.
    If Removed: Identity conflicts and switches leave no trail for operators.
    Testing Notes: Point at a store whose insert_event raises and assert no exception.
    """
    # Reject typos in event names early; store errors are non-critical.
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    with best_effort(f"insert_event:{event_type}", logger):
        store.insert_event(user_id, event_type, payload or {}, conversation_id=conversation_id)
