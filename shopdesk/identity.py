"""
Identity resolution for inbound messages.

A session key is bound to exactly one AppUser. Contact facts seen in a
message are claimed as IdentityKeys for that user; a fact already owned by a
different user opens a SWITCH/GUEST sub-dialogue instead of merging anything.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .audit import (
    EVENT_CONFLICT,
    EVENT_IDENTITY_RESOLVED,
    EVENT_KEY_ADDED,
    EVENT_SWITCH_CONFIRMED,
    EVENT_SWITCH_DECLINED,
    EVENT_TOOL_CALL,
    EVENT_USER_CREATED,
    record_event,
)
from .errors import DuplicateKeyError, best_effort
from .facts import FactExtraction, FieldExtractor, contact_candidates, extract_facts
from .models import AppUser, IdentityStatus, PendingSwitch, UserSession
from .store import Store
from .utils import mask_contact_value, normalize_email, normalize_phone

logger = logging.getLogger("shopdesk.identity")

CONFLICT_REPLY = (
    "I found a different account for that email/phone. Reply SWITCH to use it, or GUEST to continue here."
)
EXTRACTOR_TOOL_NAME = "fact_extractor"
CONFIRM_TOKENS = frozenset({"switch", "yes", "confirm", "use that account"})
DECLINE_TOKENS = frozenset({"guest", "no", "stay", "continue"})

STATE_ANONYMOUS_BOUND = "anonymous_bound"
STATE_IDENTIFIED = "identified"
STATE_CONFLICT_PENDING = "conflict_pending"


@dataclass
class Inbound:
    """One inbound message, already unwrapped from its transport."""
    channel: str
    session_id: str
    user_text: str
    locale: str = "en"
    channel_message_id: Optional[str] = None
    channel_phone: Optional[str] = None
    model: Optional[str] = None


@dataclass
class IdentityResolution:
    """Outcome of identity resolution for one turn."""
    user: AppUser
    session: UserSession
    interrupt: Optional[str] = None
    facts: Dict[str, str] = field(default_factory=dict)
    extractor_error: Optional[str] = None
    state: str = STATE_ANONYMOUS_BOUND


@dataclass(frozen=True)
class IdentityState:
    tier: int
    status: IdentityStatus
    confidence: float
    primary_identifier: str


def derive_identity_state(user: AppUser, session_id: str) -> IdentityState:
    """Purpose: Compute tier, status, confidence and primary identifier for a user.
    Inputs/Outputs: Inputs are the (backfilled) AppUser and the session key; output
        is an IdentityState.
    Side Effects / State: None; pure function.
    Dependencies: normalize_email, normalize_phone.
    Failure Modes: None. Tiers 3-5 are never produced here.
    If Removed: Users stay at their creation tier forever.
    Testing Notes: email+phone -> primary is the email; name only -> tier 1.
    """
    # Contact info outranks a bare name; nothing at all falls back to the session anchor.
    email = normalize_email(user.email or "")
    phone = normalize_phone(user.phone or "")
    if email or phone:
        return IdentityState(2, IdentityStatus.IDENTIFIED, 80, email or phone)
    name = (user.name or "").strip()
    if name:
        return IdentityState(1, IdentityStatus.NAMED, 50, name)
    return IdentityState(0, IdentityStatus.ANONYMOUS, 20, f"session:{session_id}")


def build_identity_candidates(facts: Dict[str, str]) -> List[Tuple[str, str]]:
    """Contact keys to claim for this turn, email before phone."""
    return contact_candidates(facts)


def classify_switch_answer(text: str) -> Optional[str]:
    """Return "confirm", "decline", or None for an answer to the conflict prompt."""
    cleaned = (text or "").strip().lower()
    if cleaned in CONFIRM_TOKENS:
        return "confirm"
    if cleaned in DECLINE_TOKENS:
        return "decline"
    return None


class IdentityResolver:
    """Binds inbound messages to AppUsers and arbitrates identity conflicts."""

    def __init__(self, store: Store, extractor: Optional[FieldExtractor] = None) -> None:
        self._store = store
        self._extractor = extractor

    def resolve(self, inbound: Inbound) -> IdentityResolution:
        """Purpose: Resolve the AppUser behind one inbound message.
        Inputs/Outputs: Input is the Inbound; output is an IdentityResolution with the
            effective user, an optional interrupt reply and this turn's facts.
        Side Effects / State: May create a user and session, claim identity keys,
            record or clear a pending switch, backfill the user profile, and append
            audit events.
        Dependencies: Store contract, extract_facts, derive_identity_state, record_event.
        Failure Modes: StoreError on critical reads/writes propagates to the router;
            audit failures are swallowed.
        If Removed: Every message would be anonymous and conflicts would go unnoticed.
        Testing Notes: Seed a key owned by another user and assert the conflict
            reply with no user mutation.
        """
        # Bootstrap, then settle any pending switch before looking at new facts.
        session, user = self.bootstrap(inbound.session_id, inbound.channel)

        if session.pending_switch is not None:
            answer = classify_switch_answer(inbound.user_text)
            if answer is None:
                logger.info("identity pending switch unanswered session=%s", inbound.session_id)
                return IdentityResolution(
                    user=user, session=session, interrupt=CONFLICT_REPLY, state=STATE_CONFLICT_PENDING
                )
            session, user = self._settle_switch(session, user, answer)

        extraction = self._extract(inbound, user)
        facts = extraction.facts

        for key_type, key_value in build_identity_candidates(facts):
            owner = self._store.lookup_identity_key(key_type, key_value)
            if owner is None:
                self._claim_key(user, key_type, key_value)
                continue
            if owner.user_id == user.id:
                continue
            self._open_conflict(session, user, key_type, key_value, owner.user_id)
            return IdentityResolution(
                user=user,
                session=session,
                interrupt=CONFLICT_REPLY,
                facts=facts,
                extractor_error=extraction.error,
                state=STATE_CONFLICT_PENDING,
            )

        user = self._backfill(user, facts, inbound.session_id)
        with best_effort("touch_session", logger):
            self._store.patch_user_session(inbound.session_id, {})
        record_event(
            self._store,
            user.id,
            EVENT_IDENTITY_RESOLVED,
            {
                "session_id": inbound.session_id,
                "tier": user.identity_tier,
                "status": user.identity_status.value,
            },
        )
        state = STATE_IDENTIFIED if user.identity_tier >= 2 else STATE_ANONYMOUS_BOUND
        return IdentityResolution(
            user=user,
            session=session,
            facts=facts,
            extractor_error=extraction.error,
            state=state,
        )

    def bootstrap(self, session_id: str, channel: str) -> Tuple[UserSession, AppUser]:
        """Return the session and its bound user, creating both on first contact."""
        # First contact creates an anonymous user anchored on the session key.
        session = self._store.get_user_session(session_id)
        if session is not None:
            return session, self._store.get_app_user(session.user_id)

        try:
            user = self._store.create_anonymous_user(session_id, channel)
        except DuplicateKeyError:
            # Concurrent first contact already inserted the anchored row.
            user = self._store.get_app_user_by_anonymous_id(session_id)
            if user is None:
                raise
        session = self._store.upsert_user_session(session_id, user.id, channel)
        logger.info("identity bootstrap session=%s user=%s", session_id, user.id)
        record_event(self._store, user.id, EVENT_USER_CREATED, {"session_id": session_id})
        return session, user

    def _extract(self, inbound: Inbound, user: AppUser) -> FactExtraction:
        # Each model extractor call leaves a tool-call record with status and latency.
        started = time.monotonic()
        extraction = extract_facts(inbound.user_text, inbound.channel_phone, self._extractor)
        if self._extractor is None:
            return extraction
        record_event(
            self._store,
            user.id,
            EVENT_TOOL_CALL,
            {
                "tool_name": EXTRACTOR_TOOL_NAME,
                "status": "error" if extraction.error else "success",
                "latency_ms": int((time.monotonic() - started) * 1000),
                "session_id": inbound.session_id,
                "fields": sorted(extraction.facts),
                "error": extraction.error,
            },
        )
        return extraction

    def _settle_switch(self, session: UserSession, user: AppUser, answer: str) -> Tuple[UserSession, AppUser]:
        pending = session.pending_switch
        if answer == "confirm":
            self._store.patch_user_session(
                session.session_id, {"user_id": pending.target_user_id, "pending_switch": None}
            )
            record_event(
                self._store,
                pending.target_user_id,
                EVENT_SWITCH_CONFIRMED,
                {"from_user_id": user.id, "to_user_id": pending.target_user_id},
            )
            logger.info(
                "identity switch confirmed session=%s from=%s to=%s",
                session.session_id,
                user.id,
                pending.target_user_id,
            )
            user = self._store.get_app_user(pending.target_user_id)
            session = session.copy(update={"user_id": user.id, "pending_switch": None})
            return session, user

        self._store.patch_user_session(session.session_id, {"pending_switch": None})
        record_event(self._store, user.id, EVENT_SWITCH_DECLINED, {"session_id": session.session_id})
        logger.info("identity switch declined session=%s user=%s", session.session_id, user.id)
        return session.copy(update={"pending_switch": None}), user

    def _claim_key(self, user: AppUser, key_type: str, key_value: str) -> None:
        self._store.insert_identity_key(user.id, key_type, key_value)
        record_event(self._store, user.id, EVENT_KEY_ADDED, {"key_type": key_type, "key_value": key_value})
        logger.info(
            "identity key added user=%s key_type=%s key=%s", user.id, key_type, mask_contact_value(key_value)
        )

    def _open_conflict(
        self, session: UserSession, user: AppUser, key_type: str, key_value: str, other_user_id: str
    ) -> None:
        pending = PendingSwitch(target_user_id=other_user_id, key_type=key_type, key_value=key_value)
        self._store.patch_user_session(session.session_id, {"pending_switch": pending})
        session.pending_switch = pending
        record_event(
            self._store,
            user.id,
            EVENT_CONFLICT,
            {
                "key_type": key_type,
                "key_value": key_value,
                "current_user_id": user.id,
                "other_user_id": other_user_id,
            },
        )
        logger.info(
            "identity conflict session=%s user=%s other=%s key_type=%s key=%s",
            session.session_id,
            user.id,
            other_user_id,
            key_type,
            mask_contact_value(key_value),
        )

    def _backfill(self, user: AppUser, facts: Dict[str, str], session_id: str) -> AppUser:
        # Only fill empty profile fields; existing values are never overwritten.
        patch: Dict[str, object] = {"last_seen_at": time.time()}
        if not user.email and facts.get("email"):
            patch["email"] = normalize_email(facts["email"])
        if not user.phone and facts.get("phone"):
            patch["phone"] = normalize_phone(facts["phone"])
        if not user.name and facts.get("name"):
            patch["name"] = facts["name"]
        updated = user.copy(update=patch)
        state = derive_identity_state(updated, session_id)
        patch.update(
            {
                "identity_tier": state.tier,
                "identity_status": state.status,
                "confidence_score": state.confidence,
                "primary_identifier": state.primary_identifier,
            }
        )
        self._store.update_app_user(user.id, patch)
        return user.copy(update=patch)
