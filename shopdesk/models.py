from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class IdentityStatus(str, Enum):
    """Identity ladder labels stored on AppUser."""
    ANONYMOUS = "anonymous"
    NAMED = "named"
    IDENTIFIED = "identified"
    VERIFIED = "verified"
    AUTHENTICATED = "authenticated"


class AppUser(BaseModel):
    """Durable identity record for one human."""
    id: str
    anonymous_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    identity_tier: int = Field(default=0, ge=0, le=5)
    identity_status: IdentityStatus = IdentityStatus.ANONYMOUS
    confidence_score: float = Field(default=20, ge=0, le=100)
    primary_identifier: str = ""
    profile: Dict[str, Any] = Field(default_factory=dict)
    crm_contact_id: Optional[str] = None
    desk_contact_id: Optional[str] = None
    last_seen_at: Optional[float] = None


class PendingSwitch(BaseModel):
    """Detected identity conflict awaiting a SWITCH/GUEST answer."""
    target_user_id: str
    key_type: str
    key_value: str


class UserSession(BaseModel):
    """Channel session key bound to exactly one AppUser at a time."""
    session_id: str
    user_id: str
    channel: str = "web"
    pending_switch: Optional[PendingSwitch] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_seen_at: Optional[float] = None


class IdentityKey(BaseModel):
    key_type: str
    key_value: str
    user_id: str
    verified: bool = False


class Conversation(BaseModel):
    """Open or closed thread for one user on one channel."""
    id: str
    user_id: str
    status: str = "open"
    summary: str = ""
    last_intent: Optional[str] = None
    channel: str = "web"
    locale: str = "en"
    facts: Dict[str, str] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[float] = None


class StoredMessage(BaseModel):
    """Persisted turn record."""
    conversation_id: str
    role: str
    content: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: float


class Event(BaseModel):
    """Append-only audit record."""
    user_id: str
    conversation_id: Optional[str] = None
    event_type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: float


class ChatRequest(BaseModel):
    """Request payload for the web chat API."""
    session_id: Optional[str] = Field(default=None)
    message: str
    channel: str = "web"
    locale: str = "en"
    model: Optional[str] = None


class ChatResponse(BaseModel):
    """Response payload returned by the chat APIs."""
    intent: str
    reply: str
    conversation_id: str
    session_id: str
    extracted: Dict[str, str] = Field(default_factory=dict)
    extractor_error: Optional[str] = None


class WhatsAppInbound(BaseModel):
    """Flattened messaging-channel webhook payload."""
    message_id: str
    from_phone: str
    text: str
    locale: str = "en"


class CloseConversationRequest(BaseModel):
    session_id: str


class HealthResponse(BaseModel):
    ok: bool
    store: bool
    checks: List[str] = Field(default_factory=list)


class SessionRequest(BaseModel):
    """Request payload for bootstrapping a session before the first message."""
    session_id: Optional[str] = Field(default=None)
    channel: str = "web"
    locale: str = "en"


class SessionResponse(BaseModel):
    session_id: str
    user_id: str
    conversation_id: str


class MessageOut(BaseModel):
    role: str
    content: str
    created_at: float


class LatestConversationResponse(BaseModel):
    """Open conversation of a session with its most recent messages, oldest first."""
    session_id: str
    conversation_id: str
    messages: List[MessageOut] = Field(default_factory=list)
