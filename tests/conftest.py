from pathlib import Path
from typing import Dict, List, Optional

import pytest

from shopdesk.config import Settings
from shopdesk.errors import ExtractionError
from shopdesk.integrations import (
    ChannelSender,
    CrmClient,
    EmailClient,
    HelpdeskClient,
    Integrations,
    OrderInfo,
    OrderLookup,
)
from shopdesk.router import DialogueRouter
from shopdesk.store import JsonStore

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "shopdesk" / "prompts"


def make_settings(**overrides) -> Settings:
    values = dict(
        gemini_api_key="",
        gemini_model_chat="gemini-2.5-flash",
        gemini_model_extractor="gemini-2.5-flash",
        prompts_dir=PROMPTS_DIR,
        store_backend="json",
        store_path=Path("unused.json"),
        supabase_url="",
        supabase_key="",
        store_timeout_seconds=5.0,
        llm_timeout_seconds=5.0,
        llm_max_retries=1,
        integration_timeout_seconds=2.0,
        history_limit=10,
        summary_max_chars=1500,
        reply_compact_threshold=600,
    )
    values.update(overrides)
    return Settings(**values)


class FakeLLM:
    """Scripted stand-in for GeminiClient."""

    def __init__(self, reply: str = "LLM reply", extracted: Optional[Dict[str, Optional[str]]] = None):
        self.reply = reply
        self.extracted = extracted or {}
        self.extract_error: Optional[Exception] = None
        self.chat_error: Optional[Exception] = None
        self.chat_calls: List[dict] = []
        self.extract_calls: List[str] = []

    def chat_reply(self, system_instruction, summary, history, user_text, model=None):
        self.chat_calls.append(
            {
                "system_instruction": system_instruction,
                "summary": summary,
                "history": list(history),
                "user_text": user_text,
                "model": model,
            }
        )
        if self.chat_error:
            raise self.chat_error
        return self.reply

    def extract_fields(self, text, fields):
        self.extract_calls.append(text)
        if self.extract_error:
            raise self.extract_error
        return {name: self.extracted.get(name) for name in fields}


class RecordingOrders(OrderLookup):
    def __init__(self, order: Optional[OrderInfo] = None, error: Optional[Exception] = None):
        self.order = order
        self.error = error
        self.calls: List[Dict[str, str]] = []

    def lookup_order(self, facts):
        self.calls.append(dict(facts))
        if self.error:
            raise self.error
        return self.order


class RecordingCrm(CrmClient):
    def __init__(self, crm_id: str = "crm-1"):
        self.crm_id = crm_id
        self.calls = []

    def upsert_lead_or_contact(self, user, conversation, facts):
        self.calls.append((user.id, conversation.id, dict(facts)))
        return self.crm_id

    def add_note(self, crm_id, note):
        return None


class RecordingHelpdesk(HelpdeskClient):
    def __init__(self, ticket_id: str = "T-100", contact_id: str = "desk-1"):
        self.ticket_id = ticket_id
        self.contact_id = contact_id
        self.tickets = []

    def ensure_contact(self, user, facts):
        return self.contact_id

    def create_ticket(self, contact_id, subject, description, custom_fields):
        self.tickets.append(
            {"contact_id": contact_id, "subject": subject, "description": description, "custom_fields": custom_fields}
        )
        return self.ticket_id


class RecordingEmail(EmailClient):
    def __init__(self):
        self.sent = []

    def send_transactional(self, to, subject, text, meta):
        self.sent.append((to, subject))
        return "msg-1"


class RecordingSender(ChannelSender):
    def __init__(self, error: Optional[Exception] = None):
        self.sent = []
        self.error = error

    def send_text(self, to_phone, text):
        if self.error:
            raise self.error
        self.sent.append((to_phone, text))


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return JsonStore(None)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def orders():
    return RecordingOrders(order=OrderInfo(order_id="12345", status="shipped", tracking_url="https://t.example/1"))


@pytest.fixture
def integrations(orders):
    return Integrations(
        orders=orders,
        crm=RecordingCrm(),
        helpdesk=RecordingHelpdesk(),
        email=RecordingEmail(),
        channel=RecordingSender(),
        timeout_seconds=2.0,
    )


@pytest.fixture
def router(store, settings, llm, integrations):
    return DialogueRouter(store, settings, llm=llm, integrations=integrations)


@pytest.fixture
def failing_extractor():
    extractor = FakeLLM()
    extractor.extract_error = ExtractionError("extractor failed: timeout")
    return extractor
