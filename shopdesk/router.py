from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .audit import (
    EVENT_CONVERSATION_RESUMED,
    EVENT_INTEGRATION_FAILED,
    EVENT_SESSION_CREATED,
    EVENT_TURN_FAILED,
    record_event,
)
from .config import Settings
from .errors import IntegrationError, LLMError, StoreError, best_effort
from .identity import IdentityResolution, IdentityResolver, Inbound
from .intents import (
    FIELD_EMAIL,
    FIELD_ITEM,
    FIELD_NAME,
    FIELD_ORDER_ID,
    FIELD_PHONE,
    FIELD_REASON,
    INTENT_IDENTITY_INTERRUPT,
    INTENT_OTHER,
    INTENT_RETURN_REFUND,
    ROUTING_TABLE,
    TOOL_CRM,
    TOOL_EMAIL,
    TOOL_HELPDESK,
    TOOL_ORDER_LOOKUP,
    IntentSpec,
    ask_for_missing,
    classify_intent,
    missing_fields,
    resolve_spec,
)
from .integrations import Integrations
from .models import AppUser, Conversation, StoredMessage
from .prompt_loader import load_prompt
from .step_runner import Step, StepRunner
from .utils import mask_facts, normalize_phone

logger = logging.getLogger("shopdesk.router")

DUPLICATE_REPLY = "✅ Got it. (Duplicate message ignored.)"
APOLOGY_REPLY = "Sorry — something went wrong on our side. Please try again in a moment."
LLM_ERROR_REPLY = "Sorry — I ran into an error. Please try again."
ORDER_NOT_FOUND_REPLY = (
    "I couldn’t find a matching order. Please recheck the Order ID, or share the email/phone used at checkout."
)
CRM_SAVED_REPLY = "Thanks — I’ve saved your details. How would you like to proceed (product help, order status, or support)?"
TICKET_CAPTURED_REPLY = "I’ve captured the details. A support agent will get back to you shortly."
EMAIL_SENT_REPLY = "Done — I’ve sent the details to your email."
INTEGRATION_UNAVAILABLE_REPLY = "Sorry — I couldn’t complete that request right now. Please try again in a little while."
IDEMPOTENCY_PREFIX = "wa_msg:"
AWAITING_INTENT_KEY = "awaiting_intent"
KNOWN_FACT_FIELDS = (FIELD_ORDER_ID, FIELD_EMAIL, FIELD_PHONE, FIELD_NAME)


@dataclass
class RouteResult:
    """Outcome of one routed turn."""
    intent: str
    reply: str
    conversation_id: str = ""
    extracted: Dict[str, str] = field(default_factory=dict)
    extractor_error: Optional[str] = None
    user_id: str = ""
    integration: Optional[str] = None
    duplicate: bool = False


@dataclass
class TurnContext:
    """Mutable context passed through each routing step."""
    inbound: Inbound
    done: bool = False
    identity: Optional[IdentityResolution] = None
    user: Optional[AppUser] = None
    conversation: Optional[Conversation] = None
    history: List[StoredMessage] = field(default_factory=list)
    facts: Dict[str, str] = field(default_factory=dict)
    extractor_error: Optional[str] = None
    intent: str = INTENT_OTHER
    spec: Optional[IntentSpec] = None
    missing: List[str] = field(default_factory=list)
    reply: Optional[str] = None
    integration: Optional[str] = None
    integration_failed: bool = False
    duplicate: bool = False

    def result(self) -> RouteResult:
        return RouteResult(
            intent=self.intent,
            reply=self.reply or "",
            conversation_id=self.conversation.id if self.conversation else "",
            extracted=dict(self.facts),
            extractor_error=self.extractor_error,
            user_id=self.user.id if self.user else "",
            integration=self.integration,
            duplicate=self.duplicate,
        )


def append_to_summary(summary: str, reply: str, max_chars: int = 1500) -> str:
    """Append an assistant line and keep only the trailing window."""
    updated = f"{summary}\n" if summary else ""
    updated += f"A: {reply}"
    if len(updated) > max_chars:
        updated = updated[-max_chars:]
    return updated


def build_ticket_description(summary: str, latest_message: str, facts: Dict[str, str]) -> str:
    """Purpose: Build the helpdesk ticket body from conversation context.
    Inputs/Outputs: Inputs are the rolling summary, the latest user text and merged
        facts; output is the multi-line description.
    Side Effects / State: None.
    Dependencies: None.
    Failure Modes: None; absent facts are simply omitted.
    If Removed: Agents receive tickets without the chat context.
    Testing Notes: Empty summary omits the "Chat summary" block.
    """
    # Summary first, then the latest message, then the structured facts.
    lines: List[str] = []
    if summary:
        lines.append("Chat summary:\n" + summary)
    lines.append("\nLatest message:\n" + latest_message)
    if facts.get(FIELD_ORDER_ID):
        lines.append("\nOrder ID: " + facts[FIELD_ORDER_ID])
    if facts.get(FIELD_ITEM):
        lines.append("Item: " + facts[FIELD_ITEM])
    if facts.get(FIELD_REASON):
        lines.append("Reason: " + facts[FIELD_REASON])
    return "\n".join(lines)


def known_facts_line(facts: Dict[str, str]) -> str:
    parts = [f" {name}={facts[name]};" for name in KNOWN_FACT_FIELDS if facts.get(name)]
    if not parts:
        return ""
    return " Known facts:" + "".join(parts)


class DialogueRouter:
    """Per-message orchestrator from inbound text to persisted reply."""

    def __init__(
        self,
        store,
        settings: Settings,
        llm=None,
        integrations: Optional[Integrations] = None,
    ) -> None:
        """Purpose: Wire the store, LLM client and integrations into a step pipeline.
        Inputs/Outputs: Inputs are the Store, Settings, an optional GeminiClient-like
            object and optional Integrations; no return value.
        Side Effects / State: Builds an IdentityResolver and a StepRunner.
        Dependencies: IdentityResolver, StepRunner, Integrations.
        Failure Modes: None at init.
        If Removed: The HTTP surface has nothing to route messages through.
        Testing Notes: Build with JsonStore(None) and a fake LLM.
        """
        # Keep collaborators and declare the ordered turn pipeline.
        self._store = store
        self._settings = settings
        self._llm = llm
        self._integrations = integrations or Integrations(timeout_seconds=settings.integration_timeout_seconds)
        self._resolver = IdentityResolver(store, extractor=llm)
        not_running = self._finished
        self._runner = StepRunner(
            steps=[
                Step("idempotency_gate", self._step_idempotency),
                Step("identity_resolution", self._step_identity, skip_if=not_running),
                Step("conversation", self._step_conversation, skip_if=not_running),
                Step("persist_inbound", self._step_persist_inbound, skip_if=not_running),
                Step("identity_interrupt", self._step_interrupt, skip_if=self._no_interrupt),
                Step("load_history", self._step_history, skip_if=not_running),
                Step("classify_intent", self._step_classify, skip_if=not_running),
                Step("merge_facts", self._step_merge_facts, skip_if=not_running),
                Step("slot_filling", self._step_slot_filling, skip_if=not_running),
                Step("integration_dispatch", self._step_dispatch, skip_if=self._has_reply),
                Step("llm_reply", self._step_llm_reply, skip_if=self._has_reply),
                Step("persist_turn", self._step_persist_turn, skip_if=not_running),
            ]
        )
        logger.debug("router pipeline steps=%s", ",".join(self._runner.step_names))

    @property
    def store(self):
        return self._store

    @property
    def integrations(self) -> Integrations:
        return self._integrations

    def handle(self, inbound: Inbound) -> RouteResult:
        """Purpose: Route one inbound message to a reply and persist the turn.
        Inputs/Outputs: Input is the Inbound; output is a RouteResult.
        Side Effects / State: Store reads/writes, audit events, and at most one
            integration call plus LLM calls.
        Dependencies: StepRunner over the _step_* methods.
        Failure Modes: StoreError on the critical path becomes APOLOGY_REPLY and a
            router.turn_failed event; other exceptions propagate.
        If Removed: No inbound message would ever be answered.
        Testing Notes: Make get_user_session raise StoreError and assert the apology.
        """
        # Run the pipeline; convert critical store failures into a generic reply.
        context = TurnContext(inbound=inbound)
        logger.info(
            "turn start session=%s channel=%s message_id=%s",
            inbound.session_id,
            inbound.channel,
            inbound.channel_message_id or "-",
        )
        try:
            self._runner.run(context)
        except StoreError as exc:
            logger.error("turn failed session=%s error=%s", inbound.session_id, exc)
            record_event(
                self._store,
                context.user.id if context.user else "",
                EVENT_TURN_FAILED,
                {"session_id": inbound.session_id, "error": str(exc), "status_code": exc.status_code},
                conversation_id=context.conversation.id if context.conversation else None,
            )
            context.intent = INTENT_OTHER
            context.reply = APOLOGY_REPLY
            context.integration = None
            return context.result()
        result = context.result()
        logger.info(
            "turn done session=%s user=%s intent=%s integration=%s",
            inbound.session_id,
            result.user_id or "-",
            result.intent,
            result.integration or "-",
        )
        return result

    def open_session(self, session_id: str, channel: str, locale: str) -> Tuple[AppUser, Conversation]:
        """Purpose: Bootstrap a session before its first message.
        Inputs/Outputs: Inputs are the session key, channel and locale; output is the
            bound AppUser and its open Conversation.
        Side Effects / State: May create the anonymous user, session and conversation;
            records session.created.
        Dependencies: IdentityResolver.bootstrap, Store.get_or_create_open_conversation.
        Failure Modes: StoreError propagates to the caller.
        If Removed: Widgets only learn their conversation id after the first message.
        Testing Notes: Opening twice returns the same user and conversation.
        """
        # Same bootstrap as a first message, without extraction or routing.
        _, user = self._resolver.bootstrap(session_id, channel)
        conversation = self._store.get_or_create_open_conversation(user.id, session_id, channel, locale)
        record_event(
            self._store,
            user.id,
            EVENT_SESSION_CREATED,
            {"session_id": session_id, "channel": channel},
            conversation_id=conversation.id,
        )
        logger.info("session opened session=%s user=%s conversation=%s", session_id, user.id, conversation.id)
        return user, conversation

    def latest_conversation(self, session_id: str, limit: int) -> Tuple[Conversation, List[StoredMessage]]:
        """Resume the session's open conversation and return its recent messages."""
        session, user = self._resolver.bootstrap(session_id, "web")
        conversation = self._store.get_or_create_open_conversation(user.id, session_id, session.channel, "en")
        messages = self._store.fetch_recent_messages(conversation.id, limit)
        record_event(
            self._store,
            user.id,
            EVENT_CONVERSATION_RESUMED,
            {"session_id": session_id, "limit": limit, "messages": len(messages)},
            conversation_id=conversation.id,
        )
        return conversation, messages

    @staticmethod
    def _finished(context: TurnContext) -> bool:
        return context.done

    @staticmethod
    def _no_interrupt(context: TurnContext) -> bool:
        return context.done or context.identity is None or not context.identity.interrupt

    @staticmethod
    def _has_reply(context: TurnContext) -> bool:
        return context.done or context.reply is not None

    @staticmethod
    def _answered_with_fact(context: TurnContext) -> bool:
        # The channel-verified phone arrives on every turn, so it is not an answer.
        channel_phone = normalize_phone(context.inbound.channel_phone or "")
        return any(
            value and not (key == FIELD_PHONE and value == channel_phone)
            for key, value in context.facts.items()
        )

    def _step_idempotency(self, context: TurnContext) -> None:
        # Duplicate channel deliveries get a fixed acknowledgement and nothing else.
        message_id = (context.inbound.channel_message_id or "").strip()
        if not message_id:
            return
        if self._store.check_and_insert_idempotency(IDEMPOTENCY_PREFIX + message_id):
            logger.info("duplicate delivery session=%s message_id=%s", context.inbound.session_id, message_id)
            context.reply = DUPLICATE_REPLY
            context.intent = INTENT_OTHER
            context.duplicate = True
            context.done = True

    def _step_identity(self, context: TurnContext) -> None:
        resolution = self._resolver.resolve(context.inbound)
        context.identity = resolution
        context.user = resolution.user
        context.facts = dict(resolution.facts)
        context.extractor_error = resolution.extractor_error
        logger.info(
            "session=%s user=%s identity_state=%s", context.inbound.session_id, resolution.user.id, resolution.state
        )

    def _step_conversation(self, context: TurnContext) -> None:
        inbound = context.inbound
        context.conversation = self._store.get_or_create_open_conversation(
            context.user.id, inbound.session_id, inbound.channel, inbound.locale
        )

    def _step_persist_inbound(self, context: TurnContext) -> None:
        with best_effort("insert_message:user", logger):
            self._store.insert_message(
                context.conversation.id,
                "user",
                context.inbound.user_text,
                {"channel": context.inbound.channel},
            )

    def _step_interrupt(self, context: TurnContext) -> None:
        # Conflict prompt: persist it and stop; no intent work on this turn.
        context.reply = context.identity.interrupt
        context.intent = INTENT_OTHER
        with best_effort("insert_message:interrupt", logger):
            self._store.insert_message(
                context.conversation.id, "assistant", context.reply, {"intent": INTENT_IDENTITY_INTERRUPT}
            )
        context.done = True

    def _step_history(self, context: TurnContext) -> None:
        # The inbound message is already stored; it is passed to the model separately.
        history = self._store.fetch_recent_messages(context.conversation.id, self._settings.history_limit)
        if history and history[-1].role == "user" and history[-1].content == context.inbound.user_text:
            history = history[:-1]
        context.history = history

    def _step_classify(self, context: TurnContext) -> None:
        # A bare answer to a clarifying question keeps the intent that asked it,
        # but only when the answer carries a fact; anything else is a new topic.
        intent = classify_intent(context.inbound.user_text)
        awaiting = context.conversation.metadata.pop(AWAITING_INTENT_KEY, None)
        if intent == INTENT_OTHER and awaiting in ROUTING_TABLE and self._answered_with_fact(context):
            intent = awaiting
        spec = resolve_spec(intent)
        context.intent = spec.intent
        context.spec = spec
        logger.info(
            "session=%s intent=%s facts=%s",
            context.inbound.session_id,
            context.intent,
            mask_facts(context.facts),
        )

    def _step_merge_facts(self, context: TurnContext) -> None:
        merged = dict(context.conversation.facts)
        for key, value in context.facts.items():
            if value:
                merged[key] = value
        context.conversation.facts = merged

    def _step_slot_filling(self, context: TurnContext) -> None:
        missing = missing_fields(context.spec, context.conversation.facts, context.inbound.channel_phone)
        context.missing = missing
        metadata = context.conversation.metadata
        if missing and context.intent != INTENT_OTHER:
            metadata[AWAITING_INTENT_KEY] = context.intent
        else:
            metadata.pop(AWAITING_INTENT_KEY, None)
        if missing:
            logger.info("session=%s intent=%s missing=%s", context.inbound.session_id, context.intent, missing)
            context.reply = ask_for_missing(context.spec, missing)

    def _step_dispatch(self, context: TurnContext) -> None:
        """Purpose: Invoke the single integration selected by the intent's tool plan.
        Inputs/Outputs: Input is TurnContext; sets context.reply on success.
        Side Effects / State: One integration call; may store CRM/helpdesk contact
            ids on the user.
        Dependencies: Integrations.call, build_ticket_description.
        Failure Modes: IntegrationError leaves reply unset so the LLM step answers,
            and records router.integration_failed.
        If Removed: Order lookups, tickets and lead capture never happen.
        Testing Notes: Use an order lookup that raises and assert the LLM reply.
        """
        # No plan means the LLM step answers.
        tool = context.spec.tool_plan.selected() if context.spec else None
        if tool is None:
            return
        context.integration = tool
        try:
            if tool == TOOL_ORDER_LOOKUP:
                context.reply = self._lookup_order(context)
            elif tool == TOOL_CRM:
                context.reply = self._upsert_crm(context)
            elif tool == TOOL_HELPDESK:
                context.reply = self._create_ticket(context)
            elif tool == TOOL_EMAIL:
                context.reply = self._send_email(context)
        except IntegrationError as exc:
            logger.warning(
                "session=%s integration=%s failed, answering with llm error=%s",
                context.inbound.session_id,
                tool,
                exc,
            )
            record_event(
                self._store,
                context.user.id,
                EVENT_INTEGRATION_FAILED,
                {"integration": tool, "error": str(exc)},
                conversation_id=context.conversation.id,
            )
            context.reply = None
            context.integration_failed = True

    def _lookup_order(self, context: TurnContext) -> str:
        facts = context.conversation.facts
        order = self._integrations.call(
            TOOL_ORDER_LOOKUP, lambda: self._integrations.orders.lookup_order(dict(facts))
        )
        if order is None:
            return ORDER_NOT_FOUND_REPLY
        reply = f"Here’s what I found:\n• Status: {order.status}"
        if order.tracking_url:
            reply += f"\n• Tracking: {order.tracking_url}"
        return reply

    def _upsert_crm(self, context: TurnContext) -> str:
        user, conversation = context.user, context.conversation
        crm_id = self._integrations.call(
            TOOL_CRM,
            lambda: self._integrations.crm.upsert_lead_or_contact(user, conversation, dict(conversation.facts)),
        )
        if crm_id and crm_id != user.crm_contact_id:
            with best_effort("update_app_user:crm_contact_id", logger):
                self._store.update_app_user(user.id, {"crm_contact_id": crm_id})
        return CRM_SAVED_REPLY

    def _create_ticket(self, context: TurnContext) -> str:
        user, conversation = context.user, context.conversation
        facts = dict(conversation.facts)
        contact_id = self._integrations.call(
            TOOL_HELPDESK, lambda: self._integrations.helpdesk.ensure_contact(user, facts)
        )
        if contact_id and contact_id != user.desk_contact_id:
            with best_effort("update_app_user:desk_contact_id", logger):
                self._store.update_app_user(user.id, {"desk_contact_id": contact_id})
        subject = "Return/Refund request" if context.intent == INTENT_RETURN_REFUND else "Support request"
        description = build_ticket_description(conversation.summary, context.inbound.user_text, facts)
        custom_fields = {
            "Conversation_ID": conversation.id,
            "Order_ID": facts.get(FIELD_ORDER_ID, ""),
            "Channel": conversation.channel,
        }
        ticket_id = self._integrations.call(
            TOOL_HELPDESK,
            lambda: self._integrations.helpdesk.create_ticket(contact_id, subject, description, custom_fields),
        )
        if not ticket_id:
            return TICKET_CAPTURED_REPLY
        return f"I’ve created a support ticket: {ticket_id}\nWe’ll follow up soon."

    def _send_email(self, context: TurnContext) -> str:
        email = context.conversation.facts.get(FIELD_EMAIL, "")
        if not email:
            raise IntegrationError(TOOL_EMAIL, "missing email")
        meta = {"conversation_id": context.conversation.id}
        self._integrations.call(
            TOOL_EMAIL,
            lambda: self._integrations.email.send_transactional(
                email, "Support update", "Thanks—we received your request.", meta
            ),
        )
        return EMAIL_SENT_REPLY

    def _step_llm_reply(self, context: TurnContext) -> None:
        # Without a configured model: a failed integration gets a fixed apology,
        # otherwise the intent's clarifying question stands in.
        if self._llm is None:
            spec = context.spec or resolve_spec(INTENT_OTHER)
            if context.integration_failed or spec.tool_plan.selected() is not None:
                context.reply = INTEGRATION_UNAVAILABLE_REPLY
                return
            context.reply = (spec.clarify_questions or resolve_spec(INTENT_OTHER).clarify_questions)[0]
            return
        instruction = load_prompt(self._settings.prompts_dir / "system_reply.txt").strip()
        instruction += known_facts_line(context.conversation.facts)
        history = [{"role": message.role, "content": message.content} for message in context.history]
        try:
            context.reply = self._llm.chat_reply(
                instruction,
                context.conversation.summary,
                history,
                context.inbound.user_text,
                model=context.inbound.model,
            )
        except LLMError as exc:
            logger.error("session=%s llm reply failed error=%s", context.inbound.session_id, exc)
            context.reply = LLM_ERROR_REPLY
            return
        if not context.reply:
            context.reply = LLM_ERROR_REPLY

    def _step_persist_turn(self, context: TurnContext) -> None:
        # Message, summary and facts writes are non-critical once a reply exists.
        conversation = context.conversation
        with best_effort("insert_message:assistant", logger):
            self._store.insert_message(conversation.id, "assistant", context.reply, {"intent": context.intent})
        conversation.summary = append_to_summary(
            conversation.summary, context.reply, self._settings.summary_max_chars
        )
        conversation.last_intent = context.intent
        with best_effort("update_conversation", logger):
            self._store.update_conversation(
                conversation.id,
                {
                    "last_intent": context.intent,
                    "summary": conversation.summary,
                    "facts": dict(conversation.facts),
                    "metadata": dict(conversation.metadata),
                },
            )
