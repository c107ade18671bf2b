"""
Business integration contracts and the no-op implementations shipped by default.

Every call goes through ``Integrations.call`` which runs it on a worker thread
with a timeout and converts any failure into ``IntegrationError``.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, TypeVar

from .errors import IntegrationError
from .models import AppUser, Conversation

logger = logging.getLogger("shopdesk.integrations")

T = TypeVar("T")


@dataclass
class OrderInfo:
    order_id: str
    status: str
    tracking_url: str = ""


class OrderLookup:
    """Storefront order lookup by any of order_id / email / phone."""

    def lookup_order(self, facts: Dict[str, str]) -> Optional[OrderInfo]:
        raise NotImplementedError


class CrmClient:
    def upsert_lead_or_contact(self, user: AppUser, conversation: Conversation, facts: Dict[str, str]) -> str:
        raise NotImplementedError

    def add_note(self, crm_id: str, note: str) -> None:
        raise NotImplementedError


class HelpdeskClient:
    def ensure_contact(self, user: AppUser, facts: Dict[str, str]) -> str:
        raise NotImplementedError

    def create_ticket(
        self, contact_id: str, subject: str, description: str, custom_fields: Dict[str, str]
    ) -> str:
        raise NotImplementedError


class EmailClient:
    def send_transactional(self, to: str, subject: str, text: str, meta: Dict[str, str]) -> str:
        raise NotImplementedError


class ChannelSender:
    """Outbound delivery for messaging-channel replies."""

    def send_text(self, to_phone: str, text: str) -> None:
        raise NotImplementedError


class NoopOrderLookup(OrderLookup):
    def lookup_order(self, facts: Dict[str, str]) -> Optional[OrderInfo]:
        return None


class NoopCrmClient(CrmClient):
    def upsert_lead_or_contact(self, user: AppUser, conversation: Conversation, facts: Dict[str, str]) -> str:
        return ""

    def add_note(self, crm_id: str, note: str) -> None:
        return None


class NoopHelpdeskClient(HelpdeskClient):
    def ensure_contact(self, user: AppUser, facts: Dict[str, str]) -> str:
        return ""

    def create_ticket(
        self, contact_id: str, subject: str, description: str, custom_fields: Dict[str, str]
    ) -> str:
        return ""


class NoopEmailClient(EmailClient):
    def send_transactional(self, to: str, subject: str, text: str, meta: Dict[str, str]) -> str:
        return ""


class NoopChannelSender(ChannelSender):
    def send_text(self, to_phone: str, text: str) -> None:
        logger.debug("channel send skipped (noop) text_len=%s", len(text or ""))


@dataclass
class Integrations:
    """Bundle of integration clients plus the shared call timeout."""
    orders: OrderLookup = field(default_factory=NoopOrderLookup)
    crm: CrmClient = field(default_factory=NoopCrmClient)
    helpdesk: HelpdeskClient = field(default_factory=NoopHelpdeskClient)
    email: EmailClient = field(default_factory=NoopEmailClient)
    channel: ChannelSender = field(default_factory=NoopChannelSender)
    timeout_seconds: float = 20.0

    def call(self, name: str, fn: Callable[[], T]) -> T:
        """Purpose: Run one integration call with a timeout.
        Inputs/Outputs: Inputs are a label and a zero-argument callable; output is
            the callable's return value.
        Side Effects / State: Uses a single-use worker thread per call.
        Dependencies: concurrent.futures.ThreadPoolExecutor.
        Failure Modes: Raises IntegrationError on timeout or on any exception from fn.
            A timed-out worker is abandoned, not killed.
        If Removed: A hung vendor API would stall the whole turn.
        Testing Notes: Pass a callable that sleeps past a tiny timeout.
        """
        # Run off-thread so the caller can stop waiting after the timeout.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"integration-{name}")
        future = executor.submit(fn)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            logger.warning("integration=%s timed out after %ss", name, self.timeout_seconds)
            raise IntegrationError(name, "timed out") from exc
        except IntegrationError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("integration=%s failed error=%s", name, exc)
            raise IntegrationError(name, str(exc)) from exc
        finally:
            executor.shutdown(wait=False)
