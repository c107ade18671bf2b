"""
Error taxonomy for the routing engine.

Critical-path failures raise one of the classes below. Non-critical writes
(audit events, opportunistic patches) run inside ``best_effort`` which logs
and swallows the failure.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Optional


class StoreError(RuntimeError):
    """Raised when the store answers with a non-2xx status or a malformed payload."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DuplicateKeyError(StoreError):
    """Raised when an insert collides with a unique constraint."""


class ExtractionError(RuntimeError):
    """Raised when the model-backed field extractor is unreachable or non-conforming."""


class IntegrationError(RuntimeError):
    """Raised when a business integration call fails or times out."""

    def __init__(self, integration: str, message: str) -> None:
        super().__init__(f"{integration}: {message}")
        self.integration = integration


class LLMError(RuntimeError):
    """Raised when the chat completion call fails after its retry."""


@contextmanager
def best_effort(operation: str, logger: logging.Logger) -> Iterator[None]:
    """Purpose: Run a non-critical operation, logging and swallowing any failure.
    Inputs/Outputs: Inputs are an operation label and a logger; yields nothing.
    Side Effects / State: Emits a warning log when the wrapped block raises.
    Dependencies: Used for audit events, message writes and opportunistic patches.
    Failure Modes: Never raises for Exception subclasses; BaseException still propagates.
    If Removed: An audit write failure would abort an otherwise healthy turn.
    Testing Notes: Raise inside the block and assert the caller continues.
    """
    # Swallow the failure after recording what was lost.
    try:
        yield
    except Exception as exc:  # noqa: BLE001
        logger.warning("best_effort op=%s failed error=%s", operation, exc)
