import logging
import time

import pytest

from shopdesk.audit import EVENT_KEY_ADDED, record_event
from shopdesk.config import load_settings
from shopdesk.errors import IntegrationError, best_effort
from shopdesk.integrations import Integrations
from shopdesk.step_runner import Step, StepRunner


def test_step_runner_skips_lazily():
    seen = []
    context = {"stop": False}

    def stop(ctx):
        seen.append("stop")
        ctx["stop"] = True

    runner = StepRunner(
        [
            Step("first", stop),
            Step("skipped", lambda ctx: seen.append("skipped"), skip_if=lambda ctx: ctx["stop"]),
            Step("final", lambda ctx: seen.append("final")),
        ]
    )
    runner.run(context)
    assert seen == ["stop", "final"]
    assert runner.step_names == ["first", "skipped", "final"]


def test_integration_call_wraps_errors():
    integrations = Integrations(timeout_seconds=1.0)
    with pytest.raises(IntegrationError) as excinfo:
        integrations.call("crm", lambda: (_ for _ in ()).throw(RuntimeError("401")))
    assert excinfo.value.integration == "crm"
    assert integrations.call("crm", lambda: "ok") == "ok"


def test_integration_call_times_out():
    integrations = Integrations(timeout_seconds=0.05)
    with pytest.raises(IntegrationError):
        integrations.call("orders", lambda: time.sleep(0.3))


def test_best_effort_swallows_and_logs(caplog):
    logger = logging.getLogger("shopdesk.test")
    with caplog.at_level(logging.WARNING, logger="shopdesk.test"):
        with best_effort("insert_event", logger):
            raise RuntimeError("store down")
    assert "op=insert_event" in caplog.text


def test_record_event_rejects_unknown_type(store):
    with pytest.raises(ValueError):
        record_event(store, "u1", "identity.made_up")


def test_record_event_survives_store_failure():
    class BrokenStore:
        def insert_event(self, *args, **kwargs):
            raise RuntimeError("store down")

    record_event(BrokenStore(), "u1", EVENT_KEY_ADDED, {"key_type": "email"})


def test_load_settings_defaults_and_overrides(monkeypatch):
    for name in ("STORE_BACKEND", "HISTORY_LIMIT", "GEMINI_MODEL", "GEMINI_MODEL_CHAT"):
        monkeypatch.delenv(name, raising=False)
    settings = load_settings()
    assert settings.store_backend == "json"
    assert settings.history_limit == 10
    assert settings.summary_max_chars == 1500

    monkeypatch.setenv("HISTORY_LIMIT", "4")
    monkeypatch.setenv("GEMINI_MODEL_CHAT", "gemini-2.5-pro")
    settings = load_settings()
    assert settings.history_limit == 4
    assert settings.gemini_model_chat == "gemini-2.5-pro"


def test_load_settings_rejects_bad_values(monkeypatch):
    monkeypatch.setenv("STORE_BACKEND", "mongo")
    with pytest.raises(ValueError):
        load_settings()
    monkeypatch.setenv("STORE_BACKEND", "json")
    monkeypatch.setenv("HISTORY_LIMIT", "ten")
    with pytest.raises(ValueError):
        load_settings()
