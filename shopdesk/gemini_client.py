from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence

import google.generativeai as genai
from google.generativeai import types as genai_types

from .config import Settings
from .errors import ExtractionError, LLMError
from .prompt_loader import render_prompt
from .utils import normalize_email, normalize_phone, safe_json_loads

logger = logging.getLogger("shopdesk.llm")

DEFAULT_SAFETY_SETTINGS = [
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HARASSMENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_HATE_SPEECH,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
    {
        "category": genai_types.HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT,
        "threshold": genai_types.HarmBlockThreshold.BLOCK_ONLY_HIGH,
    },
]

CHAT_ROLES = {"user": "user", "assistant": "model", "model": "model"}


class GeminiClient:
    """Thin wrapper around the Gemini SDK for replies and field extraction."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if the API key or chat model name is missing.
        If Removed: Replies fall back to canned text and extraction is regex-only.
        Testing Notes: Validate missing key raises ValueError and models are cached.
        """
        # Configure API key and seed default model cache.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._prompts_dir = settings.prompts_dir
        self._timeout = settings.llm_timeout_seconds
        self._max_retries = max(0, min(settings.llm_max_retries, 1))
        self._compact_threshold = settings.reply_compact_threshold
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._chat_model = _normalize_model_name(settings.gemini_model_chat)
        self._extractor_model = _normalize_model_name(settings.gemini_model_extractor) or self._chat_model
        if not self._chat_model:
            raise ValueError("Gemini model name is required")

    def _model(self, name: str, system_instruction: Optional[str] = None) -> genai.GenerativeModel:
        # System instructions are bound at model construction time in the SDK.
        if system_instruction:
            return genai.GenerativeModel(name, system_instruction=system_instruction)
        if name not in self._models:
            self._models[name] = genai.GenerativeModel(name)
        return self._models[name]

    def _generate(
        self,
        model: genai.GenerativeModel,
        contents: object,
        generation_config: Dict[str, object],
        label: str,
    ) -> str:
        """Purpose: Call generate_content with a timeout and at most one retry.
        Inputs/Outputs: Inputs are model, contents, generation config and a log label;
            output is the stripped response text.
        Side Effects / State: One or two network calls.
        Dependencies: google.generativeai request_options timeout.
        Failure Modes: Raises LLMError after the retry budget is spent.
        If Removed: A hung model call would block the worker indefinitely.
        Testing Notes: Patch generate_content to fail once and succeed once.
        """
        # Bounded attempts: the first call plus the configured single retry.
        last_error: Optional[Exception] = None
        for attempt in range(self._max_retries + 1):
            try:
                response = model.generate_content(
                    contents,
                    generation_config=generation_config,
                    safety_settings=DEFAULT_SAFETY_SETTINGS,
                    request_options={"timeout": self._timeout},
                )
                text: Optional[str] = getattr(response, "text", None)
                return (text or "").strip()
            except Exception as exc:  # noqa: BLE001
                last_error = exc
                logger.warning("llm call=%s attempt=%s failed error=%s", label, attempt + 1, exc)
        raise LLMError(f"{label} failed: {last_error}")

    def chat_reply(
        self,
        system_instruction: str,
        summary: str,
        history: Sequence[Dict[str, str]],
        user_text: str,
        model: Optional[str] = None,
    ) -> str:
        """Purpose: Generate a short free-text reply grounded in summary and recent turns.
        Inputs/Outputs: Inputs are the system instruction, rolling summary, prior turns
            ({"role", "content"}), the latest user text and an optional model override;
            output is the reply text.
        Side Effects / State: One generation call, plus a compaction call for long replies.
        Dependencies: _generate, build_chat_contents, compact_reply.
        Failure Modes: Raises LLMError when generation fails; a failed compaction keeps
            the uncompacted reply.
        If Removed: Intents without an integration have no way to answer.
        Testing Notes: Return a reply longer than the threshold and assert a second call.
        """
        # Ground the model on the summary, then on the bounded history.
        model_name = _normalize_model_name(model) if model else self._chat_model
        instruction = system_instruction
        if summary:
            instruction = f"{system_instruction}\n\nConversation summary so far:\n{summary}"
        contents = build_chat_contents(history, user_text)
        reply = self._generate(
            self._model(model_name, instruction),
            contents,
            {"temperature": 0.3, "max_output_tokens": 1024},
            label="chat_reply",
        )
        if len(reply) > self._compact_threshold:
            reply = self.compact_reply(reply, model_name)
        return reply

    def compact_reply(self, reply: str, model_name: Optional[str] = None) -> str:
        # Second pass for replies over the length threshold; keep the original on failure.
        prompt = render_prompt(self._prompts_dir / "compact_reply.txt", reply=reply)
        try:
            compacted = self._generate(
                self._model(model_name or self._chat_model),
                prompt,
                {"temperature": 0.1, "max_output_tokens": 512},
                label="compact_reply",
            )
        except LLMError as exc:
            logger.warning("compaction skipped error=%s", exc)
            return reply
        return compacted or reply

    def extract_fields(self, text: str, fields: Iterable[str]) -> Dict[str, Optional[str]]:
        """Purpose: Extract a fixed set of fields from free text as JSON.
        Inputs/Outputs: Inputs are the raw user text and field names; output maps every
            field to a trimmed string or None.
        Side Effects / State: One generation call in JSON mode.
        Dependencies: prompts/fact_extractor.txt, safe_json_loads.
        Failure Modes: Raises ExtractionError on call failure or non-JSON output.
        If Removed: Only regex facts are available.
        Testing Notes: Feed a fenced JSON answer and assert it still parses.
        """
        # Ask for JSON only and coerce the answer onto the fixed schema.
        field_list: List[str] = list(fields)
        prompt = render_prompt(
            self._prompts_dir / "fact_extractor.txt", fields=", ".join(field_list), message=text
        )
        try:
            raw = self._generate(
                self._model(self._extractor_model),
                prompt,
                {"temperature": 0.0, "max_output_tokens": 512, "response_mime_type": "application/json"},
                label="extract_fields",
            )
        except LLMError as exc:
            raise ExtractionError(str(exc)) from exc
        parsed = safe_json_loads(raw)
        if parsed is None:
            raise ExtractionError("extractor failed: no json parsed")
        result: Dict[str, Optional[str]] = {}
        for field_name in field_list:
            value = parsed.get(field_name)
            if value is None or not isinstance(value, (str, int, float)):
                result[field_name] = None
                continue
            cleaned = str(value).strip()
            if field_name == "email":
                cleaned = normalize_email(cleaned)
            elif field_name == "phone":
                cleaned = normalize_phone(cleaned)
            result[field_name] = cleaned or None
        return result


def build_chat_contents(history: Sequence[Dict[str, str]], user_text: str) -> List[Dict[str, object]]:
    """Purpose: Convert stored turns into Gemini chat contents.
    Inputs/Outputs: Inputs are prior turns and the latest user text; output is a list
        of {"role", "parts"} dicts ending with the user turn.
    Side Effects / State: None.
    Dependencies: CHAT_ROLES mapping.
    Failure Modes: Unknown roles map to "model" so stored text never gains user authority.
    If Removed: History cannot be passed to the model.
    Testing Notes: "assistant" becomes "model"; empty contents are skipped.
    """
    # Map roles and drop empty turns.
    contents: List[Dict[str, object]] = []
    for turn in history:
        content = (turn.get("content") or "").strip()
        if not content:
            continue
        role = CHAT_ROLES.get(turn.get("role") or "", "model")
        contents.append({"role": role, "parts": [{"text": content}]})
    contents.append({"role": "user", "parts": [{"text": user_text}]})
    return contents


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip a "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
