from __future__ import annotations

import logging
from typing import Dict, Optional

import google.generativeai as genai

try:  # Prefer typed enums when available
    from google.generativeai import types as genai_types

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
except Exception:  # pragma: no cover - fallback for older SDKs
    DEFAULT_SAFETY_SETTINGS = [
        {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_ONLY_HIGH"},
        {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_ONLY_HIGH"},
        {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_ONLY_HIGH"},
        {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_ONLY_HIGH"},
    ]

from .config import Settings

logger = logging.getLogger("pz.gemini")


class GeminiClient:
    """Thin wrapper around the Gemini SDK returning raw JSON text for the AI collaborators."""

    def __init__(self, settings: Settings) -> None:
        """Purpose: Configure the Gemini SDK and initialize the model cache.
        Inputs/Outputs: Input is Settings; no return value.
        Side Effects / State: Configures the SDK API key and caches model instances.
        Dependencies: Uses google.generativeai and Settings from config.
        Failure Modes: Raises ValueError if API key or model name is missing.
        If Removed: Free-text ordering and invoice extraction have no AI backend.
        Testing Notes: Validate missing key raises ValueError.
        """
        # Configure API key and seed the default model.
        if not settings.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        genai.configure(api_key=settings.gemini_api_key)
        self._timeout = settings.ai_timeout_seconds
        self._models: Dict[str, genai.GenerativeModel] = {}
        self._default_model = _normalize_model_name(settings.gemini_model)
        if not self._default_model:
            raise ValueError("Gemini model name is required")
        self._models[self._default_model] = genai.GenerativeModel(self._default_model)

    def _model(self, model: Optional[str]) -> genai.GenerativeModel:
        model_name = _normalize_model_name(model) if model else self._default_model
        if model_name not in self._models:
            self._models[model_name] = genai.GenerativeModel(model_name)
        return self._models[model_name]

    def generate_json(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 4096,
    ) -> str:
        """Purpose: Generate a JSON-mode text response for a string prompt.
        Inputs/Outputs: Input is the rendered prompt; returns the raw response text.
        Side Effects / State: May add a model to the internal cache; network call.
        Dependencies: genai.GenerativeModel.generate_content with response_mime_type.
        Failure Modes: SDK/network errors and timeouts propagate to the caller, which
            converts them to UpstreamParseError.
        If Removed: Natural-language order parsing has nothing to call.
        Testing Notes: Swap in a fake client in tests; never hit the network.
        """
        # Ask for JSON directly so the parser rarely needs loose extraction.
        response = self._model(model).generate_content(
            prompt,
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
                "response_mime_type": "application/json",
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
            request_options={"timeout": self._timeout},
        )
        return _response_text(response)

    def generate_json_from_document(
        self,
        document: bytes,
        mime_type: str,
        prompt: str,
        model: Optional[str] = None,
        temperature: float = 0.1,
        max_output_tokens: int = 4096,
    ) -> str:
        """Purpose: Run a vision/document prompt over inline bytes and return JSON text.
        Inputs/Outputs: Inputs are document bytes, MIME type and prompt; returns raw text.
        Side Effects / State: Network call; may cache a model instance.
        Dependencies: genai inline data parts ({"mime_type", "data"}).
        Failure Modes: SDK errors propagate; caller degrades to an empty extraction.
        If Removed: Invoice-based price comparisons cannot be generated.
        Testing Notes: Use a fake client returning canned JSON.
        """
        # Inline document part first, instruction second.
        response = self._model(model).generate_content(
            [{"mime_type": mime_type, "data": document}, prompt],
            generation_config={
                "temperature": temperature,
                "max_output_tokens": max_output_tokens,
                "response_mime_type": "application/json",
            },
            safety_settings=DEFAULT_SAFETY_SETTINGS,
            request_options={"timeout": self._timeout},
        )
        return _response_text(response)


def _response_text(response: object) -> str:
    # response.text raises when the candidate was blocked; treat that as empty output.
    try:
        text: Optional[str] = getattr(response, "text", None)
    except ValueError:
        logger.warning("gemini_response_blocked")
        return ""
    return (text or "").strip()


def _normalize_model_name(name: Optional[str]) -> str:
    """Strip the "models/" prefix and whitespace from a model name."""
    if not name:
        return ""
    cleaned = name.strip()
    if cleaned.startswith("models/"):
        return cleaned.split("/", 1)[1]
    return cleaned
