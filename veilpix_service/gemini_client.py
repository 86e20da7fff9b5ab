from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Callable

from google import genai
from google.genai import types
from google.genai.errors import APIError, ClientError

from .adapters.gemini import GeminiRequest
from .errors import ProviderFailedError
from .settings import PROVIDER_LABELS, PROVIDER_GEMINI, GeminiSettings

logger = logging.getLogger("veilpix-service.gemini")

LABEL = PROVIDER_LABELS[PROVIDER_GEMINI]


@lru_cache(maxsize=16)
def get_api_key_client(api_key: str, backend: str, timeout_ms: int) -> genai.Client:
    # google-genai expects timeout in milliseconds.
    http_options = types.HttpOptions(timeout=timeout_ms)
    if backend == "gemini":
        return genai.Client(api_key=api_key, http_options=http_options)
    return genai.Client(vertexai=True, api_key=api_key, http_options=http_options)


def resolve_api_key_backend(api_key: str, configured: str = "auto") -> str:
    if configured in {"vertex", "gemini"}:
        return configured
    # Common Gemini Developer API keys start with AIza.
    return "gemini" if api_key.startswith("AIza") else "vertex"


def build_generate_config(backend: str, max_output_tokens: int, image_size: str | None = None) -> types.GenerateContentConfig:
    image_config_kwargs = {}
    # Gemini Developer API currently rejects image_size/output_mime_type.
    if backend != "gemini":
        if image_size:
            image_config_kwargs["image_size"] = image_size
        image_config_kwargs["output_mime_type"] = "image/png"

    return types.GenerateContentConfig(
        temperature=1,
        top_p=0.95,
        max_output_tokens=max_output_tokens,
        automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        response_modalities=["IMAGE"],
        safety_settings=[
            types.SafetySetting(category="HARM_CATEGORY_HATE_SPEECH", threshold="OFF"),
            types.SafetySetting(category="HARM_CATEGORY_DANGEROUS_CONTENT", threshold="OFF"),
            types.SafetySetting(category="HARM_CATEGORY_SEXUALLY_EXPLICIT", threshold="OFF"),
            types.SafetySetting(category="HARM_CATEGORY_HARASSMENT", threshold="OFF"),
        ],
        image_config=types.ImageConfig(**image_config_kwargs) if image_config_kwargs else None,
    )


def is_rate_limit_error(error: Exception) -> bool:
    if isinstance(error, ClientError) and getattr(error, "response", None) is not None:
        return getattr(error.response, "status_code", None) == 429
    text = str(error).lower()
    return "resource_exhausted" in text or "429" in text


class GeminiClient:
    """Synchronous ``generate_content`` call for the Gemini provider."""

    def __init__(
        self,
        settings: GeminiSettings,
        client_factory: Callable[[str, str, int], genai.Client] = get_api_key_client,
    ):
        self.settings = settings
        self._client_factory = client_factory

    @property
    def backend(self) -> str:
        return resolve_api_key_backend(self.settings.api_key, self.settings.backend)

    def generate(self, request: GeminiRequest) -> types.GenerateContentResponse:
        if not self.settings.api_key:
            raise ProviderFailedError(LABEL, "GEMINI_API_KEY is not configured")

        backend = self.backend
        client = self._client_factory(self.settings.api_key, backend, self.settings.http_timeout_ms)
        config = build_generate_config(backend, self.settings.max_output_tokens, request.image_size)
        start = time.perf_counter()
        try:
            response = client.models.generate_content(
                model=self.settings.model,
                contents=[types.Content(role="user", parts=request.parts)],
                config=config,
            )
        except APIError as exc:
            if is_rate_limit_error(exc):
                logger.warning("Model '%s' hit upstream rate limit: %s", self.settings.model, exc)
                raise ProviderFailedError(LABEL, "upstream rate limit reached", code="429") from exc
            logger.warning("Model '%s' request failed: %s", self.settings.model, exc)
            raise ProviderFailedError(LABEL, str(exc), code=str(getattr(exc, "code", "") or "") or None) from exc
        except Exception as exc:  # pragma: no cover
            logger.exception("Gemini generate_content call failed for model '%s'", self.settings.model)
            raise ProviderFailedError(LABEL, f"request failed: {exc}") from exc

        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.info("Model '%s' responded in %sms via %s backend", self.settings.model, latency_ms, backend)
        return response
