from __future__ import annotations

from ..settings import PROVIDER_GEMINI, PROVIDER_NANOBANANA_PRO, PROVIDER_SEEDREAM, ServiceSettings
from .base import ProviderAdapter
from .gemini import GeminiAdapter, GeminiRequest
from .nanobanana_pro import NanoBananaProAdapter
from .seedream import SeedreamAdapter

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    PROVIDER_GEMINI: GeminiAdapter,
    PROVIDER_SEEDREAM: SeedreamAdapter,
    PROVIDER_NANOBANANA_PRO: NanoBananaProAdapter,
}


def build_adapter(provider_id: str, settings: ServiceSettings) -> ProviderAdapter:
    return ADAPTER_CLASSES[provider_id](settings.provider(provider_id))


__all__ = [
    "ADAPTER_CLASSES",
    "GeminiAdapter",
    "GeminiRequest",
    "NanoBananaProAdapter",
    "ProviderAdapter",
    "SeedreamAdapter",
    "build_adapter",
]
