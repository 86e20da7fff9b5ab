from __future__ import annotations

from typing import Any

from ..errors import NormalizationError
from ..models import DEFAULT_RESOLUTION, RESOLUTIONS, GenerationIntent, GenerationResult
from ..settings import PROVIDER_NANOBANANA_PRO
from .base import ProviderAdapter, adjust_prompt, combine_prompt, edit_prompt, filter_prompt

NANOBANANA_PRO_MODEL = "nano-banana-pro"
DEFAULT_ASPECT_RATIO = "1:1"
ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")


def map_aspect_ratio(aspect_ratio: str | None) -> str:
    value = (aspect_ratio or "").strip()
    if value in ASPECT_RATIOS:
        return value
    return DEFAULT_ASPECT_RATIO


def map_resolution(resolution: str | None) -> str:
    if resolution in RESOLUTIONS:
        return resolution
    return DEFAULT_RESOLUTION


class NanoBananaProAdapter(ProviderAdapter):
    provider_id = PROVIDER_NANOBANANA_PRO
    needs_upload = True
    model = NANOBANANA_PRO_MODEL

    def _body(self, prompt: str, intent: GenerationIntent, image_urls: list[Any]) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "image_input": [str(url) for url in image_urls],
            "aspect_ratio": map_aspect_ratio(intent.aspect_ratio),
            "resolution": map_resolution(intent.resolution),
            "output_format": "png",
        }

    def build_edit_request(self, intent: GenerationIntent, image_refs: list[Any]) -> dict[str, Any]:
        return self._body(edit_prompt(intent), intent, image_refs)

    def build_filter_request(self, intent: GenerationIntent, image_refs: list[Any]) -> dict[str, Any]:
        return self._body(filter_prompt(intent), intent, image_refs)

    def build_adjust_request(self, intent: GenerationIntent, image_refs: list[Any]) -> dict[str, Any]:
        return self._body(adjust_prompt(intent), intent, image_refs)

    def build_combine_request(self, intent: GenerationIntent, image_refs: list[Any]) -> dict[str, Any]:
        return self._body(combine_prompt(intent), intent, image_refs)

    def normalize_response(self, payload: Any) -> GenerationResult:
        if not isinstance(payload, dict):
            raise NormalizationError(self.label, "result payload is not an object")
        result_urls = payload.get("resultUrls")
        if not isinstance(result_urls, list) or not result_urls or not result_urls[0]:
            raise NormalizationError(self.label, "result is missing resultUrls")
        return GenerationResult.remote(str(result_urls[0]))
