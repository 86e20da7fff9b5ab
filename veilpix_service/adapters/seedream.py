from __future__ import annotations

import base64
import binascii
from typing import Any

from ..errors import NormalizationError
from ..models import DEFAULT_RESOLUTION, RESOLUTIONS, GenerationIntent, GenerationResult
from ..settings import PROVIDER_SEEDREAM
from .base import ProviderAdapter, adjust_prompt, combine_prompt, edit_prompt, filter_prompt

SEEDREAM_MODEL = "bytedance/seedream-v4-edit"
DEFAULT_IMAGE_SIZE = "square_hd"


def map_resolution(resolution: str | None) -> str:
    if resolution in RESOLUTIONS:
        return resolution
    return DEFAULT_RESOLUTION


def map_image_size(width: int, height: int) -> str:
    """Pick the SeeDream ``image_size`` bucket closest to ``width:height``."""
    if width <= 0 or height <= 0:
        return DEFAULT_IMAGE_SIZE
    ratio = width / height
    if abs(ratio - 1) < 0.1:
        return "square_hd"
    if ratio > 1.5:
        return "landscape_16_9"
    if ratio < 0.7:
        return "portrait_9_16"
    if ratio > 1:
        return "landscape_4_3"
    return "portrait_3_4"


class SeedreamAdapter(ProviderAdapter):
    provider_id = PROVIDER_SEEDREAM
    needs_upload = True
    model = SEEDREAM_MODEL

    def _image_size(self, intent: GenerationIntent) -> str:
        dimensions = intent.images[0].dimensions if intent.images else None
        if dimensions is None:
            return DEFAULT_IMAGE_SIZE
        return map_image_size(*dimensions)

    def _body(self, prompt: str, intent: GenerationIntent, image_urls: list[Any]) -> dict[str, Any]:
        return {
            "prompt": prompt,
            "image_urls": [str(url) for url in image_urls],
            "image_size": self._image_size(intent),
            "image_resolution": map_resolution(intent.resolution),
            "max_images": 1,
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
        if isinstance(result_urls, list) and result_urls and result_urls[0]:
            return GenerationResult.remote(str(result_urls[0]))

        images = payload.get("images")
        if not isinstance(images, list) or not images or not isinstance(images[0], dict):
            raise NormalizationError(self.label, "no resultUrls or images in result")

        first = images[0]
        if first.get("base64"):
            try:
                data = base64.b64decode(first["base64"], validate=True)
            except (ValueError, binascii.Error) as exc:
                raise NormalizationError(self.label, f"image base64 is invalid: {exc}") from exc
            return GenerationResult.inline(data, first.get("mimeType") or "image/png")
        if first.get("url"):
            return GenerationResult.remote(str(first["url"]))
        raise NormalizationError(self.label, "image entry has neither base64 nor url")
