from __future__ import annotations

import base64
import binascii
import io
import logging
from typing import Any, NamedTuple

from google.genai import types
from PIL import Image

from ..errors import NormalizationError, ProviderFailedError
from ..models import GenerationIntent, GenerationResult, SourceImage
from ..settings import PROVIDER_GEMINI
from .base import ProviderAdapter

logger = logging.getLogger("veilpix-service.adapters.gemini")

TEMPLATE_LONG_SIDE = 1024
BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY"}

EDIT_GUIDELINES = """Guidelines:
- Make precise, localized edits that enhance the image
- Maintain the overall composition and lighting
- Ensure natural-looking results
- If removing objects, fill the space naturally
- If adding objects, ensure they fit the scene contextually
- Preserve image quality and resolution"""

FILTER_GUIDELINES = """Guidelines:
- Apply the filter effect consistently across the entire image
- Maintain image quality and sharpness
- Preserve important details while applying the style
- Ensure the result looks professional and polished
- Do not add or remove objects, only apply the visual style"""

ADJUST_GUIDELINES = """Guidelines:
- Make professional photo adjustments
- Maintain natural colors and lighting
- Preserve image details and sharpness
- Apply adjustments consistently across the image
- Ensure the result looks realistic and well-balanced"""

COMBINE_GUIDELINES = """Guidelines:
- Blend subjects from every input image into one coherent scene
- Match lighting, perspective and color grading across sources
- Keep faces and key details recognizable
- Avoid visible seams or duplicated elements"""


class GeminiRequest(NamedTuple):
    parts: list[types.Part]
    image_size: str


def parse_aspect_ratio(value: str | None) -> tuple[int, int] | None:
    if not value or ":" not in value:
        return None
    raw_w, _, raw_h = value.partition(":")
    try:
        width, height = int(raw_w), int(raw_h)
    except ValueError:
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height


def build_template_png(aspect_ratio: str) -> bytes | None:
    """Blank white canvas with the requested ratio, used as an output-shape hint."""
    ratio = parse_aspect_ratio(aspect_ratio)
    if ratio is None:
        return None
    width, height = ratio
    if width >= height:
        size = (TEMPLATE_LONG_SIDE, max(1, round(TEMPLATE_LONG_SIDE * height / width)))
    else:
        size = (max(1, round(TEMPLATE_LONG_SIDE * width / height)), TEMPLATE_LONG_SIDE)
    image = Image.new("RGB", size, (255, 255, 255))
    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


class GeminiAdapter(ProviderAdapter):
    provider_id = PROVIDER_GEMINI
    needs_upload = False

    def _request(self, prompt: str, intent: GenerationIntent, images: list[SourceImage]) -> GeminiRequest:
        parts = [types.Part.from_text(text=prompt)]
        for image in images:
            parts.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))

        template = build_template_png(intent.aspect_ratio) if intent.aspect_ratio else None
        if template is not None:
            parts.append(
                types.Part.from_text(
                    text=f"The final image is a blank {intent.aspect_ratio} template. "
                    "Produce the result with exactly the aspect ratio of that template."
                )
            )
            parts.append(types.Part.from_bytes(data=template, mime_type="image/png"))
        return GeminiRequest(parts=parts, image_size=intent.resolution)

    def build_edit_request(self, intent: GenerationIntent, image_refs: list[Any]) -> GeminiRequest:
        lines = [
            "You are an advanced image editing AI. "
            f'Please edit this image based on the user\'s request: "{intent.instruction}"',
        ]
        if intent.has_focus_point:
            lines.append(
                f"Focus the edit around the coordinates ({intent.x}, {intent.y}) which the user clicked on the image."
            )
        lines.append(EDIT_GUIDELINES)
        lines.append("Return only the edited image without any text response.")
        return self._request("\n\n".join(lines), intent, image_refs)

    def build_filter_request(self, intent: GenerationIntent, image_refs: list[Any]) -> GeminiRequest:
        prompt = "\n\n".join(
            [
                f"Apply a {intent.instruction} style/filter to this image.",
                FILTER_GUIDELINES,
                "Return only the filtered image without any text response.",
            ]
        )
        return self._request(prompt, intent, image_refs)

    def build_adjust_request(self, intent: GenerationIntent, image_refs: list[Any]) -> GeminiRequest:
        prompt = "\n\n".join(
            [
                f"Apply the following adjustment to this image: {intent.instruction}",
                ADJUST_GUIDELINES,
                "Return only the adjusted image without any text response.",
            ]
        )
        return self._request(prompt, intent, image_refs)

    def build_combine_request(self, intent: GenerationIntent, image_refs: list[Any]) -> GeminiRequest:
        lines = [
            f"Combine these {len(image_refs)} images into a single creative composition: {intent.instruction}",
        ]
        if intent.style:
            lines.append(f"Style: {intent.style}")
        lines.append(COMBINE_GUIDELINES)
        lines.append("Return only the combined image without any text response.")
        return self._request("\n\n".join(lines), intent, image_refs)

    def normalize_response(self, payload: Any) -> GenerationResult:
        prompt_feedback = getattr(payload, "prompt_feedback", None)
        block_reason = getattr(prompt_feedback, "block_reason", None)
        if block_reason:
            raise ProviderFailedError(self.label, f"prompt blocked by safety filter: {block_reason}")

        collected_text: list[str] = []
        candidates = getattr(payload, "candidates", None)
        if candidates is None:
            raise NormalizationError(self.label, "response has no candidates")

        for candidate in candidates or []:
            finish_reason = str(getattr(candidate, "finish_reason", "") or "")
            if finish_reason.split(".")[-1] in BLOCKED_FINISH_REASONS:
                raise ProviderFailedError(self.label, f"generation blocked: {finish_reason}")

            content = getattr(candidate, "content", None)
            if not content:
                continue

            for part in content.parts or []:
                text_part = getattr(part, "text", None)
                if text_part:
                    collected_text.append(text_part)

                inline_data = getattr(part, "inline_data", None)
                raw_data = getattr(inline_data, "data", None)
                if not raw_data:
                    continue

                if isinstance(raw_data, str):
                    try:
                        image_bytes = base64.b64decode(raw_data, validate=True)
                    except (ValueError, binascii.Error) as exc:
                        raise NormalizationError(self.label, f"inline image data is not valid base64: {exc}") from exc
                else:
                    image_bytes = bytes(raw_data)

                mime_type = getattr(inline_data, "mime_type", None) or "image/png"
                return GenerationResult.inline(image_bytes, mime_type)

        if collected_text:
            logger.warning("Model returned text but no image output: %s", "".join(collected_text)[:500])

        raise NormalizationError(self.label, "response completed without image data")
