"""Base interface for provider adapters.

An adapter turns a provider-agnostic ``GenerationIntent`` into the body a
provider expects, and turns whatever the provider returned back into a
``GenerationResult``. Adapters do no I/O.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Sequence

from ..errors import RequestBuildError
from ..models import (
    ALLOWED_IMAGE_MIME_TYPES,
    INSTRUCTION_LIMITS,
    RESOLUTIONS,
    GenerationIntent,
    GenerationKind,
    GenerationResult,
)
from ..settings import ProviderSettings


def focus_suffix(intent: GenerationIntent) -> str:
    if not intent.has_focus_point:
        return ""
    return f" Focus the edit on the area around coordinates ({intent.x}, {intent.y})."


def edit_prompt(intent: GenerationIntent) -> str:
    if intent.has_focus_point:
        return f"{intent.instruction}.{focus_suffix(intent)}"
    return intent.instruction


def filter_prompt(intent: GenerationIntent) -> str:
    return (
        f"Apply the following style filter to the entire image: {intent.instruction}. "
        "Maintain the original composition and content, only change the style."
    )


def adjust_prompt(intent: GenerationIntent) -> str:
    return (
        f"{intent.instruction}. "
        "Apply this adjustment globally across the entire image while maintaining photorealism."
    )


def combine_prompt(intent: GenerationIntent) -> str:
    instruction = intent.instruction
    if intent.style:
        instruction = f"{instruction}. Style: {intent.style}"
    return (
        f"Combine these images into a single creative composition. {instruction}. "
        "Create a seamless, natural-looking result."
    )


class ProviderAdapter(ABC):
    """Per-provider request builder and response normalizer."""

    provider_id: str = ""
    needs_upload: bool = False

    def __init__(self, settings: ProviderSettings):
        self.settings = settings

    @property
    def label(self) -> str:
        return self.settings.label

    @property
    def max_combine_images(self) -> int:
        return self.settings.max_combine_images

    def validate_intent(self, intent: GenerationIntent) -> None:
        """Raise ``RequestBuildError`` for an intent this provider cannot serve."""
        instruction = intent.instruction.strip()
        if not instruction:
            raise RequestBuildError("An instruction is required.")
        limit = INSTRUCTION_LIMITS[intent.kind]
        if len(instruction) > limit:
            raise RequestBuildError(f"Instruction must be at most {limit} characters.")

        count = len(intent.images)
        if intent.kind is GenerationKind.COMBINE:
            if count < 2:
                raise RequestBuildError("At least 2 images are required to combine.")
            if count > self.max_combine_images:
                raise RequestBuildError(
                    f"{self.label} can combine at most {self.max_combine_images} images, got {count}."
                )
        elif count != 1:
            raise RequestBuildError(f"Exactly one image is required for {intent.kind.value}, got {count}.")

        if intent.resolution not in RESOLUTIONS:
            raise RequestBuildError(f"Resolution must be one of {', '.join(RESOLUTIONS)}.")

        for image in intent.images:
            if image.mime_type not in ALLOWED_IMAGE_MIME_TYPES:
                raise RequestBuildError(f"Unsupported image type '{image.mime_type}'.")
            if image.size == 0:
                raise RequestBuildError("Uploaded image is empty.")
            if image.size > self.settings.max_upload_bytes:
                limit_mb = self.settings.max_upload_bytes // (1024 * 1024)
                raise RequestBuildError(f"Each image must be at most {limit_mb}MB for {self.label}.")

    def build_request(self, intent: GenerationIntent, image_refs: Sequence[Any]) -> Any:
        """Dispatch on ``intent.kind``.

        ``image_refs`` are public URLs for providers that need uploads and the
        intent's own ``SourceImage`` objects otherwise.
        """
        self.validate_intent(intent)
        if len(image_refs) != len(intent.images):
            raise RequestBuildError(
                f"Expected {len(intent.images)} image reference(s), got {len(image_refs)}."
            )
        builders = {
            GenerationKind.EDIT: self.build_edit_request,
            GenerationKind.FILTER: self.build_filter_request,
            GenerationKind.ADJUST: self.build_adjust_request,
            GenerationKind.COMBINE: self.build_combine_request,
        }
        return builders[intent.kind](intent, list(image_refs))

    @abstractmethod
    def build_edit_request(self, intent: GenerationIntent, image_refs: list[Any]) -> Any:
        ...

    @abstractmethod
    def build_filter_request(self, intent: GenerationIntent, image_refs: list[Any]) -> Any:
        ...

    @abstractmethod
    def build_adjust_request(self, intent: GenerationIntent, image_refs: list[Any]) -> Any:
        ...

    @abstractmethod
    def build_combine_request(self, intent: GenerationIntent, image_refs: list[Any]) -> Any:
        ...

    @abstractmethod
    def normalize_response(self, payload: Any) -> GenerationResult:
        """Map a provider payload to a ``GenerationResult``.

        Raises ``NormalizationError`` when expected fields are missing and
        ``ProviderFailedError`` when the payload itself reports a failure.
        """
        ...
