from __future__ import annotations

import logging

from .errors import ConversionError
from .models import GenerationResult
from .transport import HttpTransport, TransportError

logger = logging.getLogger("veilpix-service.conversion")

DEFAULT_MIME_TYPE = "image/png"


def fetch_image_as_inline(url: str, transport: HttpTransport) -> GenerationResult:
    """Download a result URL and return it as inline bytes."""
    try:
        data, content_type = transport.fetch_bytes(url)
    except TransportError as exc:
        raise ConversionError(f"Failed to fetch generated image: {exc}") from exc

    if not data:
        raise ConversionError(f"Generated image at {url} is empty")

    mime_type = content_type.split(";")[0].strip().lower()
    if not mime_type.startswith("image/"):
        mime_type = DEFAULT_MIME_TYPE
    logger.info("Converted result image to inline bytes (%s bytes, %s)", len(data), mime_type)
    return GenerationResult.inline(data, mime_type)
