"""Tests for provider request builders and response normalizers."""

import base64
import io
from types import SimpleNamespace

import pytest
from conftest import gemini_image_response, make_png
from PIL import Image

from veilpix_service.adapters import GeminiAdapter, NanoBananaProAdapter, SeedreamAdapter
from veilpix_service.adapters.gemini import build_template_png
from veilpix_service.adapters.nanobanana_pro import map_aspect_ratio
from veilpix_service.adapters.seedream import map_image_size, map_resolution
from veilpix_service.conversion import fetch_image_as_inline
from veilpix_service.errors import ConversionError, NormalizationError, ProviderFailedError, RequestBuildError
from veilpix_service.models import GenerationIntent, GenerationKind, GenerationResult, SourceImage
from veilpix_service.transport import TransportError

URLS = ["http://testserver/temp-assets/a.png"]


def intent(kind=GenerationKind.EDIT, images=None, instruction="make the sky pink", **kwargs):
    images = images or (SourceImage(data=make_png(), mime_type="image/png"),)
    return GenerationIntent(kind=kind, images=tuple(images), instruction=instruction, **kwargs)


class TestValidation:
    def test_blank_instruction_is_rejected(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        with pytest.raises(RequestBuildError):
            adapter.validate_intent(intent(instruction="   "))

    def test_instruction_length_limit_depends_on_kind(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        adapter.validate_intent(intent(kind=GenerationKind.ADJUST, instruction="x" * 200))
        with pytest.raises(RequestBuildError):
            adapter.validate_intent(intent(kind=GenerationKind.FILTER, instruction="x" * 101))

    def test_combine_ceiling_is_per_provider(self, settings):
        image = SourceImage(data=make_png(), mime_type="image/png")
        seedream = SeedreamAdapter(settings.provider("seedream"))
        pro = NanoBananaProAdapter(settings.provider("nanobananapro"))
        six = intent(kind=GenerationKind.COMBINE, images=[image] * 6)
        with pytest.raises(RequestBuildError):
            seedream.validate_intent(six)
        pro.validate_intent(six)
        with pytest.raises(RequestBuildError):
            pro.validate_intent(intent(kind=GenerationKind.COMBINE, images=[image] * 9))

    def test_combine_needs_two_images(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        with pytest.raises(RequestBuildError):
            adapter.validate_intent(intent(kind=GenerationKind.COMBINE))

    def test_unsupported_mime_type_is_rejected(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        bad = SourceImage(data=b"%PDF", mime_type="application/pdf")
        with pytest.raises(RequestBuildError):
            adapter.validate_intent(intent(images=[bad]))

    def test_unknown_resolution_is_rejected(self, settings):
        adapter = NanoBananaProAdapter(settings.provider("nanobananapro"))
        with pytest.raises(RequestBuildError):
            adapter.validate_intent(intent(resolution="8K"))


class TestSeedream:
    def test_edit_request_includes_focus_point(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        body = adapter.build_request(intent(x=120, y=45, resolution="4K"), URLS)
        assert body["prompt"] == "make the sky pink. Focus the edit on the area around coordinates (120, 45)."
        assert body["image_urls"] == URLS
        assert body["image_resolution"] == "4K"
        assert body["image_size"] == "square_hd"
        assert body["max_images"] == 1

    def test_image_size_follows_source_dimensions(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        wide = SourceImage(data=make_png(320, 180), mime_type="image/png")
        body = adapter.build_request(intent(kind=GenerationKind.FILTER, images=[wide], instruction="noir"), URLS)
        assert body["image_size"] == "landscape_16_9"
        assert body["prompt"].startswith("Apply the following style filter to the entire image: noir.")

    @pytest.mark.parametrize(
        "width,height,expected",
        [
            (100, 100, "square_hd"),
            (1920, 1080, "landscape_16_9"),
            (1080, 1920, "portrait_9_16"),
            (1200, 900, "landscape_4_3"),
            (900, 1200, "portrait_3_4"),
        ],
    )
    def test_map_image_size(self, width, height, expected):
        assert map_image_size(width, height) == expected

    def test_unknown_resolution_maps_to_default(self):
        assert map_resolution("8K") == "2K"

    def test_normalize_result_urls(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        result = adapter.normalize_response({"resultUrls": ["https://cdn.test/out.png"]})
        assert result.needs_conversion is True
        assert result.url == "https://cdn.test/out.png"

    def test_normalize_inline_base64(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        encoded = base64.b64encode(b"raw-image").decode("ascii")
        result = adapter.normalize_response({"images": [{"base64": encoded}]})
        assert result.needs_conversion is False
        assert result.data == b"raw-image"
        assert result.mime_type == "image/png"

    def test_normalize_image_url(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        result = adapter.normalize_response({"images": [{"url": "https://cdn.test/x.png"}]})
        assert result.url == "https://cdn.test/x.png"

    def test_normalize_missing_fields(self, settings):
        adapter = SeedreamAdapter(settings.provider("seedream"))
        with pytest.raises(NormalizationError):
            adapter.normalize_response({"images": [{}]})
        with pytest.raises(NormalizationError):
            adapter.normalize_response({})


class TestNanoBananaPro:
    def test_combine_request(self, settings):
        adapter = NanoBananaProAdapter(settings.provider("nanobananapro"))
        image = SourceImage(data=make_png(), mime_type="image/png")
        urls = ["http://testserver/temp-assets/a.png", "http://testserver/temp-assets/b.png"]
        body = adapter.build_request(
            intent(kind=GenerationKind.COMBINE, images=[image, image], instruction="a beach party", aspect_ratio="16:9"),
            urls,
        )
        assert body == {
            "prompt": "Combine these images into a single creative composition. a beach party. "
            "Create a seamless, natural-looking result.",
            "image_input": urls,
            "aspect_ratio": "16:9",
            "resolution": "2K",
            "output_format": "png",
        }

    def test_adjust_prompt(self, settings):
        adapter = NanoBananaProAdapter(settings.provider("nanobananapro"))
        body = adapter.build_request(intent(kind=GenerationKind.ADJUST, instruction="warmer light"), URLS)
        assert body["prompt"] == (
            "warmer light. Apply this adjustment globally across the entire image while maintaining photorealism."
        )

    def test_aspect_ratio_allow_list(self):
        assert map_aspect_ratio("21:9") == "21:9"
        assert map_aspect_ratio("7:5") == "1:1"
        assert map_aspect_ratio(None) == "1:1"

    def test_normalize_requires_result_urls(self, settings):
        adapter = NanoBananaProAdapter(settings.provider("nanobananapro"))
        assert adapter.normalize_response({"resultUrls": ["https://cdn.test/p.png"]}).url == "https://cdn.test/p.png"
        with pytest.raises(NormalizationError):
            adapter.normalize_response({"resultUrls": []})


class TestGemini:
    def test_request_carries_inline_image_bytes(self, settings, source_image):
        adapter = GeminiAdapter(settings.provider("gemini"))
        request = adapter.build_request(intent(images=[source_image], x=3, y=4), [source_image])
        assert "make the sky pink" in request.parts[0].text
        assert "(3, 4)" in request.parts[0].text
        assert request.parts[1].inline_data.data == source_image.data
        assert request.image_size == "2K"

    def test_aspect_ratio_adds_template_canvas(self, settings, source_image):
        adapter = GeminiAdapter(settings.provider("gemini"))
        request = adapter.build_request(intent(images=[source_image], aspect_ratio="16:9"), [source_image])
        template = request.parts[-1].inline_data.data
        with Image.open(io.BytesIO(template)) as img:
            assert img.size == (1024, 576)

    def test_invalid_aspect_ratio_has_no_template(self):
        assert build_template_png("wide") is None

    def test_normalize_inline_image(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        result = adapter.normalize_response(gemini_image_response(b"abc", "image/jpeg"))
        assert result.data == b"abc"
        assert result.mime_type == "image/jpeg"

    def test_base64_string_payload_is_decoded(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        encoded = base64.b64encode(b"png-bytes").decode("ascii")
        assert adapter.normalize_response(gemini_image_response(encoded)).data == b"png-bytes"

    def test_invalid_base64_payload_is_normalization_failure(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        with pytest.raises(NormalizationError):
            adapter.normalize_response(gemini_image_response("not*base64!"))

    def test_blocked_prompt_is_provider_failure(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        response = SimpleNamespace(prompt_feedback=SimpleNamespace(block_reason="SAFETY"), candidates=[])
        with pytest.raises(ProviderFailedError):
            adapter.normalize_response(response)

    def test_text_only_answer_is_normalization_failure(self, settings):
        adapter = GeminiAdapter(settings.provider("gemini"))
        part = SimpleNamespace(text="I cannot do that", inline_data=None)
        candidate = SimpleNamespace(finish_reason="STOP", content=SimpleNamespace(parts=[part]))
        with pytest.raises(NormalizationError):
            adapter.normalize_response(SimpleNamespace(prompt_feedback=None, candidates=[candidate]))


class StubFetch:
    def __init__(self, result):
        self.result = result

    def fetch_bytes(self, url):
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestResultShape:
    def test_exactly_one_representation(self):
        with pytest.raises(ValueError):
            GenerationResult()
        with pytest.raises(ValueError):
            GenerationResult(data=b"x", mime_type="image/png", url="https://x")

    @pytest.mark.parametrize(
        "adapter_cls,provider_id,payload",
        [
            (SeedreamAdapter, "seedream", {"resultUrls": ["https://cdn.test/1.png"]}),
            (SeedreamAdapter, "seedream", {"images": [{"base64": base64.b64encode(b"z").decode()}]}),
            (NanoBananaProAdapter, "nanobananapro", {"resultUrls": ["https://cdn.test/2.png"]}),
        ],
    )
    def test_normalize_then_convert_is_always_inline(self, settings, adapter_cls, provider_id, payload):
        adapter = adapter_cls(settings.provider(provider_id))
        result = adapter.normalize_response(payload)
        if result.needs_conversion:
            result = fetch_image_as_inline(result.url, StubFetch((b"fetched", "image/webp")))
        assert result.data is not None
        assert result.url is None
        assert result.needs_conversion is False

    def test_conversion_defaults_non_image_content_type(self):
        result = fetch_image_as_inline("https://x", StubFetch((b"bytes", "application/octet-stream")))
        assert result.mime_type == "image/png"

    def test_conversion_failure(self):
        with pytest.raises(ConversionError):
            fetch_image_as_inline("https://x", StubFetch(TransportError("HTTP 404", status=404)))
        with pytest.raises(ConversionError):
            fetch_image_as_inline("https://x", StubFetch((b"", "image/png")))
