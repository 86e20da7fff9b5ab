"""Shared fixtures: real sqlite datastore in tmp_path, scripted HTTP and Gemini fakes."""

import io
from dataclasses import replace
from types import SimpleNamespace

import pytest
from PIL import Image

from veilpix_service.datastore import DatastoreHandle
from veilpix_service.models import Caller, SourceImage
from veilpix_service.settings import (
    DEFAULT_PROVIDER_PROFILES,
    PROVIDER_LABELS,
    PROVIDERS,
    GeminiSettings,
    KieSettings,
    ProviderSettings,
    ServiceSettings,
)
from veilpix_service.transport import TransportError

KIE_BASE = "https://kie.test"


def make_png(width=64, height=64, color=(200, 40, 40)):
    image = Image.new("RGB", (width, height), color)
    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        return buffer.getvalue()


def make_settings(tmp_path, **overrides):
    providers = {
        provider_id: ProviderSettings(
            provider_id=provider_id,
            label=PROVIDER_LABELS[provider_id],
            credit_cost=DEFAULT_PROVIDER_PROFILES[provider_id]["credit_cost"],
            poll_interval_ms=1,
            max_attempts=min(DEFAULT_PROVIDER_PROFILES[provider_id]["max_attempts"], 5),
            progress_log_every=2,
            allow_anonymous=DEFAULT_PROVIDER_PROFILES[provider_id]["allow_anonymous"],
            max_combine_images=DEFAULT_PROVIDER_PROFILES[provider_id]["max_combine_images"],
            max_upload_bytes=DEFAULT_PROVIDER_PROFILES[provider_id]["max_upload_bytes"],
        )
        for provider_id in PROVIDERS
    }
    settings = ServiceSettings(
        database_path=tmp_path / "veilpix.sqlite3",
        anonymous_quota=20,
        starting_credits=30,
        temp_asset_dir=tmp_path / "assets",
        public_base_url="http://testserver",
        temp_asset_horizon_seconds=7200,
        development=True,
        admin_token="secret-token",
        gemini=GeminiSettings(
            api_key="AIza-test",
            backend="auto",
            model="gemini-2.5-flash-image",
            http_timeout_ms=1000,
            max_output_tokens=1024,
            image_size="1K",
        ),
        kie=KieSettings(base_url=KIE_BASE, api_key="kie-test", http_timeout_ms=1000),
        providers=providers,
    )
    return replace(settings, **overrides)


def with_provider(settings, provider_id, **changes):
    providers = dict(settings.providers)
    providers[provider_id] = replace(providers[provider_id], **changes)
    return replace(settings, providers=providers)


class FakeTransport:
    """Scripted stand-in for HttpTransport.

    ``create_responses`` and ``record_responses`` are consumed in order; an
    entry that is an exception is raised instead of returned. Once a list is
    down to its last entry that entry repeats.
    """

    def __init__(self, create_responses=None, record_responses=None, fetch_result=None):
        self.create_responses = list(create_responses or [])
        self.record_responses = list(record_responses or [])
        self.fetch_result = fetch_result if fetch_result is not None else (make_png(), "image/png")
        self.calls = []
        self.fetched = []

    @staticmethod
    def _next(queue):
        item = queue[0] if len(queue) == 1 else queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def request_json(self, method, url, headers=None, payload=None):
        self.calls.append((method, url, payload))
        if "/createTask" in url:
            return self._next(self.create_responses)
        if "/recordInfo" in url:
            return self._next(self.record_responses)
        raise AssertionError(f"unexpected url {url}")

    def fetch_bytes(self, url):
        self.fetched.append(url)
        if isinstance(self.fetch_result, Exception):
            raise self.fetch_result
        return self.fetch_result

    @property
    def poll_count(self):
        return sum(1 for _, url, _ in self.calls if "/recordInfo" in url)


def created(task_id="task-1"):
    return {"code": 200, "msg": "success", "data": {"taskId": task_id}}


def record(state, result_json=None, fail_msg=None, fail_code=None):
    data = {"taskId": "task-1", "state": state}
    if result_json is not None:
        data["resultJson"] = result_json
    if fail_msg is not None:
        data["failMsg"] = fail_msg
    if fail_code is not None:
        data["failCode"] = fail_code
    return {"code": 200, "msg": "success", "data": data}


def transient_error(status=503):
    return TransportError(f"HTTP {status}", status=status)


def gemini_image_response(data=b"gemini-bytes", mime_type="image/png"):
    part = SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    candidate = SimpleNamespace(finish_reason="STOP", content=SimpleNamespace(parts=[part]))
    return SimpleNamespace(prompt_feedback=None, candidates=[candidate])


class FakeGeminiClient:
    def __init__(self, response=None, error=None):
        self.response = response if response is not None else gemini_image_response()
        self.error = error
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def datastore(settings):
    handle = DatastoreHandle(settings.database_path, starting_credits=settings.starting_credits, sleep=lambda _: None)
    yield handle
    handle.close()


@pytest.fixture
def png_bytes():
    return make_png()


@pytest.fixture
def source_image(png_bytes):
    return SourceImage(data=png_bytes, mime_type="image/png", filename="photo.png")


@pytest.fixture
def anonymous_caller():
    return Caller(session_id="session-abc", ip_address="10.0.0.1")


@pytest.fixture
def user_caller():
    return Caller(user_id="user_123", email="user@example.com", ip_address="10.0.0.2")
