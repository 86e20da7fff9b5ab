from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigurationError

PROVIDER_GEMINI = "gemini"
PROVIDER_SEEDREAM = "seedream"
PROVIDER_NANOBANANA_PRO = "nanobananapro"
PROVIDERS = (PROVIDER_GEMINI, PROVIDER_SEEDREAM, PROVIDER_NANOBANANA_PRO)
PROVIDER_LABELS: dict[str, str] = {
    PROVIDER_GEMINI: "Nano Banana",
    PROVIDER_SEEDREAM: "SeeDream",
    PROVIDER_NANOBANANA_PRO: "Nano Banana Pro",
}

DEFAULT_DATABASE_PATH = ".data/veilpix.sqlite3"
DEFAULT_ANONYMOUS_QUOTA = 20
DEFAULT_STARTING_CREDITS = 30
DEFAULT_TEMP_ASSET_DIR = ".temp/assets"
DEFAULT_PUBLIC_BASE_URL = "http://localhost:3001"
DEFAULT_TEMP_ASSET_HORIZON_SECONDS = 2 * 60 * 60
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash-image"
DEFAULT_GEMINI_BACKEND = "auto"
DEFAULT_GEMINI_HTTP_TIMEOUT_MS = 105_000
DEFAULT_GEMINI_MAX_OUTPUT_TOKENS = 4096
DEFAULT_KIE_BASE_URL = "https://api.kie.ai"
DEFAULT_KIE_HTTP_TIMEOUT_MS = 30_000
DEFAULT_POLL_INTERVAL_MS = 1_000
DEFAULT_PROGRESS_LOG_EVERY = 30

# cost, max poll attempts, anonymous allowed, combine ceiling, upload size limit
DEFAULT_PROVIDER_PROFILES: dict[str, dict[str, Any]] = {
    PROVIDER_GEMINI: {
        "credit_cost": 1,
        "max_attempts": 1,
        "allow_anonymous": True,
        "max_combine_images": 3,
        "max_upload_bytes": 10 * 1024 * 1024,
    },
    PROVIDER_SEEDREAM: {
        "credit_cost": 1,
        "max_attempts": 60,
        "allow_anonymous": False,
        "max_combine_images": 5,
        "max_upload_bytes": 10 * 1024 * 1024,
    },
    PROVIDER_NANOBANANA_PRO: {
        "credit_cost": 2,
        "max_attempts": 300,
        "allow_anonymous": False,
        "max_combine_images": 8,
        "max_upload_bytes": 50 * 1024 * 1024,
    },
}


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "no", "off"}


def parse_int(value: Any, fallback: int) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return fallback


def parse_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def get_env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def get_env_int(name: str, default: int) -> int:
    return parse_positive_int(os.environ.get(name), default)


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = Path.cwd() / path
    return path


def get_gemini_backend() -> str:
    raw = get_env("GEMINI_API_KEY_BACKEND", DEFAULT_GEMINI_BACKEND).lower()
    if raw in {"auto", "vertex", "gemini"}:
        return raw
    return DEFAULT_GEMINI_BACKEND


def get_gemini_image_size() -> str:
    value = get_env("GEMINI_IMAGE_SIZE", "1K").upper()
    if value not in {"1K", "2K", "4K"}:
        return "1K"
    return value


@dataclass(frozen=True)
class ProviderSettings:
    provider_id: str
    label: str
    credit_cost: int
    poll_interval_ms: int
    max_attempts: int
    progress_log_every: int
    allow_anonymous: bool
    max_combine_images: int
    max_upload_bytes: int

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


@dataclass(frozen=True)
class GeminiSettings:
    api_key: str
    backend: str
    model: str
    http_timeout_ms: int
    max_output_tokens: int
    image_size: str


@dataclass(frozen=True)
class KieSettings:
    base_url: str
    api_key: str
    http_timeout_ms: int


@dataclass(frozen=True)
class ServiceSettings:
    database_path: Path
    anonymous_quota: int
    starting_credits: int
    temp_asset_dir: Path
    public_base_url: str
    temp_asset_horizon_seconds: int
    development: bool
    admin_token: str
    gemini: GeminiSettings
    kie: KieSettings
    providers: dict[str, ProviderSettings] = field(default_factory=dict)

    def provider(self, provider_id: str) -> ProviderSettings:
        try:
            return self.providers[provider_id]
        except KeyError:
            raise ConfigurationError(f"Unknown provider '{provider_id}'") from None

    def validate(self) -> "ServiceSettings":
        if self.anonymous_quota <= 0:
            raise ConfigurationError("ANONYMOUS_FREE_QUOTA must be >= 1")
        if self.starting_credits < 0:
            raise ConfigurationError("STARTING_CREDITS must be >= 0")
        if not self.public_base_url.startswith(("http://", "https://")):
            raise ConfigurationError("PUBLIC_BASE_URL must be an http(s) URL")
        missing = [provider_id for provider_id in PROVIDERS if provider_id not in self.providers]
        if missing:
            raise ConfigurationError(f"Missing provider settings for {missing}")
        for settings in self.providers.values():
            if settings.credit_cost < 1:
                raise ConfigurationError(f"{settings.provider_id} credit cost must be >= 1")
            if settings.max_attempts < 1:
                raise ConfigurationError(f"{settings.provider_id} poll attempts must be >= 1")
            if settings.max_combine_images < 2:
                raise ConfigurationError(f"{settings.provider_id} must accept at least 2 combine images")
        return self


def load_provider_settings(provider_id: str) -> ProviderSettings:
    profile = DEFAULT_PROVIDER_PROFILES[provider_id]
    prefix = provider_id.upper()
    return ProviderSettings(
        provider_id=provider_id,
        label=PROVIDER_LABELS[provider_id],
        credit_cost=get_env_int(f"{prefix}_CREDIT_COST", profile["credit_cost"]),
        poll_interval_ms=get_env_int(f"{prefix}_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS),
        max_attempts=get_env_int(f"{prefix}_MAX_POLL_ATTEMPTS", profile["max_attempts"]),
        progress_log_every=get_env_int(f"{prefix}_PROGRESS_LOG_EVERY", DEFAULT_PROGRESS_LOG_EVERY),
        allow_anonymous=parse_bool(os.environ.get(f"{prefix}_ALLOW_ANONYMOUS"), profile["allow_anonymous"]),
        max_combine_images=get_env_int(f"{prefix}_MAX_COMBINE_IMAGES", profile["max_combine_images"]),
        max_upload_bytes=get_env_int(f"{prefix}_MAX_UPLOAD_BYTES", profile["max_upload_bytes"]),
    )


def load_settings(env_file: str | None = ".env.local") -> ServiceSettings:
    """Read the environment once and return validated settings.

    ``.env`` is always consulted; ``env_file`` (relative to the working
    directory) is loaded first so that it wins over ``.env``. Existing
    process environment variables are never overridden.
    """
    if env_file:
        local_env = resolve_path(env_file)
        if local_env.exists():
            load_dotenv(local_env, override=False)
    load_dotenv(override=False)

    settings = ServiceSettings(
        database_path=resolve_path(get_env("DATABASE_PATH", DEFAULT_DATABASE_PATH)),
        anonymous_quota=parse_int(os.environ.get("ANONYMOUS_FREE_QUOTA"), DEFAULT_ANONYMOUS_QUOTA),
        starting_credits=parse_int(os.environ.get("STARTING_CREDITS"), DEFAULT_STARTING_CREDITS),
        temp_asset_dir=resolve_path(get_env("TEMP_ASSET_DIR", DEFAULT_TEMP_ASSET_DIR)),
        public_base_url=get_env("PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL).rstrip("/"),
        temp_asset_horizon_seconds=get_env_int(
            "TEMP_ASSET_HORIZON_SECONDS", DEFAULT_TEMP_ASSET_HORIZON_SECONDS
        ),
        development=get_env("VEILPIX_ENV", "production").lower() == "development",
        admin_token=get_env("VEILPIX_ADMIN_TOKEN"),
        gemini=GeminiSettings(
            api_key=get_env("GEMINI_API_KEY"),
            backend=get_gemini_backend(),
            model=get_env("GEMINI_MODEL", DEFAULT_GEMINI_MODEL) or DEFAULT_GEMINI_MODEL,
            http_timeout_ms=get_env_int("GEMINI_HTTP_TIMEOUT_MS", DEFAULT_GEMINI_HTTP_TIMEOUT_MS),
            max_output_tokens=get_env_int("GEMINI_MAX_OUTPUT_TOKENS", DEFAULT_GEMINI_MAX_OUTPUT_TOKENS),
            image_size=get_gemini_image_size(),
        ),
        kie=KieSettings(
            base_url=get_env("KIE_API_BASE_URL", DEFAULT_KIE_BASE_URL).rstrip("/"),
            api_key=get_env("KIE_API_KEY"),
            http_timeout_ms=get_env_int("KIE_HTTP_TIMEOUT_MS", DEFAULT_KIE_HTTP_TIMEOUT_MS),
        ),
        providers={provider_id: load_provider_settings(provider_id) for provider_id in PROVIDERS},
    )
    return settings.validate()
