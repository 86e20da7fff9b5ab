"""Tests for environment-driven configuration."""

import os
from dataclasses import replace
from unittest.mock import patch

import pytest

from veilpix_service.errors import ConfigurationError
from veilpix_service.settings import load_settings, parse_bool


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with patch.dict(os.environ, {}, clear=True):
        yield tmp_path


class TestLoadSettings:
    def test_defaults(self, clean_env):
        settings = load_settings(env_file=None)
        assert settings.anonymous_quota == 20
        assert settings.starting_credits == 30
        assert settings.database_path == clean_env / ".data" / "veilpix.sqlite3"
        assert settings.provider("gemini").allow_anonymous is True
        assert settings.provider("seedream").allow_anonymous is False
        assert settings.provider("nanobananapro").credit_cost == 2
        assert settings.provider("nanobananapro").max_attempts == 300
        assert settings.provider("seedream").max_attempts == 60
        assert settings.development is False
        assert settings.admin_token == ""

    def test_env_file_is_loaded_without_overriding_process_env(self, clean_env):
        (clean_env / ".env.local").write_text(
            "KIE_API_KEY=from-file\nSEEDREAM_CREDIT_COST=3\nPUBLIC_BASE_URL=https://veilpix.test/\n",
            encoding="utf-8",
        )
        os.environ["KIE_API_KEY"] = "from-process"
        settings = load_settings()
        assert settings.kie.api_key == "from-process"
        assert settings.provider("seedream").credit_cost == 3
        assert settings.public_base_url == "https://veilpix.test"

    def test_invalid_numbers_fall_back(self, clean_env):
        os.environ["NANOBANANAPRO_MAX_POLL_ATTEMPTS"] = "zero"
        os.environ["GEMINI_IMAGE_SIZE"] = "8k"
        settings = load_settings(env_file=None)
        assert settings.provider("nanobananapro").max_attempts == 300
        assert settings.gemini.image_size == "1K"

    def test_non_numeric_quota_falls_back(self, clean_env):
        os.environ["ANONYMOUS_FREE_QUOTA"] = "lots"
        assert load_settings(env_file=None).anonymous_quota == 20

    @pytest.mark.parametrize("name,value", [("ANONYMOUS_FREE_QUOTA", "0"), ("STARTING_CREDITS", "-5")])
    def test_out_of_range_counts_are_configuration_errors(self, clean_env, name, value):
        os.environ[name] = value
        with pytest.raises(ConfigurationError):
            load_settings(env_file=None)

    def test_provider_can_open_to_anonymous_callers(self, clean_env):
        os.environ["SEEDREAM_ALLOW_ANONYMOUS"] = "yes"
        assert load_settings(env_file=None).provider("seedream").allow_anonymous is True

    def test_bad_public_url_is_configuration_error(self, clean_env):
        os.environ["PUBLIC_BASE_URL"] = "ftp://nope"
        with pytest.raises(ConfigurationError):
            load_settings(env_file=None)

    def test_unknown_provider_lookup(self, settings):
        with pytest.raises(ConfigurationError):
            settings.provider("dalle")

    def test_single_image_combine_ceiling_is_rejected(self, settings):
        providers = dict(settings.providers)
        providers["gemini"] = replace(providers["gemini"], max_combine_images=1)
        with pytest.raises(ConfigurationError):
            replace(settings, providers=providers).validate()


@pytest.mark.parametrize(
    "raw,expected",
    [(None, True), ("", True), ("false", False), ("0", False), ("OFF", False), ("1", True)],
)
def test_parse_bool(raw, expected):
    assert parse_bool(raw, True) is expected
