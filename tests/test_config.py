"""
Tests for environment-driven settings.
"""

import os
from unittest import mock

from stackforge.config import Settings, get_settings, reset_settings


def test_defaults():
    with mock.patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

    assert settings.provider == "fake"
    assert settings.region == "us-east-1"
    assert settings.max_workers == 4
    assert settings.max_attempts == 5


def test_environment_overrides():
    env = {
        "STACKFORGE_PROVIDER": "aws",
        "STACKFORGE_REGION": "eu-central-1",
        "STACKFORGE_MAX_WORKERS": "8",
        "STACKFORGE_BACKOFF_BASE_SECONDS": "0.5",
    }
    with mock.patch.dict(os.environ, env):
        settings = Settings(_env_file=None)

    assert settings.provider == "aws"
    assert settings.region == "eu-central-1"
    assert settings.max_workers == 8
    assert settings.backoff_base_seconds == 0.5


def test_get_settings_is_cached_until_reset(tmp_path):
    reset_settings()
    with mock.patch.dict(os.environ, {"STACKFORGE_STATE_PATH": str(tmp_path / "a")}):
        first = get_settings()
    with mock.patch.dict(os.environ, {"STACKFORGE_STATE_PATH": str(tmp_path / "b")}):
        assert get_settings() is first
        reset_settings()
        assert get_settings().state_path == str(tmp_path / "b")
    reset_settings()
