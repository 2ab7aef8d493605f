"""
Tests for the platform limits loader.

Tests cover:
- Built-in defaults when the YAML file is missing
- Per-platform overrides layered over defaults
- Retry policy loading
- Singleton behaviour and env var path
"""

import pytest

from activation_engine.config.platform_limits import (
    DEFAULT_PLATFORM_LIMITS,
    PlatformLimitsLoader,
    get_platform_limits_loader,
    reset_platform_limits_loader,
)
from activation_engine.models.activation import ActivationChannel, IdentifierType
from activation_engine.services.retry import RetryPolicy


# ============================================================================
# Test Fixtures (uses shared temp_config_dir and make_yaml_config from conftest)
# ============================================================================


@pytest.fixture
def limits_config(make_yaml_config):
    return make_yaml_config("platform_limits.yml", {
        "retry": {"max_retries": 5, "base_delay_seconds": 0.5},
        "platforms": {
            "meta": {"min_identifiers": 100, "batch_size": 500},
            "tiktok": {"allowed_types": ["email"]},
        },
    })


class TestDefaults:

    def test_missing_file_uses_defaults(self, temp_config_dir):
        loader = get_platform_limits_loader(str(temp_config_dir / "absent.yml"))

        assert loader.get_limits(ActivationChannel.TIKTOK).min_identifiers == 1000
        assert loader.get_limits(ActivationChannel.META).min_identifiers == 20
        assert loader.get_retry_policy() == RetryPolicy()

    def test_default_platform_rules(self):
        google = DEFAULT_PLATFORM_LIMITS[ActivationChannel.GOOGLE_ADS]
        tiktok = DEFAULT_PLATFORM_LIMITS[ActivationChannel.TIKTOK]
        meta = DEFAULT_PLATFORM_LIMITS[ActivationChannel.META]

        assert google.requires_single_type
        assert google.max_membership_days == 540
        assert google.poll_interval_seconds == 2.0
        assert google.poll_timeout_seconds == 60.0
        assert not meta.requires_single_type
        assert IdentifierType.CRM_ID not in tiktok.allowed_types

    def test_default_retry_policy(self):
        policy = RetryPolicy()

        assert policy.max_retries == 3
        assert policy.base_delay_seconds == 1.0
        assert policy.max_delay_seconds == 30.0


class TestOverrides:

    def test_platform_overrides_layer_over_defaults(self, limits_config):
        loader = get_platform_limits_loader(str(limits_config))

        meta = loader.get_limits(ActivationChannel.META)
        assert meta.min_identifiers == 100
        assert meta.batch_size == 500
        assert meta.inter_batch_delay_seconds == 0.1

    def test_allowed_types_parsed(self, limits_config):
        loader = get_platform_limits_loader(str(limits_config))

        assert loader.get_limits("tiktok").allowed_types == frozenset({IdentifierType.EMAIL})

    def test_unconfigured_platform_falls_back(self, limits_config):
        loader = get_platform_limits_loader(str(limits_config))

        google = loader.get_limits(ActivationChannel.GOOGLE_ADS)
        assert google == DEFAULT_PLATFORM_LIMITS[ActivationChannel.GOOGLE_ADS]

    def test_retry_policy(self, limits_config):
        policy = get_platform_limits_loader(str(limits_config)).get_retry_policy()

        assert policy.max_retries == 5
        assert policy.base_delay_seconds == 0.5
        assert policy.max_delay_seconds == 30.0

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("platform_limits.yml", {"platforms": {"meta": {"batch_size": 10}}})
        loader = get_platform_limits_loader(str(path))
        make_yaml_config("platform_limits.yml", {"platforms": {"meta": {"batch_size": 20}}})

        loader.reload()

        assert loader.get_limits(ActivationChannel.META).batch_size == 20


class TestSingleton:

    def test_same_instance(self, limits_config):
        first = get_platform_limits_loader(str(limits_config))

        assert get_platform_limits_loader() is first
        assert PlatformLimitsLoader() is first

    def test_reset(self, limits_config, temp_config_dir):
        get_platform_limits_loader(str(limits_config))
        reset_platform_limits_loader()

        loader = get_platform_limits_loader(str(temp_config_dir / "absent.yml"))
        assert loader.get_limits(ActivationChannel.META).min_identifiers == 20

    def test_env_var_path(self, limits_config, monkeypatch):
        monkeypatch.setenv("ACTIVATION_PLATFORM_LIMITS_PATH", str(limits_config))

        loader = get_platform_limits_loader()

        assert loader.get_limits(ActivationChannel.META).min_identifiers == 100
