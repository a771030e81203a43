import logging

import pytest

from nibog.config import (
    PRODUCTION, SANDBOX, SANDBOX_DEFAULTS, config_summary, log_config,
    require_valid_config, resolve_config, validate_config,
)
from nibog.errors import ConfigError


def test_sandbox_defaults_when_nothing_is_set():
    cfg = resolve_config({})
    assert cfg.environment == SANDBOX
    assert cfg.merchant_id == SANDBOX_DEFAULTS["MERCHANT_ID"]
    assert cfg.salt_key == SANDBOX_DEFAULTS["SALT_KEY"]
    assert cfg.salt_index == "1"
    assert cfg.app_base_url == "http://localhost:8000"
    assert cfg.gateway_base.endswith("/pg-sandbox")
    assert validate_config(cfg).is_valid


def test_provider_tier_beats_public_beats_default():
    env = {
        "PHONEPE_TEST_MERCHANT_ID": "TIER",
        "NEXT_PUBLIC_MERCHANT_ID": "PUBLIC",
        "NEXT_PUBLIC_SALT_KEY": "public-salt",
    }
    cfg = resolve_config(env)
    assert cfg.merchant_id == "TIER"
    assert cfg.salt_key == "public-salt"
    assert cfg.salt_index == SANDBOX_DEFAULTS["SALT_INDEX"]


def test_unknown_environment_falls_back_to_sandbox():
    cfg = resolve_config({"PHONEPE_ENVIRONMENT": "staging"})
    assert cfg.environment == SANDBOX


def test_public_environment_variable_is_honoured():
    cfg = resolve_config({"NEXT_PUBLIC_PHONEPE_ENVIRONMENT": "production"})
    assert cfg.environment == PRODUCTION


def test_production_has_no_hardcoded_secrets():
    cfg = resolve_config({"PHONEPE_ENVIRONMENT": "production"})
    assert cfg.merchant_id == ""
    assert cfg.salt_key == ""
    validation = validate_config(cfg)
    assert not validation.is_valid
    assert "SALT_KEY is missing" in validation.errors
    with pytest.raises(ConfigError):
        require_valid_config(cfg)


def test_production_with_credentials_is_valid():
    cfg = resolve_config({
        "PHONEPE_ENVIRONMENT": "production",
        "PHONEPE_PROD_MERCHANT_ID": "M1",
        "PHONEPE_PROD_SALT_KEY": "prod-salt",
        "PHONEPE_PROD_SALT_INDEX": "2",
        "NEXT_PUBLIC_APP_URL": "https://www.nibog.in",
    })
    assert cfg.gateway_base == "https://api.phonepe.com/apis/hermes"
    assert require_valid_config(cfg).is_valid


def test_sandbox_problems_are_warned_not_raised(caplog):
    cfg = resolve_config({"NEXT_PUBLIC_APP_URL": "nibog.example"})
    with caplog.at_level(logging.WARNING, logger="nibog.config"):
        validation = require_valid_config(cfg)
    assert not validation.is_valid
    assert "absolute" in validation.errors[0]
    assert "incomplete" in caplog.text


def test_app_url_trailing_slash_and_vercel_fallback():
    assert resolve_config(
        {"NEXT_PUBLIC_APP_URL": "https://nibog.in///"}
    ).app_base_url == "https://nibog.in"
    assert resolve_config(
        {"VERCEL_URL": "nibog-latest.vercel.app"}
    ).app_base_url == "https://nibog-latest.vercel.app"


def test_bad_timeout_uses_default():
    assert resolve_config(
        {"PHONEPE_TIMEOUT_SECONDS": "soon"}).timeout_seconds == 15.0
    assert resolve_config(
        {"PHONEPE_TIMEOUT_SECONDS": "20"}).timeout_seconds == 20.0


def test_summary_and_log_never_expose_the_salt(caplog):
    cfg = resolve_config({"PHONEPE_TEST_SALT_KEY": "very-secret-salt"})
    summary = config_summary(cfg)
    assert summary["salt_key_set"] is True
    assert "very-secret-salt" not in repr(summary)
    with caplog.at_level(logging.INFO, logger="nibog.config"):
        log_config(cfg)
    assert "very-secret-salt" not in caplog.text
