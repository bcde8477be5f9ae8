import pytest

from chainsync.shared.core.config import (
    ENV_PRODUCTION,
    Settings,
    get_settings,
    reload_settings_from_environment,
)


def test_webhook_defaults():
    settings = Settings(TESTING=True, _env_file=None)
    assert settings.WEBHOOK_ALLOWED_SKEW_SECONDS == 300
    assert settings.WEBHOOK_REPLAY_TTL_SECONDS == 600
    assert settings.BILLING_PERIOD_DAYS == 30


@pytest.mark.parametrize(
    "overrides",
    [
        {"WEBHOOK_ALLOWED_SKEW_SECONDS": 0},
        {"WEBHOOK_REPLAY_TTL_SECONDS": -1},
        {"WEBHOOK_IDEMPOTENCY_BACKEND": "redis"},
    ],
)
def test_invalid_webhook_config_rejected(overrides):
    with pytest.raises(ValueError):
        Settings(TESTING=True, _env_file=None, **overrides)


def test_dedicated_webhook_secret_wins_over_api_key():
    settings = Settings(
        TESTING=True,
        _env_file=None,
        PAYSTACK_SECRET_KEY="sk_live_api",
        PAYSTACK_WEBHOOK_SECRET="whsec_dedicated",
    )
    assert settings.paystack_webhook_secret == "whsec_dedicated"


def test_production_requires_provider_secrets():
    with pytest.raises(ValueError, match="PAYSTACK_SECRET_KEY"):
        Settings(
            _env_file=None,
            TESTING=False,
            ENVIRONMENT=ENV_PRODUCTION,
            PAYSTACK_SECRET_KEY=None,
            PAYSTACK_WEBHOOK_SECRET=None,
        )


def test_production_accepts_complete_config():
    settings = Settings(
        _env_file=None,
        TESTING=False,
        ENVIRONMENT=ENV_PRODUCTION,
        DATABASE_URL="postgresql://u:p@db/chainsync",
        PAYSTACK_SECRET_KEY="sk_live_x",
        FLUTTERWAVE_SECRET_KEY="FLWSECK-x",
    )
    assert settings.is_production is True


def test_testing_forbidden_in_production():
    with pytest.raises(ValueError, match="TESTING must be false"):
        Settings(_env_file=None, TESTING=True, ENVIRONMENT=ENV_PRODUCTION)


def test_reload_replaces_cached_instance(monkeypatch):
    before = get_settings()
    monkeypatch.setenv("BILLING_PERIOD_DAYS", "31")
    try:
        after = reload_settings_from_environment()
        assert after is not before
        assert after.BILLING_PERIOD_DAYS == 31
    finally:
        monkeypatch.delenv("BILLING_PERIOD_DAYS")
        reload_settings_from_environment()
