from campaign_dispatch.core.config import Settings


def test_batch_defaults_are_smaller_in_production():
    settings = Settings(ENV="production")

    assert settings.is_production is True
    assert settings.batch_size == 30
    assert settings.batch_timeout_seconds == 10.0


def test_batch_defaults_in_development():
    settings = Settings(ENV="dev")

    assert settings.is_production is False
    assert settings.batch_size == 50
    assert settings.batch_timeout_seconds == 5.0


def test_explicit_batch_settings_win():
    settings = Settings(ENV="production", BATCH_SIZE=7, BATCH_TIMEOUT_SECONDS=1.5)

    assert settings.batch_size == 7
    assert settings.batch_timeout_seconds == 1.5


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("START_LEASE_TTL_SECONDS", "45")
    monkeypatch.setenv("EMAIL_TRANSPORT", "resend")

    settings = Settings()

    assert settings.START_LEASE_TTL_SECONDS == 45
    assert settings.EMAIL_TRANSPORT == "resend"
