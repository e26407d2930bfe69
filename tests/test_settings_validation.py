import pytest

from settings import Settings, enabled_providers, retryable_error_codes, validate_env_settings


def _prod(**overrides):
    values = {
        "ENV": "prod",
        "DATABASE_URL": "postgresql://u:p@db/cashout",
        "ADMIN_API_KEY": "admin-key",
        "MM_MODE": "sandbox",
    }
    values.update(overrides)
    return Settings(**values)


def test_dev_settings_are_not_validated():
    validate_env_settings(Settings(ENV="dev", DATABASE_URL="", ADMIN_API_KEY=""))


def test_prod_requires_database_and_admin_key():
    with pytest.raises(RuntimeError) as exc:
        validate_env_settings(_prod(DATABASE_URL="", ADMIN_API_KEY=""))
    assert "DATABASE_URL" in str(exc.value)
    assert "ADMIN_API_KEY" in str(exc.value)


def test_prod_sandbox_ok():
    validate_env_settings(_prod())


def test_real_mode_requires_enabled_provider_secrets():
    s = _prod(
        MM_MODE="real",
        CASHOUT_ENABLED_PROVIDERS="afrimoney",
        AFRIMONEY_API_URL="https://afri.example",
        AFRIMONEY_API_KEY="k",
    )
    with pytest.raises(RuntimeError) as exc:
        validate_env_settings(s)
    message = str(exc.value)
    assert "AFRIMONEY_API_SECRET" in message
    assert "AFRIMONEY_WEBHOOK_SECRET" in message
    assert "ORANGE_MONEY" not in message


def test_retry_delays_must_be_ordered():
    with pytest.raises(RuntimeError):
        validate_env_settings(_prod(CASHOUT_RETRY_INITIAL_DELAY_MS=10_000, CASHOUT_RETRY_MAX_DELAY_MS=5_000))


def test_csv_settings_are_normalized():
    s = Settings(CASHOUT_ENABLED_PROVIDERS=" Orange-Money , afrimoney,", CASHOUT_RETRYABLE_ERROR_CODES="timeout")
    assert enabled_providers(s) == ["orange_money", "afrimoney"]
    assert retryable_error_codes(s) == frozenset({"TIMEOUT"})
