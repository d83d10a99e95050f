import pytest

from quota_app.security_config import (
    SecurityValidationError,
    parse_int_env,
    validate_secret_settings,
)
from quota_app.settings import clamp_refresh_minutes


def test_prod_fails_without_app_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("ALLOW_INSECURE_DEFAULTS", "false")
    monkeypatch.delenv("APP_SECRET", raising=False)

    with pytest.raises(SecurityValidationError):
        validate_secret_settings()


def test_prod_explicit_override_allows_generated_secret(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("APP_ENV", "prod")
    monkeypatch.setenv("ALLOW_INSECURE_DEFAULTS", "true")
    monkeypatch.delenv("APP_SECRET", raising=False)

    validate_secret_settings()


def test_prod_with_app_secret_passes(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("APP_SECRET", "configured")

    validate_secret_settings()


def test_dev_defaults_to_generated_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("APP_SECRET", raising=False)

    validate_secret_settings()


def test_int_env_is_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REFRESH_CONCURRENCY", "500")
    assert parse_int_env("REFRESH_CONCURRENCY", 5, minimum=1, maximum=50) == 50

    monkeypatch.setenv("REFRESH_CONCURRENCY", "abc")
    assert parse_int_env("REFRESH_CONCURRENCY", 5, minimum=1, maximum=50) == 5


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(0, 1), (30, 30), (2000, 1440), ("15", 15), ("x", 60), (None, 60)],
)
def test_refresh_interval_is_clamped(raw, expected) -> None:
    assert clamp_refresh_minutes(raw) == expected
