import pytest

from sessionguard.config import (
    SigningAlgorithm,
    get_settings,
    load_settings,
    parse_duration,
    reset_settings_cache,
)
from sessionguard.service.errors import ConfigurationError

from conftest import TEST_SECRET


@pytest.mark.parametrize(
    "value,expected",
    [("30s", 30), ("15m", 900), ("1h", 3600), ("7d", 604800), ("0s", 0)],
)
def test_parse_duration(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "15", "m15", "15 m", "1w", "-5m", "1.5h", None])
def test_parse_duration_rejects_bad_values(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_defaults_follow_strict_preset():
    settings = load_settings(jwt_secret=TEST_SECRET)

    assert settings.jwt_algorithm == SigningAlgorithm.HS256
    assert settings.access_token_ttl_seconds == 900
    assert settings.refresh_token_ttl_seconds == 7 * 86400
    assert settings.rate_limit_max_attempts == 3
    assert settings.rate_limit_window_ms == 15 * 60 * 1000
    assert settings.rate_limit_lockout_ms == 60 * 60 * 1000
    assert settings.max_concurrent_sessions == 5
    assert settings.max_devices_per_user == 10
    assert settings.max_sessions_per_device == 3
    assert settings.use_memory_store is True


@pytest.mark.parametrize(
    "overrides",
    [
        {"jwt_secret": None},
        {"jwt_secret": "short"},
        {"access_token_ttl": "15 minutes"},
        {"refresh_token_ttl": "forever"},
        {"jwt_algorithm": "RS256"},
        {"max_devices_per_user": 0},
        {"rate_limit_max_attempts": -1},
        {"storage_timeout_seconds": 0},
        {"max_concurrent_sessions": -1},
    ],
)
def test_invalid_settings_raise_configuration_error(overrides):
    values = {"jwt_secret": TEST_SECRET, **overrides}

    with pytest.raises(ConfigurationError) as excinfo:
        load_settings(**values)

    assert excinfo.value.error_code == "configuration_error"
    assert excinfo.value.detail["errors"]


@pytest.mark.parametrize("cap", [0, None])
def test_session_cap_can_be_disabled(cap):
    settings = load_settings(jwt_secret=TEST_SECRET, max_concurrent_sessions=cap)

    assert settings.max_concurrent_sessions == cap


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "x" * 40)
    monkeypatch.setenv("JWT_ALGORITHM", "HS512")
    monkeypatch.setenv("MAX_SESSIONS_PER_DEVICE", "7")
    monkeypatch.setenv("ENABLE_BLACKLIST", "false")

    settings = get_settings()

    assert settings.jwt_secret == "x" * 40
    assert settings.jwt_algorithm == SigningAlgorithm.HS512
    assert settings.max_sessions_per_device == 7
    assert settings.enable_blacklist is False


def test_from_env_reads_dotenv_file(monkeypatch, tmp_path):
    monkeypatch.delenv("REFRESH_TOKEN_TTL", raising=False)
    (tmp_path / ".env").write_text("REFRESH_TOKEN_TTL=30d\n")
    monkeypatch.chdir(tmp_path)

    settings = get_settings()

    assert settings.refresh_token_ttl_seconds == 30 * 86400


def test_environment_wins_over_dotenv(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("ACCESS_TOKEN_TTL=1h\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ACCESS_TOKEN_TTL", "5m")

    assert get_settings().access_token_ttl_seconds == 300


def test_settings_are_cached_until_reset(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("JWT_ISSUER", "other-issuer")

    assert get_settings() is first

    reset_settings_cache()
    assert get_settings().jwt_issuer == "other-issuer"
