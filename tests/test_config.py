import pytest
from pydantic import ValidationError

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import _add_correlation_id, _redact_sensitive, set_correlation_id


def test_env_names_are_recorded_on_fields():
    extra = Settings.model_fields["rate_limit_lockout_threshold"].json_schema_extra
    assert extra["env"] == "RATE_LIMIT_LOCKOUT_THRESHOLD"


def test_from_env_reads_environment(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("JWT_SECRET", "x" * 40)
    monkeypatch.setenv("RATE_LIMIT_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("BREACH_REVOKES_ALL_DEVICES", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example,")

    settings = Settings.from_env()
    assert settings.rate_limit_max_attempts == 7
    assert settings.breach_revokes_all_devices is True
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_from_env_falls_back_to_dotenv(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("RESET_TOKEN_TTL_MINUTES", raising=False)
    (tmp_path / ".env").write_text("RESET_TOKEN_TTL_MINUTES=30\n")
    assert Settings.from_env().reset_token_ttl_minutes == 30


def test_defaults(settings):
    assert settings.access_token_ttl_minutes == 15
    assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
    assert settings.reset_token_ttl_minutes == 15
    assert settings.rate_limit_lockout_seconds == 3600
    assert settings.breach_revokes_all_devices is False


@pytest.mark.parametrize(
    "field,value",
    [
        ("rate_limit_max_attempts", 0),
        ("access_token_ttl_minutes", -1),
        ("rate_limit_backoff_multiplier", 0.5),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: value})


def test_derived_secrets_fall_back_to_jwt_secret():
    settings = Settings(jwt_secret="j" * 40)
    assert settings.effective_csrf_secret == "j" * 40
    assert settings.effective_token_hash_secret == "j" * 40

    separate = Settings(jwt_secret="j" * 40, csrf_secret="c" * 40, token_hash_secret="h" * 40)
    assert separate.effective_csrf_secret == "c" * 40
    assert separate.effective_token_hash_secret == "h" * 40


def test_generated_jwt_secret_is_persisted(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_settings_cache():
    reset_settings_cache()
    assert get_settings() is get_settings()
    reset_settings_cache()


class TestLogProcessors:
    def test_sensitive_values_are_masked(self):
        event = _redact_sensitive(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "hunter2",
                "refresh_token": "abcdefghijklmnop",
                "user_id": "u-1",
            },
        )
        assert event["password"] == "***"
        assert event["refresh_token"] == "ab***op"
        assert event["user_id"] == "u-1"

    def test_correlation_id_is_attached(self):
        cid = set_correlation_id("req-123")
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == cid
