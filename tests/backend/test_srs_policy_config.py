"""SRS_POLICY と間隔テーブルの設定検証、および有効ポリシーの組み立てを確認する。"""

import pytest
from pydantic import ValidationError

from memsnap.config import Settings
from memsnap.srs import DAY_SCALE_POLICY, MINUTE_SCALE_POLICY, resolve_policy

_SAFE_SECRET = "hP5K7x1zQ9sN4v2L8wY3tB6mR0cJ7dF1"


def _settings(**overrides) -> Settings:
    params = {"session_secret_key": _SAFE_SECRET, "strict_mode": False, "_env_file": None}
    params.update(overrides)
    return Settings(**params)


def test_strict_mode_requires_explicit_srs_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SRS_POLICY", raising=False)

    with pytest.raises(ValidationError) as exc:
        _settings(strict_mode=True)

    assert "SRS_POLICY must be set when STRICT_MODE=true" in str(exc.value)


def test_strict_mode_accepts_minute_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SRS_POLICY", raising=False)

    settings = _settings(strict_mode=True, srs_policy="minute")

    assert resolve_policy(settings) is MINUTE_SCALE_POLICY


def test_non_strict_mode_defaults_to_day_policy(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SRS_POLICY", raising=False)

    settings = _settings()

    assert settings.srs_policy is None
    assert resolve_policy(settings) is DAY_SCALE_POLICY


def test_unknown_policy_name_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _settings(srs_policy="hour")


def test_interval_tables_are_parsed_from_csv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SRS_FIRST_REVIEW_INTERVALS", "0.05, 0.25,0.75")
    monkeypatch.setenv("SRS_SECOND_REVIEW_INTERVALS", "")

    settings = _settings(srs_policy="day")

    assert settings.srs_first_review_intervals == (0.05, 0.25, 0.75)
    assert settings.srs_second_review_intervals is None


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("1,2", "exactly 3 values"),
        ("1,2,3,4", "exactly 3 values"),
        ("0,1,2", "must be positive"),
        ("1e-10,0.5,1", "must be positive"),
        ("1,3,2", "strictly ascending"),
        ("1,1,2", "strictly ascending"),
        ("a,b,c", "must contain numbers"),
    ],
)
def test_invalid_interval_tables_are_rejected(raw: str, message: str) -> None:
    with pytest.raises(ValidationError) as exc:
        _settings(srs_first_review_intervals=raw)

    assert message in str(exc.value)


def test_resolve_policy_applies_overrides_on_top_of_preset() -> None:
    settings = _settings(
        srs_policy="minute",
        srs_initial_interval_days=0.002,
        srs_second_review_intervals="0.01,0.02,0.03",
        srs_min_interval_days=0.005,
    )

    policy = resolve_policy(settings)

    assert policy.name == "minute"
    assert policy.initial_interval_days == 0.002
    assert policy.first_review_intervals == MINUTE_SCALE_POLICY.first_review_intervals
    assert policy.second_review_intervals == (0.01, 0.02, 0.03)
    assert policy.min_interval_days == 0.005
    assert policy.default_ease == 2.5


def test_non_positive_overrides_are_rejected() -> None:
    with pytest.raises(ValidationError):
        _settings(srs_initial_interval_days=0)
    with pytest.raises(ValidationError):
        _settings(srs_min_interval_days=-1)
    with pytest.raises(ValidationError):
        _settings(srs_max_interval_days=0)


@pytest.mark.parametrize("field", ["srs_initial_interval_days", "srs_min_interval_days", "srs_max_interval_days"])
def test_sub_millisecond_overrides_are_rejected(field: str) -> None:
    with pytest.raises(ValidationError):
        _settings(**{field: 1e-10})

    assert getattr(_settings(**{field: 1 / 86_400_000}), field) == 1 / 86_400_000


def test_max_interval_override_caps_mature_intervals() -> None:
    policy = resolve_policy(_settings(srs_policy="day", srs_max_interval_days=365))

    assert policy.max_interval_days == 365
    assert DAY_SCALE_POLICY.max_interval_days == 36500


def test_max_interval_below_min_interval_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc:
        _settings(srs_min_interval_days=2, srs_max_interval_days=1)
    assert "must not be below SRS_MIN_INTERVAL_DAYS" in str(exc.value)

    # the day preset floor is one day
    with pytest.raises(ValueError, match="must not be below"):
        resolve_policy(_settings(srs_policy="day", srs_max_interval_days=0.5))


def test_session_secret_rules_still_apply() -> None:
    with pytest.raises(ValidationError) as exc:
        _settings(session_secret_key="change-me")
    assert "placeholder" in str(exc.value)

    with pytest.raises(ValidationError) as exc:
        _settings(session_secret_key="short-secret")
    assert "at least 32 characters" in str(exc.value)


def test_production_environment_defaults_secure_cookie() -> None:
    assert _settings(environment="production").session_cookie_secure is True
    assert _settings(environment="production", session_cookie_secure=False).session_cookie_secure is False
    assert _settings(environment="development").session_cookie_secure is False


def test_cors_origins_are_deduplicated(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLOWED_CORS_ORIGINS", "https://a.example, https://b.example,https://a.example")

    settings = _settings()

    assert settings.allowed_cors_origins == ("https://a.example", "https://b.example")
