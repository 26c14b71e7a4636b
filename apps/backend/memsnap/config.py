"""環境変数 / `.env` から読み込む MemSnap の設定。

CSV 形式の値（CORS オリジン、復習間隔テーブル）は `NoDecode` で受け取り、
validator 側で分解する。
"""

from typing import Annotated, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources.types import NoDecode

SrsPolicyName = Literal["day", "minute"]

_SECRET_MIN_LENGTH = 32
# 1 ミリ秒を日単位で表した最小間隔
_ONE_MS_DAYS = 1 / 86_400_000
_KNOWN_PLACEHOLDER_SECRETS = frozenset(
    {"change-me", "changeme", "please-change-me", "change-me-to-random-value"}
)


def _split_csv(raw: object) -> list[str] | None:
    """Split a CSV string (or stringify a sequence); None when `raw` is neither."""

    if raw is None:
        return []
    if isinstance(raw, str):
        return raw.split(",")
    try:
        return [str(item) for item in raw]  # type: ignore[union-attr]
    except TypeError:
        return None


def _unique_stripped(values: list[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(value.strip() for value in values if value.strip()))


class Settings(BaseSettings):
    """MemSnap runtime settings.

    - strict_mode: 設定不備で起動を止める（テスト以外は True のまま）
    - srs_policy: 復習間隔のスケール。day は日単位、minute はデモ用の分単位
    - srs_*: プリセットの個別定数を上書きする（単位はすべて日）
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=False)

    environment: str = Field(default="development", description="development / staging / production")
    strict_mode: bool = Field(default=True, description="Refuse to start with incomplete configuration")
    log_level: str = Field(default="INFO", description="Root log level / ルートロガーのレベル")
    sentry_dsn: str | None = Field(default=None, description="Forward error logs to Sentry when set")
    allowed_cors_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(),
        description="CSV of origins allowed to send credentials / 資格情報付き CORS を許すオリジン",
        validation_alias=AliasChoices("allowed_cors_origins", "cors_allowed_origins"),
    )

    # Sign-in and cookies
    google_client_id: str = Field(default="", description="OAuth client id the ID token must target")
    google_allowed_hd: str | None = Field(
        default=None, description="Only accept accounts of this Workspace domain / 許可ドメイン"
    )
    google_clock_skew_seconds: int = Field(
        default=60, description="Tolerated clock skew for ID token iat/exp checks (seconds)"
    )
    session_secret_key: str = Field(default="", description="itsdangerous signing key for cookies")
    session_cookie_name: str = Field(default="ms_session")
    session_cookie_secure: bool = Field(
        default=False, description="Secure 属性。production では明示しない限り True になる"
    )
    session_max_age_seconds: int = Field(default=60 * 60 * 24 * 14, description="14 days")
    guest_session_cookie_name: str = Field(default="ms_guest")
    guest_session_max_age_seconds: int = Field(default=60 * 60 * 6, description="6 hours")
    guest_store_max_sessions: int = Field(
        default=1000, description="In-memory guest stores kept at once (oldest evicted first)"
    )
    disable_session_auth: bool = Field(
        default=False,
        description="Serve every request as `anonymous_user_id` (local development only) / 開発専用",
    )
    anonymous_user_id: str = Field(default="local-dev")

    # Card generation
    llm_provider: str = Field(default="openai", description="openai, or local (no API calls, non-strict only)")
    llm_model: str = Field(default="gpt-4o-mini")
    llm_temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    llm_timeout_ms: int = Field(default=60000, description="Timeout of a single LLM attempt (ms)")
    llm_max_retries: int = Field(default=1, description="Number of LLM attempts before giving up")
    llm_max_tokens: int = Field(default=800, description="max_output_tokens for the Responses API")
    openai_api_key: str | None = Field(default=None)

    # Firestore
    gcp_project_id: str | None = Field(
        default=None, validation_alias=AliasChoices("gcp_project_id", "google_cloud_project")
    )
    firestore_project_id: str | None = Field(
        default=None, description="Defaults to gcp_project_id / 未指定なら gcp_project_id"
    )
    firestore_emulator_host: str | None = Field(default=None, description="host:port of the emulator")

    # Review scheduling
    srs_policy: SrsPolicyName | None = Field(
        default=None, description="day | minute. Mandatory when strict_mode is on / strict では必須"
    )
    srs_initial_interval_days: float | None = Field(
        default=None, ge=_ONE_MS_DAYS, description="Warm-up before the first review / 作成直後の待ち時間"
    )
    srs_first_review_intervals: Annotated[tuple[float, ...] | None, NoDecode] = Field(
        default=None, description="hard,medium,easy after the first review"
    )
    srs_second_review_intervals: Annotated[tuple[float, ...] | None, NoDecode] = Field(
        default=None, description="hard,medium,easy after the second review"
    )
    srs_min_interval_days: float | None = Field(
        default=None, ge=_ONE_MS_DAYS, description="Floor for intervals once review_count >= 2"
    )
    srs_max_interval_days: float | None = Field(
        default=None, ge=_ONE_MS_DAYS, description="Cap for intervals once review_count >= 2 (default 36500)"
    )
    activity_window_days: int = Field(
        default=14, ge=1, le=365, description="Days shown by the activity chart / 活動グラフの日数"
    )

    @field_validator("session_secret_key", mode="after")
    @classmethod
    def _check_session_secret(cls, value: str) -> str:
        """推測可能な署名鍵ではクッキーを偽造できるため、読み込み時に拒否する。"""

        secret = (value or "").strip()
        if not secret:
            raise ValueError("SESSION_SECRET_KEY is required (random string)")
        if secret.casefold() in _KNOWN_PLACEHOLDER_SECRETS:
            raise ValueError("SESSION_SECRET_KEY is still a placeholder value; generate a random one")
        if len(secret) < _SECRET_MIN_LENGTH:
            raise ValueError(f"SESSION_SECRET_KEY needs at least {_SECRET_MIN_LENGTH} characters")
        return secret

    @field_validator("allowed_cors_origins", mode="before")
    @classmethod
    def _parse_cors_origins(cls, raw: object) -> tuple[str, ...] | object:
        parts = _split_csv(raw)
        return raw if parts is None else _unique_stripped(parts)

    @field_validator("srs_first_review_intervals", "srs_second_review_intervals", mode="before")
    @classmethod
    def _parse_interval_table(cls, raw: object) -> tuple[float, ...] | None | object:
        """`hard,medium,easy` の日数テーブル。空文字は未設定として扱う。"""

        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None
        parts = _split_csv(raw)
        if parts is None:
            return raw
        try:
            hard_medium_easy = tuple(float(part) for part in parts if part.strip())
        except ValueError as exc:
            raise ValueError("interval table must contain numbers (days)") from exc

        if len(hard_medium_easy) != 3:
            raise ValueError(
                f"interval table needs exactly 3 values (hard,medium,easy), got {len(hard_medium_easy)}"
            )
        if min(hard_medium_easy) < _ONE_MS_DAYS:
            raise ValueError("interval table values must be positive (at least 1 ms)")
        hard, medium, easy = hard_medium_easy
        if not hard < medium < easy:
            raise ValueError("interval table must be strictly ascending (hard < medium < easy)")
        return hard_medium_easy

    @model_validator(mode="after")
    def _apply_environment_rules(self) -> "Settings":
        if self.strict_mode and self.srs_policy is None:
            raise ValueError("SRS_POLICY must be set when STRICT_MODE=true (day or minute)")
        if (
            self.srs_min_interval_days is not None
            and self.srs_max_interval_days is not None
            and self.srs_max_interval_days < self.srs_min_interval_days
        ):
            raise ValueError("SRS_MAX_INTERVAL_DAYS must not be below SRS_MIN_INTERVAL_DAYS")
        # 明示指定がなければ production だけ Secure を既定にする
        if (
            (self.environment or "").strip().lower() == "production"
            and "session_cookie_secure" not in self.model_fields_set
        ):
            self.session_cookie_secure = True
        return self


settings = Settings()
