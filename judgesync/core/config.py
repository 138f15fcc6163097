from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, PositiveFloat, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_CLAIM_STRATEGIES = {"auto", "skip_locked", "compare_and_swap"}
SUPPORTED_RATE_LIMIT_MODES = {"local", "shared"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JUDGESYNC_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "JudgeSync"
    environment: str = "production"
    log_level: str = "INFO"

    state_root: Path = Field(default=Path("/state"))
    database_url: str | None = None

    job_default_priority: int = 0
    job_default_max_retries: PositiveInt = 3
    job_retry_base_seconds: PositiveInt = 60
    job_retry_max_seconds: PositiveInt = 6 * 3600
    job_retry_jitter_ratio: float = 0.25
    job_claim_strategy: str = "auto"
    job_claim_candidate_batch: PositiveInt = 5
    job_claim_max_rounds: PositiveInt = 3
    job_stale_after_seconds: PositiveInt = 3600
    job_error_message_max_chars: PositiveInt = 4000

    worker_id: str | None = None
    worker_poll_seconds: PositiveFloat = 5.0
    worker_store_backoff_seconds: PositiveFloat = 15.0

    courtlistener_base_url: str = "https://www.courtlistener.com/api/rest/v4/"
    courtlistener_api_token: str | None = None
    courtlistener_user_agent: str = "JudgeFinder-Sync/1.0 (+https://judgefinder.io)"
    api_request_timeout_seconds: PositiveFloat = 30.0
    api_max_attempts: PositiveInt = 4
    api_retry_base_seconds: PositiveFloat = 1.0
    api_retry_max_seconds: PositiveFloat = 30.0
    api_retry_jitter_ratio: float = 0.25
    api_rate_limit_backoff_multiplier: PositiveFloat = 1.5

    rate_limit_mode: str = "local"
    rate_limit_capacity: PositiveInt = 10
    rate_limit_per_second: PositiveFloat = 1.25
    rate_limit_block: bool = True
    rate_limit_max_wait_seconds: PositiveFloat = 300.0
    rate_limit_bucket_key: str = "courtlistener"
    expected_worker_count: PositiveInt = 1

    circuit_failure_threshold: PositiveInt = 5
    circuit_window_seconds: PositiveFloat = 60.0
    circuit_cooldown_seconds: PositiveFloat = 30.0

    default_page_size: PositiveInt = 50
    max_page_size: PositiveInt = 200

    @field_validator("state_root", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path) -> Path:
        raw = str(value)
        if "~" in raw:
            raise ValueError("Home expansion syntax is not allowed in paths")
        if "$" in raw:
            raise ValueError("Environment variable syntax is not allowed in paths")
        path = Path(raw)
        if not path.is_absolute():
            raise ValueError("Path settings must be absolute")
        return path

    @model_validator(mode="after")
    def _validate_runtime_constraints(self) -> "Settings":
        self.state_root = self.state_root.resolve(strict=False)
        self.state_root.mkdir(parents=True, exist_ok=True)

        if self.max_page_size < self.default_page_size:
            raise ValueError("max_page_size must be greater than or equal to default_page_size")

        if self.job_retry_max_seconds < self.job_retry_base_seconds:
            raise ValueError("job_retry_max_seconds must be greater than or equal to job_retry_base_seconds")

        if self.api_retry_max_seconds < self.api_retry_base_seconds:
            raise ValueError("api_retry_max_seconds must be greater than or equal to api_retry_base_seconds")

        for name in ("job_retry_jitter_ratio", "api_retry_jitter_ratio"):
            ratio = getattr(self, name)
            if ratio < 0.0 or ratio >= 1.0:
                raise ValueError(f"{name} must be in [0.0, 1.0)")

        normalized_strategy = self.job_claim_strategy.lower().strip()
        if normalized_strategy not in SUPPORTED_CLAIM_STRATEGIES:
            raise ValueError(f"job_claim_strategy must be one of {sorted(SUPPORTED_CLAIM_STRATEGIES)}")
        self.job_claim_strategy = normalized_strategy

        normalized_mode = self.rate_limit_mode.lower().strip()
        if normalized_mode not in SUPPORTED_RATE_LIMIT_MODES:
            raise ValueError(f"rate_limit_mode must be one of {sorted(SUPPORTED_RATE_LIMIT_MODES)}")
        self.rate_limit_mode = normalized_mode

        if not self.courtlistener_base_url.endswith("/"):
            self.courtlistener_base_url = f"{self.courtlistener_base_url}/"

        return self

    @property
    def effective_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        db_path = self.state_root / "judgesync.sqlite3"
        return f"sqlite:///{db_path.as_posix()}"

    @property
    def effective_rate_limit_capacity(self) -> int:
        if self.rate_limit_mode == "local":
            return max(1, self.rate_limit_capacity // self.expected_worker_count)
        return self.rate_limit_capacity

    @property
    def effective_rate_limit_per_second(self) -> float:
        # Local buckets split the global budget across the expected worker processes.
        if self.rate_limit_mode == "local":
            return self.rate_limit_per_second / self.expected_worker_count
        return self.rate_limit_per_second


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
