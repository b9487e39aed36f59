from typing import Annotated, Literal

from pydantic import AliasChoices, AnyUrl, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

FALLBACK_STEPS = ("ledger", "convention", "legacy", "default")


class ConfigurationError(RuntimeError):
    """Raised when the engine is started with an unusable configuration."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=(".env", "../.env"), extra="ignore")

    ledger_backend: Literal["postgres", "sqlite"] = "sqlite"
    database_url: AnyUrl | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "SUPABASE_DB_URL"),
    )
    sqlite_path: str = "media_ledger.sqlite3"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 8
    ledger_timeout_seconds: float = 10.0

    storage_backend: Literal["supabase", "memory"] = "memory"
    storage_api_url: AnyUrl | None = Field(
        default=None,
        validation_alias=AliasChoices("STORAGE_API_URL", "SUPABASE_URL"),
    )
    storage_service_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "STORAGE_SERVICE_KEY",
            "SUPABASE_SERVICE_ROLE_KEY",
            "SUPABASE_SECRET_API_KEY",
        ),
    )
    storage_timeout_seconds: float = 10.0
    public_base_url: str = "/storage-proxy"

    upload_max_attempts: int = 3
    upload_backoff_base_seconds: float = 0.5
    reconcile_concurrency: int = 4

    legacy_media_root: str = "public"
    legacy_media_url_prefix: str = "/legacy-media"
    legacy_directories: Annotated[list[str], NoDecode] = ["uploads/{media_type}", "{media_type}"]
    placeholder_url_prefix: str = "/placeholders"
    placeholder_dir: str | None = None
    fallback_chain: Annotated[list[str], NoDecode] = list(FALLBACK_STEPS)

    admin_api_token: str | None = None
    cors_allow_origins: Annotated[list[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    sentry_dsn: str | None = Field(
        default=None, validation_alias=AliasChoices("SENTRY_DSN", "BACKEND_SENTRY_DSN")
    )
    sentry_traces_sample_rate: float = Field(
        default=0.0,
        validation_alias=AliasChoices(
            "SENTRY_TRACES_SAMPLE_RATE",
            "BACKEND_SENTRY_TRACES_SAMPLE_RATE",
        ),
    )

    @field_validator(
        "legacy_directories", "fallback_chain", "cors_allow_origins", mode="before"
    )
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("fallback_chain")
    @classmethod
    def _validate_chain(cls, value: list[str]) -> list[str]:
        steps = [step.strip().lower() for step in value]
        unknown = [step for step in steps if step not in FALLBACK_STEPS]
        if unknown:
            raise ValueError(f"unknown fallback steps: {', '.join(unknown)}")
        if "default" in steps:
            steps.remove("default")
        # The placeholder step always terminates the chain.
        steps.append("default")
        return steps

    @model_validator(mode="after")
    def _check_backends(self):
        if self.ledger_backend == "postgres" and self.database_url is None:
            raise ValueError("DATABASE_URL is required for the postgres ledger")
        if self.storage_backend == "supabase" and not (
            self.storage_api_url and self.storage_service_key
        ):
            raise ValueError(
                "STORAGE_API_URL and STORAGE_SERVICE_KEY are required for supabase storage"
            )
        if self.upload_max_attempts < 1:
            raise ValueError("UPLOAD_MAX_ATTEMPTS must be at least 1")
        if self.reconcile_concurrency < 1:
            raise ValueError("RECONCILE_CONCURRENCY must be at least 1")
        return self


settings = Settings()
