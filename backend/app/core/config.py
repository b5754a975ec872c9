from pydantic_settings import BaseSettings
from pydantic import model_validator
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # database & redis
    # Plain strings so sqlite:// and redis:// URLs are always accepted
    DATABASE_URL: str
    REDIS_URL: str

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    # Explicit debug-only switch for wide-open CORS in non-prod envs
    CORS_ALLOW_ALL_ORIGINS: bool = False

    # data providers: JSON object {"provider_name": "https://host/path/{subject}"}
    PROVIDER_ENDPOINTS_JSON: str | None = None
    PROVIDER_API_KEY: str | None = None
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # pipeline
    PHASE_MAX_PARALLEL_TASKS: int = 5
    PHASE_TASK_TIMEOUT_SECONDS: float = 20.0
    PHASE_DATA_TTL_SECONDS: int = 60 * 60

    # cache tiers
    CACHE_DEFAULT_TTL_SECONDS: int = 5 * 60
    CACHE_MEMORY_TTL_SECONDS: int = 30
    CACHE_MEMORY_MAX_ENTRIES: int = 1024
    CACHE_REDIS_ENABLED: bool = True
    CACHE_KEY_PREFIX: str = "analysis-cache"

    # jobs
    # "celery" sends to the broker, "http" POSTs to WORKER_TRIGGER_URL
    JOB_DISPATCH_MODE: str = "celery"
    WORKER_TRIGGER_URL: str | None = None
    WORKER_SECRET: str | None = None
    JOB_DISPATCH_TIMEOUT_SECONDS: float = 10.0
    # Hard ceiling for a single worker invocation (platform limit)
    JOB_WORKER_MAX_SECONDS: int = 300
    # Must leave room inside the ceiling for the terminal status write
    JOB_COMPUTE_TIMEOUT_SECONDS: int = 270
    JOB_MAX_LIFETIME_SECONDS: int = 30 * 60
    JOB_REAPER_INTERVAL_SECONDS: int = 120

    # llm
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    LLM_MODEL: str = "gpt-4o-mini"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4

    # data retention (in days) for terminal jobs
    JOB_RETENTION_DAYS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True

    @model_validator(mode="after")
    def _check_job_budget(self):
        if self.JOB_COMPUTE_TIMEOUT_SECONDS >= self.JOB_WORKER_MAX_SECONDS:
            raise ValueError(
                "JOB_COMPUTE_TIMEOUT_SECONDS must be strictly shorter than JOB_WORKER_MAX_SECONDS"
            )
        if self.JOB_DISPATCH_MODE not in ("celery", "http"):
            raise ValueError("JOB_DISPATCH_MODE must be 'celery' or 'http'")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
