from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_STORAGE_ROOT = PROJECT_ROOT / "storage"
DEFAULT_DB_PATH = DEFAULT_STORAGE_ROOT / "orderflow.db"


class Settings(BaseSettings):
    app_name: str = "Orderflow Content Pipeline API"
    api_prefix: str = "/api"

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH.as_posix()}"
    redis_url: str = "redis://localhost:6379/0"
    celery_always_eager: bool = False
    renderer_url: str = "http://localhost:3001"
    render_callback_url: str | None = None
    render_timeout_seconds: int = 8
    public_base_url: str = "http://localhost:8000"
    frontend_origin: str = "http://localhost:5173"

    default_llm_provider: str = "mock"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5-mini"
    anthropic_api_key: str | None = None
    anthropic_model: str = "claude-sonnet-4-20250514"
    anthropic_max_tokens: int = 4096

    default_woofs_limit: int = 150
    woofs_threshold_ratio: float = 0.8
    unlimited_quota_roles: list[str] = ["admin"]
    woofs_cost_image: int = 1
    woofs_cost_carousel: int = 10

    topic_confidence_threshold: float = 0.7
    max_plan_attempts: int = 3
    max_items_per_type: int = 10
    min_carousel_slides: int = 3
    max_carousel_slides: int = 10
    default_carousel_slides: int = 5
    session_message_history: int = 50

    stale_job_minutes: int = 5
    max_job_retries: int = 3
    job_sweep_batch_size: int = 50
    sweep_interval_seconds: int = 300

    log_level: str = "INFO"
    suppress_job_poll_access_logs: bool = True
    suppress_httpx_info_logs: bool = True
    verbose_job_trace: bool = True
    log_preview_chars: int = 180
    persist_job_events: bool = True
    job_events_page_size: int = 400

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()

if settings.database_url.startswith("sqlite:///") and not settings.database_url.startswith("sqlite:///:memory:"):
    Path(settings.database_url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
