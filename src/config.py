from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "ShelfMatch"
    debug: bool = False
    log_level: str = "INFO"

    database_url: str = "sqlite:///./shelfmatch.db"

    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"

    catalog_api_base: str = "https://api.foodgraph.com/v1"
    catalog_email: Optional[str] = None
    catalog_password: Optional[str] = None
    catalog_updated_at_from: str = "2025-07-01T00:00:00Z"
    catalog_max_results: int = 100
    catalog_timeout_seconds: float = 30.0

    vision_api_base: str = "http://localhost:8090/v1"
    vision_api_key: Optional[str] = None
    vision_timeout_seconds: float = 60.0

    prefilter_min_score: float = 0.70
    prefilter_size_confidence_threshold: float = 0.5
    prefilter_safety_cap: int = 25
    prefilter_retailer_boost: float = 0.10

    visual_match_mode: Literal["per_candidate", "selector"] = "per_candidate"
    selector_confidence_threshold: float = 0.6
    resolve_ambiguous_with_selector: bool = False
    compare_concurrency: int = 5

    batch_default_concurrency: int = 20
    batch_max_concurrency: int = 200
    batch_admission_size: int = 10
    batch_admission_pause_seconds: float = 0.5
    item_timeout_seconds: float = 180.0
    search_max_retries: int = 2
    search_retry_backoff_seconds: float = 1.0

    matching_queue: str = "matching"
    batch_task_time_limit_seconds: int = 3600

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False


settings = Settings()
