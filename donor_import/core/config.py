from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./donor_import.db"
    debug: bool = True
    date_default_dayfirst: bool = False
    log_level: str = "INFO"
    log_format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    log_third_party_level: str = "WARNING"  # sqlalchemy.engine, httpx, anthropic, ...

    # Upload / ingestion limits
    upload_max_file_size_mb: int = 50
    import_sample_rows: int = 5  # Rows materialized eagerly for schema inference
    import_preview_rows: int = 10

    # Job execution
    import_batch_size: int = 100
    import_max_workers: int = 4  # Controls parallel row cleaning inside a batch
    import_error_summary_limit: int = 100
    import_validate_display_limit: int = 100

    # Schema mapping
    mapping_min_confidence: float = 0.5

    # Inference provider ("anthropic" or "none")
    inference_provider: str = "anthropic"
    anthropic_api_key: str = ""
    inference_model: str = "claude-haiku-4-5-20251001"
    inference_timeout_seconds: float = 5.0
    inference_max_tokens_per_request: int = 4000
    inference_max_requests_per_minute: int = 10
    inference_max_requests_per_hour: int = 100
    ai_row_cleaning_enabled: bool = False

    model_config = ConfigDict(env_file=".env", extra="ignore")


settings = Settings()
