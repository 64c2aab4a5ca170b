# WORKFLOW: Core configuration management for the HTS import pipeline.
# Used by: All modules throughout the application
# Configuration includes:
# - Database connection settings
# - USITC source URL, download timeouts and retry backoff
# - Object storage backend (local filesystem or S3)
# - Pipeline tuning (batch sizes, formula coverage gate, note policy)
# - Rate sanity thresholds used by the validator
# - Optional AI formula fallback (Ollama)
# - API settings (CORS, host, port) and logging
#
# Loaded at startup; composition roots read it and pass values into components.

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Database
    database_url: str = "sqlite:///./hts_import.db"

    # USITC source
    usitc_base_url: str = "https://www.usitc.gov/sites/default/files/tata/hts"
    download_timeout_seconds: float = 60.0
    download_max_retries: int = 3
    download_backoff_base_seconds: float = 2.0
    revision_probe_limit: int = 50

    # Object storage
    storage_backend: str = "local"
    storage_path: str = "./data/raw"
    storage_bucket: str = "hts-raw"
    aws_region: str = "us-east-1"

    # Pipeline
    staging_batch_size: int = 1000
    promotion_batch_size: int = 500
    min_formula_coverage: float = 0.995
    allow_unresolved_notes: bool = False
    note_formula_policy: str = "STRICT"
    import_log_max_lines: int = 500

    # Rate sanity thresholds
    max_ad_valorem_percent: float = 500.0
    max_specific_duty: float = 1000.0

    # Post-promotion smoke check
    smoke_check_sample_size: int = 25

    # AI formula fallback
    ollama_url: str = "http://localhost:11434"
    llm_model: str = "llama2:7b"
    enable_ai_formula_fallback: bool = False

    # API
    api_v1_prefix: str = "/api/v1"
    project_name: str = "HTS Import Pipeline"
    version: str = "1.0.0"

    # Environment
    environment: str = "development"
    debug: bool = False

    # Logging
    log_level: str = "INFO"

    # CORS
    allowed_origins: list[str] = ["*"]
    allowed_methods: list[str] = ["*"]
    allowed_headers: list[str] = ["*"]

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8001

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
