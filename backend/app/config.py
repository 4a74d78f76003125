from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase project (job store, processor function, auth)
    supabase_url: str = ""
    supabase_anon_key: str = ""
    supabase_service_role_key: str = ""

    jobs_table: str = "jobs"
    templates_table: str = "templates"
    processor_function: str = "generate-images"

    # Update watching
    poll_interval_seconds: float = 2.0
    # Upper bound on how long a single job is watched (30 minutes)
    max_watch_seconds: float = 30 * 60
    # Delay between job creation and the processor trigger
    trigger_delay_seconds: float = 1.0
    # Prefer the Supabase realtime change feed over polling when available
    realtime_enabled: bool = False

    # Local mirror of job records (survives process restarts)
    mirror_database_url: str = "sqlite:///./carousel_mirror.db"

    # Reference processor (POST /api/functions/generate-images)
    openai_api_key: str = ""
    prompt_model: str = "gpt-4o"
    image_model: str = "gpt-image-1"
    image_batch_size: int = 5
    image_batch_pause_seconds: float = 2.0

    # Google Drive export (token refresh only; the consent flow lives in the UI)
    google_client_id: str = ""
    google_client_secret: str = ""

    # Frontend
    frontend_url: str = "http://localhost:5173"

    log_level: str = "INFO"

    model_config = {"env_file": ".env"}


settings = Settings()
