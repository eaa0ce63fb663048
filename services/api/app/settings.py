from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    database_url: str
    redis_url: str = "redis://redis:6379/0"
    admin_token: str = "change-me-admin-token"
    session_secret: str = "change-me-session-secret"
    session_cookie_name: str = "fg_admin"
    session_max_age_seconds: int = 60 * 60 * 24 * 7
    create_tables_on_startup: bool = True

    batch_analysis_task: str = "tasks.fraud_batch_analysis"


settings = Settings()
