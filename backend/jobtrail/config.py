"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL / Supabase
    database_url: str = "sqlite:///./jobtrail.db"

    # Optional: explicit CA bundle for Supabase (asyncpg SSL verification).
    # If set to a relative path, it's resolved relative to backend/.
    supabase_ssl_ca_file: Optional[str] = None

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # Gmail OAuth client secrets (downloaded from Google Cloud Console)
    credentials_path: str = "credentials.json"
    # Per-user Gmail tokens are stored at TOKEN_DIR/token_<user_id>.pickle
    token_dir: str = "gmail_tokens"
    # Redirect URI registered in Google Cloud (e.g. http://localhost:8000/api/gmail/callback)
    gmail_oauth_redirect_uri: Optional[str] = None
    # Where to send the browser after the OAuth callback
    frontend_url: str = "http://localhost:3000"

    # Gmail query / fetch limits (bound per-run cost)
    gmail_default_days_back: int = 90
    gmail_max_per_query: int = 30
    gmail_body_max_chars: int = 2000
    gmail_max_retries: int = 5

    # AI - set OPENAI_API_KEY for classification
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.0
    openai_timeout_s: float = 30.0
    # Verdicts below this confidence never touch applications
    classifier_confidence_threshold: float = 0.6
    classifier_body_max_chars: int = 1500

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Auth - JWT or API key (at least one required)
    secret_key: str = ""
    api_key_header: str = "X-API-Key"
    api_key: str = ""
    api_key_user_id: Optional[int] = None
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60 * 24 * 7  # 7 days

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
