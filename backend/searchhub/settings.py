from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_BACKEND_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SEARCHHUB_",
        env_file=(str(_BACKEND_DIR / ".env"), ".env", "backend/.env"),
        extra="ignore",
    )

    database_url: str = "sqlite+pysqlite:///./searchhub.db"
    cors_origins: str = "http://localhost:5173,http://127.0.0.1:5173"

    # Optional Fernet key used to encrypt stored OAuth tokens.
    # Generate one via: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    fernet_key: str | None = None

    enable_cache: bool = True
    cache_ttl_seconds: float = 5 * 60
    cache_max_entries: int = 1000

    search_timeout_seconds: float = 5 * 60
    default_page_size: int = 100

    # Paginator caps, overridable per connector through ConnectorConfig.settings
    max_containers_per_account: int = 50
    max_pages_per_container: int = 200
    max_results_per_account: int = 500
    container_concurrency: int = 5
    message_page_size: int = 50

    retry_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 10.0
    http_timeout_seconds: float = 20.0

    # Remote OAuth token service; when set, connectors exchange/refresh through it.
    token_provider_url: str | None = None
    oauth_redirect_uri: str = "http://127.0.0.1:8000/oauth/callback"

    gmail_client_id: str | None = None
    gmail_client_secret: str | None = None
    gmail_labels: str = "INBOX,SENT"
    slack_client_id: str | None = None
    slack_client_secret: str | None = None
    lark_app_id: str | None = None
    lark_app_secret: str | None = None

    # Comma-separated platforms loaded at startup, e.g. "gmail,slack,lark"
    autoload_connectors: str = "gmail,slack,lark"


settings = Settings()
