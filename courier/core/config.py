from pathlib import Path
from urllib.parse import quote_plus
from pydantic_settings import BaseSettings
import os


def _read_secret(secret_file: str | None) -> str:
    if not secret_file:
        return ""
    path = Path(secret_file)
    if not path.exists():
        return ""
    return path.read_text(encoding="utf-8").strip()


def _build_database_url() -> str:
    explicit = os.getenv("DATABASE_URL", "").strip()
    if explicit:
        return explicit

    db_host_env = os.getenv("DB_HOST", "").strip()
    db_port_env = os.getenv("DB_PORT", "").strip()
    db_name_env = os.getenv("DB_NAME", "").strip()
    db_user_env = os.getenv("DB_USER", "").strip()
    db_password_env = os.getenv("DB_PASSWORD", "").strip()
    db_password_file_env = os.getenv("DB_PASSWORD_FILE", "").strip()

    db_password = db_password_env or _read_secret(db_password_file_env)
    if (
        not db_host_env
        and not db_port_env
        and not db_name_env
        and not db_user_env
        and not db_password_env
        and not db_password_file_env
    ):
        # Preserve local non-docker behavior when no DB settings are provided.
        return "sqlite:///./courier.db"

    db_host = db_host_env or "postgres"
    db_port = db_port_env or "5432"
    db_name = db_name_env or "courier"
    db_user = db_user_env or "courier"
    if not db_password:
        db_password = "change-me-local-password"

    return (
        "postgresql+psycopg://"
        f"{quote_plus(db_user)}:{quote_plus(db_password)}"
        f"@{db_host}:{db_port}/{db_name}"
    )


class Settings(BaseSettings):
    SECRET_KEY: str = "your-secret-key-here"
    # Refresh credentials are signed with their own key so an access token
    # can never be presented as a refresh token (or the reverse).
    REFRESH_SECRET_KEY: str = ""
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    MAX_REFRESH_TOKENS: int = 5
    DATABASE_URL: str = _build_database_url()

    # Redis Configuration (login rate limiting, lifecycle events)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Message limits
    MAX_MEDIA_BYTES: int = 1 * 1024 * 1024
    MAX_TEXT_LENGTH: int = 5000

    # Login throttling (per client host)
    LOGIN_RATE_LIMIT_MAX: int = 10
    LOGIN_RATE_LIMIT_WINDOW_SECONDS: int = 15 * 60

    # Usernames promoted to admin when they register (semicolon-separated)
    # Example: ADMIN_ALLOWLIST=alice;bob
    ADMIN_ALLOWLIST: str = ""

    # GIF provider
    GIPHY_API_KEY: str = ""
    GIPHY_BASE_URL: str = "https://api.giphy.com/v1/gifs"

    COOKIE_SECURE: bool = False
    ALLOWED_ORIGINS: str = ""

    @property
    def refresh_secret_key(self) -> str:
        return self.REFRESH_SECRET_KEY or f"{self.SECRET_KEY}_refresh"

    @property
    def allowed_origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


settings = Settings()
