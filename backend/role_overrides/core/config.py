from pydantic_settings import BaseSettings
from typing import Dict
import os


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "role-overrides"
    APP_ENV: str = os.getenv("APP_ENV", "development")
    DEBUG: bool = False
    TESTING: bool = False

    # Database (shard 0)
    DATABASE_URL: str = os.getenv(
        "DATABASE_URL",
        "sqlite+aiosqlite:///./role_overrides.db"
    )

    # Additional shards, e.g. SHARD_DATABASE_URLS='{"1": "postgresql://..."}'
    SHARD_DATABASE_URLS: Dict[int, str] = {}
    # global id = shard id * span + local id
    SHARD_ID_SPAN: int = 10_000_000_000_000

    # Cache
    CACHE_BACKEND: str = "memory"  # memory, redis
    CACHE_PREFIX: str = "role_overrides:"
    CACHE_TTL_SECONDS: int = 3600

    # Redis
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: str = os.getenv("REDIS_PASSWORD", "")

    # Settings-store key holding the comma separated custom site admin role names
    ALLOWED_SITE_ADMIN_ROLES_SETTING: str = "allowed_custom_site_admin_roles"

    class Config:
        env_file = ".env"


settings = Settings()


def async_database_url(url: str) -> str:
    """Convert a sync URL to its async driver form."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def shard_database_urls() -> Dict[int, str]:
    """Return the async URL for every configured shard, shard 0 included."""
    urls = {int(k): async_database_url(v) for k, v in settings.SHARD_DATABASE_URLS.items()}
    urls.setdefault(0, async_database_url(settings.DATABASE_URL))
    return urls
