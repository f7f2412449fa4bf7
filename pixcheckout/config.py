from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    env: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./checkout.db"

    shop_api_base: str = "http://localhost:3000/api"
    shop_api_key: Optional[str] = None
    service_api_key: str = "change-me"

    # seconds
    request_timeout: float = 30.0
    status_timeout: float = 20.0
    poll_interval: float = 20.0
    poll_max_interval: float = 120.0
    stale_check_seconds: float = 30.0
    session_grace_seconds: float = 60.0  # finished sessions stay readable this long

    realtime_url: Optional[str] = None  # socket.io endpoint, empty disables the channel
    placeholder_ttl_minutes: int = 30
    auto_verify: bool = True

    success_redirect_url: str = "/profile/products"
    cart_redirect_url: str = "/cart"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

settings = Settings()
