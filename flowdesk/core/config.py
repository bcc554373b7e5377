from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # FlowDB backend that brokers every data-store connection
    API_BASE: str = "http://localhost:8080"
    # Falls back to API_BASE with the ws:// or wss:// scheme
    WS_BASE: Optional[str] = None

    DATABASE_URL: str = "sqlite+aiosqlite:///./flowdesk.db"

    REQUEST_TIMEOUT_SECONDS: float = 30.0
    STREAM_TIMEOUT_SECONDS: Optional[float] = None

    TOKEN_URL: str = "/api/v1/auth/login"

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def websocket_base(self) -> str:
        if self.WS_BASE:
            return self.WS_BASE.rstrip("/")
        # http -> ws, https -> wss
        return ("ws" + self.API_BASE[len("http"):]).rstrip("/")


# Create a single instance of the settings to use everywhere
settings = Settings()
