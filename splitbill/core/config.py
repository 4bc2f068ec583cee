from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"

    # API Settings
    PROJECT_NAME: str = "UTMmunch Split Bill API"
    API_V1_STR: str = "/api/v1"
    PROJECT_VERSION: str = "0.1.0"
    DESCRIPTION: str = "Multi-party bill-splitting settlement for campus food orders"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "utmmunch"

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # JWT (tokens are issued by the identity provider, only verified here)
    SECRET_KEY: str = "change-this-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Settlement
    POLL_INTERVAL_SECONDS: float = 2.5
    SESSION_TIMEOUT_MINUTES: int = 30
    SERVICE_FEE_CENTS: int = 50
    AMOUNT_EPSILON_CENTS: int = 1
    # Queue numbers restart at local midnight (Malaysia, UTC+8)
    QUEUE_DAY_UTC_OFFSET_HOURS: int = 8

    # Payment simulator
    PAYMENT_SUCCESS_RATE: float = 0.9
    PAYMENT_LATENCY_SECONDS: float = 0.0

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env"
    )

settings = Settings()
