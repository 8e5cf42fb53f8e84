import os
from typing import List
from pydantic_settings import BaseSettings

PRODUCTION_ORIGINS = ["https://pambo.biz", "https://www.pambo.biz"]
DEVELOPMENT_ORIGINS = ["http://localhost:3000", "http://localhost:5173", *PRODUCTION_ORIGINS]

def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

class Settings(BaseSettings):
    environment: str = os.getenv("ENVIRONMENT", "development")

    jwt_issuer: str = os.getenv("JWT_ISSUER", "pambo")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    jwt_ttl_seconds: int = int(os.getenv("JWT_TTL_SECONDS", "3600"))
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    database_url: str = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/pambo")
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    nonce_backend: str = os.getenv("NONCE_BACKEND", "database")  # database|redis

    # Callback verification
    callback_secret: str = os.getenv("MPESA_CALLBACK_SECRET", "")
    require_signature: bool = _flag("MPESA_REQUIRE_SIGNATURE", "true")
    replay_window_seconds: int = int(os.getenv("MPESA_REPLAY_WINDOW_SECONDS", "300"))
    require_nonce: bool = _flag("MPESA_REQUIRE_NONCE", "true")
    signature_header: str = os.getenv("MPESA_SIGNATURE_HEADER", "X-Mpesa-Signature")
    timestamp_header: str = os.getenv("MPESA_TIMESTAMP_HEADER", "X-Mpesa-Timestamp")
    nonce_header: str = os.getenv("MPESA_NONCE_HEADER", "X-Mpesa-Nonce")

    cors_allowed_origins: str = os.getenv("CORS_ALLOWED_ORIGINS", "")

    # Daraja (STK push initiation)
    mpesa_consumer_key: str = os.getenv("MPESA_CONSUMER_KEY", "")
    mpesa_consumer_secret: str = os.getenv("MPESA_CONSUMER_SECRET", "")
    mpesa_shortcode: str = os.getenv("MPESA_SHORTCODE", "174379")
    mpesa_passkey: str = os.getenv("MPESA_PASSKEY", "")
    mpesa_callback_url: str = os.getenv("MPESA_CALLBACK_URL", "")
    mpesa_base_url: str = os.getenv("MPESA_BASE_URL", "https://sandbox.safaricom.co.ke")

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def allowed_origins(self) -> List[str]:
        if not self.cors_allowed_origins.strip():
            return list(PRODUCTION_ORIGINS if self.is_production else DEVELOPMENT_ORIGINS)
        return [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]

settings = Settings()
