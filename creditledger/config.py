"""
Application configuration using Pydantic Settings.
"""

from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ledger store
    DATABASE_URL: str = "sqlite:///./creditledger.db"
    AUTO_CREATE_DB_SCHEMA: bool = True
    LEDGER_STORE_TIMEOUT_SECONDS: float = 5.0

    # Internal callers allowed to charge on behalf of a named user
    SERVICE_API_TOKEN: str = ""

    # Paid providers
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_WORKERS: int = 8
    OPENAI_API_KEY: str = ""
    OPENAI_TTS_MODEL: str = "gpt-4o-mini-tts"
    OPENAI_CHAT_MODEL: str = "gpt-3.5-turbo"
    GEMINI_API_KEY: str = ""
    GEMINI_TEXT_MODEL: str = "gemini-2.5-flash"
    GEMINI_TTS_LANGUAGE: str = "de-DE"
    ELEVENLABS_API_KEY: str = ""
    POLLY_SIGNER_URL: str = ""
    POLLY_SIGNER_TOKEN: str = ""
    VOICE_CATALOG_TTL_SECONDS: int = 3600

    # Stripe webhooks
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300
    PURCHASE_EVENT_TYPES: List[str] = ["checkout.session.completed"]

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()
