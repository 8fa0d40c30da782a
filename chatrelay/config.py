from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatrelay.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Messaging provider: "twilio" or "aws" talk to a carrier, "mock" fabricates ids
    MESSAGING_PROVIDER: Literal["twilio", "aws", "mock"] = "twilio"
    MOCK_MODE: bool = False
    PROVIDER_TIMEOUT_SECONDS: float = 15.0

    # Twilio credentials
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_PHONE_NUMBER: Optional[str] = None
    TWILIO_WHATSAPP_NUMBER: Optional[str] = None

    # AWS credentials: SNS for SMS, End User Messaging Social for WhatsApp
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None
    AWS_SECRET_ACCESS_KEY: Optional[str] = None
    AWS_SNS_SMS_SENDER_ID: Optional[str] = None
    AWS_WHATSAPP_PHONE_NUMBER_ID: Optional[str] = None
    # Only SNS notifications from this topic are accepted when set
    AWS_SNS_TOPIC_ARN: Optional[str] = None

    # Public base URL the provider posts webhooks to; used for signature checks
    WEBHOOK_BASE_URL: str = "http://localhost:8000"
    WEBHOOK_SIGNATURE_VALIDATION: bool = False

    # Automated replies
    AUTO_REPLY_ENABLED: bool = False
    AUTO_REPLY_PROVIDER: Literal["mock", "http"] = "mock"
    AUTO_REPLY_DELAY_MS: int = 2000
    AUTO_REPLY_TIMEOUT_SECONDS: float = 30.0
    AUTO_REPLY_HTTP_URL: str = "http://127.0.0.1:8100/chat"
    AUTO_REPLY_ACTOR_ID: str = "chatrelay"

    # Session continuity: inbound events further apart than this start a new session
    SESSION_IDLE_WINDOW_SECONDS: int = 300

    @property
    def use_mock_provider(self) -> bool:
        return self.MOCK_MODE or self.MESSAGING_PROVIDER == "mock"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
