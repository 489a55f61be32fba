from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None

    # Firebase
    firebase_project_id: str
    firebase_credentials_path: str
    firebase_check_revoked: bool = False

    # API
    api_v1_str: str = "/api/v1"
    app_base_url: str = "http://localhost:3000"

    # Environment
    environment: str = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    # PayPal
    paypal_env: str = "sandbox"
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None
    paypal_webhook_id: Optional[str] = None
    paypal_webhook_verify: bool = True
    paypal_timeout_seconds: float = 15.0

    # Webhook reconciliation
    webhook_max_unmatched_attempts: int = 5
    webhook_retry_window_minutes: int = 60
    webhook_dedupe_ttl_minutes: int = 1440

    # Subscription lifecycle
    pending_checkout_ttl_hours: int = 24
    # expired -> active resubscription; pending product confirmation
    allow_expired_reactivation: bool = True

    @field_validator('cors_origins', mode='before')
    @classmethod
    def parse_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse CORS origins from environment variable (comma-separated) or use default list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(',') if origin.strip()]
        return v

    @property
    def paypal_base_url(self) -> str:
        if self.paypal_env == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra fields from environment


settings = Settings()
