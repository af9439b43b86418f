"""
Configuration module for the Booking Conversions Bridge
"""
from pydantic_settings import BaseSettings
from pydantic import field_validator, Field
from typing import List, Literal
import os


class Settings(BaseSettings):
    """Application settings loaded from environment variables with validation"""

    # Meta Conversions API
    meta_pixel_id: str = ""
    meta_access_token: str = ""
    meta_api_version: str = Field(default="v19.0", pattern=r'^v\d+\.\d+$')

    # Event defaults
    event_source_url: str = "https://example.com/booking/thank-you"
    default_currency: str = Field(default="CAD", min_length=3, max_length=3)
    default_country: str = "ca"
    default_country_calling_code: str = Field(default="1", pattern=r'^\d{1,3}$')
    default_value: float = Field(default=0.0, ge=0)
    default_content_name: str = "Massage booking"
    intent_event_name: str = "InitiateCheckout"
    purchase_event_name: str = "Purchase"
    fallback_event_id_prefix: str = "booking_"

    # Attribution / dedup windows
    attribution_window_hours: int = Field(default=24, ge=1, le=24 * 7)
    dedup_window_hours: int = Field(default=24, ge=1, le=24 * 7)
    max_event_age_days: int = Field(default=7, ge=1, le=7)

    # Policies
    require_confirmed_status: bool = False
    pii_fallback_enabled: bool = True
    event_time_policy: Literal["now", "created"] = "now"
    value_policy: Literal["fixed", "line_items", "sale", "zero"] = "sale"

    # Inbound webhook auth
    webhook_secret: str = ""

    # Delivery
    delivery_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    delivery_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0, le=30)

    # HTTP
    cors_allowed_origins: List[str] = Field(default_factory=list)
    port: int = 8080

    # Logging
    log_level: str = Field(default="INFO", pattern=r'^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$')
    log_file_path: str = "./logs/capi_bridge.log"

    @field_validator('meta_access_token', 'webhook_secret')
    @classmethod
    def validate_secrets(cls, v: str) -> str:
        """Validate secrets are not placeholder values"""
        if 'your_' in v.lower() or '_here' in v.lower():
            raise ValueError('Secret appears to be a placeholder. Please provide a real value.')
        return v

    @field_validator('default_currency')
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Currency codes are sent upper-case"""
        return v.upper()

    @field_validator('log_file_path')
    @classmethod
    def validate_log_path(cls, v: str) -> str:
        """Ensure log directory exists"""
        log_dir = os.path.dirname(v)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        return v

    @property
    def attribution_window_seconds(self) -> int:
        return self.attribution_window_hours * 3600

    @property
    def dedup_window_seconds(self) -> int:
        return self.dedup_window_hours * 3600

    @property
    def meta_configured(self) -> bool:
        return bool(self.meta_pixel_id and self.meta_access_token)

    model_config = {
        "env_file": ".env",
        "case_sensitive": False
    }


# Global settings instance
settings = Settings()
