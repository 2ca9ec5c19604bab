# /nearbuy/config/settings.py

import sys
import re
from datetime import time as dt_time
from typing import Dict, List, Literal, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from nearbuy.models.domain import Lane, NotificationType


DEFAULT_QUIET_EXEMPT = {
    NotificationType.FLASH_DEAL_ACTIVATION,
    NotificationType.FLASH_DEAL_COUPON,
    NotificationType.FISH_ARRIVAL_IMMINENT,
    NotificationType.JOB_ACCEPTED,
    NotificationType.OTP,
    NotificationType.URGENT,
}


class QuietHoursConfig(BaseModel):
    enabled: bool = True
    start: int = Field(default=22, ge=0, le=23)
    end: int = Field(default=7, ge=0, le=23)
    timezone: str = "Asia/Kolkata"
    exempt_types: Set[NotificationType] = Field(default_factory=lambda: set(DEFAULT_QUIET_EXEMPT))

    model_config = ConfigDict(frozen=True)

    @field_validator("timezone")
    @classmethod
    def timezone_must_exist(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class LaneLimit(BaseModel):
    per_second: int | None = Field(default=None, gt=0)
    per_minute: int | None = Field(default=None, gt=0)

    model_config = ConfigDict(frozen=True)


class RateLimitConfig(BaseModel):
    per_second: int = Field(default=70, gt=0)
    per_minute: int = Field(default=4000, gt=0)
    per_recipient_per_minute: int = Field(default=10, gt=0)
    recipient_release_seconds: int = Field(default=10, ge=0)
    # How long a worker may block on the shared budget before re-enqueueing.
    max_wait_seconds: float = Field(default=5.0, ge=0)
    release_seconds: int = Field(default=1, ge=0)
    lanes: Dict[Lane, LaneLimit] = Field(default_factory=lambda: {
        Lane.FLASH_DEALS: LaneLimit(per_second=100, per_minute=2000),
        Lane.NOTIFICATIONS: LaneLimit(per_minute=50),
    })


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff: List[int] = Field(default_factory=lambda: [60, 120, 240])
    retry_until_seconds: int = Field(default=7200, gt=0)

    @field_validator("backoff")
    @classmethod
    def backoff_must_be_usable(cls, v):
        if not v:
            raise ValueError("RETRY__BACKOFF must contain at least one delay")
        if any(delay < 0 for delay in v):
            raise ValueError("RETRY__BACKOFF delays must be non-negative")
        return v


class QueueConfig(BaseModel):
    unique_for_seconds: int = Field(default=300, gt=0)
    claim_lease_seconds: int = Field(default=120, gt=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    workers: int = Field(default=4, ge=1)
    key_prefix: str = "nearbuy"


class BatchConfig(BaseModel):
    max_items_per_batch: int = Field(default=50, gt=0)
    max_batch_age_hours: int = Field(default=24, gt=0)
    daily_at: List[str] = Field(default_factory=lambda: ["09:00"])
    twice_daily_at: List[str] = Field(default_factory=lambda: ["09:00", "17:00"])
    dispatch_limit: int = Field(default=100, gt=0)

    @field_validator("daily_at", "twice_daily_at")
    @classmethod
    def times_must_be_hh_mm(cls, v):
        if not v:
            raise ValueError("At least one send time is required")
        for value in v:
            if not re.match(r"^([01]\d|2[0-3]):[0-5]\d$", value):
                raise ValueError(f"Send time must be HH:MM, got {value!r}")
        return v

    def parsed_times(self, values: List[str]) -> List[dt_time]:
        return sorted(dt_time(int(v[:2]), int(v[3:])) for v in values)


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/nearbuy"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"

    # Backends ("memory" runs everything inside one process)
    queue_backend: Literal["redis", "memory"] = "redis"
    store_backend: Literal["mongo", "memory"] = "mongo"

    # WhatsApp Cloud API
    whatsapp_access_token: str | None = None
    whatsapp_phone_id: str | None = None
    whatsapp_verify_token: str | None = None
    whatsapp_app_secret: str | None = None
    whatsapp_api_version: str = "v21.0"
    whatsapp_api_timeout: float = 15.0
    whatsapp_expected_object: str = "whatsapp_business_account"

    # Webhook verification switches (ignored in production)
    webhook_verify_signature: bool = True
    whatsapp_testing_enabled: bool = False
    inbound_dedup_seconds: int = 300

    # Pipeline
    quiet_hours: QuietHoursConfig = Field(default_factory=QuietHoursConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    batching: BatchConfig = Field(default_factory=BatchConfig)
    run_workers_in_app: bool = False

    # Observability
    environment: str = Field(default="production")
    alerting_webhook_url: str | None = None
    api_key: str | None = None

    # Deployment
    workers: int = 2

    # ---------------- Validators ---------------- #

    @field_validator("whatsapp_phone_id")
    @classmethod
    def phone_id_must_be_digits(cls, v):
        if v is not None and not re.match(r"^\d+$", v):
            raise ValueError("WHATSAPP_PHONE_ID must contain only digits")
        return v

    @model_validator(mode="after")
    def quiet_window_must_be_non_empty(self):
        if self.quiet_hours.enabled and self.quiet_hours.start == self.quiet_hours.end:
            raise ValueError("QUIET_HOURS start and end must differ when quiet hours are enabled")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def signature_verification_enabled(self) -> bool:
        if self.is_production:
            return True
        return self.webhook_verify_signature and not self.whatsapp_testing_enabled

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.is_production:
            for var in ["whatsapp_app_secret", "whatsapp_access_token", "whatsapp_phone_id"]:
                if not getattr(settings_obj, var):
                    raise ValueError(f"{var.upper()} is required in production")
            if settings_obj.queue_backend == "memory" or settings_obj.store_backend == "memory":
                raise ValueError("In-memory backends cannot be used in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}", file=sys.stderr)
        sys.exit(1)


settings = Settings()
validate_environment(settings)
