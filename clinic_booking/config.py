# clinic_booking/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ===== App =====
    APP_NAME: str = "clinic_booking"
    ENV: str = "dev"
    # Clinic local timezone, used to turn a calendar date into a UTC day range
    TIMEZONE: str = "UTC"

    # ===== DB =====
    # Production sets DATABASE_URL to Postgres. Local runs fall back to SQLite.
    DATABASE_URL: str = "sqlite:///./clinic.db"

    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800  # 30 min

    # ===== Twilio =====
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_SMS_FROM: Optional[str] = None
    TWILIO_WHATSAPP_FROM: Optional[str] = None
    # "sms" or "whatsapp"
    NOTIFY_CHANNEL: str = "sms"

    # True = notifications are only written to the log
    DRY_RUN: bool = True

    # ===== Slots =====
    DEFAULT_CONSULTATION_MINUTES: int = 15
    # Whether status=rescheduled is treated like pending/confirmed in
    # active-appointment queries. Kept off until product confirms.
    RESCHEDULED_COUNTS_AS_ACTIVE: bool = False

    # ===== Reminders =====
    REMINDERS_ENABLED: bool = True
    REMINDER_LEAD_HOURS: int = 24

    # ===== Admin =====
    ADMIN_TOKEN: Optional[str] = None

    def model_post_init(self, __context) -> None:
        """
        Normalizes:
          - NOTIFY_CHANNEL to lower case, unknown values fall back to sms
          - DEFAULT_CONSULTATION_MINUTES to a positive value
        """
        channel = (self.NOTIFY_CHANNEL or "").strip().lower()
        self.NOTIFY_CHANNEL = channel if channel in ("sms", "whatsapp") else "sms"

        if self.DEFAULT_CONSULTATION_MINUTES <= 0:
            self.DEFAULT_CONSULTATION_MINUTES = 15


settings = Settings()
