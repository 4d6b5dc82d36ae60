from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split(",") if v.strip())


# ----------------------------
# Config & Constants
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./shutupnrave.db"
    # postgres pool only
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    app_url: str = "http://localhost:8000"

    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    currency: str = "NGN"

    resend_api_key: str = ""
    resend_from_email: str = "tickets@shutupnrave.com"
    admin_notify_emails: Tuple[str, ...] = field(default_factory=tuple)

    cloudinary_cloud_name: str = ""
    cloudinary_api_key: str = ""
    cloudinary_api_secret: str = ""

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"

    event_name: str = "shutupnraveee 2025"
    event_date: str = "December 20, 2025"
    event_time: str = "8:00 PM"
    event_location: str = "Lagos, Nigeria"

    webhook_dedup_backend: str = "sql"  # 'sql' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"

    log_level: str = "INFO"
    log_json: bool = False

    @property
    def callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/tickets/payment-success"

    @property
    def cloudinary_enabled(self) -> bool:
        return bool(
            self.cloudinary_cloud_name
            and self.cloudinary_api_key
            and self.cloudinary_api_secret
        )

    def verification_url(self, order_id: str) -> str:
        return f"{self.app_url.rstrip('/')}/admin-page/{order_id}"

    def referral_link(self, ref_code: str) -> str:
        return f"{self.app_url.rstrip('/')}/tickets?ref={ref_code}"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ.get
        d = cls()
        return cls(
            database_url=env("DATABASE_URL", d.database_url),
            db_pool_size=int(env("DB_POOL_SIZE", d.db_pool_size)),
            db_max_overflow=int(env("DB_MAX_OVERFLOW", d.db_max_overflow)),
            db_pool_timeout=int(env("DB_POOL_TIMEOUT", d.db_pool_timeout)),
            app_url=env("APP_URL", d.app_url),
            paystack_secret_key=env("PAYSTACK_SECRET_KEY", ""),
            paystack_base_url=env("PAYSTACK_BASE_URL", d.paystack_base_url),
            currency=env("PAYMENT_CURRENCY", d.currency),
            resend_api_key=env("RESEND_API_KEY", ""),
            resend_from_email=env("RESEND_FROM_EMAIL", d.resend_from_email),
            admin_notify_emails=_split_csv(env("ADMIN_NOTIFY_EMAILS")),
            cloudinary_cloud_name=env("CLOUDINARY_CLOUD_NAME", ""),
            cloudinary_api_key=env("CLOUDINARY_API_KEY", ""),
            cloudinary_api_secret=env("CLOUDINARY_API_SECRET", ""),
            session_secret=env("SESSION_SECRET", d.session_secret),
            admin_username=env("ADMIN_USERNAME", d.admin_username),
            admin_password=env("ADMIN_PASSWORD", d.admin_password),
            event_name=env("EVENT_NAME", d.event_name),
            event_date=env("EVENT_DATE", d.event_date),
            event_time=env("EVENT_TIME", d.event_time),
            event_location=env("EVENT_LOCATION", d.event_location),
            webhook_dedup_backend=env(
                "WEBHOOK_DEDUP_BACKEND", d.webhook_dedup_backend
            ).lower(),
            redis_url=env("REDIS_URL", d.redis_url),
            log_level=env("LOG_LEVEL", d.log_level).upper(),
            log_json=env("LOG_JSON", "0") in ("1", "true", "yes"),
        )
