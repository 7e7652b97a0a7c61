"""subgate configuration management."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class SubgateSettings(BaseSettings):
    """Settings loaded from environment variables or .env file."""

    # Database (unset: in-memory subscribers)
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection string for the subscribers table",
    )

    # Server
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, description="API port")
    debug: bool = Field(default=False, description="Debug mode")

    # Auth
    admin_token: Optional[str] = Field(default=None, description="Bearer token for admin endpoints")
    webhook_secret: Optional[str] = Field(
        default=None,
        description="Fallback webhook key for subscribers without their own api_key",
    )

    # WhatsApp (wacli)
    wacli_path: str = Field(default="wacli", description="wacli binary (name or full path)")
    wacli_store_dir: str = Field(default="~/.wacli", description="wacli store directory")
    credentials_file: str = Field(
        default="~/.subgate/session.cred",
        description="Session credential file, used when no database is configured",
    )
    reconnect_delay: float = Field(default=2.0, description="Fixed delay between reconnect attempts (s)")
    send_timeout: float = Field(default=30.0, description="Upper bound for a single send (s)")

    # Reply copy
    default_template: str = Field(
        default="مرحبًا {name}! اشتراكك فعّال حتى {endDate} 🎉",
        description="Greeting used when a subscriber has no template",
    )
    order_template: str = Field(
        default="مرحبًا {name}! تم استلام طلبك. التفاصيل:\n{order}",
        description="Webhook message used when a subscriber has no template",
    )
    not_registered_message: str = Field(
        default="رقمك غير مسجل في الخدمة.",
        description="Reply to senders without a subscription record",
    )
    expired_message: str = Field(
        default="اشتراكك منتهي",
        description="Reply to senders whose subscription is not active",
    )

    # Order summary labels ({order} placeholder)
    order_id_label: str = Field(default="رقم الطلب")
    customer_label: str = Field(default="العميل")
    items_label: str = Field(default="المنتجات")
    total_label: str = Field(default="الإجمالي")

    log_file: str = Field(default="~/subgate.log", description="Log file path")

    model_config = {"env_prefix": "SUBGATE_", "env_file": ".env", "extra": "ignore"}


def load_settings() -> SubgateSettings:
    """Load settings from environment."""
    settings = SubgateSettings()

    # Security: warn if DB is not localhost (subscriber phones + api keys)
    import logging
    logger = logging.getLogger("subgate.config")
    db = settings.database_url
    if db and "localhost" not in db and "127.0.0.1" not in db and "db:" not in db:
        logger.warning(
            "DATABASE IS NOT LOCALHOST — subscriber phone numbers, api keys and the "
            "WhatsApp session credential may be exposed if the database is publicly accessible."
        )
    if not settings.admin_token:
        logger.warning("No SUBGATE_ADMIN_TOKEN set — admin endpoints are disabled.")

    return settings
