import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from services.errors import ConfigurationError

load_dotenv()


class Settings(BaseModel):
    database_path: str = "payouts.db"

    stripe_secret_key: str = ""
    stripe_base_url: str = "https://api.stripe.com"
    currency: str = "usd"

    youtube_api_key: str = ""
    apify_api_token: str = ""

    # Engagement lookups: fixed retry count, fixed delay, per-request timeout
    engagement_max_retries: int = 3
    engagement_retry_delay: float = 1.5
    request_timeout: float = 15.0

    # Seconds a payout run may hold a campaign before another run can take it
    campaign_lease_ttl: float = 300.0

    # Campaigns allowed to keep paying while paused (never once terminal)
    legacy_payable_campaign_ids: list[str] = []

    output_dir: str = "/tmp/payout_reports"
    log_dir: str = "logs"

    def require_transfer_credentials(self) -> None:
        if not self.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not set")


def _split_ids(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def load_settings() -> Settings:
    """Build Settings from the environment (and .env, if present)."""
    return Settings(
        database_path=os.getenv("DATABASE_PATH", "payouts.db"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
        stripe_base_url=os.getenv("STRIPE_BASE_URL", "https://api.stripe.com"),
        currency=os.getenv("PAYOUT_CURRENCY", "usd"),
        youtube_api_key=os.getenv("YOUTUBE_API_KEY", ""),
        apify_api_token=os.getenv("APIFY_API_TOKEN", ""),
        engagement_max_retries=int(os.getenv("ENGAGEMENT_MAX_RETRIES", "3")),
        engagement_retry_delay=float(os.getenv("ENGAGEMENT_RETRY_DELAY", "1.5")),
        request_timeout=float(os.getenv("REQUEST_TIMEOUT", "15.0")),
        campaign_lease_ttl=float(os.getenv("CAMPAIGN_LEASE_TTL", "300")),
        legacy_payable_campaign_ids=_split_ids(os.getenv("LEGACY_PAYABLE_CAMPAIGN_IDS")),
        output_dir=os.getenv("OUTPUT_DIR", "/tmp/payout_reports"),
        log_dir=os.getenv("LOG_DIR", "logs"),
    )
