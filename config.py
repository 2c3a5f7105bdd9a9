"""Configuration management via pydantic-settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Database
    database_path: Path = Field(default=Path("./data/rentwatch.db"))

    # Listing search (RapidAPI)
    rapidapi_key: str | None = None
    rapidapi_host: str = "streeteasy-rentals.p.rapidapi.com"
    listing_search_url: str = "https://streeteasy-rentals.p.rapidapi.com/rentals/search"
    fetch_page_size: int = 100

    # Building registry (NYC PLUTO)
    registry_endpoint: str = "https://data.cityofnewyork.us/resource/64uk-42ks.json"
    registry_location_tolerance: float = 0.0005
    enrichment_timeout_seconds: float = 5.0
    enrichment_cache_days: int = 30
    enrichment_concurrency: int = 5
    rent_stabilized_threshold: float = 0.70

    # Twilio
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_phone_number: str | None = None
    sms_chunk_size: int = 10
    sms_chunk_delay_seconds: float = 0.1

    # Resend
    resend_api_key: str | None = None
    resend_from_email: str | None = None
    email_send_delay_seconds: float = 0.05

    # Cycle
    check_cron_minutes: str = "*/15"
    dispatch_page_size: int = 50
    http_timeout_seconds: float = 30.0
    stale_listing_days: int = 7

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Field(default=Path("./logs"))

    @property
    def email_from_address(self) -> str:
        if self.resend_from_email:
            return f"Rent Notifications <{self.resend_from_email}>"
        return "Rent Notifications <onboarding@resend.dev>"

    @property
    def sms_configured(self) -> bool:
        return bool(
            self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number
        )


settings = Settings()  # type: ignore[call-arg]
