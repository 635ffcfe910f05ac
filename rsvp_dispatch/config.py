# rsvp_dispatch/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "worker"] = "all"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str | None = None  # Defaults to the newest bundled migration
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000

    # Batch dispatch
    dispatch_concurrency: int = 3             # Provider calls in flight per job (window size)
    dispatch_batch_delay_ms: int = 1000       # Pause between windows, not after the last one
    job_runner_enabled: bool = True           # Master switch for background job execution
    job_runner_max_concurrent_jobs: int = 4   # Bulk jobs executing at once in this process
    job_runner_trigger_interval: float = 30.0  # Seconds between scans for due scheduled jobs
    quota_tx_max_retries: int = 5             # Retries on serialization failure in the quota transaction

    # Phone normalization
    default_country: Literal["IL", "US", "UK"] = "IL"
    phone_min_digits: int = 8
    phone_max_digits: int = 15

    # Channel A: WhatsApp via Twilio
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_whatsapp_number: str | None = None  # e.g. +14155238886 (whatsapp: prefix optional)
    twilio_whatsapp_content_sid: str | None = None  # Default Content Template for interactive messages (HX...)

    # Channel B: SMS
    # "twilio" - Twilio Programmable Messaging (default)
    # "upsend" - Upsend HTTP API (Israeli gateway, supports alphanumeric sender IDs)
    sms_provider: Literal["twilio", "upsend"] = "twilio"
    twilio_sms_number: str | None = None
    twilio_messaging_service_sid: str | None = None
    sms_alpha_sender_id: str | None = None
    upsend_username: str | None = None
    upsend_api_token: str | None = None
    upsend_base_url: str = "https://capi.upsend.co.il/api/v2"

    # Voice calls (VAPI)
    vapi_api_key: str | None = None
    vapi_assistant_id: str | None = None
    vapi_default_phone_number_id: str | None = None  # Used when the tenant has no assigned number
    vapi_base_url: str = "https://api.vapi.ai"

    # Links rendered into default message bodies
    public_app_url: str = "http://localhost:3000"

    # Monitoring & Metrics
    enable_metrics: bool = True
    metrics_token: str | None = None
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    @property
    def whatsapp_enabled(self) -> bool:
        """Check if channel A credentials are configured"""
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.twilio_whatsapp_number
        )

    @property
    def sms_enabled(self) -> bool:
        """Check if channel B credentials are configured for the selected provider"""
        if self.sms_provider == "upsend":
            return bool(self.upsend_username and self.upsend_api_token)
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and (self.twilio_sms_number or self.twilio_messaging_service_sid)
        )

    @property
    def voice_enabled(self) -> bool:
        """Check if the voice provider is configured (originating number is per tenant)"""
        return bool(self.vapi_api_key and self.vapi_assistant_id)

    @property
    def batch_delay_seconds(self) -> float:
        return self.dispatch_batch_delay_ms / 1000.0

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("database_url or pgpassword", self.database_url or self.pgpassword),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        if not (self.whatsapp_enabled or self.sms_enabled or self.voice_enabled):
            missing.append("at least one channel provider (twilio / upsend / vapi)")

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    # --- Dispatch pacing ---
    if s.dispatch_concurrency < 1:
        warnings.append("dispatch_concurrency < 1: it will be treated as 1.")
    if s.dispatch_concurrency > 10:
        warnings.append(
            f"dispatch_concurrency={s.dispatch_concurrency}: providers commonly rate-limit bursts above a few calls."
        )
    if s.dispatch_batch_delay_ms < 0:
        warnings.append("dispatch_batch_delay_ms is negative: it will be treated as 0.")

    # --- Providers ---
    if not s.whatsapp_enabled:
        warnings.append("WhatsApp channel is not configured (twilio_account_sid/auth_token/whatsapp_number).")
    if not s.sms_enabled:
        warnings.append(f"SMS channel is not configured for sms_provider={s.sms_provider}.")
    if not s.voice_enabled:
        warnings.append("Voice calls are not configured (vapi_api_key/vapi_assistant_id).")
    elif not s.vapi_default_phone_number_id:
        warnings.append("vapi_default_phone_number_id is not set: tenants without an assigned number cannot place calls.")

    # --- Metrics exposure ---
    if s.enable_metrics and not s.metrics_token:
        warnings.append("enable_metrics=True but metrics_token is not set: /metrics is unauthenticated.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")


settings = Settings()
validate_or_warn(settings)
