from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "data/errandhub.db"
    database_busy_timeout_seconds: float = 30.0
    host: str = "0.0.0.0"
    port: int = 8000

    # Conversation sessions
    session_ttl_seconds: int = 600
    flow_conflict_policy: Literal["reject", "resume"] = "reject"
    max_active_tasks_per_customer: int = 0  # 0 = unlimited
    skip_tokens: tuple[str, ...] = ("skip", "none", "no")

    # Expanding-radius search (km)
    rider_initial_radius_km: float = 3.0
    rider_radius_step_km: float = 3.0
    rider_max_radius_km: float = 12.0
    errander_initial_radius_km: float = 2.0
    errander_radius_step_km: float = 1.0
    errander_max_radius_km: float = 6.0
    location_stale_minutes: int = 30

    # Lifetimes
    task_expire_hours: int = 24
    offer_expire_minutes: int = 30
    channel_close_grace_seconds: int = 300
    channel_max_close_attempts: int = 5
    background_interval_seconds: int = 30

    # External calls
    external_timeout_seconds: float = 10.0
    external_max_attempts: int = 3
    external_backoff_seconds: float = 0.5
    external_backoff_max_seconds: float = 8.0
    geocode_cache_size: int = 1024

    # Providers (unset = local/logging fallbacks)
    geocoder_url: str | None = None
    geocoder_user_agent: str = "errandhub/0.1"
    identity_verifier_url: str | None = None
    identity_verifier_key: str | None = None
    chat_gateway_url: str | None = None
    chat_gateway_token: str | None = None

    # Routing layer
    gateway_key: str | None = None
    admin_key: str | None = None
    rate_limit_flow: str = "60/minute"
    rate_limit_offer: str = "30/minute"
    rate_limit_accept: str = "20/minute"
    rate_limit_read: str = "120/minute"
    rate_limit_admin: str = "30/minute"

    model_config = {"env_prefix": "ERRANDHUB_"}


settings = Settings()
