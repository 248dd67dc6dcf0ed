"""
Fitbit Sync Configuration
=========================
All environment variables in one place. Pydantic Settings validates
types at startup so a missing client secret shows up immediately rather
than on the first token refresh.
"""

from dataclasses import dataclass
from functools import lru_cache

from pydantic_settings import BaseSettings


@dataclass(frozen=True)
class FitbitOAuthConfig:
    """Client credentials handed to the token refresher at construction."""

    client_id: str
    client_secret: str
    redirect_uri: str
    token_url: str = "https://api.fitbit.com/oauth2/token"


class Settings(BaseSettings):
    """Loaded from environment variables or a .env file."""

    # --- Supabase ---
    supabase_url: str = "http://localhost:54321"
    supabase_service_key: str = ""  # service_role key for backend operations

    # --- Fitbit Web API ---
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = "http://localhost:5173/fitbit/callback"
    fitbit_verification_code: str = ""  # subscriber endpoint verification
    fitbit_api_base_url: str = "https://api.fitbit.com"
    fitbit_token_url: str = "https://api.fitbit.com/oauth2/token"
    fitbit_http_timeout_seconds: float = 30.0

    # --- Sync engine ---
    # Refresh pre-emptively when the access token has less than this left
    token_expiry_buffer_seconds: int = 60
    # Trailing window, inclusive of today
    sync_window_days: int = 7
    # Delay between date iterations to stay under Fitbit's rate limit
    sync_pacing_seconds: float = 0.25
    # Shared secret for the background job ingress
    sync_job_secret: str = ""

    # --- App settings ---
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def oauth_config(self) -> FitbitOAuthConfig:
        return FitbitOAuthConfig(
            client_id=self.fitbit_client_id,
            client_secret=self.fitbit_client_secret,
            redirect_uri=self.fitbit_redirect_uri,
            token_url=self.fitbit_token_url,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
