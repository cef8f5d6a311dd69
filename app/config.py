"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, model_validator, field_validator
from typing import List, Any

logger = logging.getLogger(__name__)


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")
    if not project:
        return None

    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")
    oauth_client_id: str = Field(default="", alias="OAUTH_CLIENT_ID")

    # Supabase (service role key: signer endpoints are public and token-scoped)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_key: str = Field(default="", alias="SUPABASE_SERVICE_KEY")

    # GCS
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")
    gcs_signed_url_expiration_minutes: int = Field(default=10, alias="GCS_SIGNED_URL_EXPIRATION_MINUTES")
    download_link_expiration_minutes: int = Field(
        default=7 * 24 * 60,
        alias="DOWNLOAD_LINK_EXPIRATION_MINUTES",
        description="Lifetime of the download link included in completion emails",
    )
    blob_timeout_seconds: float = Field(default=30.0, alias="BLOB_TIMEOUT_SECONDS")

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="noreply@signflow.app", alias="RESEND_FROM_EMAIL")
    email_from_name: str = Field(default="SignFlow", alias="EMAIL_FROM_NAME")
    email_timeout_seconds: float = Field(default=30.0, alias="EMAIL_TIMEOUT_SECONDS")

    # App
    app_base_url: str = Field(default="http://localhost:8000", alias="APP_BASE_URL")
    sign_app_url: str = Field(default="", alias="SIGN_APP_URL")
    system_name: str = Field(default="SignFlow Document Signing Platform", alias="SYSTEM_NAME")
    signing_token_salt: str = Field(default="", alias="SIGNING_TOKEN_SALT")
    admin_api_secret: str = Field(default="", alias="ADMIN_API_SECRET")
    internal_api_secret: str = Field(default="", alias="INTERNAL_API_SECRET")

    # Invitation tokens
    token_grace_period_minutes: int = Field(
        default=5,
        alias="TOKEN_GRACE_PERIOD_MINUTES",
        description="Minutes a token stays usable after its expiry timestamp",
    )

    # Signature image limits
    min_signature_base64_length: int = Field(default=100, alias="MIN_SIGNATURE_BASE64_LENGTH")
    max_signature_bytes: int = Field(default=2 * 1024 * 1024, alias="MAX_SIGNATURE_BYTES")
    max_pdf_bytes: int = Field(default=10 * 1024 * 1024, alias="MAX_PDF_BYTES")

    # Finalization
    finalization_mode: str = Field(
        default="inline",
        alias="FINALIZATION_MODE",
        description="'inline' runs finalization in-process, 'http' posts it to the internal worker endpoint",
    )
    internal_base_url: str = Field(default="", alias="INTERNAL_BASE_URL")
    finalization_timeout_seconds: float = Field(
        default=120.0,
        alias="FINALIZATION_TIMEOUT_SECONDS",
        description="How long a posted finalization task may take before the delivery attempt fails",
    )

    # Rate limiting
    signing_rate_limit_requests: int = Field(default=30, alias="SIGNING_RATE_LIMIT_REQUESTS")
    signing_rate_limit_window_seconds: int = Field(default=60, alias="SIGNING_RATE_LIMIT_WINDOW_SECONDS")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            # Semicolon is useful in Cloud Build where comma separates env vars
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    @field_validator("finalization_mode")
    @classmethod
    def _check_finalization_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("inline", "http"):
            raise ValueError(f"Unsupported FINALIZATION_MODE: {v}")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._load_secrets_from_gcp()

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_key": "SUPABASE_SERVICE_KEY",
            "gcs_bucket": "GCS_BUCKET",
            "resend_api_key": "RESEND_API_KEY",
            "signing_token_salt": "SIGNING_TOKEN_SALT",
            "admin_api_secret": "ADMIN_API_SECRET",
            "internal_api_secret": "INTERNAL_API_SECRET",
            "oauth_client_id": "OAUTH_CLIENT_ID",
        }

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_urls(self) -> 'Settings':
        """Validate URL configuration for the environment."""
        if self.environment == "production" and not self.app_base_url.startswith("https://"):
            logger.warning(
                f"Configuration Warning: APP_BASE_URL ('{self.app_base_url}') "
                f"does not start with 'https://' in a '{self.environment}' environment."
            )

        # Signing links go out by email, so a wrong host is user-visible
        if self.environment == "production":
            if not self.sign_app_url:
                logger.error(
                    "CRITICAL: SIGN_APP_URL is not set in production! "
                    "Signing links will use APP_BASE_URL which may be incorrect."
                )
            elif not self.sign_app_url.startswith("https://"):
                logger.error(
                    f"CRITICAL: SIGN_APP_URL ('{self.sign_app_url}') must use HTTPS in production!"
                )
            if not self.signing_token_salt:
                logger.error("CRITICAL: SIGNING_TOKEN_SALT is not set in production!")

        if self.finalization_mode == "http" and not self.internal_base_url:
            logger.warning(
                "FINALIZATION_MODE=http but INTERNAL_BASE_URL is empty; "
                f"finalization tasks will be posted to APP_BASE_URL ({self.app_base_url})"
            )

        return self

    def get_sign_app_url(self) -> str:
        """
        Get the frontend signing app URL used in invitation links.

        Falls back to app_base_url if SIGN_APP_URL not set (development only).
        """
        if self.sign_app_url:
            return self.sign_app_url.rstrip("/")

        if self.environment != "development":
            logger.warning(
                f"SIGN_APP_URL not set, falling back to APP_BASE_URL ({self.app_base_url}). "
                "This is likely incorrect for production!"
            )
        return self.app_base_url.rstrip("/")

    def get_internal_base_url(self) -> str:
        return (self.internal_base_url or self.app_base_url).rstrip("/")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Development origins (only in non-production)
DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines origins from ALLOWED_ORIGINS with the development origins
    when not running in production.
    """
    settings = get_settings()
    origins = set(settings.allowed_origins)

    if settings.environment != "production":
        origins.update(DEV_CORS_ORIGINS)

    return sorted(origins)
