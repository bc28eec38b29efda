"""Configuration management for the invoice harvester."""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

MAIL_PROVIDERS = ("gmail", "microsoft")

APP_VERSION = "1.0.0"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Application configuration loaded from environment variables."""

    # Database
    database_url: str = "sqlite:///./invoices.db"

    # Mail provider
    mail_provider: str = "gmail"
    mail_folder: str = "faktury"

    # OAuth
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None
    azure_client_id: Optional[str] = None
    azure_client_secret: Optional[str] = None
    azure_authority: str = "https://login.microsoftonline.com/consumers"
    redirect_uri: str = "http://localhost:8000/api/v1/auth/callback"
    frontend_url: str = "http://localhost:5173"

    # Extraction
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.5-flash"

    # Session cookie signing
    session_secret: str = "dev-session-secret"

    # Background job
    background_job_cron: str = "*/5 * * * *"
    background_job_enabled: bool = True

    # Notifications
    discord_webhook_url: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    # Build info, stamped by the image build
    build_date: str = "unknown"
    git_commit: str = "unknown"
    git_branch: str = "unknown"

    @classmethod
    def from_env(cls) -> "Settings":
        """Load configuration from environment variables.

        Unset variables fall back to the dataclass defaults.
        """
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            mail_provider=os.getenv("MAIL_PROVIDER", defaults.mail_provider).strip().lower(),
            mail_folder=os.getenv("MAIL_FOLDER", defaults.mail_folder),
            google_client_id=os.getenv("GOOGLE_CLIENT_ID"),
            google_client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
            azure_client_id=os.getenv("AZURE_CLIENT_ID"),
            azure_client_secret=os.getenv("AZURE_CLIENT_SECRET"),
            azure_authority=os.getenv("AZURE_AUTHORITY", defaults.azure_authority),
            redirect_uri=os.getenv("REDIRECT_URI", defaults.redirect_uri),
            frontend_url=os.getenv("FRONTEND_URL", defaults.frontend_url),
            gemini_api_key=os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY"),
            gemini_model=os.getenv("GEMINI_MODEL", defaults.gemini_model),
            session_secret=os.getenv("SESSION_SECRET", defaults.session_secret),
            background_job_cron=os.getenv("BACKGROUND_JOB_CRON", defaults.background_job_cron),
            background_job_enabled=_env_bool("BACKGROUND_JOB_ENABLED", defaults.background_job_enabled),
            discord_webhook_url=os.getenv("DISCORD_WEBHOOK_URL") or None,
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
            log_format=os.getenv("LOG_FORMAT", defaults.log_format).lower(),
            build_date=os.getenv("BUILD_DATE") or defaults.build_date,
            git_commit=os.getenv("GIT_COMMIT") or defaults.git_commit,
            git_branch=os.getenv("GIT_BRANCH") or defaults.git_branch,
        )

    def validate(self) -> None:
        """Check that the variables needed by the chosen provider are present.

        Raises:
            ValueError: If the provider is unknown or required variables are missing
        """
        if self.mail_provider not in MAIL_PROVIDERS:
            raise ValueError(
                f"Unknown MAIL_PROVIDER '{self.mail_provider}', expected one of: {', '.join(MAIL_PROVIDERS)}"
            )

        if self.mail_provider == "gmail":
            required = {
                "GOOGLE_CLIENT_ID": self.google_client_id,
                "GOOGLE_CLIENT_SECRET": self.google_client_secret,
            }
        else:
            required = {
                "AZURE_CLIENT_ID": self.azure_client_id,
                "AZURE_CLIENT_SECRET": self.azure_client_secret,
            }
        required["GEMINI_API_KEY"] = self.gemini_api_key

        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")
