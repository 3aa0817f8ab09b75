"""Configuration loading and validation"""
import os
from typing import Optional

import pytz
from dotenv import load_dotenv

from .utils.logger import setup_logger

logger = setup_logger(__name__)

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration"""

    def __init__(self):
        """Load and validate configuration"""
        # Supabase project
        self.supabase_url = self._get_required("SUPABASE_URL")
        self.supabase_anon_key = self._get_required("SUPABASE_ANON_KEY")

        # Stored session, if the user signed in before
        self.access_token: Optional[str] = os.getenv("SUPABASE_ACCESS_TOKEN") or None
        self.refresh_token: Optional[str] = os.getenv("SUPABASE_REFRESH_TOKEN") or None

        # Where magic links send the user back to
        self.auth_redirect_url = os.getenv("AUTH_REDIRECT_URL", "http://localhost:3000/")

        # Display settings
        self.display_timezone = os.getenv("DISPLAY_TIMEZONE", "Asia/Tokyo")
        self.profile_browse_limit = int(os.getenv("PROFILE_BROWSE_LIMIT", "50"))

        self._validate()
        logger.info("Configuration loaded successfully")

    @property
    def has_stored_session(self) -> bool:
        return bool(self.access_token and self.refresh_token)

    def _get_required(self, key: str) -> str:
        """Get required environment variable"""
        value = os.getenv(key)
        if not value:
            raise ValueError(f"Required environment variable {key} is not set")
        return value

    def _validate(self):
        """Validate configuration values"""
        if not self.supabase_url.startswith(("http://", "https://")):
            raise ValueError("SUPABASE_URL must start with http:// or https://")

        if not 1 <= self.profile_browse_limit <= 1000:
            raise ValueError("PROFILE_BROWSE_LIMIT must be between 1 and 1000")

        try:
            pytz.timezone(self.display_timezone)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"DISPLAY_TIMEZONE '{self.display_timezone}' is not a known timezone")

        if bool(self.access_token) != bool(self.refresh_token):
            logger.warning(
                "Only one of SUPABASE_ACCESS_TOKEN / SUPABASE_REFRESH_TOKEN is set; "
                "ignoring the stored session"
            )
            self.access_token = None
            self.refresh_token = None

        logger.info(f"Supabase project: {self.supabase_url}")
        logger.info(f"Display timezone: {self.display_timezone}")
        if self.has_stored_session:
            logger.info("Stored session found")
        else:
            logger.info("No stored session; sign in with a magic link")
