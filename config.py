"""Configuration management using Pydantic settings"""

import platform
import os
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import List, Optional


def get_default_storage_path() -> str:
    """
    Get OS-specific default storage path for Lunanul.

    Returns:
        - macOS: ~/Library/Application Support/Lunanul
        - Linux: ~/.local/share/lunanul
        - Windows: %APPDATA%/Lunanul
    """
    system = platform.system()
    home = Path.home()

    if system == "Darwin":  # macOS
        return str(home / "Library" / "Application Support" / "Lunanul")
    elif system == "Windows":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return str(Path(appdata) / "Lunanul")
        return str(home / "AppData" / "Roaming" / "Lunanul")
    else:  # Linux and others
        # Follow XDG Base Directory specification
        xdg_data = os.environ.get("XDG_DATA_HOME")
        if xdg_data:
            return str(Path(xdg_data) / "lunanul")
        return str(home / ".local" / "share" / "lunanul")


class Settings(BaseSettings):
    """Application settings"""

    # Storage
    STORAGE_DIR: str = get_default_storage_path()
    STORE_FILENAME: str = "subscription_store.json"
    # When set, the local store is encrypted at rest
    STORE_ENCRYPTION_SECRET: Optional[str] = None
    STORE_ENCRYPTION_SALT: str = "lunanul-subscription-store"

    # Retry / backoff for platform operations
    SUBSCRIPTION_MAX_RETRIES: int = 3
    SUBSCRIPTION_BASE_DELAY_MS: int = 1000
    SUBSCRIPTION_MAX_DELAY_MS: int = 30000
    SUBSCRIPTION_BACKOFF_MULTIPLIER: float = 2.0
    SUBSCRIPTION_JITTER_FACTOR: float = 0.1
    # Hard deadline for a single platform call; 0 disables it
    SUBSCRIPTION_OPERATION_TIMEOUT_SECONDS: float = 30.0

    # Fallback cache
    SUBSCRIPTION_CACHE_MAX_AGE_MINUTES: int = 30
    SUBSCRIPTION_ENABLE_FALLBACKS: bool = True
    SUBSCRIPTION_ENABLE_GRACEFUL_DEGRADATION: bool = True

    # Background sync
    SYNC_INTERVAL_MINUTES: int = 60
    SYNC_MAX_RETRY_ATTEMPTS: int = 3
    SYNC_RETRY_DELAY_SECONDS: int = 5

    # Connectivity
    RECONNECT_SETTLE_SECONDS: float = 2.0
    CONNECTIVITY_TEST_URLS: List[str] = [
        "https://www.google.com",
        "https://www.apple.com",
        "https://www.cloudflare.com",
    ]
    CONNECTIVITY_TIMEOUT_SECONDS: float = 5.0
    CONNECTIVITY_CHECK_INTERVAL_SECONDS: int = 30

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def store_path(self) -> Path:
        """Location of the local key-value store file"""
        return Path(self.STORAGE_DIR) / self.STORE_FILENAME

    def create_directories(self):
        """Create necessary directories"""
        Path(self.STORAGE_DIR).mkdir(parents=True, exist_ok=True)

    def get_storage_info(self) -> dict:
        """Get storage path information"""
        return {
            "storage_path": self.STORAGE_DIR,
            "store_file": str(self.store_path),
            "default_path": get_default_storage_path(),
            "is_default": self.STORAGE_DIR == get_default_storage_path(),
            "encrypted": bool(self.STORE_ENCRYPTION_SECRET),
            "platform": platform.system(),
        }


# Global settings instance
settings = Settings()
