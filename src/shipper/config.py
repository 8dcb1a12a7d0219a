"""Configuration management for the deployment gateway."""
import os
import logging
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


class Config:
    """Application configuration, read from the environment on construction."""

    def __init__(self):
        self.NOMAD_URL: str = os.getenv("NOMAD_URL", "http://127.0.0.1:4646").rstrip("/")
        self.NOMAD_TOKEN: Optional[str] = os.getenv("NOMAD_TOKEN") or None
        self.SKIP_TLS_VERIFY = _env_bool("SKIP_TLS_VERIFY")
        self.NOMAD_ENFORCE_INDEX = _env_bool("NOMAD_ENFORCE_INDEX")
        self.RPC_SECRET: Optional[str] = os.getenv("RPC_SECRET") or None
        self.GATEWAY_IDENTITY = os.getenv("GATEWAY_IDENTITY", "shipper")
        self.STORE_BACKEND = os.getenv("STORE_BACKEND", "firestore").strip().lower()
        self.FIRESTORE_COLLECTION = os.getenv("FIRESTORE_COLLECTION", "deployments")
        self.GOOGLE_CLOUD_PROJECT: Optional[str] = (
            os.getenv("GOOGLE_CLOUD_PROJECT") or os.getenv("GCP_PROJECT") or None
        )
        self.PORT = int(os.getenv("PORT", "8080"))
        self.DEBUG = _env_bool("DEBUG")
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    def validate(self) -> bool:
        """Validate that required configuration is present."""
        required = [self.NOMAD_URL, self.RPC_SECRET]
        if not all(required):
            logger.warning("Missing required environment variables (NOMAD_URL, RPC_SECRET). Some features may not work.")
            return False
        if self.SKIP_TLS_VERIFY:
            logger.warning("TLS verification for Nomad is disabled (SKIP_TLS_VERIFY=true)")
        return True
