# localman/config.py
from dotenv import load_dotenv
import os
from typing import Optional

# load local .env if present
load_dotenv()

def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")

USE_SSM = _env_flag("USE_SSM")

def _get_param_from_ssm(name: str, decrypt: bool = False) -> Optional[str]:
    """
    Try to fetch from SSM. Import boto3/ssm helper lazily so imports don't fail
    if boto3/SSM isn't available or the instance role can't access SSM.
    """
    if not USE_SSM:
        return None
    try:
        from .utils.ssm import get_param
        return get_param(name, decrypt=decrypt)
    except Exception:
        return None

def _get_param_with_fallback(name: str, decrypt: bool = False, default: Optional[str] = None) -> Optional[str]:
    val = _get_param_from_ssm(name, decrypt=decrypt)
    if val:
        return val
    return os.getenv(name, default)

def get_database_url() -> str:
    db = _get_param_with_fallback("DATABASE_URL", decrypt=False)
    if db:
        return db
    return "sqlite:///localman.sqlite"

class Config:
    DATABASE_URL = get_database_url()

    # Remote broker that receives public webhook traffic for us
    BROKER_URL = _get_param_with_fallback("BROKER_URL", decrypt=False, default="")
    BROKER_API_KEY = _get_param_with_fallback("BROKER_API_KEY", decrypt=True, default="")
    BROKER_TIMEOUT = float(os.getenv("BROKER_TIMEOUT", "10"))

    # Local forwarding
    FORWARD_TIMEOUT = float(os.getenv("FORWARD_TIMEOUT", "30"))
    FORWARD_RESOLVE_LOOPBACK = _env_flag("FORWARD_RESOLVE_LOOPBACK", "true")

    # Polling
    HISTORY_RETENTION = int(os.getenv("HISTORY_RETENTION", "50"))
    POLL_BATCH_LIMIT = int(os.getenv("POLL_BATCH_LIMIT", "50"))
    RELAY_STAGGER_SECONDS = float(os.getenv("RELAY_STAGGER_SECONDS", "1.0"))
    MIN_POLL_INTERVAL_SECONDS = float(os.getenv("MIN_POLL_INTERVAL_SECONDS", "5"))
    POLL_WORKERS = int(os.getenv("POLL_WORKERS", "4"))

    DEFAULT_PROJECT_ID = os.getenv("DEFAULT_PROJECT_ID", "default")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
