"""
Runtime configuration for the site audit service.

All settings come from environment variables. A `.env` file next to this
module (or in the current working directory) is loaded first if present.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

try:
    script_dir = Path(__file__).parent.absolute()
    env_path = script_dir / ".env"
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()
except NameError:
    load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "")
    if not raw:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


# API
API_KEY = os.getenv("API_KEY", "")
RATE_LIMIT_PER_MINUTE = _env_int("RATE_LIMIT_PER_MINUTE", 10)
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _env_int("PORT", 9000)
DEBUG = _env_flag("DEBUG", False)

# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./seo_audits.db")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")

# Permission grants, "user:module:action" separated by commas.
# Wildcards: "*:*:*", "alice:seo-audit:*". Nothing is granted by default.
SEO_AUDIT_PERMISSIONS = os.getenv("SEO_AUDIT_PERMISSIONS", "")

# Pipeline limits (seconds unless noted)
SEO_AUDIT_MAX_URLS = _env_int("SEO_AUDIT_MAX_URLS", 20)
SEO_AUDIT_TIMEOUT = _env_int("SEO_AUDIT_TIMEOUT", 120)
SEO_CRAWL_TIMEOUT = _env_int("SEO_CRAWL_TIMEOUT", 30)
SEO_SCREENSHOT_TIMEOUT = _env_int("SEO_SCREENSHOT_TIMEOUT", 30)
SEO_AI_TIMEOUT = _env_int("SEO_AI_TIMEOUT", 30)
SEO_PAGESPEED_TIMEOUT = _env_int("SEO_PAGESPEED_TIMEOUT", 60)
SEO_AUDIT_STALE_MINUTES = _env_int("SEO_AUDIT_STALE_MINUTES", 10)
SEO_AUDIT_STALE_SWEEP_SECONDS = _env_int("SEO_AUDIT_STALE_SWEEP_SECONDS", 60)
SEO_BROWSER_POOL_SIZE = _env_int("SEO_BROWSER_POOL_SIZE", 2)
PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH = os.getenv("PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH")

# Third-party services
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-2024-11-20")
PAGESPEED_API_KEY = os.getenv("PAGESPEED_API_KEY", "")

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)
