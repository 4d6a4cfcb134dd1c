"""
Runtime configuration

All settings come from the environment (optionally a local .env file).
"""
import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

PORT = int(os.getenv("PORT", 9000))
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

JWT_ALGO = "HS256"
TOKEN_EXPIRE_HOURS = 1

# Default number of products returned by /api/products/deals
DEALS_LIMIT = int(os.getenv("DEALS_LIMIT", 10))


def cors_origins() -> List[str]:
    raw = os.getenv("CORS_ORIGINS", "*")
    return [o.strip() for o in raw.split(",") if o.strip()] or ["*"]


def jwt_secret() -> Optional[str]:
    # read on every call so the secret can be injected after import
    return os.getenv("JWT_SECRET") or None
