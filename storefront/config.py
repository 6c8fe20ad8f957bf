"""
Configuration for the storefront API.

Everything is read from the environment once, at import time. A local .env
file is honoured for development.
"""

import os
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()


def _float_or_none(value: Optional[str]) -> Optional[float]:
    if value in (None, ""):
        return None
    return float(value)


class Config:
    """Process-wide settings."""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
    JWT_ALG = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 30))

    # Admin seed
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

    # Language model / embeddings
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
    OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
    LLM_TIMEOUT = _float_or_none(os.getenv("LLM_TIMEOUT"))

    STORE_NAME = os.getenv("STORE_NAME", "our store")

    # Payments
    UPI_VPA = os.getenv("UPI_VPA")
    UPI_PAYEE_NAME = os.getenv("UPI_PAYEE_NAME", "")
    USD_TO_INR = float(os.getenv("USD_TO_INR", 83))

    # Misc
    SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", 15))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
    CORS_ORIGINS: List[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

    @classmethod
    def llm_enabled(cls) -> bool:
        return bool(cls.OPENAI_API_KEY)
