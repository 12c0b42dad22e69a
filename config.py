"""
Configuration for the LearnLens API.

Every setting is read from the environment (a local `.env` is loaded first)
so the same code runs in development and behind a deployment.
"""

import os

from dotenv import load_dotenv

load_dotenv()


# Models exposed by the default gateway. Users may only pick one of these as
# their preferred model; a custom gateway accepts any model name.
AI_MODELS = [
    # Flash tier
    {"id": "gemini-2.5-flash-lite", "name": "Gemini 2.5 Flash Lite", "tier": "flash", "price": "Rp 2.500/1M tokens"},
    {"id": "gemini-2.5-flash", "name": "Gemini 2.5 Flash", "tier": "flash", "price": "Rp 2.500/1M tokens"},
    {"id": "gemini-3-flash", "name": "Gemini 3 Flash", "tier": "flash", "price": "Rp 2.500/1M tokens"},
    # Standard tier
    {"id": "gemini-3-pro-low", "name": "Gemini 3 Pro Low", "tier": "standard", "price": "Rp 25.000/1M tokens"},
    {"id": "claude-sonnet-4-5", "name": "Claude 4.5 Sonnet", "tier": "standard", "price": "Rp 25.000/1M tokens"},
    # Pro tier
    {"id": "gemini-3-pro-high", "name": "Gemini 3 Pro High", "tier": "pro", "price": "Rp 37.500/1M tokens"},
    {"id": "gemini-3-pro-image", "name": "Gemini 3 Pro (Image)", "tier": "pro", "price": "Rp 37.500/1M tokens"},
    {"id": "gemini-2.5-pro", "name": "Gemini 2.5 Pro", "tier": "pro", "price": "Rp 37.500/1M tokens"},
    # Thinking tier
    {"id": "gemini-2.5-flash-thinking", "name": "Gemini 2.5 Flash (Thinking)", "tier": "thinking", "price": "Rp 50.000/1M tokens"},
    {"id": "claude-sonnet-4-5-thinking", "name": "Claude 4.5 Sonnet (Thinking)", "tier": "thinking", "price": "Rp 50.000/1M tokens"},
    # Premium tier
    {"id": "claude-opus-4-5-thinking", "name": "Claude 4.5 Opus (Thinking)", "tier": "premium", "price": "Rp 62.500/1M tokens"},
]

SUPPORTED_LANGUAGES = ("en", "id")


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class Config:
    """Application configuration from environment variables"""

    # ===== Database =====
    DATABASE_URL = os.getenv("DATABASE_URL")

    # ===== Auth =====
    JWT_SECRET = os.getenv("JWT_SECRET", "learnlens-secret")
    JWT_EXPIRES_DAYS = _int_env("JWT_EXPIRES_DAYS", 7)

    # ===== AI gateway (OpenAI-compatible) =====
    AI_API_KEY = os.getenv("AI_API_KEY")
    AI_API_URL = os.getenv("AI_API_URL", "https://gateway.haluai.my.id/v1")
    AI_MODEL = os.getenv("AI_MODEL", "gemini-2.5-flash-lite")

    # ===== User defaults =====
    DEFAULT_MAX_TOKENS = 1000
    DEFAULT_MAX_CONTEXT = 500000

    # ===== Web =====
    FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
    PORT = _int_env("PORT", 5000)
    MAX_UPLOAD_SIZE = _int_env("MAX_UPLOAD_MB", 10) * 1024 * 1024
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @classmethod
    def validate(cls) -> list[str]:
        """Return configuration warnings; nothing here is fatal at import time."""
        warnings = []
        if not cls.AI_API_KEY:
            warnings.append("AI_API_KEY not found in environment variables")
        if not cls.DATABASE_URL:
            warnings.append("DATABASE_URL not found in environment variables")
        if cls.JWT_SECRET == "learnlens-secret":
            warnings.append("JWT_SECRET is using the development default")
        return warnings


def is_known_model(model_id: str) -> bool:
    return any(m["id"] == model_id for m in AI_MODELS)


config = Config()
