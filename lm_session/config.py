"""
Configuration constants and environment readers for lm-session.
"""

import os
from typing import Optional


# ─────────────────────────────────────────────────────────────────────
# DEFAULTS
# ─────────────────────────────────────────────────────────────────────

DEFAULT_MAX_TOOL_ROUNDS: int = 8
DEFAULT_TIMEOUT_SECONDS: float = 300.0  # 5 minutes
DEFAULT_CONNECT_TIMEOUT_SECONDS: float = 10.0

DEFAULT_OPENAI_BASE_URL: str = "https://api.openai.com/v1"
DEFAULT_OLLAMA_BASE_URL: str = "http://localhost:11434"


# ─────────────────────────────────────────────────────────────────────
# INTERNAL CONSTANTS
# ─────────────────────────────────────────────────────────────────────

ERROR_BODY_LIMIT: int = 500
STREAM_END_REASON: str = "stop"


# ─────────────────────────────────────────────────────────────────────
# SESSION
# ─────────────────────────────────────────────────────────────────────

def get_max_tool_rounds() -> int:
    """
    Get the tool-loop bound from environment or default.

    Set LM_SESSION_MAX_TOOL_ROUNDS in .env (default: 8).
    """
    try:
        value = int(os.environ.get("LM_SESSION_MAX_TOOL_ROUNDS", str(DEFAULT_MAX_TOOL_ROUNDS)))
    except ValueError:
        return DEFAULT_MAX_TOOL_ROUNDS
    return value if value >= 0 else DEFAULT_MAX_TOOL_ROUNDS


def get_timeout_seconds() -> float:
    """
    Get the provider read timeout in seconds.

    Set LM_SESSION_TIMEOUT_SECONDS in .env (default: 300).
    """
    try:
        return float(os.environ.get("LM_SESSION_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def get_connect_timeout_seconds() -> float:
    """
    Get the provider connect timeout in seconds.

    Set LM_SESSION_CONNECT_TIMEOUT_SECONDS in .env (default: 10).
    """
    try:
        return float(
            os.environ.get("LM_SESSION_CONNECT_TIMEOUT_SECONDS", str(DEFAULT_CONNECT_TIMEOUT_SECONDS))
        )
    except ValueError:
        return DEFAULT_CONNECT_TIMEOUT_SECONDS


# ─────────────────────────────────────────────────────────────────────
# RETRY CONFIGURATION - For connection establishment only
# ─────────────────────────────────────────────────────────────────────

def get_retry_attempts() -> int:
    """
    Get max connection attempts from environment or default.

    Set LM_SESSION_RETRY_ATTEMPTS in .env (default: 3).
    """
    try:
        return int(os.environ.get("LM_SESSION_RETRY_ATTEMPTS", "3"))
    except ValueError:
        return 3


def get_retry_min_wait() -> int:
    """
    Get minimum wait between connection attempts in seconds.

    Set LM_SESSION_RETRY_MIN_WAIT in .env (default: 1).
    """
    try:
        return int(os.environ.get("LM_SESSION_RETRY_MIN_WAIT", "1"))
    except ValueError:
        return 1


def get_retry_max_wait() -> int:
    """
    Get maximum wait between connection attempts in seconds.

    Set LM_SESSION_RETRY_MAX_WAIT in .env (default: 10).
    """
    try:
        return int(os.environ.get("LM_SESSION_RETRY_MAX_WAIT", "10"))
    except ValueError:
        return 10


# ─────────────────────────────────────────────────────────────────────
# PROVIDERS
# ─────────────────────────────────────────────────────────────────────

def get_provider_name() -> str:
    """Which reference provider provider_from_env() builds (openai | ollama)."""
    return os.environ.get("LM_SESSION_PROVIDER", "openai").strip().lower()


def get_openai_base_url() -> str:
    return os.environ.get("OPENAI_BASE_URL", DEFAULT_OPENAI_BASE_URL).rstrip("/")


def get_openai_api_key() -> Optional[str]:
    return os.environ.get("OPENAI_API_KEY") or None


def get_openai_model() -> Optional[str]:
    return os.environ.get("OPENAI_MODEL") or None


def get_ollama_base_url() -> str:
    return os.environ.get("OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL).rstrip("/")


def get_ollama_model() -> Optional[str]:
    return os.environ.get("OLLAMA_MODEL") or None
