"""
Provider factory - builds a reference provider from environment variables.

Usage:
    # .env
    LM_SESSION_PROVIDER=ollama
    OLLAMA_MODEL=llama3.2

    provider = provider_from_env()
    session = Session(provider)
"""

import logging
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from lm_session.config import (
    get_ollama_base_url,
    get_ollama_model,
    get_openai_api_key,
    get_openai_base_url,
    get_openai_model,
    get_provider_name,
)
from lm_session.providers.base import Provider
from lm_session.providers.ollama import OllamaChatProvider
from lm_session.providers.openai import OpenAIChatProvider

logger = logging.getLogger(__name__)


def provider_from_env(name: Optional[str] = None, load_env_file: bool = True) -> Provider:
    """
    Build a provider from environment variables (a .env in the working directory is read first).

    - openai: OPENAI_MODEL (required), OPENAI_BASE_URL, OPENAI_API_KEY
    - ollama: OLLAMA_MODEL (required), OLLAMA_BASE_URL

    Raises:
        ValueError: unknown provider name or missing model
    """
    if load_env_file:
        load_dotenv(find_dotenv(usecwd=True))

    name = (name or get_provider_name()).lower()

    if name == "openai":
        model = get_openai_model()
        if not model:
            raise ValueError("OPENAI_MODEL must be set to use the openai provider")
        logger.info(f"Using OpenAI-compatible provider at {get_openai_base_url()} ({model})")
        return OpenAIChatProvider(model=model, api_key=get_openai_api_key())

    if name == "ollama":
        model = get_ollama_model()
        if not model:
            raise ValueError("OLLAMA_MODEL must be set to use the ollama provider")
        logger.info(f"Using Ollama provider at {get_ollama_base_url()} ({model})")
        return OllamaChatProvider(model=model)

    raise ValueError(f"Unknown provider: {name!r} (expected 'openai' or 'ollama')")
