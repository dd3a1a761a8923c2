"""
Providers for model backends.

Provider-agnostic architecture: Protocol defines WHAT, implementations define HOW.
Concrete providers live in their own modules (openai.py, ollama.py) and are
imported from there; factory.provider_from_env() picks one from the environment.
"""

from .base import Provider
from .schema import Availability, ProviderRequest, ProviderResponse

__all__ = ["Availability", "Provider", "ProviderRequest", "ProviderResponse"]
