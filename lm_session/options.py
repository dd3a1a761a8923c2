"""
GenerationOptions - per-request generation settings.

The portable knobs (temperature, token limit, sampling) are understood by
every provider. Anything provider-specific goes in `extensions`, a map keyed
by provider id that only the named provider reads:

    options = GenerationOptions(temperature=0.2).with_custom(
        "ollama", {"num_ctx": 8192}
    )
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class SamplingMode(str, Enum):
    GREEDY = "greedy"
    TOP_K = "top_k"
    TOP_P = "top_p"


class Sampling(BaseModel):
    """Token sampling strategy. `value` is k for top_k and p for top_p."""

    model_config = ConfigDict(frozen=True)

    mode: SamplingMode
    value: Optional[float] = None
    seed: Optional[int] = None

    @classmethod
    def greedy(cls) -> "Sampling":
        return cls(mode=SamplingMode.GREEDY)

    @classmethod
    def top_k(cls, k: int, seed: Optional[int] = None) -> "Sampling":
        if k < 1:
            raise ValueError(f"top_k requires k >= 1, got {k}")
        return cls(mode=SamplingMode.TOP_K, value=k, seed=seed)

    @classmethod
    def top_p(cls, p: float, seed: Optional[int] = None) -> "Sampling":
        if not 0.0 < p <= 1.0:
            raise ValueError(f"top_p requires 0 < p <= 1, got {p}")
        return cls(mode=SamplingMode.TOP_P, value=p, seed=seed)


class GenerationOptions(BaseModel):
    """
    Settings for one request. None means "provider default".

    Instances are immutable; use with_custom() / merged() to derive new ones.
    """

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = Field(default=None, ge=0.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    sampling: Optional[Sampling] = None
    extensions: dict[str, Any] = Field(default_factory=dict)

    def custom(self, provider_id: str) -> Any:
        """The opaque value stored for provider_id, or None."""
        return self.extensions.get(provider_id)

    def with_custom(self, provider_id: str, value: Any) -> "GenerationOptions":
        return self.model_copy(update={"extensions": {**self.extensions, provider_id: value}})

    def merged(self, override: Optional["GenerationOptions"]) -> "GenerationOptions":
        """Field-wise merge: set fields of `override` win, extensions are combined."""
        if override is None:
            return self
        return GenerationOptions(
            temperature=override.temperature if override.temperature is not None else self.temperature,
            max_tokens=override.max_tokens if override.max_tokens is not None else self.max_tokens,
            sampling=override.sampling if override.sampling is not None else self.sampling,
            extensions={**self.extensions, **override.extensions},
        )
