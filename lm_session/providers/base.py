"""
Provider Protocol - defines the contract for model backends.

This is the WHAT (interface), not the HOW (implementation).
See openai.py and ollama.py for concrete implementations.
"""

from typing import AsyncIterator, Protocol, runtime_checkable

from lm_session.events import CanonicalEvent
from lm_session.providers.schema import Availability, ProviderRequest, ProviderResponse


@runtime_checkable
class Provider(Protocol):
    """
    Contract for model backends.

    A provider supports at least one of:
    - invoke: one request, one complete response
    - stream: one request, a sequence of canonical events

    The session uses whichever is available and produces identical results
    either way. Retry and timeout policy belong to the provider; the session
    never retries.
    """

    provider_id: str
    supports_streaming: bool
    supports_invoke: bool

    @property
    def availability(self) -> Availability:
        """Whether the backend can take requests, with a reason when it can't."""
        ...

    async def prewarm(self, request: ProviderRequest) -> None:
        """
        Hint that a request like this one is coming soon.

        The request holds the transcript so far and, optionally, a prompt
        prefix. Backends that have nothing to warm up return immediately.
        """
        ...

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """
        Produce a complete response.

        Raises:
            SessionError subclass (TransportFailure, MalformedContent) on failure
        """
        ...

    def stream(self, request: ProviderRequest) -> AsyncIterator[CanonicalEvent]:
        """
        Produce canonical events for the response.

        Returns an async iterator (typically an async generator). Failures may
        be raised or yielded as a Failure event; the session normalizes both.
        Closing the iterator must release the underlying connection.
        """
        ...
