"""
HTTPProvider - shared httpx plumbing for the reference providers.

Subclasses supply the endpoint, the request payload and a FrameDialect;
this class handles the transport: streaming (SSE or NDJSON), single
document invoke, status failures, and retrying connection establishment.

Only connecting is retried. Once a response has started, errors surface as
canonical Failure events and the session decides what to do.
"""

import logging
from typing import Any, AsyncIterator, Literal, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from lm_session.accumulate import fold_stream, structured_source
from lm_session.config import (
    get_connect_timeout_seconds,
    get_retry_attempts,
    get_retry_max_wait,
    get_retry_min_wait,
    get_timeout_seconds,
)
from lm_session.events import CanonicalEvent
from lm_session.providers.schema import Availability, ProviderRequest, ProviderResponse
from lm_session.streaming import (
    FrameDialect,
    as_session_error,
    document_events,
    ndjson_events,
    normalize_events,
    replay,
    sse_events,
    status_failure,
)

logger = logging.getLogger(__name__)


def is_retryable_connect_error(exception: BaseException) -> bool:
    """
    Determine if an exception happened before any byte was exchanged.

    Only connection establishment is safe to retry; a request that reached
    the server may already have produced side effects or billed tokens.
    """
    return isinstance(exception, (httpx.ConnectError, httpx.ConnectTimeout))


async def send_with_retry(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> httpx.Response:
    """Send a streaming request, retrying connection failures with backoff."""

    @retry(
        stop=stop_after_attempt(get_retry_attempts()),
        wait=wait_exponential(multiplier=2, min=get_retry_min_wait(), max=get_retry_max_wait()),
        retry=retry_if_exception(is_retryable_connect_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def send() -> httpx.Response:
        request = client.build_request(method, url, **kwargs)
        return await client.send(request, stream=True)

    return await send()


class HTTPProvider:
    """
    Base for providers speaking JSON over HTTP.

    Subclasses set provider_id, stream_format and path, and implement
    build_payload() and new_dialect().
    """

    provider_id: str = "http"
    stream_format: Literal["sse", "ndjson"] = "sse"
    path: str = ""
    supports_streaming: bool = True
    supports_invoke: bool = True

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        if not model:
            raise ValueError(f"{type(self).__name__} requires a model name")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = httpx.Timeout(
            timeout_seconds if timeout_seconds is not None else get_timeout_seconds(),
            connect=get_connect_timeout_seconds(),
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    def headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @property
    def availability(self) -> Availability:
        return Availability.ready()

    def build_payload(self, request: ProviderRequest, stream: bool) -> dict:
        raise NotImplementedError

    def new_dialect(self) -> FrameDialect:
        """A fresh dialect per response (dialects may track per-stream state)."""
        raise NotImplementedError

    # ─────────────────────────────────────────────────────────────────
    # TRANSPORT
    # ─────────────────────────────────────────────────────────────────

    async def prewarm(self, request: ProviderRequest) -> None:
        """Nothing to warm up by default; subclasses with a load step override this."""
        logger.debug(f"{self.provider_id} has no prewarm step")

    async def stream(self, request: ProviderRequest) -> AsyncIterator[CanonicalEvent]:
        """Stream canonical events. A non-2xx status yields a Failure before any content."""
        payload = self.build_payload(request, stream=True)
        dialect = self.new_dialect()

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await send_with_retry(client, "POST", self.url, json=payload, headers=self.headers())
            try:
                if response.status_code >= 400:
                    body = await response.aread()
                    logger.warning(f"{self.provider_id} returned HTTP {response.status_code}")
                    yield status_failure(response.status_code, body)
                    return

                lines = response.aiter_lines()
                if self.stream_format == "ndjson":
                    source = ndjson_events(lines, dialect)
                else:
                    source = sse_events(lines, dialect)
                async for event in source:
                    yield event
            finally:
                await response.aclose()

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """
        One request, one JSON document, folded exactly like a stream.

        Raises:
            TransportFailure, MalformedContent and the other SessionError kinds
            a stream would report as Failure
        """
        payload = self.build_payload(request, stream=False)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await send_with_retry(client, "POST", self.url, json=payload, headers=self.headers())
                try:
                    body = await response.aread()
                finally:
                    await response.aclose()
        except httpx.HTTPError as e:
            logger.warning(f"{self.provider_id} request failed: {type(e).__name__}: {e}")
            raise as_session_error(e) from e

        if response.status_code >= 400:
            logger.warning(f"{self.provider_id} returned HTTP {response.status_code}")
            events = [status_failure(response.status_code, body)]
        else:
            events = document_events(body, self.new_dialect())

        return await fold_stream(
            normalize_events(replay(events), structured=request.response_format is not None),
            source=structured_source(request.response_format),
        )
