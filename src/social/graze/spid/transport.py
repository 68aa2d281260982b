"""
HTTP Transport

The orchestrator and the token endpoint client never talk to aiohttp
directly. They hand a `TransportRequest` to something that satisfies the
`Transport` protocol and get a `TransportResponse` back, or a `NetworkFailure`
when no HTTP response could be obtained at all. HTTP error statuses are
responses, not exceptions; deciding what a 401 means is the caller's job.

`AiohttpTransport` is the production implementation. Requests pass through a
middleware chain before reaching the end-of-line middleware that performs the
actual aiohttp call:

    StatsdMiddleware -> DebugMiddleware -> EndOfLineChainMiddleware

Each middleware receives the next callable in the chain and the request, and
may inspect or decorate both the request and the response.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Optional,
    Protocol,
    Sequence,
)

import aiohttp
import sentry_sdk
from aiohttp import ClientResponse, ClientSession, hdrs
from multidict import CIMultiDict, CIMultiDictProxy

from social.graze.spid.app.metrics import MetricsClient
from social.graze.spid.errors import NetworkFailure

logger = logging.getLogger(__name__)

REDACTED_HEADERS = frozenset({"authorization", "cookie"})
REDACTED_FIELDS = frozenset(
    {"client_secret", "code", "refresh_token", "access_token", "oauth_token"}
)


@dataclass
class TransportRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Optional[Dict[str, Any]] = None
    data: Optional[Dict[str, Any]] = None
    trace_request_ctx: Optional[Dict[str, Any]] = None

    def redacted(self) -> Dict[str, Any]:
        """Loggable view of the request with secrets masked."""

        def mask(values: Optional[Dict[str, Any]], keys) -> Optional[Dict[str, Any]]:
            if values is None:
                return None
            return {k: ("***" if k.lower() in keys else v) for k, v in values.items()}

        return {
            "method": self.method,
            "url": self.url,
            "headers": mask(self.headers, REDACTED_HEADERS),
            "params": mask(self.params, REDACTED_FIELDS),
            "data": mask(self.data, REDACTED_FIELDS),
        }


@dataclass
class TransportResponse:
    status: int
    headers: CIMultiDictProxy[str] = field(
        default_factory=lambda: CIMultiDictProxy(CIMultiDict())
    )
    body: str | bytes | dict[str, Any] | list[Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "TransportResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            raw = await response.text()
            try:
                body = json.loads(raw) if raw else None
            except ValueError:
                # Keep the raw text, callers decide whether that is malformed.
                body = raw
            return TransportResponse(status=status, headers=headers, body=body)
        elif content_type.startswith("text/"):
            return TransportResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return TransportResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def error_code(self) -> Optional[str]:
        """The OAuth style `error` member of a JSON body, if any.

        SPiD nests API errors as `{"error": {"code": 401, "type": "..."}}`, so a
        nested `type` is accepted as well.
        """
        if not isinstance(self.body, dict):
            return None
        error = self.body.get("error")
        if isinstance(error, str):
            return error
        if isinstance(error, dict):
            error_type = error.get("type")
            if isinstance(error_type, str):
                return error_type
        return None


class Transport(Protocol):
    """Anything able to perform one HTTP exchange."""

    async def send(self, request: TransportRequest) -> TransportResponse: ...


NextChainCallbackType = Callable[[TransportRequest], Awaitable[TransportResponse]]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: TransportRequest
    ) -> TransportResponse:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: TransportRequest) -> TransportResponse:
            return await self.handle(next, request)

        return next_invoke


class StatsdMiddleware(RequestMiddlewareBase):
    """Times every request and counts it, tagged by method."""

    def __init__(self, metrics_client: MetricsClient) -> None:
        super().__init__()
        self._metrics_client = metrics_client

    async def handle(
        self, next: NextChainCallbackType, request: TransportRequest
    ) -> TransportResponse:
        start_time = time()
        tag_dict = {"method": request.method.lower()}
        try:
            return await next(request)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            raise
        finally:
            self._metrics_client.timer(
                "spid.client.request.time", time() - start_time, tag_dict=tag_dict
            )
            self._metrics_client.increment(
                "spid.client.request.count", 1, tag_dict=tag_dict
            )


class DebugMiddleware(RequestMiddlewareBase):
    def __init__(self, logger: logging.Logger) -> None:
        super().__init__()
        self._logger = logger

    async def handle(
        self, next: NextChainCallbackType, request: TransportRequest
    ) -> TransportResponse:
        self._logger.debug("Making request: %s", request.redacted())
        response = await next(request)
        self._logger.debug(
            "Received response: %s %s -> %d",
            request.method,
            request.url,
            response.status,
        )
        return response


class EndOfLineChainMiddleware:
    def __init__(
        self,
        client_session: ClientSession,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ) -> None:
        super().__init__()
        self._client_session = client_session
        self._timeout = timeout

    async def handle(self, request: TransportRequest) -> TransportResponse:
        kwargs: Dict[str, Any] = {}
        if request.params is not None:
            kwargs["params"] = request.params
        if request.data is not None:
            kwargs["data"] = request.data
        if self._timeout is not None:
            kwargs["timeout"] = self._timeout

        try:
            async with self._client_session.request(
                request.method.upper(),
                request.url,
                headers=request.headers,
                trace_request_ctx={**(request.trace_request_ctx or {})},
                **kwargs,
            ) as response:
                return await TransportResponse.from_aiohttp_response(response)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailure(
                f"{request.method} {request.url} failed: {type(e).__name__}"
            ) from e


class AiohttpTransport:
    """
    `Transport` backed by an aiohttp `ClientSession`.

    When no session is given the transport creates and owns one, and closes it
    in `close()`. A shared session passed in by the caller is left open.
    """

    def __init__(
        self,
        client_session: ClientSession | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        timeout: float | None = None,
        *args: Any,
        **kwargs: Any,
    ) -> None:
        if client_session is not None:
            client = client_session
            closed = None
        else:
            client = ClientSession(*args, **kwargs)
            closed = False

        self._middleware = list(middleware or [])
        self._client = client
        self._closed = closed
        self._timeout = (
            aiohttp.ClientTimeout(total=timeout) if timeout is not None else None
        )

    async def send(self, request: TransportRequest) -> TransportResponse:
        end_of_line_middleware = EndOfLineChainMiddleware(
            client_session=self._client, timeout=self._timeout
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware):
            chain_callback = mw.handle_gen(chain_callback)

        return await chain_callback(request)

    async def close(self) -> None:
        if self._closed is False:
            await self._client.close()
            self._closed = True

    async def __aenter__(self) -> "AiohttpTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __del__(self) -> None:
        if getattr(self, "_closed", None) is None:
            # in case object was not initialized (__init__ raised an exception)
            # or the session belongs to the caller
            return

        if not self._closed:
            logger.warning("AiohttpTransport was not closed")
