"""
Request Orchestrator

Owns the current credential, the queue of API requests waiting for a usable
credential, and the refresh state machine. Every API call goes through
`submit`, which decides whether to send immediately, queue and trigger a
refresh, or fail.

States:
- NO_CREDENTIAL: nothing in memory. A submitted request is queued and a
  refresh cycle starts; the cycle consults the credential store and either
  restores, refreshes or fails every queued request with `Unauthorized`
  without touching the network.
- READY: requests are sent immediately with the credential as a bearer
  header.
- REFRESHING: exactly one refresh cycle is outstanding. Every new request
  and every request rejected for an invalid credential joins the FIFO queue.
  Only the cycle's own completion drains the queue.

Refresh outcomes:
- success: the new credential is persisted, installed, and every queued
  request is sent in submission order. A request that was already rejected
  once has its attempt counter incremented, and one that would go past
  `max_retries` fails with `RetryLimitExceeded`.
- InvalidGrant (or a credential that cannot be renewed): the credential is
  cleared in memory and deleted from the store; queued requests fail with
  `Unauthorized`.
- NetworkFailure / MalformedResponse: the credential is kept if it has not
  expired; queued requests fail with the underlying error.

Concurrency: all transitions happen under one asyncio.Lock. The lock is never
held while waiting on the transport or the token endpoint. Store writes that
follow a refresh complete before the transition is applied.

Store writes and deletes are serialized by a second lock, and a write only
happens while its generation is still current, so a credential cleared in
memory is never written back to the store afterwards.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Coroutine, Deque, Dict, List, Optional, Set, Union

import sentry_sdk

from social.graze.spid.app.config import Settings
from social.graze.spid.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.spid.errors import (
    InvalidGrant,
    NetworkFailure,
    RetryLimitExceeded,
    SpidError,
    TokenError,
    Unauthorized,
)
from social.graze.spid.model.credential import Credential
from social.graze.spid.model.request import (
    ApiRequest,
    CompletionCallback,
    OrchestratorState,
    RefreshState,
)
from social.graze.spid.store import CredentialStore
from social.graze.spid.token import TokenEndpointClient
from social.graze.spid.transport import Transport, TransportRequest, TransportResponse

logger = logging.getLogger(__name__)

REJECTED_TOKEN_ERRORS = frozenset({"invalid_token", "expired_token"})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_credential_rejected(response: TransportResponse) -> bool:
    """True when the API refused the request because of the bearer token."""
    if response.status == 401:
        return True
    return response.error_code() in REJECTED_TOKEN_ERRORS


class _Restored:
    """A stored credential that is usable as-is and needs no token call."""

    def __init__(self, credential: Credential) -> None:
        self.credential = credential


class RequestOrchestrator:
    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        token_client: TokenEndpointClient,
        store: CredentialStore,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._token_client = token_client
        self._store = store
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._store_lock = asyncio.Lock()
        self._credential: Optional[Credential] = None
        self._generation = 0
        self._refresh_state = RefreshState.IDLE
        self._pending: Deque[ApiRequest] = deque()
        self._refresh_waiters: List["asyncio.Future[Credential]"] = []
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._tasks: Set[asyncio.Task[Any]] = set()

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def refresh_state(self) -> RefreshState:
        return self._refresh_state

    @property
    def state(self) -> OrchestratorState:
        if self._refresh_state is RefreshState.REFRESHING:
            return OrchestratorState.REFRESHING
        if self._credential is None:
            return OrchestratorState.NO_CREDENTIAL
        return OrchestratorState.READY

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # Submission

    async def submit(self, request: ApiRequest) -> TransportResponse:
        """
        Hand `request` to the orchestrator and wait for its terminal outcome.

        Returns the API response for anything that is not a credential
        rejection, including HTTP error statuses.

        Raises:
            NetworkFailure: The transport could not reach the API
            Unauthorized: No credential can be obtained without user interaction
            RetryLimitExceeded: The request was resent too many times
        """
        await self._dispatch(request)
        return await request.wait()

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> TransportResponse:
        return await self.submit(
            ApiRequest(method="GET", path=path, body=params, on_complete=on_complete)
        )

    async def post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> TransportResponse:
        return await self.submit(
            ApiRequest(method="POST", path=path, body=body, on_complete=on_complete)
        )

    async def _dispatch(self, request: ApiRequest) -> None:
        async with self._lock:
            if request.done:
                return

            if self._refresh_state is RefreshState.REFRESHING:
                self._enqueue(request)
                return

            credential = self._credential
            if credential is None:
                self._enqueue(request)
                self._start_refresh()
                return

            if (
                self._settings.proactive_refresh
                and credential.can_refresh
                and credential.expires_within(
                    self._settings.refresh_leeway_seconds, now=self._clock()
                )
            ):
                logger.debug("Credential about to expire, refreshing before send")
                self._enqueue(request)
                self._start_refresh()
                return

            self._spawn(self._send(request, credential))

    def _enqueue(self, request: ApiRequest) -> None:
        self._pending.append(request)
        self._metrics_client.increment("spid.orchestrator.request.queued", 1)
        self._metrics_client.gauge(
            "spid.orchestrator.queue_length", len(self._pending)
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _build_request(
        self, request: ApiRequest, credential: Credential
    ) -> TransportRequest:
        transport_request = TransportRequest(
            method=request.method,
            url=self._settings.api_url(request.path),
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {credential.access_token}",
            },
            trace_request_ctx={"request_id": request.request_id},
        )
        if request.method.upper() == "GET":
            transport_request.params = request.body
        else:
            transport_request.data = request.body
        return transport_request

    async def _send(self, request: ApiRequest, credential: Credential) -> None:
        request.was_sent = True
        try:
            response = await self._transport.send(
                self._build_request(request, credential)
            )
        except NetworkFailure as e:
            request.fail(e)
            return
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Transport error for request %s", request.request_id)
            request.fail(e)
            return

        if not is_credential_rejected(response):
            request.resolve(response)
            return

        logger.info(
            "Credential rejected for %s %s (%s), attempt %d",
            request.method,
            request.path,
            request.request_id,
            request.attempt_count,
        )
        await self._handle_rejection(request, credential)

    async def _handle_rejection(
        self, request: ApiRequest, used_credential: Credential
    ) -> None:
        async with self._lock:
            if self._refresh_state is RefreshState.REFRESHING:
                self._enqueue(request)
                return

            current = self._credential
            if current is not None and current is not used_credential:
                # Replaced while this request was in flight; the new one has
                # not been tried yet.
                self._resend_locked(request, current)
                return

            self._enqueue(request)
            self._start_refresh()

    def _resend_locked(self, request: ApiRequest, credential: Credential) -> None:
        if not request.was_sent:
            # Queued before its first send; nothing was rejected yet.
            self._spawn(self._send(request, credential))
            return

        request.attempt_count += 1
        if request.attempt_count > self._settings.max_retries:
            logger.warning(
                "Request %s %s (%s) exceeded %d retries",
                request.method,
                request.path,
                request.request_id,
                self._settings.max_retries,
            )
            self._metrics_client.increment("spid.orchestrator.request.retry_limit", 1)
            request.fail(
                RetryLimitExceeded(
                    f"{request.method} {request.path} exceeded "
                    f"{self._settings.max_retries} retries",
                    attempt_count=request.attempt_count,
                )
            )
            return

        self._metrics_client.increment("spid.orchestrator.request.retried", 1)
        self._spawn(self._send(request, credential))

    # Refresh state machine

    def _start_refresh(self) -> None:
        # Caller holds the lock.
        if self._refresh_state is RefreshState.REFRESHING:
            return
        self._refresh_state = RefreshState.REFRESHING
        self._metrics_client.increment("spid.orchestrator.refresh.count", 1)
        self._refresh_task = asyncio.create_task(
            self._refresh_cycle(self._credential, self._generation)
        )

    async def _refresh_cycle(
        self, current: Optional[Credential], generation: int
    ) -> None:
        try:
            outcome = await self._obtain_replacement(current)
        except (TokenError, Unauthorized) as e:
            await self._finish_refresh_failure(e, generation)
            return
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Unexpected error refreshing credential")
            await self._finish_refresh_failure(e, generation)
            return

        if isinstance(outcome, _Restored):
            await self._finish_refresh_success(
                outcome.credential, generation, persist=False
            )
        else:
            await self._finish_refresh_success(outcome, generation, persist=True)

    async def _obtain_replacement(
        self, current: Optional[Credential]
    ) -> Union[Credential, _Restored]:
        if current is None:
            stored = await self._load_stored()
            if stored is None:
                raise Unauthorized("No credential available, authorization required")

            unexpired = not stored.expires_within(
                self._settings.refresh_leeway_seconds, now=self._clock()
            )
            if unexpired or not stored.can_refresh:
                if stored.has_expired(now=self._clock()):
                    raise Unauthorized(
                        "Stored credential expired, authorization required"
                    )
                logger.info("Restored credential from store")
                return _Restored(stored)
            current = stored

        if current.is_client_credential:
            logger.info("Renewing client credential")
            return await self._token_client.exchange_client_credentials()

        if current.refresh_token is not None:
            logger.info("Refreshing user credential")
            return await self._token_client.refresh(current)

        raise Unauthorized("Credential cannot be renewed, authorization required")

    async def _load_stored(self) -> Optional[Credential]:
        try:
            return await self._store.load()
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error loading stored credential")
            return None

    async def _save_stored(self, credential: Credential, generation: int) -> None:
        if not self._settings.save_credential:
            return
        async with self._store_lock:
            if generation != self._generation:
                logger.info("Skipping save of a superseded credential")
                return
            try:
                await self._store.save(credential)
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Error saving credential")

    async def _delete_stored(self) -> None:
        async with self._store_lock:
            try:
                await self._store.delete()
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("Error deleting stored credential")

    async def _finish_refresh_success(
        self, credential: Credential, generation: int, persist: bool
    ) -> None:
        if persist:
            await self._save_stored(credential, generation)

        async with self._lock:
            if generation == self._generation:
                self._credential = credential
                self._generation += 1
            else:
                # Installed or cleared while refreshing; that decision wins.
                logger.info("Discarding refresh result superseded by a newer credential")

            self._refresh_state = RefreshState.IDLE
            self._refresh_task = None
            self._metrics_client.increment(
                "spid.orchestrator.refresh.success",
                1,
                tag_dict={"restored": str(not persist).lower()},
            )

            waiters, self._refresh_waiters = self._refresh_waiters, []
            pending = self._drain_locked()
            current = self._credential

            for waiter in waiters:
                if waiter.done():
                    continue
                if current is None:
                    waiter.set_exception(Unauthorized("Credential was cleared"))
                else:
                    waiter.set_result(current)

            for request in pending:
                if current is None:
                    request.fail(Unauthorized("Credential was cleared"))
                else:
                    self._resend_locked(request, current)

    async def _finish_refresh_failure(
        self, error: BaseException, generation: int
    ) -> None:
        terminal = isinstance(error, (InvalidGrant, Unauthorized))
        if terminal and generation == self._generation:
            await self._delete_stored()

        async with self._lock:
            if generation == self._generation:
                if terminal:
                    self._credential = None
                    self._generation += 1
                elif self._credential is not None and self._credential.has_expired(
                    now=self._clock()
                ):
                    self._credential = None
                    self._generation += 1

            self._refresh_state = RefreshState.IDLE
            self._refresh_task = None
            self._metrics_client.increment(
                "spid.orchestrator.refresh.failure",
                1,
                tag_dict={"error": type(error).__name__},
            )
            logger.warning("Credential refresh failed: %s", type(error).__name__)

            waiters, self._refresh_waiters = self._refresh_waiters, []
            pending = self._drain_locked()

            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(self._caller_error(error))

            for request in pending:
                request.fail(self._caller_error(error))

    def _caller_error(self, error: BaseException) -> BaseException:
        if isinstance(error, InvalidGrant):
            unauthorized = Unauthorized("Refresh rejected, authorization required")
            unauthorized.__cause__ = error
            return unauthorized
        if isinstance(error, Unauthorized):
            return Unauthorized(str(error))
        return error

    def _drain_locked(self) -> List[ApiRequest]:
        pending = list(self._pending)
        self._pending.clear()
        self._metrics_client.gauge("spid.orchestrator.queue_length", 0)
        return pending

    # Credential management

    async def refresh(self) -> Credential:
        """
        Force a refresh, or join the one already in flight.

        A credential that is still valid but cannot be renewed is kept and
        `Unauthorized` is raised without starting a refresh.

        Raises:
            Unauthorized: No credential can be renewed without user interaction
            NetworkFailure: The token endpoint could not be reached
        """
        waiter: "asyncio.Future[Credential]" = (
            asyncio.get_running_loop().create_future()
        )
        async with self._lock:
            credential = self._credential
            if (
                self._refresh_state is RefreshState.IDLE
                and credential is not None
                and not credential.can_refresh
                and not credential.has_expired(now=self._clock())
            ):
                raise Unauthorized(
                    "Credential cannot be renewed, authorization required"
                )
            self._refresh_waiters.append(waiter)
            self._start_refresh()
        return await waiter

    async def install_credential(self, credential: Credential) -> None:
        """Persist and adopt a freshly acquired credential."""
        async with self._lock:
            self._generation += 1
            generation = self._generation

        await self._save_stored(credential, generation)

        async with self._lock:
            if generation != self._generation:
                logger.info("Discarding install superseded by a newer credential")
                return
            self._credential = credential
        logger.info("Installed new credential")

    async def restore(self) -> Optional[Credential]:
        """Adopt the stored credential, if any, when nothing is held in memory."""
        stored = await self._load_stored()
        async with self._lock:
            if self._credential is None and stored is not None:
                self._credential = stored
                self._generation += 1
            return self._credential

    async def clear_credential(self, delete_stored: bool = True) -> None:
        """
        Forget the credential. The in-memory transition always happens; a
        failing store delete is logged and does not propagate.
        """
        async with self._lock:
            self._credential = None
            self._generation += 1
        if delete_stored:
            await self._delete_stored()
        logger.info("Cleared credential")

    async def close(self) -> None:
        """Fail everything still waiting and stop background work."""
        async with self._lock:
            if self._refresh_task is not None:
                self._refresh_task.cancel()
                self._refresh_task = None
            self._refresh_state = RefreshState.IDLE
            waiters, self._refresh_waiters = self._refresh_waiters, []
            pending = self._drain_locked()

        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(SpidError("Client closed"))
        for request in pending:
            request.fail(SpidError("Client closed"))

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
