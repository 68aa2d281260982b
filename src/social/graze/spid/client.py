"""
SPiD Client

`SpidClient` wires the transport, credential store, token endpoint client,
request orchestrator and authorization flow together. Build one per
application and use it as an async context manager:

    async with SpidClient(Settings()) as client:
        await client.authorize()
        me = await client.get_me()

Entering the context restores a stored credential, if there is one. Leaving
it fails anything still queued and closes the HTTP session the client owns.
"""

import logging
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from social.graze.spid.app.config import Settings
from social.graze.spid.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.spid.errors import Unauthorized
from social.graze.spid.flow import AuthorizationFlow
from social.graze.spid.model.credential import Credential
from social.graze.spid.orchestrator import RequestOrchestrator
from social.graze.spid.store import CredentialStore, create_credential_store
from social.graze.spid.token import TokenEndpointClient
from social.graze.spid.transport import (
    AiohttpTransport,
    DebugMiddleware,
    RequestMiddlewareBase,
    StatsdMiddleware,
    Transport,
    TransportResponse,
)
from social.graze.spid.useragent import SystemBrowserUserAgent, UserAgent

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SpidClient:
    def __init__(
        self,
        settings: Settings,
        user_agent: Optional[UserAgent] = None,
        transport: Optional[Transport] = None,
        store: Optional[CredentialStore] = None,
        metrics_client: Optional[MetricsClient] = None,
        redis_client: Optional[redis.Redis] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.settings = settings
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self._clock = clock

        self._owned_transport: Optional[AiohttpTransport] = None
        if transport is None:
            middleware: list[RequestMiddlewareBase] = [
                StatsdMiddleware(self.metrics_client)
            ]
            if settings.debug:
                middleware.append(DebugMiddleware(logger))
            self._owned_transport = AiohttpTransport(
                middleware=middleware, timeout=settings.http_timeout
            )
            transport = self._owned_transport
        self.transport = transport

        self.store = store or create_credential_store(settings, redis_client)
        self.token_client = TokenEndpointClient(
            settings, transport, self.metrics_client, clock=clock
        )
        self.orchestrator = RequestOrchestrator(
            settings,
            transport,
            self.token_client,
            self.store,
            self.metrics_client,
            clock=clock,
        )
        self.flow = AuthorizationFlow(
            settings,
            self.token_client,
            self.orchestrator,
            user_agent or SystemBrowserUserAgent(),
        )

    async def __aenter__(self) -> "SpidClient":
        await self.orchestrator.restore()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        await self.orchestrator.close()
        if self._owned_transport is not None:
            await self._owned_transport.close()

    # Interactive flows

    async def authorize(self) -> Credential:
        return await self.flow.start_authorization()

    async def register(self) -> Credential:
        return await self.flow.start_registration()

    async def lost_password(self) -> Credential:
        return await self.flow.start_lost_password()

    async def logout(self) -> None:
        await self.flow.logout()

    async def soft_logout(self) -> None:
        await self.flow.soft_logout()

    def cancel_authorization(self) -> bool:
        return self.flow.cancel()

    def handle_open_url(self, url: str) -> bool:
        return self.flow.handle_open_url(url)

    # Non-interactive credentials

    async def authorize_client(self) -> Credential:
        """Obtain and install an app-level credential (client-credentials grant)."""
        credential = await self.token_client.exchange_client_credentials()
        await self.orchestrator.install_credential(credential)
        return credential

    async def refresh(self) -> Credential:
        return await self.orchestrator.refresh()

    # API

    async def api_get(
        self, path: str, params: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        return await self.orchestrator.get(path, params)

    async def api_post(
        self, path: str, body: Optional[Dict[str, Any]] = None
    ) -> TransportResponse:
        return await self.orchestrator.post(path, body)

    async def get_me(self) -> TransportResponse:
        return await self.api_get("/me")

    async def get_user(self, user_id: str) -> TransportResponse:
        return await self.api_get(f"/user/{user_id}")

    async def get_current_user(self) -> TransportResponse:
        user_id = self.current_user_id
        if user_id is None:
            raise Unauthorized("No user is logged in")
        return await self.get_user(user_id)

    async def get_user_logins(self, user_id: str) -> TransportResponse:
        return await self.api_get(f"/user/{user_id}/logins")

    async def get_one_time_code(self) -> TransportResponse:
        """
        Exchange the current session for a one-time code that a backend
        (`server_client_id`) can trade for its own credential.
        """
        return await self.api_post(
            "/oauth/exchange",
            {"clientId": self.settings.effective_server_client_id, "type": "code"},
        )

    # Status

    @property
    def credential(self) -> Optional[Credential]:
        return self.orchestrator.credential

    @property
    def is_authorized(self) -> bool:
        return self.credential is not None

    @property
    def is_client_credential(self) -> bool:
        credential = self.credential
        return credential is not None and credential.is_client_credential

    @property
    def current_user_id(self) -> Optional[str]:
        credential = self.credential
        return credential.subject_id if credential is not None else None

    @property
    def token_expires_at(self) -> Optional[datetime]:
        credential = self.credential
        return credential.expires_at if credential is not None else None

    def has_token_expired(self) -> bool:
        credential = self.credential
        return credential is None or credential.has_expired(now=self._clock())
