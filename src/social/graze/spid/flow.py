"""
Interactive Authorization Flow

Drives the browser side of the login, signup, lost password and logout
exchanges. Only one interactive flow may be in progress at a time, counting
the code exchange that follows a login redirect. The redirect wait ends when
exactly one of these happens:

- a redirect to `{app_url_scheme}://{redirect_host}/login` with a `code`
- a redirect carrying an `error` parameter, or to the `/failure` path
- `cancel()`, or the user agent raising `UserCancelled`

Redirects reach the flow either as the return value of `UserAgent.open` or
through `handle_open_url`, called by the application when the platform hands
it the callback URL.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import parse_qsl, urlsplit

from social.graze.spid.app.config import (
    CALLBACK_FAILURE,
    CALLBACK_KINDS,
    CALLBACK_LOGIN,
    CALLBACK_LOGOUT,
    Settings,
)
from social.graze.spid.errors import (
    FlowAlreadyInProgress,
    ProviderError,
    UserCancelled,
)
from social.graze.spid.model.credential import Credential
from social.graze.spid.orchestrator import RequestOrchestrator
from social.graze.spid.token import TokenEndpointClient
from social.graze.spid.useragent import UserAgent

logger = logging.getLogger(__name__)

FLOW_LOGIN = "login"
FLOW_SIGNUP = "signup"
FLOW_LOST_PASSWORD = "lost_password"
FLOW_LOGOUT = "logout"

# Redirect path each flow kind completes on.
FLOW_CALLBACKS = {
    FLOW_LOGIN: CALLBACK_LOGIN,
    FLOW_SIGNUP: CALLBACK_LOGIN,
    FLOW_LOST_PASSWORD: CALLBACK_LOGIN,
    FLOW_LOGOUT: CALLBACK_LOGOUT,
}


@dataclass
class PendingFlow:
    kind: str
    future: "asyncio.Future[Dict[str, str]]"


class AuthorizationFlow:
    def __init__(
        self,
        settings: Settings,
        token_client: TokenEndpointClient,
        orchestrator: RequestOrchestrator,
        user_agent: UserAgent,
    ) -> None:
        self._settings = settings
        self._token_client = token_client
        self._orchestrator = orchestrator
        self._user_agent = user_agent
        # Kind of the flow in progress, from `_begin` until its outcome,
        # including the code exchange, is applied.
        self._active: Optional[str] = None
        self._pending: Optional[PendingFlow] = None

    @property
    def pending(self) -> Optional[str]:
        """Kind of the interactive flow in progress, if any."""
        return self._active

    async def start_authorization(self) -> Credential:
        """
        Send the user to the login page and exchange the returned code.

        Raises:
            FlowAlreadyInProgress: Another interactive flow is pending
            UserCancelled: The flow was cancelled
            ProviderError: The provider redirected back with an error
            TokenError: The code exchange failed
        """
        return await self._authorize(FLOW_LOGIN, self._settings.authorization_url())

    async def start_registration(self) -> Credential:
        """Same as `start_authorization`, starting on the signup page."""
        return await self._authorize(
            FLOW_SIGNUP, self._settings.authorization_url(self._settings.signup_path)
        )

    async def start_lost_password(self) -> Credential:
        """Same as `start_authorization`, starting on the lost password page."""
        return await self._authorize(
            FLOW_LOST_PASSWORD,
            self._settings.authorization_url(self._settings.lost_password_path),
        )

    async def _authorize(self, kind: str, url: str) -> Credential:
        pending = self._begin(kind)
        try:
            params = await self._present(pending, url)

            code = params.get("code")
            if not code:
                raise ProviderError(
                    "Redirect did not carry an authorization code",
                    error="invalid_response",
                )

            credential = await self._token_client.exchange_authorization_code(code)
            await self._orchestrator.install_credential(credential)
            logger.info("Authorization complete")
            return credential
        finally:
            self._active = None

    async def logout(self) -> None:
        """
        Log out at the provider, then forget the credential locally.

        The local credential is cleared however the provider exchange ends.
        """
        pending = self._begin(FLOW_LOGOUT)
        try:
            credential = self._orchestrator.credential
            url = self._settings.logout_url(
                credential.access_token if credential is not None else None
            )
            try:
                await self._present(pending, url)
            finally:
                await self._orchestrator.clear_credential()
                logger.info("Logged out")
        finally:
            self._active = None

    async def soft_logout(self) -> None:
        """Forget the credential without contacting the provider."""
        await self._orchestrator.clear_credential()

    def cancel(self) -> bool:
        """Resolve the pending flow with `UserCancelled`. Returns False if none."""
        pending = self._pending
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(UserCancelled("Flow cancelled"))
        logger.info("Cancelled %s flow", pending.kind)
        return True

    def handle_open_url(self, url: str) -> bool:
        """
        Route a callback URL to the pending flow.

        Returns False for URLs outside this client's redirect scheme and host,
        for unknown callback paths, for a callback that does not match the
        pending flow, and when no flow is pending.
        """
        parts = urlsplit(url)
        if parts.scheme.lower() != self._settings.app_url_scheme.lower():
            return False
        if parts.netloc.lower() != self._settings.redirect_host.lower():
            return False

        callback = parts.path.strip("/")
        if callback not in CALLBACK_KINDS:
            return False

        pending = self._pending
        if pending is None or pending.future.done():
            logger.debug("Ignoring %s callback with no pending flow", callback)
            return False

        params = dict(parse_qsl(parts.query))
        error = params.get("error")
        if error is not None:
            pending.future.set_exception(
                ProviderError(
                    f"Provider returned error: {error}",
                    error=error,
                    description=params.get("error_description"),
                )
            )
        elif callback == CALLBACK_FAILURE:
            pending.future.set_exception(
                ProviderError("Provider reported a failure", error="failure")
            )
        elif callback == FLOW_CALLBACKS[pending.kind]:
            pending.future.set_result(params)
        else:
            return False

        return True

    def _begin(self, kind: str) -> PendingFlow:
        if self._active is not None:
            raise FlowAlreadyInProgress(f"A {self._active} flow is already pending")
        pending = PendingFlow(
            kind=kind, future=asyncio.get_running_loop().create_future()
        )
        self._active = kind
        self._pending = pending
        return pending

    async def _present(self, pending: PendingFlow, url: str) -> Dict[str, str]:
        open_task = asyncio.ensure_future(self._user_agent.open(url))
        try:
            done, _ = await asyncio.wait(
                {open_task, pending.future}, return_when=asyncio.FIRST_COMPLETED
            )
            if open_task in done:
                callback_url = open_task.result()
                if callback_url is not None and not self.handle_open_url(
                    callback_url
                ):
                    if not pending.future.done():
                        pending.future.set_exception(
                            ProviderError(
                                "Unexpected callback URL", error="invalid_response"
                            )
                        )

            return await pending.future
        finally:
            if not open_task.done():
                open_task.cancel()
            if self._pending is pending:
                self._pending = None
