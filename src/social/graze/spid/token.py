"""
SPiD Token Endpoint Client

Builds and sends the three grant requests the client needs, and turns the
provider's answer into a `Credential` or a `TokenError`:

- authorization_code: exchanges the one-time code returned by the browser flow
- refresh_token: renews a user credential without user interaction
- client_credentials: obtains an app-level credential with no user attached

All grants are form-encoded POSTs to `{server_url}{token_path}` carrying the
client id and secret. The response is a JSON object with at least
`access_token`, and optionally `refresh_token`, `expires_in` and `user_id`.

Error mapping:
- no HTTP response at all, or a 5xx status: NetworkFailure (retryable)
- 400/401/403 with an OAuth `error` member: InvalidGrant (re-authorize)
- anything else that is not a well formed 200: MalformedResponse
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ValidationError, field_validator

from social.graze.spid.app.config import CALLBACK_LOGIN, Settings
from social.graze.spid.app.metrics import MetricsClient, NoOpMetricsClient
from social.graze.spid.errors import (
    InvalidGrant,
    MalformedResponse,
    NetworkFailure,
    TokenError,
)
from social.graze.spid.model.credential import Credential
from social.graze.spid.transport import Transport, TransportRequest, TransportResponse

logger = logging.getLogger(__name__)

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
GRANT_CLIENT_CREDENTIALS = "client_credentials"

REJECTED_GRANT_STATUSES = frozenset({400, 401, 403})


class TokenResponse(BaseModel):
    """Subset of the token endpoint response the client relies on."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    user_id: Optional[str] = None

    @field_validator("access_token")
    @classmethod
    def non_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("access_token is empty")
        return v

    @field_validator("expires_in")
    @classmethod
    def non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("expires_in is negative")
        return v

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v: Any) -> Optional[str]:
        # SPiD sends numeric user ids.
        if v is None or isinstance(v, str):
            return v
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        raise ValueError("user_id must be a string or an integer")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenEndpointClient:
    def __init__(
        self,
        settings: Settings,
        transport: Transport,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._metrics_client = metrics_client or NoOpMetricsClient()
        self._clock = clock

    async def exchange_authorization_code(self, code: str) -> Credential:
        """Exchange the code from the login redirect for a user credential."""
        data = {
            "grant_type": GRANT_AUTHORIZATION_CODE,
            "code": code,
            "redirect_uri": self._settings.redirect_uri(CALLBACK_LOGIN),
        }
        token_response = await self._request_token(GRANT_AUTHORIZATION_CODE, data)
        return Credential(
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token,
            expires_at=self._expires_at(token_response),
            subject_id=token_response.user_id,
            is_client_credential=False,
        )

    async def exchange_client_credentials(self) -> Credential:
        """Obtain an app-level credential. Any refresh token sent back is dropped."""
        data = {"grant_type": GRANT_CLIENT_CREDENTIALS}
        token_response = await self._request_token(GRANT_CLIENT_CREDENTIALS, data)
        return Credential(
            access_token=token_response.access_token,
            refresh_token=None,
            expires_at=self._expires_at(token_response),
            subject_id=None,
            is_client_credential=True,
        )

    async def refresh(self, current: Credential) -> Credential:
        """
        Renew a user credential with its refresh token.

        A response without a new refresh token or user id keeps the ones from
        `current`.

        Raises:
            InvalidGrant: If `current` cannot be refreshed or the provider
                rejects the refresh token
        """
        if current.refresh_token is None:
            raise InvalidGrant(
                "Credential has no refresh token", error="invalid_grant"
            )

        data = {
            "grant_type": GRANT_REFRESH_TOKEN,
            "refresh_token": current.refresh_token,
        }
        token_response = await self._request_token(GRANT_REFRESH_TOKEN, data)
        return Credential(
            access_token=token_response.access_token,
            refresh_token=token_response.refresh_token or current.refresh_token,
            expires_at=self._expires_at(token_response),
            subject_id=token_response.user_id or current.subject_id,
            is_client_credential=False,
        )

    def _expires_at(self, token_response: TokenResponse) -> Optional[datetime]:
        # Computed when the response is parsed, not when the credential is used.
        if token_response.expires_in is None:
            return None
        return self._clock() + timedelta(seconds=token_response.expires_in)

    async def _request_token(
        self, grant_type: str, grant_data: Dict[str, str]
    ) -> TokenResponse:
        data = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            **grant_data,
        }
        request = TransportRequest(
            method="POST",
            url=self._settings.token_url,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/x-www-form-urlencoded",
            },
            data=data,
        )

        try:
            response = await self._transport.send(request)
            token_response = self._parse(response)
        except TokenError as e:
            logger.warning(
                "Token request %s failed: %s (%s)",
                grant_type,
                type(e).__name__,
                e.error or e,
            )
            self._metrics_client.increment(
                f"spid.token.{grant_type}.failure",
                1,
                tag_dict={"error": type(e).__name__},
            )
            raise

        logger.debug("Token request %s succeeded", grant_type)
        self._metrics_client.increment(f"spid.token.{grant_type}.success", 1)
        return token_response

    def _parse(self, response: TransportResponse) -> TokenResponse:
        if response.status >= 500:
            raise NetworkFailure(
                f"Token endpoint unavailable: {response.status}",
                status=response.status,
            )

        body = response.body
        error_code = response.error_code()

        if response.status in REJECTED_GRANT_STATUSES and error_code is not None:
            description = None
            if isinstance(body, dict):
                description = body.get("error_description")
            raise InvalidGrant(
                f"Token request rejected: {error_code}",
                error=error_code,
                description=description if isinstance(description, str) else None,
                status=response.status,
            )

        if response.status != 200:
            raise MalformedResponse(
                f"Unexpected token response status: {response.status}",
                error=error_code,
                status=response.status,
            )

        if not isinstance(body, dict):
            raise MalformedResponse(
                "Token response is not a JSON object", status=response.status
            )

        try:
            return TokenResponse.model_validate(body)
        except ValidationError as e:
            raise MalformedResponse(
                f"Invalid token response: {e.error_count()} error(s)",
                status=response.status,
            ) from e
