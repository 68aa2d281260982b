"""
Tests for the request orchestrator state machine.

Covers sending with the current credential, the single-flight refresh cycle,
FIFO resend of queued requests, the per-request retry cap, the three refresh
outcomes (success, rejected grant, network failure), restoring from the store
while no credential is held, and exactly-once completion.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import (
    API_PREFIX,
    bearer,
    json_response,
    settle,
    token_body,
)
from social.graze.spid.errors import (
    MalformedResponse,
    NetworkFailure,
    RetryLimitExceeded,
    SpidError,
    Unauthorized,
)
from social.graze.spid.model.credential import Credential
from social.graze.spid.model.request import ApiRequest, OrchestratorState
from social.graze.spid.orchestrator import RequestOrchestrator, is_credential_rejected
from social.graze.spid.store import MemoryCredentialStore
from social.graze.spid.transport import TransportResponse


class GatedSaveStore(MemoryCredentialStore):
    """Memory store whose save blocks until the test releases it."""

    def __init__(self):
        super().__init__()
        self.saving = asyncio.Event()
        self.release = asyncio.Event()

    async def save(self, credential):
        self.saving.set()
        await self.release.wait()
        await super().save(credential)


def accept_token(access_token):
    """API handler accepting only `access_token`."""

    def handler(request):
        if bearer(request) == access_token:
            return json_response(200, {"url": request.url})
        return json_response(401, {"error": "invalid_token"})

    return handler


class TestCredentialRejection:
    """Which responses count as the API rejecting the credential."""

    def test_status_401(self):
        assert is_credential_rejected(TransportResponse(status=401, body=None))

    def test_error_body(self):
        assert is_credential_rejected(
            TransportResponse(status=400, body={"error": "expired_token"})
        )
        assert is_credential_rejected(
            TransportResponse(status=403, body={"error": "invalid_token"})
        )

    def test_nested_error_type(self):
        assert is_credential_rejected(
            TransportResponse(
                status=400, body={"error": {"code": 400, "type": "invalid_token"}}
            )
        )

    def test_other_errors_are_not_rejections(self):
        assert not is_credential_rejected(
            TransportResponse(status=403, body={"error": "insufficient_scope"})
        )
        assert not is_credential_rejected(TransportResponse(status=500, body="oops"))
        assert not is_credential_rejected(TransportResponse(status=200, body={}))


class TestNoCredential:
    """Requests submitted while nothing is held in memory."""

    @pytest.mark.asyncio
    async def test_unauthorized_without_network(self, orchestrator, transport):
        """A call with no credential anywhere fails without any network call."""
        assert orchestrator.state is OrchestratorState.NO_CREDENTIAL

        with pytest.raises(Unauthorized):
            await orchestrator.get("/me")

        assert transport.requests == []
        assert orchestrator.state is OrchestratorState.NO_CREDENTIAL

    @pytest.mark.asyncio
    async def test_many_calls_all_unauthorized(self, orchestrator, transport):
        """N calls with no credential all fail and the token endpoint is never called."""
        results = await asyncio.gather(
            *[orchestrator.get(f"/item/{i}") for i in range(5)],
            return_exceptions=True,
        )

        assert all(isinstance(r, Unauthorized) for r in results)
        assert transport.token_requests == []
        assert transport.api_requests == []

    @pytest.mark.asyncio
    async def test_stored_unexpired_credential_is_restored(
        self, orchestrator, transport, store, user_credential
    ):
        """A valid stored credential is used as-is, without a token call."""
        await store.save(user_credential)
        transport.api_handler = accept_token("access-1")

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert transport.token_requests == []
        assert orchestrator.credential == user_credential
        assert orchestrator.state is OrchestratorState.READY

    @pytest.mark.asyncio
    async def test_stored_expired_credential_is_refreshed(
        self, orchestrator, transport, store, clock
    ):
        """An expired stored credential with a refresh token is refreshed first."""
        await store.save(
            Credential(
                access_token="access-old",
                refresh_token="refresh-1",
                expires_at=clock() - timedelta(minutes=5),
                subject_id="1001",
            )
        )
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2")
        )
        transport.api_handler = accept_token("access-2")

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert len(transport.token_requests) == 1
        assert transport.token_requests[0].data["refresh_token"] == "refresh-1"
        assert orchestrator.credential.access_token == "access-2"
        assert orchestrator.credential.subject_id == "1001"
        assert (await store.load()).access_token == "access-2"

    @pytest.mark.asyncio
    async def test_stored_expired_credential_without_refresh_token(
        self, orchestrator, transport, store, clock
    ):
        """An expired stored credential that cannot be renewed means Unauthorized."""
        await store.save(
            Credential(
                access_token="access-old",
                expires_at=clock() - timedelta(minutes=5),
            )
        )

        with pytest.raises(Unauthorized):
            await orchestrator.get("/me")

        assert transport.requests == []
        assert await store.load() is None


class TestReady:
    """Requests sent while a usable credential is held."""

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self, orchestrator, transport, user_credential):
        transport.api_handler = accept_token("access-1")
        await orchestrator.install_credential(user_credential)

        response = await orchestrator.get("/me", {"fields": "name"})

        assert response.status == 200
        [request] = transport.api_requests
        assert request.method == "GET"
        assert request.url == f"{API_PREFIX}/me"
        assert request.headers["Authorization"] == "Bearer access-1"
        assert request.params == {"fields": "name"}
        assert request.data is None

    @pytest.mark.asyncio
    async def test_post_sends_form_body(self, orchestrator, transport, user_credential):
        transport.api_handler = accept_token("access-1")
        await orchestrator.install_credential(user_credential)

        await orchestrator.post("/oauth/exchange", {"clientId": "x", "type": "code"})

        [request] = transport.api_requests
        assert request.method == "POST"
        assert request.data == {"clientId": "x", "type": "code"}
        assert request.params is None

    @pytest.mark.asyncio
    async def test_http_errors_are_returned(
        self, orchestrator, transport, user_credential
    ):
        """Non-authorization errors go straight back to the caller, no refresh."""
        transport.api_handler = lambda r: json_response(500, "server error")
        await orchestrator.install_credential(user_credential)

        response = await orchestrator.get("/me")

        assert response.status == 500
        assert transport.token_requests == []
        assert orchestrator.state is OrchestratorState.READY

    @pytest.mark.asyncio
    async def test_transport_failure_is_raised(
        self, orchestrator, transport, user_credential
    ):
        def fail(request):
            raise NetworkFailure("connection reset")

        transport.api_handler = fail
        await orchestrator.install_credential(user_credential)

        with pytest.raises(NetworkFailure):
            await orchestrator.get("/me")

        assert len(transport.api_requests) == 1
        assert transport.token_requests == []
        assert orchestrator.state is OrchestratorState.READY


class TestRefreshCycle:
    """Reactive refresh after the API rejects the credential."""

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_and_resent(
        self, orchestrator, transport, store, user_credential, clock
    ):
        """A rejected call is queued, the credential refreshed and the call resent."""
        transport.api_handler = accept_token("access-2")
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2", expires_in=3600)
        )
        await orchestrator.install_credential(user_credential)

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert [bearer(r) for r in transport.api_requests] == ["access-1", "access-2"]
        assert len(transport.token_requests) == 1
        assert orchestrator.state is OrchestratorState.READY

        credential = orchestrator.credential
        assert credential.access_token == "access-2"
        assert credential.refresh_token == "refresh-2"
        assert credential.expires_at == clock() + timedelta(seconds=3600)
        assert await store.load() == credential

    @pytest.mark.asyncio
    async def test_concurrent_rejections_share_one_refresh(
        self, orchestrator, transport, user_credential
    ):
        """Two back-to-back rejected calls cause exactly one refresh and both succeed."""
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        first = asyncio.create_task(orchestrator.get("/first"))
        second = asyncio.create_task(orchestrator.get("/second"))
        await settle(20)

        assert orchestrator.state is OrchestratorState.REFRESHING
        assert len(transport.token_requests) == 1

        gate.set()
        results = await asyncio.gather(first, second)

        assert [r.status for r in results] == [200, 200]
        assert len(transport.token_requests) == 1

    @pytest.mark.asyncio
    async def test_many_rejections_during_refresh(
        self, orchestrator, transport, user_credential
    ):
        """M independent rejections while one refresh is outstanding: one token call."""
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        tasks = [asyncio.create_task(orchestrator.get(f"/item/{i}")) for i in range(8)]
        await settle(30)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert all(r.status == 200 for r in results)
        assert len(transport.token_requests) == 1
        assert len(transport.api_requests) == 16

    @pytest.mark.asyncio
    async def test_queue_is_resent_in_submission_order(
        self, orchestrator, transport, user_credential
    ):
        """Requests submitted during a refresh keep their order when resent."""
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        first = asyncio.create_task(orchestrator.get("/first"))
        await settle(20)
        assert orchestrator.state is OrchestratorState.REFRESHING

        later = [
            asyncio.create_task(orchestrator.get(path))
            for path in ("/second", "/third", "/fourth")
        ]
        await settle(20)

        # Queued requests are not sent while the refresh is outstanding.
        assert len(transport.api_requests) == 1
        assert orchestrator.pending_count == 4

        gate.set()
        await asyncio.gather(first, *later)

        resent = [r.url for r in transport.api_requests if bearer(r) == "access-2"]
        assert resent == [
            f"{API_PREFIX}/first",
            f"{API_PREFIX}/second",
            f"{API_PREFIX}/third",
            f"{API_PREFIX}/fourth",
        ]

    @pytest.mark.asyncio
    async def test_retry_limit(self, orchestrator, transport, user_credential, settings):
        """A request that keeps getting rejected stops after max_retries resends."""
        counter = {"n": 1}

        def token_handler(request):
            counter["n"] += 1
            return json_response(
                200, token_body(f"access-{counter['n']}", "refresh-x")
            )

        transport.token_handler = token_handler
        transport.api_handler = lambda r: json_response(401, {"error": "invalid_token"})
        await orchestrator.install_credential(user_credential)

        with pytest.raises(RetryLimitExceeded) as exc_info:
            await orchestrator.get("/me")

        assert exc_info.value.attempt_count == settings.max_retries + 1
        assert len(transport.api_requests) == settings.max_retries + 1
        assert len(transport.token_requests) == settings.max_retries + 1

    @pytest.mark.asyncio
    async def test_queued_request_gets_full_retry_budget(
        self, orchestrator, transport, store, clock, settings
    ):
        """A request queued before its first send still gets max_retries resends."""
        await store.save(
            Credential(
                access_token="access-old",
                refresh_token="refresh-1",
                expires_at=clock() - timedelta(minutes=5),
                subject_id="1001",
            )
        )
        counter = {"n": 1}

        def token_handler(request):
            counter["n"] += 1
            return json_response(
                200, token_body(f"access-{counter['n']}", "refresh-x")
            )

        transport.token_handler = token_handler
        transport.api_handler = lambda r: json_response(401, {"error": "invalid_token"})

        with pytest.raises(RetryLimitExceeded) as exc_info:
            await orchestrator.get("/me")

        assert exc_info.value.attempt_count == settings.max_retries + 1
        assert len(transport.api_requests) == settings.max_retries + 1
        assert len(transport.token_requests) == settings.max_retries + 2

    @pytest.mark.asyncio
    async def test_request_queued_during_refresh_starts_at_zero(
        self, orchestrator, transport, user_credential
    ):
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        rejected = ApiRequest(method="GET", path="/first")
        first = asyncio.create_task(orchestrator.submit(rejected))
        await settle(20)
        queued = ApiRequest(method="GET", path="/second")
        second = asyncio.create_task(orchestrator.submit(queued))
        await settle()
        gate.set()
        await asyncio.gather(first, second)

        assert rejected.attempt_count == 1
        assert queued.attempt_count == 0

    @pytest.mark.asyncio
    async def test_invalid_grant_clears_credential(
        self, orchestrator, transport, store, user_credential
    ):
        """A rejected refresh fails queued calls, deletes the stored credential."""
        transport.token_handler = lambda r: json_response(
            400, {"error": "invalid_grant", "error_description": "revoked"}
        )
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        results = await asyncio.gather(
            orchestrator.get("/first"),
            orchestrator.get("/second"),
            return_exceptions=True,
        )

        assert all(isinstance(r, Unauthorized) for r in results)
        assert orchestrator.credential is None
        assert orchestrator.state is OrchestratorState.NO_CREDENTIAL
        assert await store.load() is None
        assert len(transport.token_requests) == 1

    @pytest.mark.asyncio
    async def test_network_failure_keeps_unexpired_credential(
        self, orchestrator, transport, store, user_credential
    ):
        def token_handler(request):
            raise NetworkFailure("timeout")

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        with pytest.raises(NetworkFailure):
            await orchestrator.get("/me")

        assert orchestrator.credential == user_credential
        assert orchestrator.state is OrchestratorState.READY
        assert await store.load() == user_credential

    @pytest.mark.asyncio
    async def test_network_failure_drops_expired_credential_in_memory(
        self, orchestrator, transport, store, settings, clock
    ):
        expiring = Credential(
            access_token="access-1",
            refresh_token="refresh-1",
            expires_at=clock() + timedelta(seconds=60),
        )
        await orchestrator.install_credential(expiring)

        async def api_handler(request):
            # Expires while the request is in flight.
            clock.advance(120)
            return json_response(401, {"error": "expired_token"})

        def token_handler(request):
            raise NetworkFailure("timeout")

        transport.api_handler = api_handler
        transport.token_handler = token_handler

        with pytest.raises(NetworkFailure):
            await orchestrator.get("/me")

        assert orchestrator.state is OrchestratorState.NO_CREDENTIAL
        # Only the in-memory copy is dropped.
        assert await store.load() == expiring

    @pytest.mark.asyncio
    async def test_malformed_refresh_response(
        self, orchestrator, transport, user_credential
    ):
        transport.token_handler = lambda r: json_response(200, {"token_type": "bearer"})
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        with pytest.raises(MalformedResponse):
            await orchestrator.get("/me")

        assert orchestrator.credential == user_credential

    @pytest.mark.asyncio
    async def test_stale_rejection_uses_new_credential(
        self, orchestrator, transport, user_credential, clock
    ):
        """A rejection for a credential already replaced is resent without refreshing."""
        gate = asyncio.Event()

        async def api_handler(request):
            if bearer(request) == "access-1":
                await gate.wait()
                return json_response(401, {"error": "invalid_token"})
            return json_response(200, {})

        transport.api_handler = api_handler
        await orchestrator.install_credential(user_credential)

        task = asyncio.create_task(orchestrator.get("/me"))
        await settle()
        await orchestrator.install_credential(
            Credential(
                access_token="access-9",
                refresh_token="refresh-9",
                expires_at=clock() + timedelta(hours=1),
            )
        )
        gate.set()

        response = await task
        assert response.status == 200
        assert [bearer(r) for r in transport.api_requests] == ["access-1", "access-9"]
        assert transport.token_requests == []

    @pytest.mark.asyncio
    async def test_client_credential_is_renewed_with_client_grant(
        self, orchestrator, transport, clock
    ):
        transport.token_handler = lambda r: json_response(
            200, token_body("client-2", refresh_token="ignored")
        )
        transport.api_handler = accept_token("client-2")
        await orchestrator.install_credential(
            Credential(
                access_token="client-1",
                expires_at=clock() + timedelta(hours=1),
                is_client_credential=True,
            )
        )

        response = await orchestrator.get("/users")

        assert response.status == 200
        [token_request] = transport.token_requests
        assert token_request.data["grant_type"] == "client_credentials"
        assert orchestrator.credential.is_client_credential
        assert orchestrator.credential.refresh_token is None

    @pytest.mark.asyncio
    async def test_metrics(self, orchestrator, transport, user_credential, metrics):
        transport.api_handler = accept_token("access-2")
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2")
        )
        await orchestrator.install_credential(user_credential)

        await orchestrator.get("/me")

        assert metrics.increments["spid.orchestrator.refresh.count"] == 1
        assert metrics.increments["spid.orchestrator.refresh.success"] == 1
        assert metrics.increments["spid.orchestrator.request.retried"] == 1
        assert metrics.increments["spid.token.refresh_token.success"] == 1


class TestProactiveRefresh:
    """Refresh before sending when the credential is about to expire."""

    @pytest.mark.asyncio
    async def test_refreshes_before_send(self, orchestrator, transport, clock):
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2")
        )
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(
            Credential(
                access_token="access-1",
                refresh_token="refresh-1",
                expires_at=clock() + timedelta(seconds=10),
            )
        )

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert [bearer(r) for r in transport.api_requests] == ["access-2"]

    @pytest.mark.asyncio
    async def test_disabled(self, settings, transport, token_client, store, metrics, clock):
        settings = settings.model_copy(update={"proactive_refresh": False})
        orchestrator = RequestOrchestrator(
            settings, transport, token_client, store, metrics, clock=clock
        )
        transport.api_handler = accept_token("access-1")
        await orchestrator.install_credential(
            Credential(
                access_token="access-1",
                refresh_token="refresh-1",
                expires_at=clock() + timedelta(seconds=10),
            )
        )

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert transport.token_requests == []

    @pytest.mark.asyncio
    async def test_not_for_unrenewable_credentials(
        self, orchestrator, transport, clock
    ):
        """A credential without a refresh token is sent as-is until rejected."""
        transport.api_handler = accept_token("access-1")
        await orchestrator.install_credential(
            Credential(
                access_token="access-1",
                expires_at=clock() + timedelta(seconds=10),
            )
        )

        response = await orchestrator.get("/me")

        assert response.status == 200
        assert transport.token_requests == []


class TestCompletion:
    """Each request completes exactly once."""

    @pytest.mark.asyncio
    async def test_callback_fires_once(self, orchestrator, transport, user_credential):
        transport.api_handler = accept_token("access-2")
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2")
        )
        await orchestrator.install_credential(user_credential)

        outcomes = []
        request = ApiRequest(method="GET", path="/me", on_complete=outcomes.append)

        response = await orchestrator.submit(request)

        assert response.status == 200
        assert outcomes == [response]
        assert request.attempt_count == 1

        assert request.resolve(json_response(200, {})) is False
        assert request.fail(Unauthorized("late")) is False
        assert outcomes == [response]

    @pytest.mark.asyncio
    async def test_callback_receives_error(self, orchestrator):
        outcomes = []

        with pytest.raises(Unauthorized):
            await orchestrator.get("/me", on_complete=outcomes.append)

        assert len(outcomes) == 1
        assert isinstance(outcomes[0], Unauthorized)

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_break_completion(
        self, orchestrator, transport, user_credential
    ):
        transport.api_handler = accept_token("access-1")
        await orchestrator.install_credential(user_credential)

        def broken(outcome):
            raise RuntimeError("callback bug")

        response = await orchestrator.get("/me", on_complete=broken)

        assert response.status == 200


class TestCredentialManagement:
    """Explicit refresh, install, clear and close."""

    @pytest.mark.asyncio
    async def test_refresh_joins_in_flight(
        self, orchestrator, transport, user_credential
    ):
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        await orchestrator.install_credential(user_credential)

        first = asyncio.create_task(orchestrator.refresh())
        second = asyncio.create_task(orchestrator.refresh())
        await settle()
        gate.set()

        results = await asyncio.gather(first, second)
        assert results[0] == results[1]
        assert results[0].access_token == "access-2"
        assert len(transport.token_requests) == 1

    @pytest.mark.asyncio
    async def test_refresh_without_credential(self, orchestrator, transport):
        with pytest.raises(Unauthorized):
            await orchestrator.refresh()
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_clear_during_refresh_wins(
        self, orchestrator, transport, store, user_credential
    ):
        """Logging out while a refresh is in flight discards the refresh result."""
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        task = asyncio.create_task(orchestrator.get("/me"))
        await settle(20)
        await orchestrator.clear_credential()
        gate.set()

        with pytest.raises(Unauthorized):
            await task
        assert orchestrator.credential is None
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_clear_during_refresh_save_wins(
        self, settings, transport, token_client, metrics, clock, user_credential
    ):
        """A refreshed credential still being saved is not left in the store."""
        store = GatedSaveStore()
        orchestrator = RequestOrchestrator(
            settings, transport, token_client, store, metrics, clock=clock
        )
        transport.token_handler = lambda r: json_response(
            200, token_body("access-2", "refresh-2")
        )
        transport.api_handler = accept_token("access-2")
        store.release.set()
        await orchestrator.install_credential(user_credential)
        store.release.clear()
        store.saving.clear()

        task = asyncio.create_task(orchestrator.get("/me"))
        await store.saving.wait()
        clear = asyncio.create_task(orchestrator.clear_credential())
        await settle()
        store.release.set()
        await clear

        with pytest.raises(Unauthorized):
            await task
        assert orchestrator.credential is None
        assert await store.load() is None
        assert await orchestrator.restore() is None

    @pytest.mark.asyncio
    async def test_clear_during_install_save_wins(
        self, settings, transport, token_client, metrics, clock, user_credential
    ):
        store = GatedSaveStore()
        orchestrator = RequestOrchestrator(
            settings, transport, token_client, store, metrics, clock=clock
        )

        install = asyncio.create_task(orchestrator.install_credential(user_credential))
        await store.saving.wait()
        clear = asyncio.create_task(orchestrator.clear_credential())
        await settle()
        store.release.set()
        await asyncio.gather(install, clear)

        assert orchestrator.credential is None
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_refresh_keeps_valid_unrenewable_credential(
        self, orchestrator, transport, store, clock
    ):
        """Forcing a refresh without a refresh token does not log the user out."""
        credential = Credential(
            access_token="access-1",
            expires_at=clock() + timedelta(hours=1),
            subject_id="1001",
        )
        await orchestrator.install_credential(credential)

        with pytest.raises(Unauthorized):
            await orchestrator.refresh()

        assert orchestrator.credential == credential
        assert await store.load() == credential
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_install_respects_save_setting(
        self, settings, transport, token_client, store, metrics, clock, user_credential
    ):
        settings = settings.model_copy(update={"save_credential": False})
        orchestrator = RequestOrchestrator(
            settings, transport, token_client, store, metrics, clock=clock
        )

        await orchestrator.install_credential(user_credential)

        assert orchestrator.credential == user_credential
        assert await store.load() is None

    @pytest.mark.asyncio
    async def test_restore(self, orchestrator, store, user_credential):
        await store.save(user_credential)

        assert await orchestrator.restore() == user_credential
        assert orchestrator.state is OrchestratorState.READY

    @pytest.mark.asyncio
    async def test_close_fails_pending(self, orchestrator, transport, user_credential):
        gate = asyncio.Event()

        async def token_handler(request):
            await gate.wait()
            return json_response(200, token_body("access-2", "refresh-2"))

        transport.token_handler = token_handler
        transport.api_handler = accept_token("access-2")
        await orchestrator.install_credential(user_credential)

        task = asyncio.create_task(orchestrator.get("/me"))
        await settle(20)
        await orchestrator.close()

        with pytest.raises(SpidError):
            await task
