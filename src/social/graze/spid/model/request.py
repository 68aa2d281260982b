"""Request descriptors and state enums for the request orchestrator."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

from ulid import ULID

from social.graze.spid.transport import TransportResponse

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[Union[TransportResponse, BaseException]], None]


class RefreshState(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class OrchestratorState(Enum):
    NO_CREDENTIAL = "no_credential"
    READY = "ready"
    REFRESHING = "refreshing"


@dataclass
class ApiRequest:
    """
    One outbound API call owned by the orchestrator until it completes.

    `body` holds form fields for POST requests and query parameters for GET
    requests. `attempt_count` counts the resends that followed a rejection of
    the credential; the original send is attempt 0. A request queued before it
    was ever sent goes out as attempt 0 once a credential is available.

    Completion is terminal and happens exactly once: the first call to
    `resolve` or `fail` settles the future and fires `on_complete`; later calls
    are logged and ignored.
    """

    method: str
    path: str
    body: Optional[Dict[str, Any]] = None
    on_complete: Optional[CompletionCallback] = None
    attempt_count: int = 0
    was_sent: bool = False
    request_id: str = field(default_factory=lambda: str(ULID()))
    _future: Optional["asyncio.Future[TransportResponse]"] = field(
        default=None, init=False, repr=False
    )

    @property
    def future(self) -> "asyncio.Future[TransportResponse]":
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        return self._future

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def resolve(self, response: TransportResponse) -> bool:
        return self._complete(response)

    def fail(self, error: BaseException) -> bool:
        return self._complete(error)

    def _complete(self, result: Union[TransportResponse, BaseException]) -> bool:
        future = self.future
        if future.done():
            logger.warning(
                "Ignoring second completion for request %s %s (%s)",
                self.method,
                self.path,
                self.request_id,
            )
            return False

        if isinstance(result, BaseException):
            future.set_exception(result)
        else:
            future.set_result(result)

        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                logger.exception(
                    "Completion callback for request %s raised", self.request_id
                )
        return True

    async def wait(self) -> TransportResponse:
        return await self.future
