"""
Background credential refresh.

Long-running services that keep one credential for hours can run
`proactive_refresh_task` next to their workload. It wakes up after a
configurable share of the credential's remaining lifetime and refreshes it
through the orchestrator, so API calls rarely have to wait for a reactive
refresh. Failures are retried with exponential backoff.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, NoReturn, Optional

import sentry_sdk

from social.graze.spid.app.config import Settings
from social.graze.spid.app.metrics import MetricsClient
from social.graze.spid.errors import Unauthorized
from social.graze.spid.model.credential import Credential
from social.graze.spid.orchestrator import RequestOrchestrator

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RetryHandler:
    """
    Exponential backoff for failed background refreshes.
    """

    def __init__(
        self,
        metrics_client: MetricsClient,
        max_retries: int,
        base_delay: int,
    ):
        self.metrics_client = metrics_client
        self.max_retries = max_retries
        self.base_delay = base_delay

    def schedule_retry(self, attempt: int) -> Optional[int]:
        """
        Delay in seconds before retry number `attempt + 1`, or None when the
        retry budget is spent.
        """
        if attempt < self.max_retries:
            retry_delay = self.base_delay * (2**attempt)

            logger.info(
                "Scheduled refresh retry %d/%d in %d seconds",
                attempt + 1,
                self.max_retries,
                retry_delay,
            )

            self.metrics_client.increment(
                "spid.task.refresh.retry_scheduled",
                1,
                tag_dict={"retry_attempt": str(attempt + 1)},
            )
            return retry_delay

        logger.error(
            "Max retries exceeded for background refresh, giving up after %d attempts",
            self.max_retries,
        )
        self.metrics_client.increment("spid.task.refresh.max_retries_exceeded", 1)
        return None


def refresh_delay(
    credential: Credential,
    ratio: float,
    now: datetime,
    min_delay: float = 5.0,
) -> float:
    """Seconds to wait before refreshing `credential` in the background."""
    if credential.expires_at is None:
        return min_delay
    remaining = (credential.expires_at - now).total_seconds()
    return max(min_delay, remaining * ratio)


async def refresh_with_retry(
    orchestrator: RequestOrchestrator,
    retry_handler: RetryHandler,
    metrics_client: MetricsClient,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Refresh once, retrying failures with backoff.
    Returns True on success, False once the credential is gone or retries run out.
    """
    attempt = 0
    while True:
        try:
            await orchestrator.refresh()
            metrics_client.increment("spid.task.refresh.success", 1)
            return True
        except Unauthorized:
            logger.warning("Background refresh stopped: authorization required")
            metrics_client.increment(
                "spid.task.refresh.exception",
                1,
                tag_dict={"exception": "Unauthorized"},
            )
            return False
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Error refreshing credential in the background")
            metrics_client.increment(
                "spid.task.refresh.exception",
                1,
                tag_dict={"exception": type(e).__name__},
            )

        retry_delay = retry_handler.schedule_retry(attempt)
        if retry_delay is None:
            return False
        await sleep(retry_delay)
        attempt += 1


async def proactive_refresh_task(
    orchestrator: RequestOrchestrator,
    settings: Settings,
    metrics_client: MetricsClient,
    clock: Callable[[], datetime] = _utc_now,
    sleep: Sleep = asyncio.sleep,
    idle_interval: float = 60.0,
) -> NoReturn:
    """
    Keep the orchestrator's credential fresh until cancelled.

    The process:
    1. Wait while there is no renewable credential with a known expiry
    2. Sleep for `token_refresh_before_expiry_ratio` of its remaining lifetime
    3. Refresh it, unless it was replaced in the meantime
    4. Retry failures with exponential backoff
    """
    logger.info("Starting background refresh task")

    retry_handler = RetryHandler(
        metrics_client,
        settings.refresh_max_retries,
        settings.refresh_retry_base_delay,
    )

    while True:
        credential = orchestrator.credential
        if (
            credential is None
            or not credential.can_refresh
            or credential.expires_at is None
        ):
            await sleep(idle_interval)
            continue

        delay = refresh_delay(
            credential, settings.token_refresh_before_expiry_ratio, clock()
        )
        logger.debug("Next background refresh in %.0f seconds", delay)
        await sleep(delay)

        if orchestrator.credential is not credential:
            continue

        await refresh_with_retry(orchestrator, retry_handler, metrics_client, sleep)
