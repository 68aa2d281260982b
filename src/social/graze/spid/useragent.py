"""
User agents present the provider's login, signup and logout pages.

A user agent either hands back the callback URL it captured (web-view and
loopback style) or returns `None`, in which case the application forwards the
redirect to `AuthorizationFlow.handle_open_url` when it arrives.
"""

import asyncio
import logging
import webbrowser
from typing import Callable, Optional, Protocol

from aiohttp import web

from social.graze.spid.errors import FlowError, UserCancelled

logger = logging.getLogger(__name__)


class UserAgent(Protocol):
    async def open(self, url: str) -> Optional[str]: ...


class SystemBrowserUserAgent:
    """Opens the page in the system browser. The redirect arrives later."""

    def __init__(self, open_browser: Callable[[str], bool] = webbrowser.open) -> None:
        self._open_browser = open_browser

    async def open(self, url: str) -> Optional[str]:
        opened = await asyncio.to_thread(self._open_browser, url)
        if not opened:
            raise FlowError("Unable to open a browser")
        return None


class LoopbackUserAgent:
    """
    Listens on a local port for the provider's redirect.

    Used with `app_url_scheme=http` and `redirect_host=localhost:<port>` so
    that the redirect URI points back at this listener. The first request to
    any path ends the wait; its full URL is returned as the callback URL.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8080,
        open_browser: Callable[[str], bool] = webbrowser.open,
        timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.port = port
        self._open_browser = open_browser
        self._timeout = timeout

    async def open(self, url: str) -> Optional[str]:
        callback: "asyncio.Future[str]" = asyncio.get_running_loop().create_future()

        async def handle_callback(request: web.Request) -> web.Response:
            if not callback.done():
                callback.set_result(str(request.url))
            return web.Response(text="Authentication complete. You can close this window.")

        app = web.Application()
        app.router.add_get("/{kind}", handle_callback)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        logger.info("Waiting for redirect on http://%s:%d/", self.host, self.port)

        try:
            opened = await asyncio.to_thread(self._open_browser, url)
            if not opened:
                logger.warning("Open this URL in a browser: %s", url)
            return await asyncio.wait_for(callback, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise UserCancelled("Timed out waiting for the redirect") from e
        finally:
            await runner.cleanup()
