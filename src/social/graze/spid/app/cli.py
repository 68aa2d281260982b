import argparse
import asyncio
import base64
import json
import logging
import os
from logging.config import dictConfig
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

import sentry_sdk
from cryptography.fernet import Fernet
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.spid.app.config import Settings
from social.graze.spid.app.metrics import create_metrics_client
from social.graze.spid.client import SpidClient
from social.graze.spid.errors import SpidError
from social.graze.spid.transport import TransportResponse
from social.graze.spid.useragent import LoopbackUserAgent, UserAgent

logger = logging.getLogger(__name__)


def configure_logging(debug: bool = False):
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    logging.getLogger().setLevel(logging.DEBUG if debug else logging.INFO)


def configure_sentry(settings: Settings) -> None:
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )


def loopback_user_agent(settings: Settings) -> UserAgent:
    """
    The CLI can only receive redirects on a local listener, so the redirect
    URI must be ``http://localhost:<port>/...``.
    """
    if settings.app_url_scheme != "http":
        raise SpidError(
            "Interactive commands need SPID_APP_URL_SCHEME=http and "
            "SPID_REDIRECT_HOST=localhost:<port>"
        )
    parts = urlsplit(f"http://{settings.redirect_host}")
    return LoopbackUserAgent(
        host=parts.hostname or "localhost",
        port=parts.port or 80,
    )


def credential_status(client: SpidClient) -> Dict[str, Any]:
    expires_at = client.token_expires_at
    return {
        "authorized": client.is_authorized,
        "client_credential": client.is_client_credential,
        "user_id": client.current_user_id,
        "expires_at": expires_at.isoformat() if expires_at is not None else None,
        "expired": client.has_token_expired(),
    }


def print_response(response: TransportResponse) -> None:
    if isinstance(response.body, (dict, list)):
        print(json.dumps(response.body, indent=2))
    else:
        print(response.body)


async def genCryptoKey() -> None:
    key = Fernet.generate_key()
    print(base64.b64encode(key).decode("utf-8"))


async def run_command(
    command: str, settings: Settings, user_agent: Optional[UserAgent] = None
) -> int:
    metrics_client = await create_metrics_client(
        settings.metrics_backend,
        settings.statsd_host,
        settings.statsd_port,
        debug=settings.debug,
    )

    try:
        if command in ("login", "logout") and user_agent is None:
            user_agent = loopback_user_agent(settings)

        async with SpidClient(
            settings, user_agent=user_agent, metrics_client=metrics_client
        ) as client:
            if command == "login":
                await client.authorize()
                print(json.dumps(credential_status(client), indent=2))
            elif command == "logout":
                await client.logout()
            elif command == "soft-logout":
                await client.soft_logout()
            elif command == "refresh":
                await client.refresh()
                print(json.dumps(credential_status(client), indent=2))
            elif command == "client-token":
                await client.authorize_client()
                print(json.dumps(credential_status(client), indent=2))
            elif command == "me":
                response = await client.get_me()
                print_response(response)
                if not response.ok:
                    return 1
            elif command == "status":
                print(json.dumps(credential_status(client), indent=2))
    except SpidError as e:
        logger.error("%s failed: %s: %s", command, type(e).__name__, e)
        return 1
    finally:
        await metrics_client.close()

    return 0


async def realMain() -> int:
    parser = argparse.ArgumentParser(prog="spid", description="SPiD client")

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log requests and responses (secrets are masked).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    _ = subparsers.add_parser("login", help="Log in through the browser")
    _ = subparsers.add_parser("logout", help="Log out at the provider and locally")
    _ = subparsers.add_parser(
        "soft-logout", help="Forget the stored credential without contacting SPiD"
    )
    _ = subparsers.add_parser("refresh", help="Refresh the stored credential")
    _ = subparsers.add_parser(
        "client-token", help="Obtain an app-level client credential"
    )
    _ = subparsers.add_parser("me", help="Fetch the logged in user")
    _ = subparsers.add_parser("status", help="Show the stored credential status")
    _ = subparsers.add_parser("gen-crypto", help="Generate an encryption key")

    args = vars(parser.parse_args())
    command: str = args.get("command", "")
    debug: bool = args.get("debug", False)

    configure_logging(debug)

    if command == "gen-crypto":
        await genCryptoKey()
        return 0

    settings = Settings()  # type: ignore
    if debug:
        settings = settings.model_copy(update={"debug": True})
    configure_sentry(settings)

    return await run_command(command, settings)


def main() -> None:
    raise SystemExit(asyncio.run(realMain()))


if __name__ == "__main__":
    main()
