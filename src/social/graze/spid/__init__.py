"""
SPiD - OAuth2 client for the SPiD identity provider

This package authenticates an end user against SPiD, keeps the resulting
access credential alive, and mediates every API call that needs it. Callers
never handle tokens directly: requests go through the orchestrator, which
attaches the bearer token, refreshes it when the API rejects it, and resends
the requests that were waiting on the refresh.

Key Components:
- client: SpidClient, the composition root applications construct
- flow: Browser-based login, signup and logout flows
- token: Token endpoint client for the authorization code, refresh token and
  client credentials grants
- orchestrator: Credential state machine and the queue of pending API requests
- store: Credential persistence (memory, encrypted file, redis)
- transport: aiohttp transport with metrics and debug middleware
- useragent: System browser and loopback listener user agents
- model: Credential and request data types
- app: Configuration, metrics, background refresh and the `spid` CLI

Architecture Overview:
1. Authorization:
   - The user agent opens the login page
   - The redirect back carries a one-time code
   - The code is exchanged for a credential, which is persisted

2. API calls:
   - Sent immediately while the credential is valid
   - Queued in submission order while a single refresh is in flight
   - Resent with the new credential, up to a per-request retry limit

3. Credential lifetime:
   - Refreshed reactively when the API rejects it, and optionally before
     sending when it is about to expire
   - Optionally refreshed by a background task before it expires
   - Cleared locally and in storage when the provider rejects the refresh
"""
