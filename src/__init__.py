"""
Polymarket CLOB Auth Preflight

Decides whether a Polymarket trading bot may run live by negotiating
and verifying CLOB API credentials.

Entry point: python -m src.main

Key Modules:
- src.auth.secret_codec: HMAC request signing under selectable encodings
- src.auth.identity: Signer/effective address resolution and L1 headers
- src.auth.ladder: Credential fallback ladder
- src.auth.preflight: Preflight verification with backoff
- src.auth.matrix: Exhaustive auth matrix probe
- src.auth.diagnostics: Root-cause diagnosis of auth failures
- src.auth.rate_limiter: Rate limiting of repeated failure logs
- src.auth.service: AuthService entry point
- src.clients.clob_client: Async HTTP client for CLOB auth endpoints
"""
