"""
Authentication service.

Single entry point for the auth pipeline: resolve the wallet identity,
obtain verified credentials (explicit keys, then the fallback ladder,
then optionally the matrix probe), run preflight checks, and expose
whether live trading is allowed. Any auth problem leaves the bot in
detect-only mode.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from ..clients.clob_client import CLOBClient
from ..config import Config
from ..utils.logger import AuthEventLogger, get_logger
from .context import AuthContext
from .diagnostics import (
    AuthDiagnostic,
    AuthFailureContext,
    diagnose_auth_failure,
    log_auth_diagnostic,
)
from .errors import TransportError
from .identity import enforce_configured_key, parse_signature_type, resolve_identity
from .ladder import (
    ERROR_VERIFICATION_FAILED,
    ERROR_WALLET_NOT_TRADED,
    FallbackLadder,
    all_wallet_not_activated,
    verify_credentials,
)
from .matrix import MatrixCandidates, MatrixProber, MatrixResult
from .models import (
    AttemptResult,
    BackoffState,
    CredentialSource,
    Credentials,
    Identity,
    PreflightResult,
    PreflightStatus,
    SignatureType,
)
from .preflight import Connectivity, PreflightVerifier
from .rate_limiter import AuthFailureRateLimiter
from .story import AuthStory

logger = get_logger("auth")


@dataclass
class AuthOutcome:
    """Result of authenticate()."""
    success: bool
    credentials: Optional[Credentials] = None
    error: Optional[str] = None
    source: Optional[CredentialSource] = None
    attempts: list[AttemptResult] = field(default_factory=list)
    diagnostic: Optional[AuthDiagnostic] = None


class AuthService:
    """
    Orchestrates identity, credentials and verification for one wallet.

    Configuration errors (bad key, address mismatch) raise from
    resolve_identity(); everything else is returned as a result.
    """

    def __init__(
        self,
        config: Config,
        client: CLOBClient,
        rate_limiter: Optional[AuthFailureRateLimiter] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config
        self.client = client
        self.events = AuthEventLogger()
        self.context = AuthContext()
        self.story = AuthStory()
        self.identity: Optional[Identity] = None
        self.derived_credentials: Optional[Credentials] = None
        self._auth_ok = False
        self.clock = clock

        creds = config.credentials
        self.explicit_credentials = (
            Credentials(creds.api_key, creds.api_secret, creds.api_passphrase)
            if creds.has_explicit else None
        )

        self.rate_limiter = rate_limiter or AuthFailureRateLimiter(
            initial_cooldown_ms=config.rate_limit.initial_cooldown_ms,
            max_cooldown_ms=config.rate_limit.max_cooldown_ms,
            multiplier=config.rate_limit.multiplier,
            clock=clock,
        )
        self.ladder = FallbackLadder(
            client,
            self.context,
            chain_id=config.clob.chain_id,
            events=self.events,
            debug=config.logging.debug_auth,
            clock=clock,
        )
        self.verifier = PreflightVerifier(
            client,
            self.context,
            backoff=BackoffState(config.preflight.backoff_base_ms, config.preflight.backoff_max_ms),
            configured_public_key=config.wallet.public_key,
            private_key_present=bool(config.wallet.private_key),
            rate_limiter=self.rate_limiter,
            events=self.events,
            connectivity_timeout_seconds=config.clob.timeout_seconds,
            clock=clock,
            sleep=sleep,
        )
        self.matrix = MatrixProber(
            client,
            self.context,
            candidates=MatrixCandidates.from_config(config.matrix),
            endpoint=config.matrix.endpoint,
            enabled=config.matrix.enabled,
            backoff=BackoffState(config.preflight.backoff_base_ms, config.preflight.backoff_max_ms),
            events=self.events,
            clock=clock,
        )
        self.auth_backoff = BackoffState(config.preflight.backoff_base_ms, config.preflight.backoff_max_ms)

    @property
    def trading_allowed(self) -> bool:
        """Live trading requires verified auth and simulation mode off."""
        return self._auth_ok and not self.config.risk.simulation_mode

    @property
    def auth_ok(self) -> bool:
        return self._auth_ok

    def _configured_signature_type(self) -> SignatureType:
        raw = self.config.wallet.signature_type
        sig_type = parse_signature_type(raw)
        if raw and sig_type is None:
            raise ValueError(f"Invalid POLYMARKET_SIGNATURE_TYPE: {raw!r}")
        return sig_type if sig_type is not None else SignatureType.EOA

    def resolve_identity(self, signature_type: Optional[SignatureType] = None) -> Identity:
        """
        Resolve and record the wallet identity.

        Raises:
            InvalidKeyFormatError: PRIVATE_KEY is malformed
            InvalidAddressError: funder or override address is malformed
            AddressMismatchError: PUBLIC_KEY mismatch without FORCE_MISMATCH
        """
        wallet = self.config.wallet
        first = self.identity is None
        identity = resolve_identity(
            wallet.private_key,
            signature_type if signature_type is not None else self._configured_signature_type(),
            wallet.funder_address,
            wallet.address_override,
            log_override=first,
        )
        if first:
            enforce_configured_key(wallet.public_key, identity.signer_address, wallet.force_mismatch)

        self.identity = identity
        self.context.identity = identity
        self.story.set_identity(identity)
        self.events.identity_resolved(
            identity.signer_address,
            identity.effective_address,
            identity.signature_type.label,
            identity.used_override,
        )
        return identity

    async def authenticate(self) -> AuthOutcome:
        """Obtain verified credentials. Never raises for exchange/network failures."""
        if self.identity is None:
            self.resolve_identity()

        if self.context.credentials is not None:
            self._auth_ok = True
            return AuthOutcome(success=True, credentials=self.context.credentials)

        failure = AuthFailureContext(
            user_provided_keys=self.explicit_credentials is not None,
            derive_enabled=self.config.credentials.derive_enabled,
        )

        connectivity = await self.verifier.check_connectivity()
        if connectivity is not Connectivity.OK:
            failure.verification_error = f"network: connectivity check {connectivity.value}"
            return self._fail(failure, [])

        if self.explicit_credentials is not None:
            outcome = await self._try_explicit(failure)
            if outcome:
                return outcome

        attempts: list[AttemptResult] = []
        if self.config.credentials.derive_enabled:
            attempts = await self.ladder.run(
                self.config.wallet.private_key,
                self.config.wallet.funder_address,
                self.config.wallet.address_override,
            )
            for attempt in attempts:
                self.story.add_attempt("ladder", attempt.label, attempt.success, attempt.status_code, attempt.error)

            winner = next((a for a in attempts if a.success), None)
            if winner is not None:
                self.derived_credentials = winner.credentials
                self.resolve_identity(winner.signature_type)
                return self._succeed(winner.credentials, CredentialSource.DERIVED, attempts, winner.auth_address)

            failure.derive_failed = True
            failure.derive_error = (
                ERROR_WALLET_NOT_TRADED if all_wallet_not_activated(attempts)
                else (attempts[-1].error if attempts else None)
            )
            rejected = [
                a for a in attempts
                if a.status_code in (401, 403) and a.error == ERROR_VERIFICATION_FAILED
            ]
            if rejected:
                failure.verification_failed = True
                failure.verification_error = failure.verification_error or ERROR_VERIFICATION_FAILED
                failure.status = failure.status or rejected[0].status_code

        if self.matrix.enabled:
            result = await self.run_matrix_probe(connectivity_checked=True)
            if result is not None and result.ok:
                return self._succeed(
                    self.context.credentials,
                    result.mode.credential_source,
                    attempts,
                    self.context.auth_address,
                )

        return self._fail(failure, attempts)

    async def authenticate_with_backoff(self) -> Optional[AuthOutcome]:
        """
        authenticate() behind a backoff gate, for the periodic loop.

        Returns None while backing off. Repeated failures double the wait
        up to PREFLIGHT_BACKOFF_MAX_MS.
        """
        now = self.clock() * 1000
        if self.auth_backoff.should_skip(now):
            logger.debug("Authentication skipped: backing off")
            return None
        self.auth_backoff.record_attempt(now)

        outcome = await self.authenticate()
        if outcome.success:
            self.auth_backoff.on_success()
        else:
            self.auth_backoff.on_failure()
        return outcome

    def _fail(self, failure: AuthFailureContext, attempts: list[AttemptResult]) -> AuthOutcome:
        diagnostic = diagnose_auth_failure(failure)
        log_auth_diagnostic(diagnostic, logger)
        error = failure.derive_error or failure.verification_error or "Authentication failed"
        self._auth_ok = False
        self.story.finish(False, f"{diagnostic.cause.value}: {error}")
        self.story.print_summary(logger)
        return AuthOutcome(success=False, error=error, attempts=attempts, diagnostic=diagnostic)

    async def _try_explicit(self, failure: AuthFailureContext) -> Optional[AuthOutcome]:
        credentials = self.explicit_credentials
        address = self.context.l2_address(self.identity)
        network_error = False
        try:
            accepted, status, error, _ = await verify_credentials(
                self.client,
                self.context,
                credentials,
                address,
                self.context.signature_type_for(self.identity.signature_type),
            )
        except TransportError as e:
            accepted, status, error = False, None, f"network error: {e.code}"
            network_error = True

        self.story.add_attempt("explicit", "User-provided credentials", accepted, status, error)
        if accepted:
            return self._succeed(credentials, CredentialSource.EXPLICIT, [], address)

        # A transport error says nothing about the keys themselves.
        failure.verification_failed = not network_error
        failure.verification_error = error
        failure.status = status
        logger.warning(
            "User-provided API credentials failed verification",
            extra={"event": "explicit_creds_rejected", "status": status, "error": error}
        )
        return None

    def _succeed(
        self,
        credentials: Credentials,
        source: CredentialSource,
        attempts: list[AttemptResult],
        auth_address: Optional[str] = None
    ) -> AuthOutcome:
        self.context.cache_credentials(credentials, auth_address)
        self._auth_ok = True
        self.story.set_credentials(credentials, source.value)
        self.story.finish(True, f"authenticated with {source.value} credentials")
        self.story.print_summary(logger)
        return AuthOutcome(success=True, credentials=credentials, source=source, attempts=attempts)

    async def preflight(self, force: bool = False) -> Optional[PreflightResult]:
        """
        One preflight cycle against the cached credentials.

        Returns None when skipped by backoff, inconclusive, or when there
        are no credentials to check.
        """
        credentials = self.context.credentials
        if credentials is None or self.identity is None:
            logger.debug("Preflight skipped: no credentials")
            return None

        result = await self.verifier.check(credentials, self.identity, force=force)
        if result is None:
            return None

        self.story.add_attempt(
            "preflight",
            result.status.value,
            result.ok,
            result.http_status,
            result.reason.value if result.reason else result.message,
        )
        self._auth_ok = result.ok
        if result.status is PreflightStatus.AUTH_FAIL and self.context.record_verification_failure():
            logger.warning(
                "Cached credentials invalidated after repeated preflight failures",
                extra={"event": "credentials_invalidated"}
            )
        return result

    async def run_matrix_probe(self, connectivity_checked: bool = False) -> Optional[MatrixResult]:
        """Opt-in exhaustive matrix run. None when disabled, already run or unreachable."""
        if not self.matrix.enabled:
            return None
        if self.identity is None:
            self.resolve_identity()
        if not connectivity_checked and await self.verifier.check_connectivity() is not Connectivity.OK:
            logger.warning("Auth matrix skipped: CLOB unreachable", extra={"event": "matrix_skipped"})
            return None

        if self.derived_credentials is None and self.config.credentials.derive_enabled:
            self.derived_credentials = await self._derive_for_matrix()

        result = await self.matrix.run(self.identity, self.explicit_credentials, self.derived_credentials)
        if result is None:
            return None
        for row in result.rows:
            self.story.add_attempt(
                "matrix",
                f"#{row.id} sigType={int(row.signature_type)} {row.secret_decoding.value}/{row.signature_encoding.value} {row.credential_source.value}",
                row.status == "200",
                int(row.status) if row.status.isdigit() else None,
                row.error or None,
            )
        if result.ok:
            self._auth_ok = True
            self.resolve_identity(result.mode.signature_type)
        return result

    async def _derive_for_matrix(self) -> Optional[Credentials]:
        try:
            credentials, _, error = await self.ladder.obtain_credentials(
                self.config.wallet.private_key, self.identity.signer_address
            )
        except TransportError as e:
            logger.warning(f"Could not derive credentials for matrix probe: {e.code}")
            return None
        if credentials is None:
            logger.warning(f"Could not derive credentials for matrix probe: {error}")
        return credentials
