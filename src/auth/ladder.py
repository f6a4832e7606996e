"""
Credential fallback ladder.

The exchange's auth mode depends on off-chain account setup that cannot
be queried up front, so credential derivation is tried under a fixed,
ranked list of (signature type, L1 auth address) combinations until one
yields credentials that pass a signed balance-allowance check.
"""

import time
from typing import Callable, Optional, Sequence

from py_clob_client.clob_types import AssetType
from py_clob_client.endpoints import GET_BALANCE_ALLOWANCE

from ..clients.clob_client import ApiResponse, CLOBClient
from ..utils.logger import AuthEventLogger, get_logger
from .context import AuthContext, SignedRequest
from .errors import TransportError
from .identity import build_l1_headers, resolve_auth_address, resolve_identity
from .models import AttemptResult, Credentials, FallbackAttempt, SignatureType
from .secret_codec import build_signed_path

logger = get_logger("auth.ladder")

FALLBACK_LADDER: tuple[FallbackAttempt, ...] = (
    FallbackAttempt(SignatureType.EOA, False, "A) EOA + signer auth"),
    FallbackAttempt(SignatureType.SAFE, False, "B) Safe + signer auth"),
    FallbackAttempt(SignatureType.SAFE, True, "C) Safe + effective auth"),
    FallbackAttempt(SignatureType.PROXY, False, "D) Proxy + signer auth"),
    FallbackAttempt(SignatureType.PROXY, True, "E) Proxy + effective auth"),
)

INVALID_L1_HEADERS = "invalid l1 request headers"
COULD_NOT_CREATE_KEY = "could not create api key"

ERROR_WALLET_NOT_TRADED = "Could not create api key (wallet needs to trade first)"
ERROR_NO_CREDENTIALS = "No credentials returned from API"
ERROR_VERIFICATION_FAILED = "Credentials failed verification"


def _response_text(response: ApiResponse) -> str:
    parts = [response.error or "", str(response.data) if response.data is not None else ""]
    return " ".join(parts).lower()


def is_invalid_l1_headers(response: ApiResponse) -> bool:
    """401 'Invalid L1 Request headers': wrong signing for this rung only."""
    return response.status == 401 and INVALID_L1_HEADERS in _response_text(response)


def is_could_not_create_key(response: ApiResponse) -> bool:
    """400 'Could not create api key': wallet has likely never traded."""
    return response.status == 400 and COULD_NOT_CREATE_KEY in _response_text(response)


def all_wallet_not_activated(results: Sequence[AttemptResult]) -> bool:
    """True when every rung failed because the key could not be created."""
    return bool(results) and all(
        not r.success and r.status_code == 400 and r.error == ERROR_WALLET_NOT_TRADED
        for r in results
    )


async def verify_credentials(
    client: CLOBClient,
    context: AuthContext,
    credentials: Credentials,
    address: str,
    signature_type: SignatureType
) -> tuple[bool, Optional[int], Optional[str], SignedRequest]:
    """
    Signed GET /balance-allowance with the given credentials.

    Returns:
        (accepted, http status, error, SignedRequest)
    """
    signed_path, _ = build_signed_path(
        GET_BALANCE_ALLOWANCE,
        {"asset_type": AssetType.COLLATERAL, "signature_type": int(signature_type)},
    )
    signed = context.sign(credentials, address, "GET", signed_path)
    response = await client.get_balance_allowance(signed_path, signed.headers)

    if response.status in (401, 403):
        return False, response.status, response.error or ERROR_VERIFICATION_FAILED, signed
    # 400 on this endpoint means the signature was accepted but params/funds were not
    if response.ok or response.status == 400:
        return True, response.status, None, signed
    return False, response.status, response.error or f"HTTP {response.status}", signed


class FallbackLadder:
    """
    Runs the fallback ladder for one private key.

    Rungs run strictly in order and stop at the first verified success.
    The winning credentials are cached on the AuthContext.
    """

    def __init__(
        self,
        client: CLOBClient,
        context: AuthContext,
        chain_id: int = 137,
        events: Optional[AuthEventLogger] = None,
        debug: bool = False,
        ladder: Sequence[FallbackAttempt] = FALLBACK_LADDER,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.context = context
        self.chain_id = chain_id
        self.events = events or AuthEventLogger()
        self.debug = debug
        self.ladder = tuple(ladder)
        self.clock = clock
        self.last_results: list[AttemptResult] = []

    async def run(
        self,
        private_key: str,
        funder_address: Optional[str] = None,
        operator_override: Optional[str] = None
    ) -> list[AttemptResult]:
        """
        Try each rung until one works.

        Returns:
            AttemptResult per rung tried, in order; the last one is the
            success if any rung succeeded
        """
        results: list[AttemptResult] = []
        total = len(self.ladder)

        for index, attempt in enumerate(self.ladder, start=1):
            identity = resolve_identity(
                private_key,
                attempt.signature_type,
                funder_address,
                operator_override,
                log_override=False,
            )
            auth_address = resolve_auth_address(identity, attempt.use_effective_address_for_auth)
            self.events.ladder_attempt(
                index, total, attempt.label, int(attempt.signature_type),
                auth_address, identity.signer_address
            )

            result = await self._try_rung(attempt, private_key, auth_address)
            results.append(result)
            self.events.ladder_result(attempt.label, result.success, result.status_code, result.error)

            if result.success:
                self.context.cache_credentials(result.credentials, result.auth_address)
                break

        self.last_results = results
        if not any(r.success for r in results):
            log_failure_summary(results, self.debug)
        return results

    async def _try_rung(
        self,
        attempt: FallbackAttempt,
        private_key: str,
        auth_address: str
    ) -> AttemptResult:
        def failed(error: str, status: Optional[int]) -> AttemptResult:
            return AttemptResult(
                success=False,
                label=attempt.label,
                signature_type=attempt.signature_type,
                used_effective_address=attempt.use_effective_address_for_auth,
                auth_address=auth_address,
                error=error,
                status_code=status,
            )

        try:
            credentials, status, error = await self.obtain_credentials(private_key, auth_address)
            if credentials is None:
                return failed(error, status)

            accepted, status, error, signed = await verify_credentials(
                self.client, self.context, credentials, auth_address, attempt.signature_type
            )
        except TransportError as e:
            # A network blip fails this rung only; the ladder moves on
            return failed(f"network: {e.code}", None)

        if not accepted:
            return failed(ERROR_VERIFICATION_FAILED if status in (401, 403) else error, status)

        return AttemptResult(
            success=True,
            label=attempt.label,
            credentials=credentials,
            signature_type=attempt.signature_type,
            used_effective_address=attempt.use_effective_address_for_auth,
            auth_address=auth_address,
            status_code=status,
            secret_decoding=signed.secret_decoding,
            signature_encoding=signed.signature_encoding,
        )

    async def obtain_credentials(
        self,
        private_key: str,
        auth_address: str
    ) -> tuple[Optional[Credentials], Optional[int], Optional[str]]:
        """Derive, falling back to create. Returns (creds, status, error)."""
        derived = await self.client.derive_api_key(
            build_l1_headers(private_key, self.chain_id, auth_address, int(self.clock()))
        )
        if derived.ok:
            credentials = Credentials.from_api_response(derived.data)
            if credentials:
                return credentials, derived.status, None
        elif is_invalid_l1_headers(derived):
            # Signing is wrong for this rung; creating would fail the same way
            return None, 401, derived.error or "Invalid L1 Request headers"

        created = await self.client.create_api_key(
            build_l1_headers(private_key, self.chain_id, auth_address, int(self.clock()))
        )
        if is_could_not_create_key(created):
            return None, 400, ERROR_WALLET_NOT_TRADED
        if not created.ok:
            return None, created.status, created.error or f"HTTP {created.status}"

        credentials = Credentials.from_api_response(created.data)
        if credentials is None:
            return None, created.status, ERROR_NO_CREDENTIALS
        return credentials, created.status, None


def log_failure_summary(results: Sequence[AttemptResult], debug: bool = False) -> None:
    """Compact summary always; per-rung detail only in debug mode."""
    failed = [r for r in results if not r.success]
    last_error = results[-1].error if results else "unknown"
    logger.error(
        f"All {len(failed)} credential derivation attempts failed. Last error: {last_error}",
        extra={"event": "ladder_exhausted", "attempts": len(results)}
    )

    if all_wallet_not_activated(results):
        logger.error(
            "Every attempt returned 'could not create api key': the wallet has "
            "likely never traded on Polymarket",
            extra={"event": "ladder_exhausted", "cause": "WALLET_NOT_ACTIVATED"}
        )
    elif any(r.status_code in (401, 403) and r.error == ERROR_VERIFICATION_FAILED for r in results):
        logger.warning(
            "Credentials were issued but rejected: check POLYMARKET_SIGNATURE_TYPE "
            "and POLYMARKET_PROXY_ADDRESS"
        )

    if not debug:
        return

    for result in results:
        status = f" [{result.status_code}]" if result.status_code else ""
        logger.info(
            f"{result.label}{status}: {result.error or 'unknown'}",
            extra={
                "event": "ladder_attempt_detail",
                "auth_address": result.auth_address,
                "signature_type": int(result.signature_type) if result.signature_type is not None else None,
            }
        )
