"""
Preflight verification of CLOB credentials.

One signed, side-effect-free GET /balance-allowance per cycle, preceded
by an unauthenticated connectivity check. Results are classified and a
backoff gate throttles how often checks actually run.
"""

import asyncio
import logging
import random
import re
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from py_clob_client.clob_types import AssetType
from py_clob_client.endpoints import GET_BALANCE_ALLOWANCE

from ..clients.clob_client import CLOBClient
from ..utils.logger import AuthEventLogger, get_logger
from .context import AuthContext
from .errors import TransportError
from .identity import check_configured_key_matches
from .models import (
    AuthFailureReason,
    BackoffState,
    Credentials,
    Identity,
    PreflightResult,
    PreflightStatus,
    SecretDecoding,
    SignatureType,
)
from .rate_limiter import (
    AuthFailureRateLimiter,
    FailureKey,
    format_summary,
    get_auth_failure_rate_limiter,
)
from .secret_codec import (
    build_signed_path,
    detect_secret_mode,
    format_api_key_id,
    secret_digest,
)

logger = get_logger("auth.preflight")

CONNECTIVITY_MAX_TRIES = 5
CONNECTIVITY_BACKOFF_BASE_MS = 500
CONNECTIVITY_JITTER = 0.2
ERROR_TRUNCATE = 300

_INVALID_ASSET_TYPE = re.compile(r"invalid asset type", re.IGNORECASE)
_INSUFFICIENT_FUNDS = re.compile(r"not enough balance|insufficient balance|allowance", re.IGNORECASE)
_NETWORK_HINT = re.compile(r"timeout|timed out|econnreset|network", re.IGNORECASE)


class PreflightIssue(str, Enum):
    """Coarse category of a preflight problem, used for operator hints."""
    AUTH = "AUTH"
    PARAM = "PARAM"
    FUNDS = "FUNDS"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


PREFLIGHT_HINTS = {
    PreflightIssue.AUTH: "Auth failed: verify API key/secret/passphrase, signature_type and POLY_ADDRESS.",
    PreflightIssue.PARAM: "Invalid params: use asset_type=COLLATERAL or asset_type=CONDITIONAL&token_id=...",
    PreflightIssue.FUNDS: "Insufficient balance/allowance: top up collateral or approve spending.",
    PreflightIssue.NETWORK: "Network issue: retry or check connectivity.",
}


class VerifierState(str, Enum):
    IDLE = "IDLE"
    CHECKING = "CHECKING"


class Connectivity(str, Enum):
    OK = "ok"
    TRANSIENT = "transient"
    FAIL = "fail"


def _stringify(data: Any) -> str:
    if data is None:
        return ""
    return data if isinstance(data, str) else str(data)


def classify_preflight_issue(
    status: Optional[int] = None,
    code: Optional[str] = None,
    message: Optional[str] = None,
    data: Any = None
) -> PreflightIssue:
    """Categorize a preflight failure from status, transport code and text."""
    if status in (401, 403):
        return PreflightIssue.AUTH
    combined = f"{message or ''} {_stringify(data)}".strip()
    if status == 400 and _INVALID_ASSET_TYPE.search(combined):
        return PreflightIssue.PARAM
    if status == 400 and _INSUFFICIENT_FUNDS.search(combined):
        return PreflightIssue.FUNDS
    if (code and code in TransportError.TRANSIENT_CODES) or _NETWORK_HINT.search(combined):
        return PreflightIssue.NETWORK
    return PreflightIssue.UNKNOWN


def classify_auth_failure(
    configured_public_key: Optional[str],
    derived_signer_address: Optional[str],
    signature_type: Optional[int],
    private_key_present: bool,
    secret_format: SecretDecoding,
    secret_decoding_used: SecretDecoding,
    expected_body_included: bool,
    body_included: bool,
    expected_query_present: bool,
    path_includes_query: bool
) -> AuthFailureReason:
    """
    Most likely reason a signed request got 401/403.

    Checked in order: address mismatch, proxy signature type with a raw
    key, secret decoding, message canonicalization, else the server simply
    rejected the credentials.
    """
    if (
        configured_public_key
        and derived_signer_address
        and not check_configured_key_matches(configured_public_key, derived_signer_address)
    ):
        return AuthFailureReason.MISMATCHED_ADDRESS
    if signature_type == SignatureType.PROXY and private_key_present:
        return AuthFailureReason.WRONG_SIGNATURE_TYPE
    if secret_format == SecretDecoding.BASE64URL and secret_decoding_used != SecretDecoding.BASE64URL:
        return AuthFailureReason.SECRET_ENCODING
    if (expected_body_included and not body_included) or (expected_query_present and not path_includes_query):
        return AuthFailureReason.MESSAGE_CANONICALIZATION
    return AuthFailureReason.SERVER_REJECTED_CREDS


class PreflightVerifier:
    """
    Runs preflight checks behind a backoff gate.

    check() returns None when the gate is closed or connectivity is
    inconclusive; callers treat None as "try again later", not failure.
    """

    def __init__(
        self,
        client: CLOBClient,
        context: AuthContext,
        backoff: Optional[BackoffState] = None,
        configured_public_key: Optional[str] = None,
        private_key_present: bool = True,
        rate_limiter: Optional[AuthFailureRateLimiter] = None,
        events: Optional[AuthEventLogger] = None,
        connectivity_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.client = client
        self.context = context
        self.backoff = backoff or BackoffState()
        self.configured_public_key = configured_public_key
        self.private_key_present = private_key_present
        self.rate_limiter = rate_limiter or get_auth_failure_rate_limiter()
        self.events = events or AuthEventLogger()
        self.connectivity_timeout_seconds = connectivity_timeout_seconds
        self.clock = clock
        self.sleep = sleep

        self.state = VerifierState.IDLE
        self.last_result: Optional[PreflightResult] = None

    def _now_ms(self) -> float:
        return self.clock() * 1000

    async def check_connectivity(self) -> Connectivity:
        """
        Unauthenticated GET /markets. Anything but a 200 is a hard failure.

        Retries only transient transport errors, with exponential backoff
        (500ms base, up to 20% jitter) and at most CONNECTIVITY_MAX_TRIES.
        """
        for attempt in range(1, CONNECTIVITY_MAX_TRIES + 1):
            try:
                response = await self.client.get_markets_status(timeout_seconds=self.connectivity_timeout_seconds)
            except TransportError as e:
                if not e.is_transient:
                    logger.error(
                        f"Connectivity check failed: {e.code}",
                        extra={"event": "connectivity_fail", "code": e.code, "attempt": attempt}
                    )
                    return Connectivity.FAIL
                logger.warning(
                    f"Connectivity check transient error: {e.code}",
                    extra={"event": "connectivity_retry", "code": e.code, "attempt": attempt}
                )
                if attempt < CONNECTIVITY_MAX_TRIES:
                    delay_ms = CONNECTIVITY_BACKOFF_BASE_MS * 2 ** (attempt - 1)
                    delay_ms += random.uniform(0, delay_ms * CONNECTIVITY_JITTER)
                    await self.sleep(delay_ms / 1000)
                continue

            if response.status != 200:
                logger.error(
                    f"Connectivity check failed: HTTP {response.status}",
                    extra={"event": "connectivity_fail", "http_status": response.status, "attempt": attempt}
                )
                return Connectivity.FAIL
            return Connectivity.OK
        return Connectivity.TRANSIENT

    async def check(
        self,
        credentials: Credentials,
        identity: Identity,
        force: bool = False
    ) -> Optional[PreflightResult]:
        """
        Run one preflight cycle.

        Args:
            credentials: Credentials to verify
            identity: Wallet identity
            force: Ignore the backoff gate (operator-triggered checks)

        Returns:
            PreflightResult, or None if skipped or inconclusive
        """
        now = self._now_ms()
        if not force and self.backoff.should_skip(now):
            return None
        self.backoff.record_attempt(now)

        self.state = VerifierState.CHECKING
        try:
            result = await self._run(credentials, identity)
        finally:
            self.state = VerifierState.IDLE

        if result is not None:
            self.last_result = result
        return result

    async def _run(self, credentials: Credentials, identity: Identity) -> Optional[PreflightResult]:
        connectivity = await self.check_connectivity()
        if connectivity is Connectivity.TRANSIENT:
            self.backoff.on_failure()
            return None
        if connectivity is Connectivity.FAIL:
            self.backoff.on_failure()
            return PreflightResult(
                ok=False,
                status=PreflightStatus.NETWORK_FAIL,
                message="connectivity check failed",
            )

        signature_type = self.context.signature_type_for(identity.signature_type)
        signed_path, keys = build_signed_path(
            GET_BALANCE_ALLOWANCE,
            {"asset_type": AssetType.COLLATERAL, "signature_type": int(signature_type)},
        )
        address = self.context.l2_address(identity)
        signed = self.context.sign(credentials, address, "GET", signed_path)
        logger.debug(
            "Preflight signed request",
            extra={
                "event": "preflight_sign",
                "path_signed": signed_path,
                "params_keys": ",".join(keys) or "none",
                "secret_decoding": signed.secret_decoding.value,
                "signature_encoding": signed.signature_encoding.value,
                "msg_hash": signed.message_digest,
            }
        )

        modes = {
            "secret_decoding": signed.secret_decoding,
            "signature_encoding": signed.signature_encoding,
            "signature_type": signature_type,
        }

        try:
            response = await self.client.get_balance_allowance(signed_path, signed.headers)
        except TransportError as e:
            self.backoff.on_failure()
            if e.is_transient:
                result = PreflightResult(
                    ok=False, status=PreflightStatus.NETWORK_FAIL, message=str(e), **modes
                )
                self.events.preflight_result(result.status.value, None, message=e.code, level=logging.WARNING)
                return result
            result = PreflightResult(
                ok=False, status=PreflightStatus.UNKNOWN_FAIL, message=str(e), **modes
            )
            self.events.preflight_result(result.status.value, None, message=e.code, level=logging.ERROR)
            return result

        status = response.status
        message = (response.error or "")[:ERROR_TRUNCATE] or None

        if status == 200:
            self.backoff.on_success()
            self.context.record_verification_success()
            result = PreflightResult(ok=True, status=PreflightStatus.OK, http_status=status, **modes)
            self.events.preflight_result(result.status.value, status)
            return result

        if status in (401, 403):
            self.backoff.on_failure()
            reason = classify_auth_failure(
                configured_public_key=self.configured_public_key,
                derived_signer_address=identity.signer_address,
                signature_type=signature_type,
                private_key_present=self.private_key_present,
                secret_format=detect_secret_mode(credentials.secret),
                secret_decoding_used=signed.secret_decoding,
                expected_body_included=False,
                body_included=False,
                expected_query_present=bool(keys),
                path_includes_query="?" in signed.path,
            )
            result = PreflightResult(
                ok=False,
                status=PreflightStatus.AUTH_FAIL,
                http_status=status,
                reason=reason,
                message=message,
                **modes,
            )
            self._log_auth_failure(result, credentials, identity, address, signed.message_digest)
            return result

        if status >= 500:
            self.backoff.on_failure()
            result = PreflightResult(
                ok=False, status=PreflightStatus.SERVER_ERROR, http_status=status, message=message, **modes
            )
            self.events.preflight_result(result.status.value, status, message=message, level=logging.WARNING)
            return result

        if 400 <= status < 500:
            # The signature was accepted; only the request shape or funds were not
            issue = classify_preflight_issue(status, message=message, data=response.data)
            self.backoff.on_success()
            self.context.record_verification_success()
            preflight_status = PreflightStatus.FUNDS_FAIL if issue is PreflightIssue.FUNDS else PreflightStatus.PARAM_FAIL
            result = PreflightResult(
                ok=True, status=preflight_status, http_status=status, message=message, **modes
            )
            self.events.preflight_result(result.status.value, status, message=message, level=logging.WARNING)
            self._log_hint(issue)
            return result

        self.backoff.on_failure()
        result = PreflightResult(
            ok=False, status=PreflightStatus.UNKNOWN_FAIL, http_status=status, message=message, **modes
        )
        self.events.preflight_result(result.status.value, status, message=message, level=logging.ERROR)
        return result

    def _log_auth_failure(
        self,
        result: PreflightResult,
        credentials: Credentials,
        identity: Identity,
        address: str,
        msg_hash: str
    ) -> None:
        key = FailureKey(
            endpoint=GET_BALANCE_ALLOWANCE,
            status=result.http_status,
            signer_address=identity.signer_address,
            signature_type=int(result.signature_type),
        )
        decision = self.rate_limiter.should_log(key)
        if not decision.log_full:
            self.events.preflight_suppressed(format_summary(key, decision), decision.suppressed_count)
            return

        self.events.preflight_result(
            result.status.value,
            result.http_status,
            reason=result.reason.value if result.reason else None,
            message=result.message,
            level=logging.WARNING,
        )
        logger.warning(
            f"Preflight auth failure details (previously suppressed {decision.suppressed_count})",
            extra={
                "event": "preflight_auth_detail",
                "address": address,
                "signer_address": identity.signer_address,
                "signature_type": int(result.signature_type),
                "funder": identity.funder_address or "none",
                "secret_decoding": result.secret_decoding.value,
                "signature_encoding": result.signature_encoding.value,
                "msg_hash": msg_hash,
                "key_id": format_api_key_id(credentials.key),
                "secret_hash": secret_digest(credentials.secret, result.secret_decoding),
                "next_full_log_minutes": decision.next_full_log_minutes,
            }
        )
        self._log_hint(PreflightIssue.AUTH)

    def _log_hint(self, issue: PreflightIssue) -> None:
        hint = PREFLIGHT_HINTS.get(issue)
        if hint:
            logger.warning(hint, extra={"event": "preflight_hint", "issue": issue.value})
