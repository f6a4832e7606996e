"""
Root-cause diagnosis for authentication failures.

Maps what happened (which credentials, which stage failed, status and
message) to a fixed taxonomy of causes with remediation steps.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class AuthFailureCause(str, Enum):
    """Probable cause of an auth failure."""
    WRONG_KEY_TYPE = "WRONG_KEY_TYPE"
    WALLET_NOT_ACTIVATED = "WALLET_NOT_ACTIVATED"
    WRONG_WALLET_BINDING = "WRONG_WALLET_BINDING"
    EXPIRED_CREDENTIALS = "EXPIRED_CREDENTIALS"
    DERIVE_FAILED = "DERIVE_FAILED"
    NETWORK_ERROR = "NETWORK_ERROR"
    UNKNOWN = "UNKNOWN"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class AuthFailureContext:
    """What is known about a failed authentication."""
    user_provided_keys: bool = False
    derive_enabled: bool = False
    derive_failed: bool = False
    derive_error: Optional[str] = None
    verification_failed: bool = False
    verification_error: Optional[str] = None
    status: Optional[int] = None


@dataclass(frozen=True)
class AuthDiagnostic:
    """Diagnosis with ordered remediation steps."""
    cause: AuthFailureCause
    confidence: Confidence
    message: str
    recommendations: tuple[str, ...] = field(default_factory=tuple)


_DERIVE_CREATE_ERROR = re.compile(r"could not create|cannot create", re.IGNORECASE)
_NETWORK_ERROR = re.compile(
    r"network|timeout|timed out|connection|econnrefused|enotfound|econnreset|etimedout|unreachable|dns",
    re.IGNORECASE,
)


def diagnose_auth_failure(ctx: AuthFailureContext) -> AuthDiagnostic:
    """
    Classify an auth failure.

    Checks run in priority order so the most actionable diagnosis wins.
    Never raises; UNKNOWN is the fallback.
    """
    if ctx.user_provided_keys and ctx.verification_failed and ctx.status in (401, 403):
        error = (ctx.verification_error or "").lower()
        if "invalid" in error or "unauthorized" in error:
            return AuthDiagnostic(
                cause=AuthFailureCause.WRONG_KEY_TYPE,
                confidence=Confidence.HIGH,
                message=(
                    "User-provided API credentials are invalid. Most common cause: "
                    "using Builder API keys instead of CLOB API keys."
                ),
                recommendations=(
                    "Verify POLYMARKET_API_KEY is not a Builder API key",
                    "Builder keys are for gasless relayer transactions only",
                    "CLOB keys come from https://polymarket.com/settings/api or are derived automatically",
                    "Set CLOB_DERIVE_CREDS=true and remove POLYMARKET_API_KEY/SECRET/PASSPHRASE",
                ),
            )
        return AuthDiagnostic(
            cause=AuthFailureCause.EXPIRED_CREDENTIALS,
            confidence=Confidence.MEDIUM,
            message=(
                "User-provided API credentials failed verification. They may be "
                "expired, revoked or bound to a different wallet."
            ),
            recommendations=(
                "Check that POLYMARKET_API_KEY/SECRET/PASSPHRASE are current",
                "Verify the keys belong to the wallet of PRIVATE_KEY",
                "Regenerate keys at https://polymarket.com/settings/api",
                "Or set CLOB_DERIVE_CREDS=true and remove the explicit keys",
            ),
        )

    if ctx.derive_enabled and ctx.derive_failed and _DERIVE_CREATE_ERROR.search(ctx.derive_error or ""):
        return AuthDiagnostic(
            cause=AuthFailureCause.WALLET_NOT_ACTIVATED,
            confidence=Confidence.HIGH,
            message=(
                "API key creation failed with 'Could not create api key'. The wallet "
                "has never traded on Polymarket."
            ),
            recommendations=(
                "Connect the wallet at https://polymarket.com",
                "Make one small trade on any market",
                "Wait for the transaction to confirm",
                "Restart; credentials will be created automatically",
            ),
        )

    if ctx.user_provided_keys and ctx.verification_failed and ctx.derive_enabled and ctx.derive_failed:
        return AuthDiagnostic(
            cause=AuthFailureCause.WRONG_WALLET_BINDING,
            confidence=Confidence.MEDIUM,
            message=(
                "Both user-provided and derived credentials failed. The keys may be "
                "bound to a different wallet than PRIVATE_KEY."
            ),
            recommendations=(
                "Verify PRIVATE_KEY is the wallet that created the API keys",
                "Check PUBLIC_KEY (if set) matches the address of PRIVATE_KEY",
                "Remove POLYMARKET_API_KEY/SECRET/PASSPHRASE and rely on CLOB_DERIVE_CREDS=true",
                "Or create keys for this wallet at https://polymarket.com/settings/api",
            ),
        )

    if ctx.derive_enabled and ctx.verification_failed:
        return AuthDiagnostic(
            cause=AuthFailureCause.DERIVE_FAILED,
            confidence=Confidence.HIGH,
            message=(
                "Derived API credentials failed verification. This points at the "
                "signature type or funder configuration, or a server-side issue."
            ),
            recommendations=(
                "Check POLYMARKET_SIGNATURE_TYPE (2 for browser-login wallets)",
                "Set POLYMARKET_PROXY_ADDRESS to the Polymarket deposit address",
                "Run the auth matrix probe: CLOB_PREFLIGHT_MATRIX=true",
                "Restart to derive credentials again",
            ),
        )

    error_text = " ".join(filter(None, [ctx.verification_error, ctx.derive_error]))
    if _NETWORK_ERROR.search(error_text):
        return AuthDiagnostic(
            cause=AuthFailureCause.NETWORK_ERROR,
            confidence=Confidence.HIGH,
            message="Network connectivity issue during authentication.",
            recommendations=(
                "Check the internet connection",
                "Check that clob.polymarket.com is reachable",
                "Retry in a few minutes",
            ),
        )

    return AuthDiagnostic(
        cause=AuthFailureCause.UNKNOWN,
        confidence=Confidence.LOW,
        message="Authentication failed but the cause could not be determined.",
        recommendations=(
            "Enable the auth matrix probe: CLOB_PREFLIGHT_MATRIX=true",
            "Set DEBUG_AUTH=true for per-attempt details",
            "Verify all required environment variables are set",
        ),
    )


def log_auth_diagnostic(diagnostic: AuthDiagnostic, logger: logging.Logger) -> None:
    """Full diagnostic block at ERROR level."""
    logger.error(
        f"Auth failure diagnosis: {diagnostic.cause.value} (confidence: {diagnostic.confidence.value})",
        extra={
            "event": "auth_diagnostic",
            "cause": diagnostic.cause.value,
            "confidence": diagnostic.confidence.value,
        }
    )
    logger.error(diagnostic.message)
    for idx, recommendation in enumerate(diagnostic.recommendations, start=1):
        logger.error(f"  {idx}. {recommendation}")


def trading_blockers(auth_ok: bool, live_trading_enabled: bool) -> list[str]:
    """Reasons live trading is not running, most important first."""
    blockers = []
    if not auth_ok:
        blockers.append("Invalid or missing CLOB API credentials (see diagnostic above)")
    if not live_trading_enabled:
        blockers.append("Live trading is disabled (SIMULATION_MODE=true)")
    return blockers
