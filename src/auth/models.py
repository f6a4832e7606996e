"""
Data model for CLOB authentication.

Credentials, identities, ladder attempts and preflight results are
immutable records; only BackoffState carries mutable timing state.
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional


class SignatureType(IntEnum):
    """Exchange signature type (wire values)."""
    EOA = 0
    PROXY = 1
    SAFE = 2

    @property
    def label(self) -> str:
        return signature_type_label(self.value)


def signature_type_label(value: int) -> str:
    """Human label for a signature type value."""
    labels = {0: "EOA", 1: "Proxy", 2: "Safe"}
    return labels.get(value, f"Unknown({value})")


class SecretDecoding(str, Enum):
    """How the API secret string is turned into HMAC key bytes."""
    RAW = "raw"
    BASE64 = "base64"
    BASE64URL = "base64url"


class SignatureEncoding(str, Enum):
    """How the HMAC digest is rendered in POLY_SIGNATURE."""
    BASE64 = "base64"
    BASE64URL = "base64url"


class CredentialSource(str, Enum):
    """Where a set of API credentials came from."""
    EXPLICIT = "explicit"
    DERIVED = "derived"


@dataclass(frozen=True)
class Credentials:
    """Exchange-issued API credential triple."""
    key: str
    secret: str
    passphrase: str

    @property
    def is_complete(self) -> bool:
        return bool(self.key and self.secret and self.passphrase)

    @classmethod
    def from_api_response(cls, data: Optional[dict]) -> Optional["Credentials"]:
        """Build credentials from a derive/create response body."""
        if not isinstance(data, dict):
            return None
        key = data.get("apiKey") or data.get("api_key") or data.get("key")
        creds = cls(
            key=key or "",
            secret=data.get("secret") or "",
            passphrase=data.get("passphrase") or "",
        )
        return creds if creds.is_complete else None

    def __repr__(self) -> str:
        return f"Credentials(key=...{self.key[-6:]}, secret=<{len(self.secret)}>, passphrase=<{len(self.passphrase)}>)"


@dataclass(frozen=True)
class Identity:
    """Signer and trading addresses for one wallet."""
    signer_address: str
    effective_address: str
    signature_type: SignatureType
    funder_address: Optional[str] = None
    used_override: bool = False


@dataclass(frozen=True)
class FallbackAttempt:
    """One rung of the credential fallback ladder."""
    signature_type: SignatureType
    use_effective_address_for_auth: bool
    label: str


@dataclass(frozen=True)
class AttemptResult:
    """Outcome of one ladder rung or matrix cell."""
    success: bool
    label: str
    credentials: Optional[Credentials] = None
    signature_type: Optional[SignatureType] = None
    used_effective_address: Optional[bool] = None
    auth_address: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    secret_decoding: Optional[SecretDecoding] = None
    signature_encoding: Optional[SignatureEncoding] = None


@dataclass(frozen=True)
class AuthMode:
    """A complete signing configuration, as discovered by the matrix probe."""
    signature_type: SignatureType
    secret_decoding: SecretDecoding
    signature_encoding: SignatureEncoding
    credential_source: CredentialSource = CredentialSource.EXPLICIT


class PreflightStatus(Enum):
    """Classification of one preflight check."""
    OK = "OK"
    AUTH_FAIL = "AUTH_FAIL"
    PARAM_FAIL = "PARAM_FAIL"
    FUNDS_FAIL = "FUNDS_FAIL"
    NETWORK_FAIL = "NETWORK_FAIL"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_FAIL = "UNKNOWN_FAIL"


class AuthFailureReason(str, Enum):
    """Probable reason a signed request was rejected with 401/403."""
    MISMATCHED_ADDRESS = "MISMATCHED_ADDRESS"
    WRONG_SIGNATURE_TYPE = "WRONG_SIGNATURE_TYPE"
    SECRET_ENCODING = "SECRET_ENCODING"
    MESSAGE_CANONICALIZATION = "MESSAGE_CANONICALIZATION"
    SERVER_REJECTED_CREDS = "SERVER_REJECTED_CREDS"


@dataclass(frozen=True)
class PreflightResult:
    """Result of a completed preflight check."""
    ok: bool
    status: PreflightStatus
    http_status: Optional[int] = None
    reason: Optional[AuthFailureReason] = None
    message: Optional[str] = None
    secret_decoding: Optional[SecretDecoding] = None
    signature_encoding: Optional[SignatureEncoding] = None
    signature_type: Optional[SignatureType] = None


@dataclass
class BackoffState:
    """
    Throttle for repeated verification attempts.

    backoff_ms doubles on failure up to max_ms and returns to base_ms on
    success. An attempt inside last_attempt_at_ms + backoff_ms is skipped.
    """
    base_ms: int = 1000
    max_ms: int = 300_000
    backoff_ms: int = 0
    last_attempt_at_ms: Optional[float] = None

    def __post_init__(self):
        if self.backoff_ms <= 0:
            self.backoff_ms = self.base_ms

    def should_skip(self, now_ms: float) -> bool:
        if self.last_attempt_at_ms is None:
            return False
        return now_ms < self.last_attempt_at_ms + self.backoff_ms

    def record_attempt(self, now_ms: float) -> None:
        self.last_attempt_at_ms = now_ms

    def on_success(self) -> None:
        self.backoff_ms = self.base_ms

    def on_failure(self) -> None:
        self.backoff_ms = min(self.backoff_ms * 2, self.max_ms)

    def reset(self) -> None:
        self.backoff_ms = self.base_ms
        self.last_attempt_at_ms = None
