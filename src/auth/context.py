"""
Per-wallet signing context.

Holds the state that every signed request depends on: the resolved
identity, the active auth mode (installed by the matrix probe) and the
last verified credentials. One context per wallet, passed explicitly.
"""

import time
from dataclasses import dataclass
from typing import Optional, Union

from .models import (
    AuthMode,
    Credentials,
    Identity,
    SecretDecoding,
    SignatureEncoding,
    SignatureType,
)
from .secret_codec import build_l2_headers, detect_secret_mode, message_digest


@dataclass(frozen=True)
class SignedRequest:
    """Headers for one request plus the signing mode actually used."""
    path: str
    headers: dict
    secret_decoding: SecretDecoding
    signature_encoding: SignatureEncoding
    message_digest: str


class AuthContext:
    """
    Signing state for one wallet.

    Cached credentials are dropped after max_post_success_failures
    consecutive verification failures.
    """

    def __init__(
        self,
        identity: Optional[Identity] = None,
        max_post_success_failures: int = 3
    ):
        self.identity = identity
        self.active_mode: Optional[AuthMode] = None
        self.credentials: Optional[Credentials] = None
        self.auth_address: Optional[str] = None
        self.max_post_success_failures = max_post_success_failures
        self._consecutive_failures = 0

    def install_mode(self, mode: AuthMode) -> None:
        """Force all subsequent signing to use mode."""
        self.active_mode = mode

    def clear_mode(self) -> None:
        self.active_mode = None

    def cache_credentials(self, credentials: Credentials, auth_address: Optional[str] = None) -> None:
        """Cache verified credentials with the POLY_ADDRESS they were verified under."""
        self.credentials = credentials
        self.auth_address = auth_address
        self._consecutive_failures = 0

    def invalidate_credentials(self) -> None:
        self.credentials = None
        self.auth_address = None
        self._consecutive_failures = 0

    def l2_address(self, identity: Optional[Identity] = None) -> str:
        """
        POLY_ADDRESS for L2 requests.

        The address the cached credentials were verified under wins, then an
        operator override, then the signer.
        """
        if self.auth_address:
            return self.auth_address
        identity = identity or self.identity
        if identity is None:
            raise ValueError("No identity resolved")
        if identity.used_override:
            return identity.effective_address
        return identity.signer_address

    def record_verification_success(self) -> None:
        self._consecutive_failures = 0

    def record_verification_failure(self) -> bool:
        """Count a failure against cached creds. Returns True if they were dropped."""
        if self.credentials is None:
            return False
        self._consecutive_failures += 1
        if self._consecutive_failures >= self.max_post_success_failures:
            self.invalidate_credentials()
            return True
        return False

    def signature_type_for(self, default: Optional[SignatureType] = None) -> SignatureType:
        """Signature type to send, preferring the active mode."""
        if self.active_mode:
            return self.active_mode.signature_type
        if default is not None:
            return default
        if self.identity:
            return self.identity.signature_type
        return SignatureType.EOA

    def resolve_modes(
        self,
        credentials: Credentials
    ) -> tuple[SecretDecoding, SignatureEncoding]:
        """Decoding/encoding pair: active mode if installed, else detection + base64url."""
        if self.active_mode:
            return self.active_mode.secret_decoding, self.active_mode.signature_encoding
        return detect_secret_mode(credentials.secret), SignatureEncoding.BASE64URL

    def sign(
        self,
        credentials: Credentials,
        address: str,
        method: str,
        path: str,
        body: Optional[str] = None,
        timestamp: Optional[int] = None,
        secret_decoding: Optional[Union[SecretDecoding, str]] = None,
        signature_encoding: Optional[Union[SignatureEncoding, str]] = None
    ) -> SignedRequest:
        """
        Sign a request for L2 auth.

        Explicit secret_decoding/signature_encoding override the context,
        which is how the matrix probe tries each cell.
        """
        default_decoding, default_encoding = self.resolve_modes(credentials)
        decoding = SecretDecoding(secret_decoding) if secret_decoding else default_decoding
        encoding = SignatureEncoding(signature_encoding) if signature_encoding else default_encoding
        if timestamp is None:
            timestamp = int(time.time())

        headers = build_l2_headers(
            address,
            credentials,
            timestamp,
            method,
            path,
            body,
            secret_decoding=decoding,
            signature_encoding=encoding,
        )
        return SignedRequest(
            path=path,
            headers=headers,
            secret_decoding=decoding,
            signature_encoding=encoding,
            message_digest=message_digest(timestamp, method, path, body),
        )
