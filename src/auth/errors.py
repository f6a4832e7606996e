"""
Exceptions raised by the auth pipeline.

Only configuration problems are raised past a component boundary.
Transport and exchange failures are converted to classified results.
"""

from typing import Optional


class AuthError(Exception):
    """Base class for auth pipeline errors."""


class InvalidKeyFormatError(AuthError):
    """The private key could not be parsed."""


class AddressMismatchError(AuthError):
    """Configured public key does not match the key derived from PRIVATE_KEY."""

    def __init__(self, configured: str, derived: str):
        self.configured = configured
        self.derived = derived
        super().__init__(
            f"PUBLIC_KEY {configured} does not match address {derived} derived "
            f"from PRIVATE_KEY (set FORCE_MISMATCH=true to continue anyway)"
        )


class TransportError(AuthError):
    """Connection-level failure talking to the exchange."""

    TRANSIENT_CODES = frozenset({"ECONNRESET", "ETIMEDOUT"})

    def __init__(self, code: str, message: Optional[str] = None):
        self.code = code
        super().__init__(message or code)

    @property
    def is_transient(self) -> bool:
        return self.code in self.TRANSIENT_CODES


class InvalidAddressError(AuthError):
    """A configured address is not a valid 20-byte hex address."""
