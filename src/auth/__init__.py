# CLOB authentication and preflight
from .models import (
    SignatureType,
    SecretDecoding,
    SignatureEncoding,
    CredentialSource,
    Credentials,
    Identity,
    AuthMode,
    PreflightStatus,
    PreflightResult,
)
from .errors import AuthError, InvalidKeyFormatError, AddressMismatchError, TransportError

__all__ = [
    "SignatureType",
    "SecretDecoding",
    "SignatureEncoding",
    "CredentialSource",
    "Credentials",
    "Identity",
    "AuthMode",
    "PreflightStatus",
    "PreflightResult",
    "AuthError",
    "InvalidKeyFormatError",
    "AddressMismatchError",
    "TransportError",
]
