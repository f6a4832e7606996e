"""
Wallet identity resolution and L1 (wallet signature) auth headers.

The signer is always the address of PRIVATE_KEY. The effective address
is where orders are attributed: the funder for Proxy/Safe wallets, or an
explicit operator override.
"""

import re
import time
from typing import Optional, Union

from eth_account import Account
from eth_account.messages import encode_typed_data
from web3 import Web3

from ..utils.logger import get_logger
from .errors import AddressMismatchError, InvalidAddressError, InvalidKeyFormatError
from .models import Identity, SignatureType

logger = get_logger("auth.identity")

_PRIVATE_KEY_PATTERN = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")

CLOB_AUTH_DOMAIN = "ClobAuthDomain"
CLOB_AUTH_VERSION = "1"
CLOB_AUTH_MESSAGE = "This message attests that I control the given wallet"


def derive_address(private_key: str) -> str:
    """Checksummed address of a hex private key (with or without 0x)."""
    key = (private_key or "").strip()
    if not _PRIVATE_KEY_PATTERN.match(key):
        raise InvalidKeyFormatError("Private key must be 32 bytes of hex (64 characters)")
    if not key.startswith("0x"):
        key = f"0x{key}"
    try:
        return Account.from_key(key).address
    except Exception as e:
        # eth_keys rejects out-of-range scalars with its own exception types
        raise InvalidKeyFormatError(f"Invalid private key: {e}") from e


def normalize_address(address: str) -> str:
    """Checksum an address, raising InvalidAddressError if malformed."""
    if not address or not Web3.is_address(address.strip()):
        raise InvalidAddressError(f"Invalid address: {address!r}")
    return Web3.to_checksum_address(address.strip())


def parse_signature_type(value: Union[int, str, None]) -> Optional[SignatureType]:
    """Parse 0/1/2 or EOA/PROXY/SAFE. Returns None when unset or unknown."""
    if value is None:
        return None
    if isinstance(value, SignatureType):
        return value
    text = str(value).strip().upper()
    if not text:
        return None
    if text in SignatureType.__members__:
        return SignatureType[text]
    try:
        return SignatureType(int(text))
    except ValueError:
        return None


def resolve_effective_address(
    derived_address: str,
    signature_type: SignatureType,
    funder_address: Optional[str] = None,
    operator_override: Optional[str] = None,
    log_override: bool = True
) -> str:
    """
    Address that trades are attributed to.

    The operator override always wins. Proxy and Safe wallets use the
    funder when one is configured. Everything else uses the signer.
    """
    if operator_override:
        override = normalize_address(operator_override)
        if log_override:
            logger.warning(
                "Using operator override for effective address",
                extra={
                    "event": "address_override",
                    "override_address": override,
                    "derived_address": derived_address,
                }
            )
        return override
    if signature_type in (SignatureType.PROXY, SignatureType.SAFE) and funder_address:
        return normalize_address(funder_address)
    return derived_address


def check_configured_key_matches(configured_public_key: Optional[str], derived_address: str) -> bool:
    """Case-insensitive address comparison. No configured key means no check."""
    if not configured_public_key:
        return True
    return configured_public_key.strip().lower() == derived_address.lower()


def enforce_configured_key(
    configured_public_key: Optional[str],
    derived_address: str,
    force_mismatch: bool = False
) -> None:
    """Raise AddressMismatchError on mismatch unless force_mismatch is set."""
    if check_configured_key_matches(configured_public_key, derived_address):
        return
    if not force_mismatch:
        raise AddressMismatchError(configured_public_key, derived_address)
    logger.warning(
        "PUBLIC_KEY does not match PRIVATE_KEY, continuing because FORCE_MISMATCH is set",
        extra={
            "event": "address_mismatch_forced",
            "configured_public_key": configured_public_key,
            "derived_address": derived_address,
        }
    )


def resolve_identity(
    private_key: str,
    signature_type: SignatureType = SignatureType.EOA,
    funder_address: Optional[str] = None,
    operator_override: Optional[str] = None,
    log_override: bool = True
) -> Identity:
    """Build the Identity for a key under a given signature type."""
    signer = derive_address(private_key)
    funder = normalize_address(funder_address) if funder_address else None
    effective = resolve_effective_address(
        signer, signature_type, funder, operator_override, log_override
    )
    return Identity(
        signer_address=signer,
        effective_address=effective,
        signature_type=signature_type,
        funder_address=funder,
        used_override=bool(operator_override),
    )


def resolve_auth_address(identity: Identity, use_effective: bool) -> str:
    """Address presented in L1 auth for a ladder rung."""
    return identity.effective_address if use_effective else identity.signer_address


def clob_auth_typed_data(chain_id: int, address: str, timestamp: int, nonce: int = 0) -> dict:
    """EIP-712 payload for the ClobAuth message."""
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
            ],
            "ClobAuth": [
                {"name": "address", "type": "address"},
                {"name": "timestamp", "type": "string"},
                {"name": "nonce", "type": "uint256"},
                {"name": "message", "type": "string"},
            ],
        },
        "primaryType": "ClobAuth",
        "domain": {
            "name": CLOB_AUTH_DOMAIN,
            "version": CLOB_AUTH_VERSION,
            "chainId": chain_id,
        },
        "message": {
            "address": address,
            "timestamp": str(timestamp),
            "nonce": nonce,
            "message": CLOB_AUTH_MESSAGE,
        },
    }


def sign_clob_auth(
    private_key: str,
    chain_id: int,
    address: str,
    timestamp: int,
    nonce: int = 0
) -> str:
    """EIP-712 ClobAuth signature as 0x-prefixed hex."""
    typed_data = clob_auth_typed_data(chain_id, address, timestamp, nonce)
    signable = encode_typed_data(full_message=typed_data)
    signed = Account.sign_message(signable, private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


def build_l1_headers(
    private_key: str,
    chain_id: int,
    address: str,
    timestamp: Optional[int] = None,
    nonce: int = 0
) -> dict[str, str]:
    """
    Headers for L1 (wallet-signed) endpoints such as derive/create API key.

    Args:
        private_key: Signing key
        chain_id: Chain ID (137 for Polygon)
        address: Address presented as POLY_ADDRESS and signed into ClobAuth
        timestamp: Unix seconds, defaults to now
        nonce: ClobAuth nonce

    Returns:
        POLY_ADDRESS, POLY_SIGNATURE, POLY_TIMESTAMP, POLY_NONCE
    """
    if timestamp is None:
        timestamp = int(time.time())
    signature = sign_clob_auth(private_key, chain_id, address, timestamp, nonce)
    return {
        "POLY_ADDRESS": address,
        "POLY_SIGNATURE": signature,
        "POLY_TIMESTAMP": str(timestamp),
        "POLY_NONCE": str(nonce),
    }
