"""
HMAC request signing for CLOB L2 auth.

The exchange authenticates L2 requests with
HMAC-SHA256(secret, timestamp + METHOD + path [+ body]) rendered as
base64. Secrets are issued as base64url strings, but operators paste
them in every shape, so decoding and encoding are both selectable.
"""

import base64
import hashlib
import hmac
import re
from typing import Any, Mapping, Optional, Union
from urllib.parse import quote

from .models import Credentials, SecretDecoding, SignatureEncoding

_BASE64URL_CHARS = re.compile(r"^[A-Za-z0-9_-]+$")
_BASE64_ALNUM = re.compile(r"^[A-Za-z0-9]+$")
_NON_BASE64 = re.compile(r"[^A-Za-z0-9+/]")


def _lenient_b64decode(value: str) -> bytes:
    # Keep only alphabet characters and fix up padding so decoding never raises
    cleaned = _NON_BASE64.sub("", value)
    if len(cleaned) % 4 == 1:
        cleaned = cleaned[:-1]
    cleaned += "=" * (-len(cleaned) % 4)
    return base64.b64decode(cleaned)


def decode_secret(secret: str, mode: Union[SecretDecoding, str]) -> bytes:
    """
    Decode an API secret into HMAC key bytes.

    Decoding is not validated: a wrong mode yields garbage bytes and only
    shows up later as a rejected signature.
    """
    mode = SecretDecoding(mode)
    if mode is SecretDecoding.RAW:
        return secret.encode("utf-8")
    if mode is SecretDecoding.BASE64URL:
        normalized = secret.replace("-", "+").replace("_", "/")
        return _lenient_b64decode(normalized)
    return _lenient_b64decode(secret)


def encode_secret(raw: bytes, mode: Union[SecretDecoding, str], padded: bool = True) -> str:
    """
    Inverse of decode_secret for well-formed secrets.

    padded=False strips trailing "=", matching secrets issued without
    padding (decode_secret accepts both forms).
    """
    mode = SecretDecoding(mode)
    if mode is SecretDecoding.RAW:
        return raw.decode("utf-8")
    if mode is SecretDecoding.BASE64URL:
        encoded = base64.urlsafe_b64encode(raw).decode("ascii")
    else:
        encoded = base64.b64encode(raw).decode("ascii")
    return encoded if padded else encoded.rstrip("=")


def detect_secret_mode(secret: str) -> SecretDecoding:
    """
    Best-effort guess of how a secret is encoded.

    The guess is only a starting point; the mode that actually produces an
    accepted signature wins (see the matrix probe).
    """
    if not secret:
        return SecretDecoding.RAW

    unpadded = secret.rstrip("=")
    if unpadded and _BASE64URL_CHARS.match(unpadded):
        if "-" in unpadded or "_" in unpadded or len(unpadded) % 4 != 0:
            return SecretDecoding.BASE64URL

    if "+" in secret or "/" in secret or secret.endswith("="):
        return SecretDecoding.BASE64

    if _BASE64_ALNUM.match(secret) and len(secret) % 4 == 0:
        return SecretDecoding.BASE64

    return SecretDecoding.RAW


def build_message(
    timestamp: Union[int, str],
    method: str,
    path: str,
    body: Optional[str] = None
) -> str:
    """Canonical L2 message. The body is omitted entirely when None."""
    message = f"{timestamp}{method.upper()}{path}"
    if body is not None:
        message += body
    return message


def encode_signature(digest: bytes, encoding: Union[SignatureEncoding, str]) -> str:
    """Render an HMAC digest; base64url keeps the padding."""
    signature = base64.b64encode(digest).decode("ascii")
    if SignatureEncoding(encoding) is SignatureEncoding.BASE64URL:
        signature = signature.replace("+", "-").replace("/", "_")
    return signature


def build_signature(
    secret: str,
    mode: Union[SecretDecoding, str],
    timestamp: Union[int, str],
    method: str,
    path: str,
    body: Optional[str] = None,
    encoding: Union[SignatureEncoding, str] = SignatureEncoding.BASE64URL
) -> str:
    """
    Sign a request for L2 auth.

    Args:
        secret: API secret as issued
        mode: How to decode the secret into key bytes
        timestamp: Unix seconds, as sent in POLY_TIMESTAMP
        method: HTTP method
        path: Request path including any query string
        body: Serialized body, or None for no body
        encoding: Output encoding of the digest

    Returns:
        Signature string for POLY_SIGNATURE
    """
    key = decode_secret(secret, mode)
    message = build_message(timestamp, method, path, body)
    digest = hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()
    return encode_signature(digest, encoding)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def canonical_query(params: Optional[Mapping[str, Any]]) -> tuple[str, list[str]]:
    """
    Build a deterministic query string.

    Keys are sorted and None values dropped so the signed path and the
    path actually sent are byte-identical.

    Returns:
        (query string without '?', list of keys included)
    """
    if not params:
        return "", []
    keys = sorted(k for k, v in params.items() if v is not None)
    query = "&".join(
        f"{quote(k, safe='')}={quote(_query_value(params[k]), safe='')}"
        for k in keys
    )
    return query, keys


def build_signed_path(
    path: str,
    params: Optional[Mapping[str, Any]] = None
) -> tuple[str, list[str]]:
    """Append the canonical query to a path. Returns (signed_path, keys)."""
    query, keys = canonical_query(params)
    if not query:
        return path, keys
    return f"{path}?{query}", keys


def build_l2_headers(
    address: str,
    credentials: Credentials,
    timestamp: Union[int, str],
    method: str,
    path: str,
    body: Optional[str] = None,
    secret_decoding: Union[SecretDecoding, str] = SecretDecoding.BASE64URL,
    signature_encoding: Union[SignatureEncoding, str] = SignatureEncoding.BASE64URL
) -> dict[str, str]:
    """Headers for an L2 (API key) authenticated request."""
    signature = build_signature(
        credentials.secret,
        secret_decoding,
        timestamp,
        method,
        path,
        body,
        signature_encoding,
    )
    return {
        "POLY_ADDRESS": address,
        "POLY_SIGNATURE": signature,
        "POLY_TIMESTAMP": str(timestamp),
        "POLY_API_KEY": credentials.key,
        "POLY_PASSPHRASE": credentials.passphrase,
    }


def message_digest(
    timestamp: Union[int, str],
    method: str,
    path: str,
    body: Optional[str] = None
) -> str:
    """Short fingerprint of the signed message, safe to log."""
    message = build_message(timestamp, method, path, body)
    return hashlib.sha256(message.encode("utf-8")).hexdigest()[:12]


def secret_digest(secret: str, mode: Union[SecretDecoding, str]) -> str:
    """Short fingerprint of the decoded key bytes, safe to log."""
    return hashlib.sha256(decode_secret(secret, mode)).hexdigest()[:12]


def format_api_key_id(key: Optional[str]) -> str:
    """Loggable identifier for an API key."""
    if not key:
        return "<none>"
    if len(key) < 8:
        return f"sha256:{hashlib.sha256(key.encode('utf-8')).hexdigest()[:8]}"
    return f"...{key[-6:]}"
