"""
Exhaustive auth matrix probe.

Tries every combination of signature type, secret decoding, signature
encoding and credential source against a signed endpoint, stopping at
the first 200. The winning combination becomes the context's active
auth mode. Opt-in only: it makes one real request per cell.
"""

import itertools
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from py_clob_client.clob_types import AssetType
from py_clob_client.endpoints import GET_BALANCE_ALLOWANCE

from ..clients.clob_client import CLOBClient
from ..config import MatrixConfig
from ..utils.logger import AuthEventLogger, get_logger
from .context import AuthContext
from .errors import TransportError
from .identity import parse_signature_type
from .models import (
    AuthMode,
    BackoffState,
    CredentialSource,
    Credentials,
    Identity,
    SecretDecoding,
    SignatureEncoding,
    SignatureType,
)
from .secret_codec import build_signed_path

logger = get_logger("auth.matrix")

ERROR_TRUNCATE = 160
MISSING_CREDS = "missing_creds"
STATUS_NETWORK_ERROR = "error"

TABLE_HEADER = (
    "id",
    "signature_type",
    "secret_decode",
    "sig_encoding",
    "derived_creds",
    "status",
    "error",
)


@dataclass(frozen=True)
class MatrixCandidates:
    """Candidate values for each matrix dimension, in probe order."""
    signature_types: tuple[SignatureType, ...] = (SignatureType.EOA, SignatureType.SAFE)
    secret_decodings: tuple[SecretDecoding, ...] = (
        SecretDecoding.BASE64,
        SecretDecoding.BASE64URL,
        SecretDecoding.RAW,
    )
    signature_encodings: tuple[SignatureEncoding, ...] = (
        SignatureEncoding.BASE64URL,
        SignatureEncoding.BASE64,
    )
    credential_sources: tuple[CredentialSource, ...] = (
        CredentialSource.EXPLICIT,
        CredentialSource.DERIVED,
    )

    @classmethod
    def from_config(cls, config: MatrixConfig) -> "MatrixCandidates":
        """Parse the comma-separated candidate lists. Raises ValueError on bad entries."""
        signature_types = []
        for value in config.signature_types:
            sig_type = parse_signature_type(value)
            if sig_type is None:
                raise ValueError(f"Invalid matrix signature type: {value!r}")
            signature_types.append(sig_type)
        sources = []
        for value in config.use_derived_creds:
            flag = value.strip().lower()
            if flag not in ("true", "false"):
                raise ValueError(f"Invalid matrix credential flag: {value!r}")
            sources.append(CredentialSource.DERIVED if flag == "true" else CredentialSource.EXPLICIT)
        return cls(
            signature_types=tuple(signature_types),
            secret_decodings=tuple(SecretDecoding(v.lower()) for v in config.secret_decodings),
            signature_encodings=tuple(SignatureEncoding(v.lower()) for v in config.signature_encodings),
            credential_sources=tuple(sources),
        )

    @property
    def size(self) -> int:
        return (
            len(self.signature_types)
            * len(self.secret_decodings)
            * len(self.signature_encodings)
            * len(self.credential_sources)
        )

    def cells(self):
        return itertools.product(
            self.signature_types,
            self.secret_decodings,
            self.signature_encodings,
            self.credential_sources,
        )


@dataclass(frozen=True)
class MatrixRow:
    """One probed cell."""
    id: int
    signature_type: SignatureType
    secret_decoding: SecretDecoding
    signature_encoding: SignatureEncoding
    credential_source: CredentialSource
    status: str
    error: str = ""

    def as_columns(self) -> list[str]:
        return [
            str(self.id),
            str(int(self.signature_type)),
            self.secret_decoding.value,
            self.signature_encoding.value,
            "true" if self.credential_source is CredentialSource.DERIVED else "false",
            self.status,
            self.error,
        ]


@dataclass
class MatrixResult:
    ok: bool
    rows: list[MatrixRow] = field(default_factory=list)
    mode: Optional[AuthMode] = None

    @property
    def table(self) -> str:
        return format_matrix_table(self.rows)


def format_matrix_table(rows: Sequence[MatrixRow]) -> str:
    """Fixed-width table, columns separated by ' | '."""
    table = [list(TABLE_HEADER)] + [row.as_columns() for row in rows]
    widths = [max(len(line[idx]) for line in table) for idx in range(len(TABLE_HEADER))]
    return "\n".join(
        " | ".join(value.ljust(widths[idx]) for idx, value in enumerate(line)).rstrip()
        for line in table
    )


class MatrixProber:
    """
    Runs the auth matrix at most once per process unless reset().

    Has its own backoff gate, separate from the preflight verifier.
    """

    def __init__(
        self,
        client: CLOBClient,
        context: AuthContext,
        candidates: Optional[MatrixCandidates] = None,
        endpoint: str = GET_BALANCE_ALLOWANCE,
        enabled: bool = False,
        backoff: Optional[BackoffState] = None,
        events: Optional[AuthEventLogger] = None,
        clock: Callable[[], float] = time.time
    ):
        self.client = client
        self.context = context
        self.candidates = candidates or MatrixCandidates()
        self.endpoint = endpoint
        self.enabled = enabled
        self.backoff = backoff or BackoffState()
        self.events = events or AuthEventLogger()
        self.clock = clock
        self.completed = False
        self.last_result: Optional[MatrixResult] = None

    def reset(self) -> None:
        """Allow the probe to run again, dropping any installed mode."""
        self.context.clear_mode()
        self.completed = False
        self.last_result = None
        self.backoff.reset()

    async def run(
        self,
        identity: Identity,
        explicit_credentials: Optional[Credentials] = None,
        derived_credentials: Optional[Credentials] = None
    ) -> Optional[MatrixResult]:
        """
        Try every cell until one returns 200. A network error stops the
        run without marking it complete, so it is retried after backoff.

        Returns:
            MatrixResult, or None if disabled, already run, or backing off
        """
        if not self.enabled or self.completed:
            return None
        now = self.clock() * 1000
        if self.backoff.should_skip(now):
            return None
        self.backoff.record_attempt(now)

        logger.info(
            f"Starting auth matrix probe ({self.candidates.size} combinations)",
            extra={"event": "matrix_start", "endpoint": self.endpoint, "cells": self.candidates.size}
        )

        sources = {
            CredentialSource.EXPLICIT: explicit_credentials,
            CredentialSource.DERIVED: derived_credentials,
        }
        address = self.context.l2_address(identity)
        result = MatrixResult(ok=False)
        network_failed = False

        for index, (sig_type, decoding, encoding, source) in enumerate(self.candidates.cells(), start=1):
            credentials = sources.get(source)
            if credentials is None or not credentials.is_complete:
                result.rows.append(MatrixRow(index, sig_type, decoding, encoding, source, MISSING_CREDS))
                continue

            status, error = await self._try_cell(address, credentials, sig_type, decoding, encoding)
            result.rows.append(
                MatrixRow(index, sig_type, decoding, encoding, source, status, error[:ERROR_TRUNCATE])
            )
            if status == STATUS_NETWORK_ERROR:
                network_failed = True
                break
            if status == "200":
                result.ok = True
                result.mode = AuthMode(sig_type, decoding, encoding, source)
                break

        self.last_result = result
        if network_failed:
            # Inconclusive: leave the matrix runnable once the backoff expires.
            self.backoff.on_failure()
            logger.warning(
                f"Auth matrix aborted after a network error:\n{result.table}",
                extra={"event": "matrix_aborted", "cells": len(result.rows)}
            )
            return result

        self.completed = True
        if result.ok:
            self.backoff.on_success()
            self.context.install_mode(result.mode)
            self.context.cache_credentials(sources[result.mode.credential_source], address)
        else:
            self.backoff.on_failure()

        logger.info(f"Auth matrix results:\n{result.table}", extra={"event": "matrix_table"})
        self.events.matrix_complete(
            result.ok,
            len(result.rows),
            winner=_describe_mode(result.mode) if result.mode else None,
        )
        return result

    async def _try_cell(
        self,
        address: str,
        credentials: Credentials,
        signature_type: SignatureType,
        decoding: SecretDecoding,
        encoding: SignatureEncoding
    ) -> tuple[str, str]:
        """Returns (status column, error column) for one cell."""
        signed_path, _ = build_signed_path(
            self.endpoint,
            {"asset_type": AssetType.COLLATERAL, "signature_type": int(signature_type)},
        )
        signed = self.context.sign(
            credentials,
            address,
            "GET",
            signed_path,
            secret_decoding=decoding,
            signature_encoding=encoding,
        )
        try:
            response = await self.client.signed_get(signed_path, signed.headers)
        except TransportError as e:
            return STATUS_NETWORK_ERROR, f"{e.code}: {e}"
        return str(response.status), response.error or ""


def _describe_mode(mode: AuthMode) -> str:
    return (
        f"sigType={int(mode.signature_type)} secretDecode={mode.secret_decoding.value} "
        f"sigEncoding={mode.signature_encoding.value} source={mode.credential_source.value}"
    )
