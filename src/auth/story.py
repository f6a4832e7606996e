"""
Run summary of one authentication.

Collects the identity, a credential fingerprint and every attempt so the
whole negotiation can be printed as one block at the end instead of
being scattered across the log.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .models import Credentials, Identity, signature_type_label
from .secret_codec import detect_secret_mode, format_api_key_id


@dataclass
class StoryAttempt:
    stage: str
    label: str
    success: bool
    status: Optional[int] = None
    error: Optional[str] = None


@dataclass
class CredentialFingerprint:
    """Loggable description of credentials; never the secret itself."""
    key_id: str
    secret_length: int
    passphrase_length: int
    secret_encoding_guess: str

    @classmethod
    def of(cls, credentials: Credentials) -> "CredentialFingerprint":
        return cls(
            key_id=format_api_key_id(credentials.key),
            secret_length=len(credentials.secret),
            passphrase_length=len(credentials.passphrase),
            secret_encoding_guess=detect_secret_mode(credentials.secret).value,
        )


@dataclass
class AuthStory:
    identity: Optional[Identity] = None
    credential_source: Optional[str] = None
    fingerprint: Optional[CredentialFingerprint] = None
    attempts: list[StoryAttempt] = field(default_factory=list)
    success: Optional[bool] = None
    final_message: Optional[str] = None

    def set_identity(self, identity: Identity) -> None:
        self.identity = identity

    def set_credentials(self, credentials: Credentials, source: str) -> None:
        self.fingerprint = CredentialFingerprint.of(credentials)
        self.credential_source = source

    def add_attempt(
        self,
        stage: str,
        label: str,
        success: bool,
        status: Optional[int] = None,
        error: Optional[str] = None
    ) -> None:
        self.attempts.append(StoryAttempt(stage, label, success, status, error))

    def finish(self, success: bool, message: str) -> None:
        self.success = success
        self.final_message = message

    def render(self) -> str:
        lines = ["AUTH STORY"]
        if self.identity:
            lines.append(
                f"  signer={self.identity.signer_address} "
                f"effective={self.identity.effective_address} "
                f"sigType={signature_type_label(int(self.identity.signature_type))}"
                + (" (override)" if self.identity.used_override else "")
            )
        if self.fingerprint:
            fp = self.fingerprint
            lines.append(
                f"  creds[{self.credential_source}] key={fp.key_id} secret_len={fp.secret_length} "
                f"passphrase_len={fp.passphrase_length} secret_encoding={fp.secret_encoding_guess}"
            )
        for n, attempt in enumerate(self.attempts, start=1):
            outcome = "OK" if attempt.success else f"FAIL {attempt.status or '-'} {attempt.error or ''}".rstrip()
            lines.append(f"  {n}. [{attempt.stage}] {attempt.label}: {outcome}")
        if self.success is not None:
            lines.append(f"  result: {'SUCCESS' if self.success else 'FAILED'} - {self.final_message}")
        return "\n".join(lines)

    def print_summary(self, logger: logging.Logger) -> None:
        logger.log(
            logging.INFO if self.success else logging.ERROR,
            self.render(),
            extra={"event": "auth_story", "success": self.success, "attempts": len(self.attempts)}
        )
