"""
Tests for the signing context and the auth story summary.
"""

from src.auth.context import AuthContext
from src.auth.models import (
    AuthMode,
    Credentials,
    Identity,
    SecretDecoding,
    SignatureEncoding,
    SignatureType,
)
from src.auth.secret_codec import build_signature
from src.auth.story import AuthStory


SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
CREDS = Credentials("api-key-123456", "YWJj+/8=", "hunter2-pass")


class TestAuthContext:
    """Tests for AuthContext."""

    def test_default_modes_follow_detection(self):
        context = AuthContext()
        signed = context.sign(CREDS, SIGNER, "GET", "/p", timestamp=1)
        assert signed.secret_decoding == SecretDecoding.BASE64
        assert signed.signature_encoding == SignatureEncoding.BASE64URL
        assert signed.headers["POLY_SIGNATURE"] == build_signature(CREDS.secret, "base64", 1, "GET", "/p")

    def test_installed_mode_applies_to_all_signing(self):
        context = AuthContext()
        context.install_mode(AuthMode(SignatureType.SAFE, SecretDecoding.RAW, SignatureEncoding.BASE64))

        signed = context.sign(CREDS, SIGNER, "GET", "/p", timestamp=1)

        assert signed.secret_decoding == SecretDecoding.RAW
        assert signed.signature_encoding == SignatureEncoding.BASE64
        assert context.signature_type_for(SignatureType.EOA) == SignatureType.SAFE

    def test_explicit_override(self):
        context = AuthContext()
        signed = context.sign(CREDS, SIGNER, "GET", "/p", secret_decoding="raw", signature_encoding="base64")
        assert signed.secret_decoding == SecretDecoding.RAW

    def test_signature_type_fallbacks(self):
        assert AuthContext().signature_type_for() == SignatureType.EOA
        identity = Identity(SIGNER, SIGNER, SignatureType.PROXY)
        assert AuthContext(identity).signature_type_for() == SignatureType.PROXY
        assert AuthContext(identity).signature_type_for(SignatureType.SAFE) == SignatureType.SAFE

    def test_failures_invalidate_after_threshold(self):
        context = AuthContext(max_post_success_failures=2)
        assert not context.record_verification_failure()

        context.cache_credentials(CREDS)
        assert not context.record_verification_failure()
        context.record_verification_success()
        assert not context.record_verification_failure()
        assert context.record_verification_failure()
        assert context.credentials is None


    def test_l2_address_precedence(self):
        funder = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
        plain = AuthContext(Identity(SIGNER, funder, SignatureType.SAFE, funder_address=funder))
        assert plain.l2_address() == SIGNER

        overridden = AuthContext(Identity(SIGNER, funder, SignatureType.EOA, used_override=True))
        assert overridden.l2_address() == funder

        plain.cache_credentials(CREDS, funder)
        assert plain.l2_address() == funder
        plain.invalidate_credentials()
        assert plain.auth_address is None
        assert plain.l2_address() == SIGNER


class TestAuthStory:

    def test_render_never_includes_secret(self):
        story = AuthStory()
        story.set_identity(Identity(SIGNER, SIGNER, SignatureType.EOA))
        story.set_credentials(CREDS, "derived")
        story.add_attempt("ladder", "A) EOA + signer auth", False, 401, "Credentials failed verification")
        story.add_attempt("ladder", "B) Safe + signer auth", True, 200)
        story.finish(True, "authenticated with derived credentials")

        text = story.render()

        assert CREDS.secret not in text
        assert CREDS.passphrase not in text
        assert "key=...123456" in text
        assert "1. [ladder] A) EOA + signer auth: FAIL 401 Credentials failed verification" in text
        assert "2. [ladder] B) Safe + signer auth: OK" in text
        assert "result: SUCCESS" in text
