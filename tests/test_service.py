"""
Tests for the authentication service.
"""

import pytest
from unittest.mock import AsyncMock

from src.auth.diagnostics import AuthFailureCause
from src.auth.errors import AddressMismatchError, TransportError
from src.auth.ladder import ERROR_VERIFICATION_FAILED, ERROR_WALLET_NOT_TRADED
from src.auth.models import CredentialSource, PreflightStatus, SignatureType
from src.auth.service import AuthService
from src.clients.clob_client import ApiResponse, CLOBClient
from src.config import Config, CredentialConfig, MatrixConfig, RiskConfig, WalletConfig


PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
FUNDER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

CREDS_BODY = {"apiKey": "derived-key-123456", "secret": "ZGVyaXZlZC1zZWNyZXQ=", "passphrase": "pp"}
UNAUTHORIZED = ApiResponse(401, None, "Unauthorized/Invalid api key")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_config(**overrides) -> Config:
    wallet = overrides.pop("wallet", WalletConfig(private_key=PRIVATE_KEY))
    return Config(wallet=wallet, **overrides)


@pytest.fixture
def mock_clob_client():
    """Create a mock CLOB client that issues and accepts credentials."""
    client = AsyncMock(spec=CLOBClient)
    client.get_markets_status.return_value = ApiResponse(200, [])
    client.derive_api_key.return_value = ApiResponse(200, CREDS_BODY)
    client.create_api_key.return_value = ApiResponse(200, CREDS_BODY)
    client.get_balance_allowance.return_value = ApiResponse(200, {"balance": "5"})
    client.signed_get.return_value = UNAUTHORIZED
    return client


def make_service(client, **overrides) -> AuthService:
    return AuthService(make_config(**overrides), client, clock=FakeClock(), sleep=AsyncMock())


class TestResolveIdentity:
    """Tests for identity resolution through the service."""

    def test_default_is_eoa(self, mock_clob_client):
        identity = make_service(mock_clob_client).resolve_identity()
        assert identity.signer_address == SIGNER
        assert identity.signature_type == SignatureType.EOA

    def test_configured_safe_with_funder(self, mock_clob_client):
        service = make_service(mock_clob_client, wallet=WalletConfig(
            private_key=PRIVATE_KEY, funder_address=FUNDER, signature_type="2"
        ))
        identity = service.resolve_identity()
        assert identity.effective_address == FUNDER
        assert service.context.identity == identity

    def test_public_key_mismatch(self, mock_clob_client):
        service = make_service(mock_clob_client, wallet=WalletConfig(
            private_key=PRIVATE_KEY, public_key=FUNDER
        ))
        with pytest.raises(AddressMismatchError):
            service.resolve_identity()

    def test_invalid_signature_type(self, mock_clob_client):
        service = make_service(mock_clob_client, wallet=WalletConfig(
            private_key=PRIVATE_KEY, signature_type="7"
        ))
        with pytest.raises(ValueError):
            service.resolve_identity()


class TestAuthenticate:
    """Tests for credential negotiation."""

    @pytest.mark.asyncio
    async def test_explicit_credentials_accepted(self, mock_clob_client):
        service = make_service(
            mock_clob_client, credentials=CredentialConfig("user-key-123", "dXNlcg==", "pass")
        )

        outcome = await service.authenticate()

        assert outcome.success
        assert outcome.source == CredentialSource.EXPLICIT
        assert service.auth_ok
        assert not service.trading_allowed
        mock_clob_client.derive_api_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_explicit_rejected_falls_back_to_ladder(self, mock_clob_client):
        mock_clob_client.get_balance_allowance.side_effect = [UNAUTHORIZED, ApiResponse(200, {})]
        service = make_service(
            mock_clob_client, credentials=CredentialConfig("user-key-123", "dXNlcg==", "pass")
        )

        outcome = await service.authenticate()

        assert outcome.success
        assert outcome.source == CredentialSource.DERIVED
        assert outcome.credentials.key == "derived-key-123456"
        assert service.context.credentials == outcome.credentials

    @pytest.mark.asyncio
    async def test_ladder_winner_sets_signature_type(self, mock_clob_client):
        mock_clob_client.derive_api_key.side_effect = [
            ApiResponse(401, None, "Invalid L1 Request headers"),
            ApiResponse(200, CREDS_BODY),
        ]
        service = make_service(mock_clob_client, wallet=WalletConfig(
            private_key=PRIVATE_KEY, funder_address=FUNDER
        ))

        outcome = await service.authenticate()

        assert outcome.success
        assert len(outcome.attempts) == 2
        assert service.identity.signature_type == SignatureType.SAFE
        assert service.identity.effective_address == FUNDER

    @pytest.mark.asyncio
    async def test_wallet_not_activated(self, mock_clob_client):
        mock_clob_client.derive_api_key.return_value = ApiResponse(404, None, "Not found")
        mock_clob_client.create_api_key.return_value = ApiResponse(400, None, "Could not create api key")
        service = make_service(mock_clob_client)

        outcome = await service.authenticate()

        assert not outcome.success
        assert outcome.error == ERROR_WALLET_NOT_TRADED
        assert outcome.diagnostic.cause == AuthFailureCause.WALLET_NOT_ACTIVATED
        assert len(outcome.attempts) == 5
        assert not service.auth_ok
        assert not service.trading_allowed

    @pytest.mark.asyncio
    async def test_builder_keys_without_derivation(self, mock_clob_client):
        mock_clob_client.get_balance_allowance.return_value = UNAUTHORIZED
        service = make_service(
            mock_clob_client,
            credentials=CredentialConfig("builder-key-1", "YnVpbGRlcg==", "pass", derive_enabled=False),
        )

        outcome = await service.authenticate()

        assert not outcome.success
        assert outcome.diagnostic.cause == AuthFailureCause.WRONG_KEY_TYPE
        mock_clob_client.derive_api_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_cached_credentials_reused(self, mock_clob_client):
        service = make_service(mock_clob_client)
        first = await service.authenticate()
        calls = mock_clob_client.derive_api_key.call_count

        second = await service.authenticate()

        assert second.success
        assert second.credentials == first.credentials
        assert mock_clob_client.derive_api_key.call_count == calls

    @pytest.mark.asyncio
    async def test_matrix_rescues_failed_ladder(self, mock_clob_client):
        mock_clob_client.get_balance_allowance.return_value = UNAUTHORIZED
        mock_clob_client.signed_get.side_effect = [UNAUTHORIZED, ApiResponse(200, {})]
        service = make_service(
            mock_clob_client,
            matrix=MatrixConfig(enabled=True, use_derived_creds=["true"]),
        )

        outcome = await service.authenticate()

        assert outcome.success
        assert outcome.source == CredentialSource.DERIVED
        assert service.context.active_mode is not None
        assert service.matrix.completed

    @pytest.mark.asyncio
    async def test_trading_allowed_outside_simulation(self, mock_clob_client):
        service = make_service(mock_clob_client, risk=RiskConfig(simulation_mode=False))
        await service.authenticate()
        assert service.trading_allowed

    @pytest.mark.asyncio
    async def test_unreachable_clob_skips_credential_work(self, mock_clob_client):
        """No derive or signed requests when the connectivity check fails."""
        mock_clob_client.get_markets_status.side_effect = TransportError("ECONNRESET", "connection reset")
        service = make_service(
            mock_clob_client,
            credentials=CredentialConfig("user-key-123", "dXNlcg==", "pass"),
            matrix=MatrixConfig(enabled=True),
        )

        outcome = await service.authenticate()

        assert not outcome.success
        assert outcome.diagnostic.cause == AuthFailureCause.NETWORK_ERROR
        assert mock_clob_client.get_markets_status.call_count == 5
        mock_clob_client.derive_api_key.assert_not_called()
        mock_clob_client.get_balance_allowance.assert_not_called()
        mock_clob_client.signed_get.assert_not_called()
        assert not service.matrix.completed

    @pytest.mark.asyncio
    async def test_non_200_connectivity_blocks_authentication(self, mock_clob_client):
        mock_clob_client.get_markets_status.return_value = ApiResponse(503, None, "Service Unavailable")
        service = make_service(mock_clob_client)

        outcome = await service.authenticate()

        assert not outcome.success
        assert outcome.diagnostic.cause == AuthFailureCause.NETWORK_ERROR
        mock_clob_client.derive_api_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_transport_error_on_explicit_keys_is_not_a_rejection(self, mock_clob_client):
        mock_clob_client.get_balance_allowance.side_effect = TransportError("ETIMEDOUT", "timed out")
        service = make_service(
            mock_clob_client,
            credentials=CredentialConfig("user-key-123", "dXNlcg==", "pass", derive_enabled=False),
        )

        outcome = await service.authenticate()

        assert not outcome.success
        assert outcome.diagnostic.cause == AuthFailureCause.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_effective_address_rung_keeps_its_poly_address(self, mock_clob_client):
        """Credentials bound to the funder are verified and preflighted under the funder."""
        mock_clob_client.derive_api_key.side_effect = [
            ApiResponse(401, None, "Invalid L1 Request headers"),
            ApiResponse(401, None, "Invalid L1 Request headers"),
            ApiResponse(200, CREDS_BODY),
        ]

        def balance_allowance(signed_path, headers):
            return ApiResponse(200, {"balance": "5"}) if headers["POLY_ADDRESS"] == FUNDER else UNAUTHORIZED

        mock_clob_client.get_balance_allowance.side_effect = balance_allowance
        service = make_service(mock_clob_client, wallet=WalletConfig(
            private_key=PRIVATE_KEY, funder_address=FUNDER
        ))

        outcome = await service.authenticate()

        assert outcome.success
        assert outcome.attempts[-1].label.startswith("C)")
        assert service.context.auth_address == FUNDER

        result = await service.preflight()

        assert result.status == PreflightStatus.OK
        headers = mock_clob_client.get_balance_allowance.call_args.args[1]
        assert headers["POLY_ADDRESS"] == FUNDER

    @pytest.mark.asyncio
    async def test_explicit_keys_signed_with_override_address(self, mock_clob_client):
        service = make_service(
            mock_clob_client,
            wallet=WalletConfig(private_key=PRIVATE_KEY, address_override=FUNDER),
            credentials=CredentialConfig("user-key-123", "dXNlcg==", "pass"),
        )

        outcome = await service.authenticate()

        assert outcome.success
        headers = mock_clob_client.get_balance_allowance.call_args.args[1]
        assert headers["POLY_ADDRESS"] == FUNDER

    @pytest.mark.asyncio
    async def test_forbidden_rungs_count_as_rejected(self, mock_clob_client):
        mock_clob_client.get_balance_allowance.return_value = ApiResponse(403, None, "Forbidden")
        service = make_service(mock_clob_client)

        outcome = await service.authenticate()

        assert not outcome.success
        assert all(a.status_code == 403 for a in outcome.attempts)
        assert all(a.error == ERROR_VERIFICATION_FAILED for a in outcome.attempts)
        assert outcome.diagnostic.cause == AuthFailureCause.DERIVE_FAILED


class TestAuthenticateWithBackoff:
    """Tests for re-authentication from the periodic loop."""

    @pytest.mark.asyncio
    async def test_failures_back_off(self, mock_clob_client):
        mock_clob_client.derive_api_key.return_value = ApiResponse(404, None, "Not found")
        mock_clob_client.create_api_key.return_value = ApiResponse(400, None, "Could not create api key")
        service = make_service(mock_clob_client)

        first = await service.authenticate_with_backoff()
        assert not first.success
        calls = mock_clob_client.derive_api_key.call_count

        assert await service.authenticate_with_backoff() is None
        assert mock_clob_client.derive_api_key.call_count == calls

        service.clock.advance(3)
        mock_clob_client.derive_api_key.return_value = ApiResponse(200, CREDS_BODY)
        second = await service.authenticate_with_backoff()

        assert second.success
        assert service.context.credentials is not None
        assert service.auth_backoff.backoff_ms == service.auth_backoff.base_ms


class TestPreflight:
    """Tests for preflight through the service."""

    @pytest.mark.asyncio
    async def test_no_credentials(self, mock_clob_client):
        service = make_service(mock_clob_client)
        assert await service.preflight() is None

    @pytest.mark.asyncio
    async def test_ok_after_authenticate(self, mock_clob_client):
        service = make_service(mock_clob_client)
        await service.authenticate()

        result = await service.preflight()

        assert result.status == PreflightStatus.OK
        assert service.auth_ok

    @pytest.mark.asyncio
    async def test_repeated_auth_failures_drop_cached_credentials(self, mock_clob_client):
        service = make_service(mock_clob_client)
        await service.authenticate()
        mock_clob_client.get_balance_allowance.return_value = UNAUTHORIZED

        for _ in range(2):
            result = await service.preflight(force=True)
            assert result.status == PreflightStatus.AUTH_FAIL
            assert service.context.credentials is not None

        await service.preflight(force=True)

        assert service.context.credentials is None
        assert not service.auth_ok
        assert await service.preflight(force=True) is None
