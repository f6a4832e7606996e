"""
Tests for the credential fallback ladder.
"""

import pytest
from unittest.mock import AsyncMock

from src.auth.context import AuthContext
from src.auth.errors import TransportError
from src.auth.ladder import (
    ERROR_VERIFICATION_FAILED,
    ERROR_WALLET_NOT_TRADED,
    FALLBACK_LADDER,
    FallbackLadder,
    all_wallet_not_activated,
    is_could_not_create_key,
    is_invalid_l1_headers,
    verify_credentials,
)
from src.auth.models import Credentials, SignatureType
from src.clients.clob_client import ApiResponse, CLOBClient


PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
SIGNER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
FUNDER = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"

CREDS_BODY = {"apiKey": "api-key-123456", "secret": "c2VjcmV0LXNlY3JldA==", "passphrase": "pp"}

INVALID_L1 = ApiResponse(401, {"error": "Invalid L1 Request headers"}, "Invalid L1 Request headers")
CANNOT_CREATE = ApiResponse(400, {"error": "Could not create api key"}, "Could not create api key")


@pytest.fixture
def mock_clob_client():
    """Create a mock CLOB client that accepts credentials by default."""
    client = AsyncMock(spec=CLOBClient)
    client.derive_api_key.return_value = ApiResponse(200, CREDS_BODY)
    client.create_api_key.return_value = ApiResponse(200, CREDS_BODY)
    client.get_balance_allowance.return_value = ApiResponse(200, {"balance": "0"})
    return client


@pytest.fixture
def context():
    return AuthContext()


@pytest.fixture
def ladder(mock_clob_client, context):
    return FallbackLadder(mock_clob_client, context, clock=lambda: 1700000000.0)


class TestLadderShape:
    """Tests for the fixed ladder definition."""

    def test_five_rungs_in_order(self):
        assert [a.label[0] for a in FALLBACK_LADDER] == ["A", "B", "C", "D", "E"]
        assert [(a.signature_type, a.use_effective_address_for_auth) for a in FALLBACK_LADDER] == [
            (SignatureType.EOA, False),
            (SignatureType.SAFE, False),
            (SignatureType.SAFE, True),
            (SignatureType.PROXY, False),
            (SignatureType.PROXY, True),
        ]


class TestResponseClassification:

    def test_invalid_l1_headers(self):
        assert is_invalid_l1_headers(INVALID_L1)
        assert not is_invalid_l1_headers(ApiResponse(401, None, "Unauthorized"))
        assert not is_invalid_l1_headers(ApiResponse(400, None, "Invalid L1 Request headers"))

    def test_could_not_create_key(self):
        assert is_could_not_create_key(CANNOT_CREATE)
        assert not is_could_not_create_key(ApiResponse(500, None, "Could not create api key"))

    def test_all_wallet_not_activated_empty(self):
        assert not all_wallet_not_activated([])


class TestVerifyCredentials:
    """Tests for the signed balance-allowance check."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,accepted", [(200, True), (400, True), (401, False), (403, False), (500, False)])
    async def test_status_mapping(self, mock_clob_client, context, status, accepted):
        mock_clob_client.get_balance_allowance.return_value = ApiResponse(status, None, "boom")
        creds = Credentials.from_api_response(CREDS_BODY)

        ok, code, error, signed = await verify_credentials(
            mock_clob_client, context, creds, SIGNER, SignatureType.SAFE
        )

        assert ok is accepted
        if status in (401, 403):
            assert code == status
            assert error == "boom"
        assert signed.path == "/balance-allowance?asset_type=COLLATERAL&signature_type=2"

    @pytest.mark.asyncio
    async def test_rejection_without_message(self, mock_clob_client, context):
        mock_clob_client.get_balance_allowance.return_value = ApiResponse(401)
        creds = Credentials.from_api_response(CREDS_BODY)

        _, _, error, _ = await verify_credentials(
            mock_clob_client, context, creds, SIGNER, SignatureType.EOA
        )

        assert error == ERROR_VERIFICATION_FAILED

    @pytest.mark.asyncio
    async def test_sends_exact_signed_path(self, mock_clob_client, context):
        """Should send the same path string that was signed."""
        creds = Credentials.from_api_response(CREDS_BODY)
        _, _, _, signed = await verify_credentials(
            mock_clob_client, context, creds, SIGNER, SignatureType.EOA
        )
        path, headers = mock_clob_client.get_balance_allowance.call_args.args
        assert path == signed.path
        assert headers["POLY_ADDRESS"] == SIGNER


class TestFallbackLadder:
    """Tests for running the ladder."""

    @pytest.mark.asyncio
    async def test_first_rung_wins(self, ladder, mock_clob_client, context):
        results = await ladder.run(PRIVATE_KEY)

        assert len(results) == 1
        assert results[0].success
        assert results[0].signature_type == SignatureType.EOA
        assert results[0].auth_address == SIGNER
        assert context.credentials == Credentials.from_api_response(CREDS_BODY)
        mock_clob_client.create_api_key.assert_not_called()

    @pytest.mark.asyncio
    async def test_safe_effective_rung_wins(self, ladder, mock_clob_client, context):
        """Should move past invalid-L1 rungs and win on Safe + effective auth."""
        mock_clob_client.derive_api_key.side_effect = [
            INVALID_L1,
            INVALID_L1,
            ApiResponse(200, CREDS_BODY),
        ]

        results = await ladder.run(PRIVATE_KEY, funder_address=FUNDER)

        assert len(results) == 3
        assert [r.success for r in results] == [False, False, True]
        winner = results[-1]
        assert winner.signature_type == SignatureType.SAFE
        assert winner.used_effective_address is True
        assert winner.auth_address == FUNDER
        assert mock_clob_client.derive_api_key.call_count == 3
        mock_clob_client.create_api_key.assert_not_called()
        assert context.credentials is not None
        assert context.auth_address == FUNDER

    @pytest.mark.asyncio
    async def test_presents_effective_address_in_l1_headers(self, ladder, mock_clob_client):
        mock_clob_client.derive_api_key.side_effect = [INVALID_L1, INVALID_L1, ApiResponse(200, CREDS_BODY)]

        await ladder.run(PRIVATE_KEY, funder_address=FUNDER)

        addresses = [c.args[0]["POLY_ADDRESS"] for c in mock_clob_client.derive_api_key.call_args_list]
        assert addresses == [SIGNER, SIGNER, FUNDER]

    @pytest.mark.asyncio
    async def test_wallet_not_activated(self, ladder, mock_clob_client, context):
        """Should try every rung and flag the wallet as never traded."""
        mock_clob_client.derive_api_key.return_value = ApiResponse(404, None, "Not found")
        mock_clob_client.create_api_key.return_value = CANNOT_CREATE

        results = await ladder.run(PRIVATE_KEY, funder_address=FUNDER)

        assert len(results) == 5
        assert all(r.error == ERROR_WALLET_NOT_TRADED for r in results)
        assert all_wallet_not_activated(results)
        assert mock_clob_client.create_api_key.call_count == 5
        assert context.credentials is None
        assert ladder.last_results == results

    @pytest.mark.asyncio
    async def test_rejected_credentials_move_on(self, ladder, mock_clob_client):
        mock_clob_client.get_balance_allowance.side_effect = [
            ApiResponse(401, None, "Unauthorized"),
            ApiResponse(200, {}),
        ]

        results = await ladder.run(PRIVATE_KEY)

        assert len(results) == 2
        assert results[0].status_code == 401
        assert results[0].error == ERROR_VERIFICATION_FAILED
        assert results[1].success

    @pytest.mark.asyncio
    async def test_forbidden_keeps_its_status(self, ladder, mock_clob_client):
        mock_clob_client.get_balance_allowance.side_effect = [
            ApiResponse(403, None, "Forbidden"),
            ApiResponse(200, {}),
        ]

        results = await ladder.run(PRIVATE_KEY)

        assert results[0].status_code == 403
        assert results[0].error == ERROR_VERIFICATION_FAILED
        assert results[1].success

    @pytest.mark.asyncio
    async def test_transport_error_fails_rung_only(self, ladder, mock_clob_client):
        mock_clob_client.derive_api_key.side_effect = [
            TransportError("ECONNRESET", "socket hang up"),
            ApiResponse(200, CREDS_BODY),
        ]

        results = await ladder.run(PRIVATE_KEY)

        assert len(results) == 2
        assert results[0].error == "network: ECONNRESET"
        assert results[0].status_code is None
        assert results[1].success

    @pytest.mark.asyncio
    async def test_derive_without_creds_falls_back_to_create(self, ladder, mock_clob_client):
        mock_clob_client.derive_api_key.return_value = ApiResponse(200, {"apiKey": "k"})

        creds, status, error = await ladder.obtain_credentials(PRIVATE_KEY, SIGNER)

        assert creds == Credentials.from_api_response(CREDS_BODY)
        assert error is None
        mock_clob_client.create_api_key.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_l1_skips_create(self, ladder, mock_clob_client):
        mock_clob_client.derive_api_key.return_value = INVALID_L1

        creds, status, error = await ladder.obtain_credentials(PRIVATE_KEY, SIGNER)

        assert creds is None
        assert status == 401
        mock_clob_client.create_api_key.assert_not_called()
