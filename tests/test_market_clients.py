"""Tests for the Kalshi and Polymarket position providers."""

import base64
from unittest.mock import MagicMock, patch

import pytest
import requests
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from backend.services.market_clients import (
    KALSHI_MAX_PAGES,
    KalshiClient,
    KalshiCredentials,
    PolymarketDataClient,
    sign_kalshi_request,
)

WALLET = "0x" + "ab" * 20


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="module")
def creds(rsa_key):
    pem = rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return KalshiCredentials(api_key_id="key-123", private_key_pem=pem)


def _response(payload):
    resp = MagicMock()
    resp.json.return_value = payload
    return resp


def _verify(public_key, signature_b64, message):
    public_key.verify(
        base64.b64decode(signature_b64),
        message,
        padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH),
        hashes.SHA256(),
    )


class TestKalshiSigning:

    def test_signature_verifies(self, rsa_key, creds):
        sig = sign_kalshi_request(
            creds.private_key_pem, "get", "/trade-api/v2/portfolio/positions", "1700000000000"
        )
        _verify(rsa_key.public_key(), sig, b"1700000000000GET/trade-api/v2/portfolio/positions")

    def test_signature_binds_path(self, rsa_key, creds):
        sig = sign_kalshi_request(creds.private_key_pem, "GET", "/trade-api/v2/a", "1")
        with pytest.raises(InvalidSignature):
            _verify(rsa_key.public_key(), sig, b"1GET/trade-api/v2/b")


class TestKalshiClient:

    @patch("backend.services.market_clients.requests.get")
    def test_headers_and_positions(self, mock_get, creds):
        mock_get.return_value = _response({
            "market_positions": [
                {"ticker": "KXBTC-26", "position": 10, "market_exposure_dollars": "4.00"},
                {"ticker": "KXFED-26", "position": -5, "market_exposure_dollars": "3.00"},
                {"ticker": "KXFLAT", "position": 0},
            ],
            "cursor": "",
        })
        positions = KalshiClient().get_positions(creds)

        headers = mock_get.call_args.kwargs["headers"]
        assert headers["KALSHI-ACCESS-KEY"] == "key-123"
        assert headers["KALSHI-ACCESS-TIMESTAMP"].isdigit()
        assert [(p.contract_id, p.side) for p in positions] == [
            ("kalshi:KXBTC-26:yes", "yes"),
            ("kalshi:KXFED-26:no", "no"),
        ]
        assert positions[0].cost_per_share == pytest.approx(0.40)
        assert positions[1].size == 5

    @patch("backend.services.market_clients.requests.get")
    def test_follows_cursor(self, mock_get, creds):
        mock_get.side_effect = [
            _response({"market_positions": [{"ticker": "A", "position": 1}], "cursor": "c2"}),
            _response({"market_positions": [{"ticker": "B", "position": 1}], "cursor": None}),
        ]
        raw = KalshiClient().get_market_positions(creds)
        assert [r["ticker"] for r in raw] == ["A", "B"]
        assert mock_get.call_args_list[1].kwargs["params"]["cursor"] == "c2"

    @patch("backend.services.market_clients.requests.get")
    def test_pagination_is_bounded(self, mock_get, creds):
        mock_get.return_value = _response(
            {"market_positions": [{"ticker": "A", "position": 1}], "cursor": "again"}
        )
        raw = KalshiClient().get_market_positions(creds)
        assert mock_get.call_count == KALSHI_MAX_PAGES
        assert len(raw) == KALSHI_MAX_PAGES

    @patch("backend.services.market_clients.requests.get")
    def test_upstream_error_returns_empty(self, mock_get, creds):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")
        assert KalshiClient().get_positions(creds) == []


class TestPolymarketDataClient:

    @patch("backend.services.market_clients.requests.get")
    def test_positions(self, mock_get):
        mock_get.return_value = _response([
            {"conditionId": "0xc1", "size": 50, "avgPrice": 0.42, "outcome": "Yes"},
            {"conditionId": "0xc2", "size": 20, "avgPrice": 0.30, "outcome": "No"},
            {"conditionId": "0xc3", "size": 0, "avgPrice": 0.10, "outcome": "Yes"},
        ])
        positions = PolymarketDataClient().get_positions(WALLET, limit=1000)

        params = mock_get.call_args.kwargs["params"]
        assert params["user"] == WALLET
        assert params["limit"] == 500
        assert [(p.contract_id, p.side) for p in positions] == [
            ("polymarket:0xc1:yes", "yes"),
            ("polymarket:0xc2:no", "no"),
        ]

    @pytest.mark.parametrize("wallet", ["", "0x123", "ab" * 21, "0x" + "zz" * 20])
    def test_invalid_wallet(self, wallet):
        with pytest.raises(ValueError):
            PolymarketDataClient().get_raw_positions(wallet)

    @patch("backend.services.market_clients.requests.get")
    def test_non_list_payload(self, mock_get):
        mock_get.return_value = _response({"error": "rate limited"})
        assert PolymarketDataClient().get_raw_positions(WALLET) == []
