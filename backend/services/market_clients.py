"""
Prediction-market connection providers.

Both clients return a connected account's open positions already mapped to
unified ``Position`` records.  Credentials arrive decrypted from the caller;
nothing here stores or decrypts secrets.

Kalshi requests are signed with the account's RSA key (RSA-PSS / SHA-256)
over ``{timestamp_ms}{METHOD}{path}``, where ``path`` includes the
``/trade-api/v2`` prefix but not the query string.
"""

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from backend.core.contracts import Position
from backend.services.adapters import KalshiAdapter, PolymarketAdapter

logger = logging.getLogger(__name__)

KALSHI_API_HOST = "https://api.elections.kalshi.com"
KALSHI_API_PREFIX = "/trade-api/v2"
KALSHI_PAGE_LIMIT = 200
# Hard stop on cursor pagination
KALSHI_MAX_PAGES = 25

POLYMARKET_DATA_API = "https://data-api.polymarket.com"
POLYMARKET_MAX_LIMIT = 500

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class KalshiCredentials:
    api_key_id: str
    private_key_pem: str


def sign_kalshi_request(private_key_pem: str, method: str, path: str, timestamp: str) -> str:
    """Base64 RSA-PSS signature of ``timestamp + METHOD + path``."""
    private_key = serialization.load_pem_private_key(
        private_key_pem.encode("utf-8"), password=None
    )
    message = f"{timestamp}{method.upper()}{path}".encode("utf-8")
    signature = private_key.sign(
        message,
        padding.PSS(
            mgf=padding.MGF1(hashes.SHA256()),
            salt_length=padding.PSS.MAX_LENGTH,
        ),
        hashes.SHA256(),
    )
    return base64.b64encode(signature).decode("utf-8")


class KalshiClient:
    """Authenticated reads against the Kalshi trade API."""

    def __init__(self, host: str = KALSHI_API_HOST, timeout: float = 10):
        self.host = host
        self.timeout = timeout
        self.adapter = KalshiAdapter()

    def _headers(self, creds: KalshiCredentials, method: str, path: str) -> Dict[str, str]:
        timestamp = str(int(datetime.now(timezone.utc).timestamp() * 1000))
        return {
            "KALSHI-ACCESS-KEY": creds.api_key_id,
            "KALSHI-ACCESS-SIGNATURE": sign_kalshi_request(
                creds.private_key_pem, method, path, timestamp
            ),
            "KALSHI-ACCESS-TIMESTAMP": timestamp,
        }

    def get_market_positions(self, creds: KalshiCredentials) -> List[Dict]:
        """Raw ``market_positions`` across all cursor pages; ``[]`` on failure."""
        path = f"{KALSHI_API_PREFIX}/portfolio/positions"
        out: List[Dict] = []
        cursor: Optional[str] = None

        for _ in range(KALSHI_MAX_PAGES):
            params = {"limit": KALSHI_PAGE_LIMIT}
            if cursor:
                params["cursor"] = cursor
            try:
                response = requests.get(
                    f"{self.host}{path}",
                    params=params,
                    headers=self._headers(creds, "GET", path),
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
            except requests.exceptions.RequestException as e:
                logger.error("Kalshi positions error: %s", e)
                return []
            except ValueError as e:
                logger.error("Kalshi positions invalid response: %s", e)
                return []

            out.extend(data.get("market_positions") or [])
            cursor = data.get("cursor")
            if not cursor:
                break
        else:
            logger.warning(
                "Kalshi positions truncated after %d pages", KALSHI_MAX_PAGES
            )

        logger.info("Kalshi: %d market positions fetched", len(out))
        return out

    def get_positions(self, creds: KalshiCredentials) -> List[Position]:
        return self.adapter.to_positions(self.get_market_positions(creds))


class PolymarketDataClient:
    """Public Polymarket Data API (no auth, wallet address only)."""

    def __init__(self, base_url: str = POLYMARKET_DATA_API, timeout: float = 10):
        self.base_url = base_url
        self.timeout = timeout
        self.adapter = PolymarketAdapter()

    def get_raw_positions(self, wallet: str, limit: int = 100) -> List[Dict]:
        if not wallet or not _WALLET_RE.match(wallet):
            raise ValueError(f"Invalid Polymarket wallet address: {wallet!r}")
        params = {
            "user": wallet,
            "limit": max(1, min(limit, POLYMARKET_MAX_LIMIT)),
            "sizeThreshold": 0,
        }
        try:
            response = requests.get(
                f"{self.base_url}/positions", params=params, timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Polymarket positions error for %s: %s", wallet, e)
            return []
        except ValueError as e:
            logger.error("Polymarket positions invalid JSON for %s: %s", wallet, e)
            return []

        if not isinstance(data, list):
            logger.error("Polymarket positions unexpected payload for %s", wallet)
            return []
        return data

    def get_positions(self, wallet: str, limit: int = 100) -> List[Position]:
        return self.adapter.to_positions(self.get_raw_positions(wallet, limit=limit))
