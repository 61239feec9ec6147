"""Zerodha Kite Connect API client.

Covers the small part of Kite Connect v3 this app needs: building the
login URL, exchanging a request token for an access token, reading
portfolio holdings and quotes, and invalidating a session on disconnect.
Requests are made directly with httpx rather than the kiteconnect SDK.
"""

import hashlib
import logging
from decimal import Decimal
from urllib.parse import urlencode

import httpx

from config import settings
from integrations.exceptions import (
    BrokerAPIError,
    BrokerAuthError,
    BrokerConfigError,
    BrokerConnectionError,
    BrokerDataError,
    BrokerRateLimitError,
)
from integrations.parsing_utils import clean_string, safe_decimal
from integrations.provider_protocol import KiteHolding, KiteQuote, KiteSessionToken

logger = logging.getLogger(__name__)

BROKER_NAME = "Zerodha"

KITE_VERSION = "3"

# Kite caps a single /quote call at 500 instruments
_QUOTE_BATCH_SIZE = 500

_SESSION_EXPIRED_MESSAGE = (
    "Kite session expired or invalid. Please reconnect your Zerodha account."
)


class KiteClient:
    """Thin wrapper around the Kite Connect REST API.

    Args:
        api_key: Kite app API key (defaults to settings)
        api_secret: Kite app API secret (defaults to settings)
        base_url: API root, e.g. ``https://api.kite.trade``
        login_url: Browser login page, e.g. ``https://kite.zerodha.com/connect/login``
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        base_url: str | None = None,
        login_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 30.0,
    ):
        self._api_key = api_key if api_key is not None else settings.KITE_API_KEY
        self._api_secret = api_secret if api_secret is not None else settings.KITE_API_SECRET
        self._base_url = (base_url or settings.KITE_API_BASE_URL).rstrip("/")
        self._login_url = login_url or settings.KITE_LOGIN_URL
        self._transport = transport
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return BROKER_NAME

    @property
    def api_key(self) -> str:
        return self._api_key

    def is_configured(self) -> bool:
        """Check if both the API key and secret are configured."""
        return bool(self._api_key and self._api_secret)

    def _check_credentials(self, need_secret: bool = True) -> None:
        if not self._api_key or (need_secret and not self._api_secret):
            raise BrokerConfigError(
                "Kite API credentials not configured",
                broker_name=BROKER_NAME,
            )

    def login_url(self, state: str) -> str:
        """Build the browser URL that starts the Kite login flow.

        Args:
            state: Opaque value Kite hands back to the redirect URL.

        Returns:
            The full login URL.
        """
        self._check_credentials(need_secret=False)
        query = urlencode({"v": KITE_VERSION, "api_key": self._api_key, "state": state})
        return f"{self._login_url}?{query}"

    def generate_checksum(self, request_token: str) -> str:
        """SHA-256 hex digest of api_key + request_token + api_secret."""
        payload = f"{self._api_key}{request_token}{self._api_secret}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
            headers={"X-Kite-Version": KITE_VERSION},
        )

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"token {self._api_key}:{access_token}"}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request and return the decoded JSON body.

        Raises:
            BrokerAuthError: On HTTP 401/403.
            BrokerRateLimitError: On HTTP 429.
            BrokerAPIError: On any other non-2xx response.
            BrokerConnectionError: On network failures and timeouts.
            BrokerDataError: If the body cannot be decoded or is not a JSON
                object.
        """
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise BrokerConnectionError(
                f"Kite request timed out ({path})", broker_name=BROKER_NAME,
            ) from exc
        except httpx.DecodingError as exc:
            raise BrokerDataError(
                f"Kite response could not be decoded ({path})", broker_name=BROKER_NAME,
            ) from exc
        except httpx.HTTPError as exc:
            raise BrokerConnectionError(
                f"Kite connection failed: {exc}", broker_name=BROKER_NAME,
            ) from exc

        status = response.status_code
        if status in (401, 403):
            raise BrokerAuthError(_SESSION_EXPIRED_MESSAGE, broker_name=BROKER_NAME)
        if status == 429:
            raise BrokerRateLimitError(
                "Kite rate limit reached. Please retry later.",
                broker_name=BROKER_NAME,
            )
        if status >= 400:
            logger.warning("Kite %s %s failed (HTTP %d)", method, path, status)
            raise BrokerAPIError(
                f"Kite API error (HTTP {status})",
                broker_name=BROKER_NAME,
                status_code=status,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise BrokerDataError(
                "Kite returned a non-JSON response", broker_name=BROKER_NAME,
            ) from exc
        if not isinstance(body, dict):
            raise BrokerDataError(
                "Kite returned an unexpected response", broker_name=BROKER_NAME,
            )
        return body

    def exchange_request_token(self, request_token: str) -> KiteSessionToken:
        """Exchange a one-time request token for an access token.

        Not retried: request tokens are single use.

        Raises:
            BrokerConfigError: If key or secret is missing.
            BrokerAPIError: If Kite rejects the exchange.
            BrokerDataError: If the response carries no access token.
        """
        self._check_credentials()
        form = {
            "api_key": self._api_key,
            "request_token": request_token,
            "checksum": self.generate_checksum(request_token),
        }
        try:
            body = self._request("POST", "/session/token", data=form)
        except (BrokerAuthError, BrokerAPIError) as exc:
            # 403 here means a bad/used token or checksum, not an expired session
            raise BrokerAPIError(
                "Token exchange failed",
                broker_name=BROKER_NAME,
                status_code=getattr(exc, "status_code", None),
            ) from exc

        data = body.get("data")
        access_token = data.get("access_token") if isinstance(data, dict) else None
        if not access_token:
            raise BrokerDataError("No access token received", broker_name=BROKER_NAME)

        broker_user_id = clean_string(data.get("user_id"), max_length=64) or None
        logger.info("Kite: request token exchanged (broker user %s)", broker_user_id)
        return KiteSessionToken(access_token=access_token, broker_user_id=broker_user_id)

    def get_holdings(self, access_token: str) -> list[KiteHolding]:
        """Fetch the demat holdings for a session.

        Entries without a trading symbol or with a zero total quantity are
        dropped; malformed entries are logged and skipped.
        """
        self._check_credentials(need_secret=False)
        body = self._request(
            "GET", "/portfolio/holdings", headers=self._auth_headers(access_token),
        )
        data = body.get("data")
        if not isinstance(data, list):
            raise BrokerDataError(
                "Kite holdings response has no data", broker_name=BROKER_NAME,
            )

        holdings = []
        for entry in data:
            holding = self._map_holding(entry)
            if holding:
                holdings.append(holding)

        logger.info("Kite: fetched %d holdings (%d raw)", len(holdings), len(data))
        return holdings

    def _map_holding(self, entry) -> KiteHolding | None:
        """Map one raw holdings entry, or return None if it must be dropped."""
        if not isinstance(entry, dict):
            logger.warning("Kite: skipping malformed holding entry %r", type(entry))
            return None

        symbol = clean_string(entry.get("tradingsymbol"), max_length=64)
        if not symbol:
            logger.warning("Kite: skipping holding without tradingsymbol")
            return None

        # T1 shares are bought but not yet settled into the demat account
        quantity = safe_decimal(entry.get("quantity")) + safe_decimal(entry.get("t1_quantity"))
        if quantity <= 0:
            logger.debug("Kite: dropping zero-quantity holding %s", symbol)
            return None

        return KiteHolding(
            tradingsymbol=symbol,
            exchange=clean_string(entry.get("exchange"), max_length=16) or "NSE",
            quantity=quantity,
            average_price=safe_decimal(entry.get("average_price")),
            last_price=safe_decimal(entry.get("last_price")),
            isin=clean_string(entry.get("isin"), max_length=32) or None,
            raw_data=entry,
        )

    def get_quotes(
        self, access_token: str, instruments: list[str]
    ) -> dict[str, KiteQuote]:
        """Fetch quotes keyed by ``"EXCHANGE:TRADINGSYMBOL"``.

        Args:
            access_token: Session access token.
            instruments: Instrument keys, e.g. ``["NSE:INFY", "BSE:SBIN"]``.

        Returns:
            Mapping of instrument key to quote; instruments Kite did not
            return are absent.
        """
        self._check_credentials(need_secret=False)
        quotes: dict[str, KiteQuote] = {}
        unique = list(dict.fromkeys(instruments))

        for start in range(0, len(unique), _QUOTE_BATCH_SIZE):
            batch = unique[start:start + _QUOTE_BATCH_SIZE]
            body = self._request(
                "GET",
                "/quote",
                params=[("i", instrument) for instrument in batch],
                headers=self._auth_headers(access_token),
            )
            data = body.get("data")
            if not isinstance(data, dict):
                raise BrokerDataError(
                    "Kite quote response has no data", broker_name=BROKER_NAME,
                )
            for instrument, raw in data.items():
                quote = self._map_quote(instrument, raw)
                if quote:
                    quotes[instrument] = quote

        return quotes

    def _map_quote(self, instrument: str, raw) -> KiteQuote | None:
        if not isinstance(raw, dict) or raw.get("last_price") is None:
            return None

        last_price = safe_decimal(raw.get("last_price"))
        change_percent = None
        ohlc = raw.get("ohlc")
        close = safe_decimal(ohlc.get("close")) if isinstance(ohlc, dict) else Decimal("0")
        if close > 0:
            change_percent = round((last_price - close) / close * 100, 4)

        volume = raw.get("volume")
        return KiteQuote(
            instrument=instrument,
            last_price=last_price,
            change_percent=change_percent,
            volume=int(safe_decimal(volume)) if volume is not None else None,
        )

    def invalidate_session(self, access_token: str) -> None:
        """Ask Kite to invalidate an access token (logout)."""
        self._check_credentials(need_secret=False)
        self._request(
            "DELETE",
            "/session/token",
            params={"api_key": self._api_key, "access_token": access_token},
            headers=self._auth_headers(access_token),
        )
        logger.info("Kite: session invalidated")
