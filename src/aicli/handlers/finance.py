"""Financial market data from the Alpha Vantage REST API."""

import logging

import httpx

from aicli.tools import HandlerError

logger = logging.getLogger(__name__)

ALPHA_VANTAGE_URL = "https://www.alphavantage.co/query"


class AlphaVantage:
    """Thin client for Alpha Vantage queries. The response JSON is returned as text."""

    def __init__(self, api_key: str, client: httpx.Client | None = None) -> None:
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=httpx.Timeout(30.0, connect=10.0))

    def close(self) -> None:
        self._client.close()

    def query(self, function: str, symbol: str, outputsize: str | None = None) -> str:
        if not self.api_key:
            raise HandlerError("ALPHA_VANTAGE_API_KEY not found in ~/.aicli.conf")

        params = {"function": function, "symbol": symbol, "apikey": self.api_key}
        if function != "GLOBAL_QUOTE":
            params["outputsize"] = outputsize or "compact"
        logger.info(f"Alpha Vantage query: function={function}, symbol={symbol}")

        try:
            response = self._client.get(ALPHA_VANTAGE_URL, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HandlerError(
                f"Alpha Vantage API returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise HandlerError(f"Alpha Vantage API request failed: {e}") from e

        logger.debug(f"Alpha Vantage response: {response.text[:500]}")
        return response.text
