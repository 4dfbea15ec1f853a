"""
Exchange rate ticker.

Fetches the price of one BTC in the ticket's currency from a Binance
compatible ticker endpoint.
"""

import logging

import requests

from errors import PriceUnavailable

logger = logging.getLogger(__name__)


class PriceFeed:

    def __init__(self, url, symbol, timeout=2):
        self.url = url
        self.symbol = symbol
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.price_url, settings.price_symbol, timeout=settings.price_timeout)

    def fetch(self):
        """Return the ticker entry as {"symbol": ..., "price": ...}"""
        try:
            response = requests.get(self.url, params={"symbol": self.symbol}, timeout=self.timeout)
        except requests.exceptions.Timeout:
            logger.error(f"Price ticker timed out: {self.url}")
            raise PriceUnavailable("Price ticker timed out")
        except requests.exceptions.RequestException as e:
            logger.error(f"Price ticker request failed: {e}")
            raise PriceUnavailable("Price ticker request failed")

        if response.status_code != 200:
            logger.error(f"Price ticker returned error: {response.status_code} - {response.text}")
            raise PriceUnavailable(f"Price ticker returned {response.status_code}")

        try:
            coin = response.json()
        except ValueError:
            raise PriceUnavailable("Invalid JSON from price ticker")

        if not isinstance(coin, dict) or "price" not in coin:
            logger.error(f"Invalid price ticker response: {coin}")
            raise PriceUnavailable("Invalid price ticker response")
        return {"symbol": coin.get("symbol", self.symbol), "price": coin["price"]}

    def rate(self):
        """Current price of one BTC as a float"""
        coin = self.fetch()
        try:
            price = float(coin["price"])
        except (TypeError, ValueError):
            raise PriceUnavailable(f"Invalid price: {coin['price']!r}")
        if price <= 0:
            raise PriceUnavailable(f"Invalid price: {coin['price']!r}")
        return price
