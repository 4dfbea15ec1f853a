#!/usr/bin/env python3
"""
Unit tests for the exchange rate ticker
Run with: python -m pytest test_pricefeed.py -v
"""

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

import requests

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import PriceUnavailable
from pricefeed import PriceFeed


def fake_response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    return response


@patch("pricefeed.requests.get")
class TestPriceFeed(unittest.TestCase):

    def setUp(self):
        self.feed = PriceFeed("https://ticker.example/price", "BTCBRL", timeout=2)

    def test_fetch(self, mock_get):
        mock_get.return_value = fake_response(body={"symbol": "BTCBRL", "price": "350000.00"})

        self.assertEqual(self.feed.fetch(), {"symbol": "BTCBRL", "price": "350000.00"})
        self.assertEqual(mock_get.call_args[1]["params"], {"symbol": "BTCBRL"})
        self.assertEqual(mock_get.call_args[1]["timeout"], 2)

    def test_rate(self, mock_get):
        mock_get.return_value = fake_response(body={"symbol": "BTCBRL", "price": "50000.00"})

        self.assertEqual(self.feed.rate(), 50000.0)

    def test_failures(self, mock_get):
        """Every ticker failure is a PriceUnavailable"""
        cases = [
            requests.exceptions.Timeout(),
            requests.exceptions.ConnectionError("refused"),
            fake_response(503, {"msg": "busy"}),
            fake_response(body=[{"symbol": "BTCBRL", "price": "1"}]),
            fake_response(body={"symbol": "BTCBRL", "price": "abc"}),
            fake_response(body={"symbol": "BTCBRL", "price": "0"}),
        ]
        for case in cases:
            with self.subTest(case=case):
                if isinstance(case, Exception):
                    mock_get.side_effect = case
                else:
                    mock_get.side_effect = None
                    mock_get.return_value = case
                with self.assertRaises(PriceUnavailable):
                    self.feed.rate()


if __name__ == '__main__':
    unittest.main()
