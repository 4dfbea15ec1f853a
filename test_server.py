#!/usr/bin/env python3
"""
Tests for the HTTP server
Run with: python -m pytest test_server.py -v
or: python test_server.py
"""

import os
import sys
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

import requests

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import PriceUnavailable
from fake_lnd import FakeLnd
from lnurl import metadata
from server import RateLimiter, Stats, build_server, main, report_inventory
from settings import Settings
from test_tickets import stock


class TestRateLimiter(unittest.TestCase):
    """Test the per-IP rate limiter"""

    def test_limit_per_window(self):
        limiter = RateLimiter(2)

        self.assertTrue(limiter.allow("1.2.3.4", now=0.0))
        self.assertTrue(limiter.allow("1.2.3.4", now=0.1))
        self.assertFalse(limiter.allow("1.2.3.4", now=0.2))
        # Other clients have their own window
        self.assertTrue(limiter.allow("5.6.7.8", now=0.2))

    def test_window_resets(self):
        limiter = RateLimiter(1)

        self.assertTrue(limiter.allow("1.2.3.4", now=0.0))
        self.assertFalse(limiter.allow("1.2.3.4", now=0.5))
        self.assertTrue(limiter.allow("1.2.3.4", now=1.5))

    def test_fractional_limit(self):
        """Limits below one widen the window"""
        limiter = RateLimiter(0.5)

        self.assertEqual(limiter.max_requests, 1)
        self.assertEqual(limiter.window, 2.0)


class TestStatistics(unittest.TestCase):
    """Test statistics tracking"""

    def test_increment_stat(self):
        """Test thread-safe stat incrementing"""
        stats = Stats()

        stats.increment('test_counter')
        self.assertEqual(stats.snapshot()['test_counter'], 1)

        stats.increment('test_counter')
        self.assertEqual(stats.snapshot()['test_counter'], 2)
        self.assertIn('start_time', stats.snapshot())


class ServerTestCase(unittest.TestCase):
    """Runs a real server on an ephemeral port with a fake node"""

    request_limit = 0
    disable_ln_address = False

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        root = self.tmp.name
        tickets_dir = os.path.join(root, "tickets")
        stock(tickets_dir, 2)

        self.settings = Settings.from_config({
            "server": {"host": "127.0.0.1", "request_limit": self.request_limit,
                       "disable_ln_address": self.disable_ln_address},
            "lnd": {"macaroon_hex": "0201"},
            "tickets": {
                "tickets_dir": tickets_dir,
                "pending_dir": os.path.join(root, "pending"),
                "hashes_dir": os.path.join(root, "hashes"),
                "count": 2,
                "price": 10,
            },
        })
        self.node = FakeLnd()
        self.price_feed = MagicMock()
        self.price_feed.rate.return_value = 50000.0
        self.price_feed.fetch.return_value = {"symbol": "BTCBRL", "price": "50000.00"}

        self.server = build_server(self.settings, node=self.node, price_feed=self.price_feed,
                                   server_address=("127.0.0.1", 0))
        thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(self.server.server_close)
        self.addCleanup(self.server.shutdown)
        self.base_url = f"http://127.0.0.1:{self.server.server_port}"

    def get(self, path, **kwargs):
        return requests.get(self.base_url + path, timeout=5, **kwargs)

    def post(self, path, **kwargs):
        return requests.post(self.base_url + path, timeout=5, **kwargs)


class TestInvoiceEndpoints(ServerTestCase):
    """Test /v1 invoice endpoints"""

    def test_ping(self):
        response = self.get("/ping")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), "pong")

    def test_create_and_lookup_invoice(self):
        """A created invoice can be looked up by its hash"""
        response = self.post("/v1/invoices", json={"value": 100, "memo": "coffee"})

        self.assertEqual(response.status_code, 200)
        invoice = response.json()
        self.assertEqual(set(invoice), {"payment_hash", "payment_request", "settled"})
        self.assertFalse(invoice["settled"])

        found = self.get(f"/v1/invoice/{invoice['payment_hash']}").json()
        self.assertEqual(found["payment_request"], invoice["payment_request"])

    def test_create_invoice_bad_request(self):
        """Malformed bodies are a 400 without details"""
        for kwargs in [{"data": "not json"}, {"json": {"memo": "no value"}},
                       {"json": {"value": "100"}}, {"json": {"value": -5}}]:
            with self.subTest(kwargs=kwargs):
                response = self.post("/v1/invoices", **kwargs)
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.json(), "Bad request")

    def test_create_invoice_node_down(self):
        self.node.unreachable = True

        response = self.post("/v1/invoices", json={"value": 100, "memo": ""})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), "Error adding invoice")

    def test_lookup_malformed_hash(self):
        response = self.get("/v1/invoice/not-a-hash")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(self.node.calls, [])

    def test_lookup_unknown_invoice(self):
        response = self.get("/v1/invoice/" + "ab" * 32)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), "Error fetching invoice")

    def test_new_address(self):
        response = self.post("/v1/newaddress")

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json().startswith("bc1"))

    def test_price(self):
        self.assertEqual(self.get("/price").json(), {"symbol": "BTCBRL", "price": "50000.00"})

    def test_health(self):
        body = self.get("/health").json()

        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["tickets_available"], 2)

    def test_unknown_endpoint(self):
        self.assertEqual(self.get("/nope").status_code, 404)
        self.assertEqual(self.post("/nope").status_code, 404)

    def test_keep_alive_after_post_body(self):
        """Bodies the endpoint ignores are still consumed on a reused connection"""
        for path in ["/v1/newaddress", "/nope"]:
            with self.subTest(path=path), requests.Session() as session:
                first = session.post(self.base_url + path, json={"ignored": True}, timeout=5)
                self.assertIn(first.status_code, (200, 404))

                response = session.get(self.base_url + "/ping", timeout=5)

                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.json(), "pong")

    def test_cors(self):
        response = self.get("/ping")
        self.assertEqual(response.headers["Access-Control-Allow-Origin"], "*")

        response = requests.options(self.base_url + "/v1/invoices", timeout=5)
        self.assertEqual(response.status_code, 204)


class TestTicketEndpoints(ServerTestCase):
    """Test ticket sales over HTTP"""

    def test_sell_ticket(self):
        """A sale returns the invoice but never the ticket"""
        response = self.post("/v1/tkinvoices")

        self.assertEqual(response.status_code, 200)
        invoice = response.json()
        self.assertNotIn("ticket", invoice)
        self.assertEqual(self.node.invoices[invoice["payment_hash"]]["value"], 20000)

    def test_ticket_revealed_after_settlement(self):
        invoice = self.post("/v1/tkinvoices").json()
        path = f"/v1/tkinvoice/{invoice['payment_hash']}"

        unsettled = self.get(path).json()
        self.assertFalse(unsettled["settled"])
        self.assertEqual(unsettled["ticket"], "")

        self.node.settle(invoice["payment_hash"])
        settled = self.get(path).json()
        self.assertTrue(settled["settled"])
        self.assertEqual(settled["ticket"], "TICKET-1")

    def test_settled_plain_invoice_has_no_ticket(self):
        invoice = self.post("/v1/invoices", json={"value": 1, "memo": ""}).json()
        self.node.settle(invoice["payment_hash"])

        self.assertEqual(self.get(f"/v1/tkinvoice/{invoice['payment_hash']}").json()["ticket"],
                         "Not available.")

    def test_sold_out(self):
        self.post("/v1/tkinvoices")
        self.post("/v1/tkinvoices")

        response = self.post("/v1/tkinvoices")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json(), "No ticket available")
        self.assertEqual(self.get("/health").json()["tickets_available"], 0)

    def test_price_failure_keeps_stock(self):
        """No ticket is claimed when there is no exchange rate"""
        self.price_feed.rate.side_effect = PriceUnavailable("down")

        response = self.post("/v1/tkinvoices")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(self.server.inventory.available(), 2)
        self.assertEqual(self.node.invoices, {})


class TestLightningAddress(ServerTestCase):
    """Test /.well-known/lnurlp"""

    headers = {"Host": "example.com", "X-Forwarded-Proto": "https"}

    def test_step_one(self):
        body = self.get("/.well-known/lnurlp/alice", headers=self.headers).json()

        self.assertEqual(body["status"], "OK")
        self.assertEqual(body["callback"], "https://example.com/.well-known/lnurlp/alice")
        self.assertEqual(body["metadata"], metadata("alice@example.com"))

    def test_step_two(self):
        response = self.get("/.well-known/lnurlp/alice?amount=2000", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "OK")
        invoice = next(iter(self.node.invoices.values()))
        self.assertEqual(invoice["value"], 2)
        self.assertEqual(invoice["memo"], "alice@example.com")

    def test_step_two_too_small(self):
        response = self.get("/.well-known/lnurlp/alice?amount=500", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ERROR")
        self.assertEqual(self.node.invoices, {})


class TestLightningAddressDisabled(ServerTestCase):

    disable_ln_address = True

    def test_disabled(self):
        self.assertEqual(self.get("/.well-known/lnurlp/alice").status_code, 404)


class TestRateLimitedServer(ServerTestCase):

    request_limit = 1

    def test_rate_limited(self):
        self.assertEqual(self.get("/ping").status_code, 200)

        response = self.get("/ping")

        self.assertEqual(response.status_code, 429)
        self.assertEqual(response.json(), "Too many requests")

    def test_rate_limited_post_keeps_connection_in_sync(self):
        with requests.Session() as session:
            self.assertEqual(session.get(self.base_url + "/ping", timeout=5).status_code, 200)

            limited = session.post(self.base_url + "/v1/invoices", json={"value": 100, "memo": "x"}, timeout=5)
            self.assertEqual(limited.status_code, 429)

            response = session.get(self.base_url + "/ping", timeout=5)

            self.assertEqual(response.status_code, 429)
            self.assertEqual(response.json(), "Too many requests")
        self.assertEqual(self.node.calls, [])


class TestStartup(unittest.TestCase):
    """Test startup helpers"""

    def test_invalid_config_exits(self):
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertLogs("server", level="ERROR"):
                self.assertEqual(main(["--config", os.path.join(tmp, "missing.json")]), 1)

    def test_report_pending_claims(self):
        inventory = MagicMock()
        inventory.available.return_value = 0
        claim = MagicMock(ticket_id=3, age_seconds=12.0, path="files/pending/ticket3-1-abc.txt")
        inventory.pending_claims.return_value = [claim]

        with self.assertLogs("server", level="WARNING") as logs:
            report_inventory(inventory)

        self.assertTrue(any("Reconciliation required" in line for line in logs.output))


def run_tests():
    """Run all tests"""
    loader = unittest.TestLoader()
    suite = loader.loadTestsFromModule(sys.modules[__name__])
    runner = unittest.TextTestRunner(verbosity=2)
    result = runner.run(suite)

    return 0 if result.wasSuccessful() else 1


if __name__ == '__main__':
    sys.exit(run_tests())
