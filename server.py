#!/usr/bin/env python3
import argparse
import json
import logging
import re
import signal
import sys
import threading
import time
import urllib.parse
import uuid
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import urllib3

from errors import (
    ConfigError,
    CredentialsError,
    InconsistentState,
    InputError,
    LnmeError,
    SoldOut,
)
from invoices import InvoiceLedger
from lnd import LndClient
from lnurl import LnurlPayResolver
from pricefeed import PriceFeed
from settings import DEFAULT_CONFIG_PATH, load_settings
from tickets import TicketInventory

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Configure logging (file logging is added once the config is loaded)
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Error message constants
ERROR_BAD_REQUEST = "Bad request"
ERROR_NO_TICKET = "No ticket available"
ERROR_ADDING_INVOICE = "Error adding invoice"
ERROR_FETCHING_INVOICE = "Error fetching invoice"
ERROR_GETTING_ADDRESS = "Error getting address"
ERROR_FETCHING_PRICE = "Error fetching price"
ERROR_RATE_LIMITED = "Too many requests"
ERROR_INTERNAL_ERROR = "Internal server error"
ERROR_UNKNOWN_ENDPOINT = "Unknown endpoint"

INVOICE_PATH = re.compile(r'^/v1/invoice/([^/]+)$')
TICKET_INVOICE_PATH = re.compile(r'^/v1/tkinvoice/([^/]+)$')
LNURLP_PATH = re.compile(r'^/\.well-known/lnurlp/([^/]+)$')


def configure_file_logging(log_file):
    """Add a file handler to the root logger, falling back to console only"""
    if not log_file:
        return
    try:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(file_handler)
        logger.info(f"Logging to {log_file}")
    except PermissionError:
        logger.warning(f"Cannot write to {log_file}, using console logging only")
    except OSError as e:
        logger.warning(f"Failed to configure file logging: {e}, using console logging only")


class RateLimiter:
    """
    Fixed window request counter per client IP.

    A limit of 5 allows 5 requests per second; fractional limits widen the
    window instead (0.5 allows 1 request every 2 seconds).
    """

    def __init__(self, requests_per_second):
        self.max_requests = max(1, round(requests_per_second))
        self.window = self.max_requests / requests_per_second
        self.store = {}
        self.lock = threading.Lock()

    def allow(self, ip_address, now=None):
        current_time = time.monotonic() if now is None else now

        with self.lock:
            # Clean up old entries
            expired_ips = [ip for ip, data in self.store.items()
                           if current_time > data['reset_time']]
            for ip in expired_ips:
                del self.store[ip]

            if ip_address not in self.store:
                self.store[ip_address] = {
                    'count': 1,
                    'reset_time': current_time + self.window
                }
                return True

            ip_data = self.store[ip_address]
            if ip_data['count'] >= self.max_requests:
                return False

            ip_data['count'] += 1
            return True


class Stats:
    """Thread-safe request counters"""

    def __init__(self):
        self.counters = {
            'requests_total': 0,
            'invoices_created': 0,
            'tickets_sold': 0,
            'lnurl_requests': 0,
            'errors_total': 0,
            'rate_limited': 0,
        }
        self.start_time = datetime.now()
        self.lock = threading.Lock()

    def increment(self, stat_name):
        with self.lock:
            self.counters[stat_name] = self.counters.get(stat_name, 0) + 1

    def snapshot(self):
        with self.lock:
            counters = dict(self.counters)
        counters['start_time'] = self.start_time.isoformat()
        return counters

    def uptime(self):
        return (datetime.now() - self.start_time).total_seconds()


class Handler(BaseHTTPRequestHandler):

    protocol_version = "HTTP/1.1"

    def __init__(self, *args, **kwargs):
        self.request_id = str(uuid.uuid4())[:8]
        super().__init__(*args, **kwargs)

    def log_message(self, format, *args):
        """Override to use custom logger instead of stderr"""
        logger.info(f"[{self.request_id}] {self.address_string()} - {format % args}")

    # Dispatch

    def do_OPTIONS(self):
        self.send_response(204)
        self.send_cors_headers()
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_HEAD(self):
        # Respond with the same headers as GET, but no body
        if self.path.startswith("/.well-known/lnurlp/") and not self.server.settings.disable_ln_address:
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_cors_headers()
            self.end_headers()
        else:
            self.send_error(404)

    def do_GET(self):
        self.handle_request("GET")

    def do_POST(self):
        self.handle_request("POST")

    def handle_request(self, method):
        stats = self.server.stats
        stats.increment('requests_total')
        # Consume the body up front so a keep-alive connection stays in sync
        self.body = self.read_body() if method == "POST" else b""

        limiter = self.server.rate_limiter
        if limiter and not limiter.allow(self.client_address[0]):
            logger.warning(f"[{self.request_id}] Rate limit exceeded for {self.client_address[0]}")
            stats.increment('rate_limited')
            self.respond(ERROR_RATE_LIMITED, status=429)
            return

        try:
            parsed = urllib.parse.urlparse(self.path)
            path = parsed.path

            if method == "POST":
                if path == "/v1/invoices":
                    self.create_invoice()
                elif path == "/v1/tkinvoices":
                    self.create_ticket_invoice()
                elif path == "/v1/newaddress":
                    self.new_address()
                else:
                    self.unknown_endpoint(path)
                return

            if path == "/ping":
                self.respond("pong")
                return

            if path == "/health":
                self.health()
                return

            if path == "/price":
                self.price()
                return

            match = INVOICE_PATH.match(path)
            if match:
                self.get_invoice(urllib.parse.unquote(match.group(1)))
                return

            match = TICKET_INVOICE_PATH.match(path)
            if match:
                self.get_ticket_invoice(urllib.parse.unquote(match.group(1)))
                return

            match = LNURLP_PATH.match(path)
            if match and not self.server.settings.disable_ln_address:
                self.lnurlp(urllib.parse.unquote(match.group(1)), parsed)
                return

            self.unknown_endpoint(path)

        except Exception as e:
            logger.error(f"[{self.request_id}] Unhandled error in {method} {self.path}: {e}", exc_info=True)
            stats.increment('errors_total')
            self.respond(ERROR_INTERNAL_ERROR, status=500)

    # Endpoints

    def create_invoice(self):
        body = self.read_json()
        value = body.get("value") if isinstance(body, dict) else None
        memo = body.get("memo", "") if isinstance(body, dict) else None
        if not isinstance(value, int) or isinstance(value, bool) or not isinstance(memo, str):
            logger.warning(f"[{self.request_id}] Bad request: invalid invoice body")
            self.fail(ERROR_BAD_REQUEST, 400)
            return

        try:
            invoice = self.server.ledger.create_invoice(value, memo)
        except InputError as e:
            logger.warning(f"[{self.request_id}] Bad request: {e}")
            self.fail(ERROR_BAD_REQUEST, 400)
            return
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error creating invoice: value={value} memo={memo}: {e}")
            self.fail(ERROR_ADDING_INVOICE, 500)
            return

        self.server.stats.increment('invoices_created')
        self.respond(invoice.to_dict())

    def create_ticket_invoice(self):
        if self.read_json() is None:
            logger.warning(f"[{self.request_id}] Bad request: invalid JSON body")
            self.fail(ERROR_BAD_REQUEST, 400)
            return

        server = self.server
        if server.inventory.available() == 0:
            logger.warning(f"[{self.request_id}] No ticket available")
            self.fail(ERROR_NO_TICKET, 500)
            return

        try:
            rate = server.price_feed.rate()
            invoice, token = server.ledger.create_ticket_invoice(
                server.settings.ticket_price, rate, memo=server.settings.ticket_memo)
        except SoldOut:
            logger.warning(f"[{self.request_id}] No ticket available")
            self.fail(ERROR_NO_TICKET, 500)
            return
        except InconsistentState as e:
            logger.error(f"[{self.request_id}] Ticket sale left invoice {e.payment_hash} without a ticket")
            self.fail(ERROR_ADDING_INVOICE, 500)
            return
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error creating ticket invoice: {e}")
            self.fail(ERROR_ADDING_INVOICE, 500)
            return

        logger.info(f"[{self.request_id}] Ticket {token.id} reserved for {invoice.payment_hash}")
        server.stats.increment('tickets_sold')
        self.respond(invoice.to_dict())

    def new_address(self):
        try:
            address = self.server.ledger.new_address()
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error getting a new BTC address: {e}")
            self.fail(ERROR_GETTING_ADDRESS, 500)
            return
        self.respond(address)

    def get_invoice(self, payment_hash):
        try:
            invoice = self.server.ledger.lookup_invoice(payment_hash)
        except InputError:
            logger.warning(f"[{self.request_id}] Malformed payment hash")
            self.fail(ERROR_BAD_REQUEST, 400)
            return
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error looking up invoice {payment_hash}: {e}")
            self.fail(ERROR_FETCHING_INVOICE, 500)
            return
        self.respond(invoice.to_dict())

    def get_ticket_invoice(self, payment_hash):
        try:
            invoice = self.server.ledger.resolve_ticket_invoice(payment_hash)
        except InputError:
            logger.warning(f"[{self.request_id}] Malformed payment hash")
            self.fail(ERROR_BAD_REQUEST, 400)
            return
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error looking up ticket invoice {payment_hash}: {e}")
            self.fail(ERROR_FETCHING_INVOICE, 500)
            return
        self.respond(invoice.to_dict())

    def price(self):
        try:
            coin = self.server.price_feed.fetch()
        except LnmeError as e:
            logger.error(f"[{self.request_id}] Error fetching price: {e}")
            self.fail(ERROR_FETCHING_PRICE, 500)
            return
        self.respond(coin)

    def health(self):
        stats = self.server.stats
        logger.debug(f"[{self.request_id}] Health check requested")
        self.respond({
            "status": "healthy",
            "uptime_seconds": stats.uptime(),
            "tickets_available": self.server.inventory.available(),
            "stats": stats.snapshot(),
        })

    def lnurlp(self, name, parsed):
        self.server.stats.increment('lnurl_requests')
        host = self.headers.get("Host") or f"{self.server.server_name}:{self.server.server_port}"
        scheme = self.headers.get("X-Forwarded-Proto", "http").split(",")[0].strip() or "http"
        callback = f"{scheme}://{host}{parsed.path}"

        qs = urllib.parse.parse_qs(parsed.query)
        amount = qs.get("amount", [""])[0] or None

        body = self.server.resolver.handle(name, host, callback, amount)
        if body.get("status") == "ERROR":
            self.server.stats.increment('errors_total')
        else:
            logger.info(f"[{self.request_id}] LNURL {'invoice' if amount else 'metadata'} served for {name}@{host}")
        # LNURL errors still use 200 status
        self.respond(body)

    def unknown_endpoint(self, path):
        logger.warning(f"[{self.request_id}] Unknown endpoint requested: {path}")
        self.fail(ERROR_UNKNOWN_ENDPOINT, 404)

    # Helpers

    def read_body(self):
        """Read Content-Length bytes; None (and close the connection) when the length is unusable"""
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length < 0:
            self.close_connection = True
            return None
        return self.rfile.read(length) if length > 0 else b""

    def read_json(self):
        """Parse the buffered request body; {} when empty, None when malformed"""
        raw = self.body
        if raw is None:
            return None
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except ValueError:
            return None

    def send_cors_headers(self):
        if not self.server.settings.disable_cors:
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")

    def fail(self, message, status):
        self.server.stats.increment('errors_total')
        self.respond(message, status=status)

    def respond(self, body, status=200):
        """Send JSON response"""
        try:
            response_body = json.dumps(body).encode('utf-8')
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(response_body)))
            self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
            self.send_cors_headers()
            self.end_headers()
            self.wfile.write(response_body)
        except OSError as e:
            logger.error(f"[{self.request_id}] Error writing response: {e}")


class LnmeServer(ThreadingHTTPServer):
    """HTTP server carrying the service components its handlers use"""

    daemon_threads = True

    def __init__(self, server_address, settings, inventory, ledger, resolver, price_feed):
        self.settings = settings
        self.inventory = inventory
        self.ledger = ledger
        self.resolver = resolver
        self.price_feed = price_feed
        self.stats = Stats()
        self.rate_limiter = RateLimiter(settings.request_limit) if settings.request_limit > 0 else None
        super().__init__(server_address, Handler)


def build_server(settings, node=None, price_feed=None, server_address=None):
    """Wire the components together; node and price_feed may be substituted"""
    if node is None:
        node = LndClient.from_settings(settings)
    if price_feed is None:
        price_feed = PriceFeed.from_settings(settings)
    inventory = TicketInventory.from_settings(settings)
    ledger = InvoiceLedger(node, inventory)
    resolver = LnurlPayResolver(ledger, settings.min_sendable, settings.max_sendable)
    return LnmeServer(server_address or (settings.host, settings.port),
                      settings, inventory, ledger, resolver, price_feed)


def report_inventory(inventory):
    """Log stock and every claim that never got bound"""
    available = inventory.available()
    if available:
        logger.info(f"Tickets available: {available} of {inventory.count}")
    else:
        logger.warning(f"No tickets available in {inventory.tickets_dir}")

    for claim in inventory.pending_claims():
        logger.warning(
            f"Reconciliation required: ticket {claim.ticket_id} claimed "
            f"{int(claim.age_seconds)}s ago but never bound: {claim.path}"
        )


def main(argv=None):
    parser = argparse.ArgumentParser(description="LnMe Lightning ticket server")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config.json")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        logger.error(str(e))
        for error in e.errors:
            logger.error(f"  - {error}")
        return 1

    configure_file_logging(settings.log_file)

    if not settings.tls_cert_path and not settings.verify_ssl:
        if '.onion' in settings.lnd_address:
            logger.info("SSL certificate verification disabled for .onion address")
            # Suppress urllib3 InsecureRequestWarning for .onion addresses
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        else:
            logger.warning("SSL certificate verification is DISABLED for clearnet LND connection!")
            logger.warning("Set 'tls_cert_path' or 'verify_ssl: true' in config.json")

    logger.info(f"Connecting to {settings.lnd_address}")
    try:
        server = build_server(settings)
    except CredentialsError as e:
        logger.error(f"Error initializing LND client: {e}")
        return 1

    report_inventory(server.inventory)

    def signal_handler(sig, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {sig}, shutting down gracefully...")
        # Call shutdown from a different thread to avoid deadlock
        threading.Thread(target=server.shutdown).start()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Starting LnMe server on {settings.host}:{settings.port}")
    if settings.disable_ln_address:
        logger.info("Lightning Address handling disabled")
    if settings.request_limit > 0:
        logger.info(f"Request limit: {settings.request_limit} per second")

    try:
        server.serve_forever()
    finally:
        server.server_close()
        logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
