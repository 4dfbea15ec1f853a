"""
LND REST client.

Thin wrapper over the three node calls the service needs: create an
invoice, look one up by payment hash and fetch an on-chain receiving
address. Every call is authenticated with the macaroon header and bounded
by a timeout. Nothing is retried.
"""

import base64
import binascii
import logging
import os
import re
from dataclasses import asdict, dataclass

import requests

from errors import (
    CredentialsError,
    InputError,
    InvalidAmount,
    InvalidHash,
    InvoiceNotFound,
    NodeError,
    NodeUnreachable,
)

logger = logging.getLogger(__name__)

PAYMENT_HASH_PATTERN = re.compile(r'^[0-9a-fA-F]{64}$')


@dataclass
class Invoice:
    payment_hash: str
    payment_request: str
    settled: bool = False

    def to_dict(self):
        return asdict(self)


def normalize_payment_hash(value):
    """Return the lowercase hex form of a 32 byte payment hash"""
    if not isinstance(value, str) or not PAYMENT_HASH_PATTERN.match(value):
        raise InvalidHash("Payment hash must be 32 bytes of hex")
    return value.lower()


def load_macaroon(macaroon_hex=None, macaroon_path=None):
    """Load the macaroon as an uppercase hex string, from hex or from a file"""
    if macaroon_hex:
        try:
            macaroon_bytes = bytes.fromhex(macaroon_hex)
        except ValueError:
            raise CredentialsError("LND macaroon hex is malformed")
    elif macaroon_path:
        try:
            with open(os.path.expanduser(macaroon_path), 'rb') as f:
                macaroon_bytes = f.read()
        except FileNotFoundError:
            raise CredentialsError(f"Macaroon file not found: {macaroon_path}")
        except OSError as e:
            raise CredentialsError(f"Cannot read macaroon file {macaroon_path}: {e}")
    else:
        raise CredentialsError("LND macaroon is missing")

    if not macaroon_bytes:
        raise CredentialsError("LND macaroon is empty")
    return macaroon_bytes.hex().upper()


def _decode_r_hash(value):
    try:
        return base64.b64decode(value).hex()
    except (binascii.Error, TypeError, ValueError):
        raise NodeError("Invalid r_hash in LND response")


class LndClient:
    """
    Client for the LND REST API (v1).

    Args:
        address: host:port of the REST listener, or a full https:// URL
        macaroon_hex: macaroon as hex; takes precedence over macaroon_path
        macaroon_path: path to a macaroon file, ideally invoice.macaroon
        tls_cert_path: LND's tls.cert to verify against
        verify_ssl: used when no tls_cert_path is given
        proxy: SOCKS proxy URL, used only for .onion addresses
        timeout: seconds before a call is abandoned
        invoice_expiry: expiry in seconds sent with each new invoice
    """

    def __init__(self, address, macaroon_hex=None, macaroon_path=None,
                 tls_cert_path=None, verify_ssl=True, proxy=None,
                 timeout=10, invoice_expiry=3600):
        if not address:
            raise CredentialsError("LND address is missing")
        self.macaroon = load_macaroon(macaroon_hex, macaroon_path)

        if "://" not in address:
            address = f"https://{address}"
        self.base_url = address.rstrip("/")

        self.verify = tls_cert_path if tls_cert_path else verify_ssl
        self.proxies = None
        if ".onion" in self.base_url and proxy:
            self.proxies = {"https": proxy, "http": proxy}

        self.timeout = timeout
        self.invoice_expiry = invoice_expiry

    @classmethod
    def from_settings(cls, settings):
        return cls(
            settings.lnd_address,
            macaroon_hex=settings.macaroon_hex,
            macaroon_path=settings.macaroon_path,
            tls_cert_path=settings.tls_cert_path,
            verify_ssl=settings.verify_ssl,
            proxy=settings.tor_proxy,
            timeout=settings.lnd_timeout,
            invoice_expiry=settings.invoice_expiry,
        )

    def _request(self, method, path, operation, **kwargs):
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers={"Grpc-Metadata-macaroon": self.macaroon},
                proxies=self.proxies,
                verify=self.verify,
                timeout=self.timeout,
                **kwargs
            )
        except requests.exceptions.Timeout:
            logger.error(f"LND request timed out: {operation}")
            raise NodeUnreachable(f"{operation}: request timed out")
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Failed to connect to LND: {operation}: {e}")
            raise NodeUnreachable(f"{operation}: connection failed")
        except requests.exceptions.RequestException as e:
            logger.error(f"LND request failed: {operation}: {e}")
            raise NodeError(f"{operation}: request failed")

        if response.status_code != 200:
            logger.error(f"LND returned error: {operation}: {response.status_code} - {response.text}")
            raise NodeError(f"{operation}: LND returned {response.status_code}", response.status_code)

        try:
            return response.json()
        except ValueError:
            raise NodeError(f"{operation}: invalid JSON from LND")

    def add_invoice(self, value, memo, description_hash=None):
        """Create an invoice for value sats; description_hash replaces the memo in the BOLT11 string"""
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise InvalidAmount(f"Invalid invoice amount: {value!r}")

        payload = {"value": value, "memo": memo, "expiry": self.invoice_expiry}
        if description_hash is not None:
            if len(description_hash) != 32:
                raise InputError("Description hash must be 32 bytes")
            payload["description_hash"] = base64.b64encode(description_hash).decode("ascii")

        logger.info(f"Adding invoice: memo={memo} value={value}")
        data = self._request("POST", "/v1/invoices", "add invoice", json=payload)

        if "payment_request" not in data or "r_hash" not in data:
            logger.error(f"Invalid LND response: {data}")
            raise NodeError("add invoice: invalid invoice response")

        return Invoice(
            payment_hash=_decode_r_hash(data["r_hash"]),
            payment_request=data["payment_request"],
            settled=False,
        )

    def lookup_invoice(self, payment_hash):
        """Fetch an invoice and its current settlement state"""
        payment_hash = normalize_payment_hash(payment_hash)
        logger.info(f"Getting invoice: hash={payment_hash}")
        try:
            data = self._request("GET", f"/v1/invoice/{payment_hash}", "lookup invoice")
        except NodeError as e:
            if e.status_code == 404:
                raise InvoiceNotFound(f"Invoice not found: {payment_hash}") from e
            raise

        r_hash = data.get("r_hash")
        return Invoice(
            payment_hash=_decode_r_hash(r_hash) if r_hash else payment_hash,
            payment_request=data.get("payment_request", ""),
            settled=bool(data.get("settled")) or data.get("state") == "SETTLED",
        )

    def new_address(self):
        """Get the next on-chain (p2wkh) address"""
        logger.info("Getting a new BTC address")
        data = self._request("GET", "/v1/newaddress", "new address",
                             params={"type": "WITNESS_PUBKEY_HASH"})
        if "address" not in data:
            raise NodeError("new address: invalid response")
        return data["address"]
