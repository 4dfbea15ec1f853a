"""
LNURL-pay (LUD-06 / LUD-16) for Lightning Addresses.

Both steps are served from /.well-known/lnurlp/<name>: without an amount the
pay request descriptor is returned, with an amount an invoice is issued whose
description hash commits to the exact metadata string of step one. Nothing
is kept between the two steps.
"""

import hashlib
import json
import logging
import re

from errors import LnmeError

logger = logging.getLogger(__name__)

# Error message constants
ERROR_INVALID_USERNAME = "Invalid username"
ERROR_INVALID_AMOUNT = "Invalid Amount"
ERROR_INVOICE_CREATION_FAILED = "Failed to create invoice"

SUCCESS_MESSAGE = "Thanks, payment received!"

# Username validation pattern (alphanumeric, underscore, hyphen, period)
USERNAME_PATTERN = re.compile(r'^[a-zA-Z0-9._-]+$')

# Millisatoshi amounts are plain ASCII digits
AMOUNT_PATTERN = re.compile(r'^[0-9]+\Z')


def sanitize_username(username):
    """Validate and sanitize username"""
    if not username:
        return None

    username = username.strip()

    if len(username) > 100 or len(username) < 1:
        return None

    if not USERNAME_PATTERN.match(username):
        return None

    return username


def lightning_address(name, host):
    return f"{name}@{host}"


def metadata(address):
    """The metadata string; its sha256 is the invoice description hash"""
    return json.dumps([["text/identifier", address], ["text/plain", f"Sats for {address}"]],
                      ensure_ascii=False)


def description_hash(address):
    return hashlib.sha256(metadata(address).encode("utf-8")).digest()


def error_response(reason):
    return {"status": "ERROR", "reason": reason}


class LnurlPayResolver:

    def __init__(self, ledger, min_sendable=1000, max_sendable=100000000):
        self.ledger = ledger
        self.min_sendable = min_sendable
        self.max_sendable = max_sendable

    def handle(self, name, host, callback, amount=None):
        """Step one when amount is None, step two otherwise"""
        if amount is None:
            return self.pay_request(name, host, callback)
        return self.invoice(name, host, amount)

    def pay_request(self, name, host, callback):
        username = sanitize_username(name)
        if not username:
            logger.warning("Invalid username request")
            return error_response(ERROR_INVALID_USERNAME)

        address = lightning_address(username, host)
        logger.info(f"LNURL metadata requested for: {address}")
        return {
            "status": "OK",
            "tag": "payRequest",
            "callback": callback,
            "minSendable": self.min_sendable,
            "maxSendable": self.max_sendable,
            "metadata": metadata(address),
            "commentAllowed": 0,
        }

    def invoice(self, name, host, amount):
        username = sanitize_username(name)
        if not username:
            logger.warning("Invalid username request")
            return error_response(ERROR_INVALID_USERNAME)

        address = lightning_address(username, host)
        logger.info(f"New LightningAddress request amount: {amount}")

        if not isinstance(amount, str) or not AMOUNT_PATTERN.match(amount):
            logger.warning(f"Invalid amount format: {amount!r}")
            return error_response(ERROR_INVALID_AMOUNT)
        msats = int(amount)

        if msats < max(1000, self.min_sendable) or msats > self.max_sendable:
            logger.warning(f"Amount out of range: {msats} msat")
            return error_response(ERROR_INVALID_AMOUNT)

        sats = msats // 1000
        try:
            invoice = self.ledger.create_invoice(sats, address, description_hash(address))
        except LnmeError as e:
            logger.error(f"Failed to create invoice for {address} ({sats} sats): {e}")
            return error_response(ERROR_INVOICE_CREATION_FAILED)

        logger.info(f"Invoice created for {address}: {sats} sats, hash={invoice.payment_hash}")
        return {
            "status": "OK",
            "pr": invoice.payment_request,
            "routes": [],
            "disposable": False,
            "successAction": {"tag": "message", "message": SUCCESS_MESSAGE},
        }
