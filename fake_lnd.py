"""
In-memory stand-in for LndClient, used by the tests.
"""

import hashlib
import itertools
import threading

from errors import InvalidAmount, InvoiceNotFound, NodeUnreachable
from lnd import Invoice, normalize_payment_hash


class FakeLnd:

    def __init__(self):
        self.invoices = {}
        self.calls = []
        self.unreachable = False
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _check(self, operation):
        self.calls.append(operation)
        if self.unreachable:
            raise NodeUnreachable(f"{operation}: connection failed")

    def add_invoice(self, value, memo, description_hash=None):
        self._check("add_invoice")
        if not isinstance(value, int) or value < 0:
            raise InvalidAmount(f"Invalid invoice amount: {value!r}")
        with self._lock:
            n = next(self._counter)
        payment_hash = hashlib.sha256(f"invoice-{n}".encode()).hexdigest()
        invoice = {
            "payment_hash": payment_hash,
            "payment_request": f"lnbc{value}n1fake{n}",
            "value": value,
            "memo": memo,
            "description_hash": description_hash,
            "settled": False,
        }
        self.invoices[payment_hash] = invoice
        return Invoice(payment_hash, invoice["payment_request"], False)

    def lookup_invoice(self, payment_hash):
        payment_hash = normalize_payment_hash(payment_hash)
        self._check("lookup_invoice")
        if payment_hash not in self.invoices:
            raise InvoiceNotFound(f"Invoice not found: {payment_hash}")
        invoice = self.invoices[payment_hash]
        return Invoice(payment_hash, invoice["payment_request"], invoice["settled"])

    def new_address(self):
        self._check("new_address")
        return "bc1qfakeaddress0000000000000000000000000"

    def settle(self, payment_hash):
        self.invoices[payment_hash]["settled"] = True
