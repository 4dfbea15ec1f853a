"""
Invoice ledger: ties LND invoices to tickets.

There is no transaction spanning LND and the filesystem. The order of
operations for a sale is fixed (claim, create invoice, bind, return) and
every failure after the claim is logged with enough detail to reconcile
by hand.
"""

import logging
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from errors import InconsistentState, InvalidAmount, LnmeError, TicketError

logger = logging.getLogger(__name__)

SATS_PER_BTC = Decimal(100_000_000)


@dataclass
class TicketInvoice:
    payment_hash: str
    payment_request: str
    settled: bool
    ticket: str = ""

    def to_dict(self):
        return asdict(self)


def price_to_sats(price, exchange_rate):
    """
    Convert a price in the rate's currency to whole sats.

    price * 1e8 / exchange_rate, rounded half up. Inputs go through str()
    so 0.1 means 0.1 and not its binary approximation.
    """
    try:
        price = Decimal(str(price))
        rate = Decimal(str(exchange_rate))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid price or rate: {price!r} / {exchange_rate!r}")
    if not rate.is_finite() or rate <= 0:
        raise InvalidAmount(f"Invalid exchange rate: {exchange_rate!r}")
    if not price.is_finite() or price < 0:
        raise InvalidAmount(f"Invalid price: {price!r}")
    sats = (price * SATS_PER_BTC / rate).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(sats)


class InvoiceLedger:
    """
    Args:
        node: LND client (anything with add_invoice, lookup_invoice, new_address)
        inventory: TicketInventory
    """

    def __init__(self, node, inventory):
        self.node = node
        self.inventory = inventory

    def create_invoice(self, value, memo, description_hash=None):
        return self.node.add_invoice(value, memo, description_hash)

    def lookup_invoice(self, payment_hash):
        return self.node.lookup_invoice(payment_hash)

    def new_address(self):
        return self.node.new_address()

    def create_ticket_invoice(self, price, exchange_rate, memo="Ticket Sale"):
        """Sell one ticket: returns (invoice, token) with the token bound to the invoice"""
        amount = price_to_sats(price, exchange_rate)
        if amount < 1:
            raise InvalidAmount(f"Ticket price {price} at rate {exchange_rate} is less than 1 sat")

        token = self.inventory.claim_next()

        try:
            invoice = self.node.add_invoice(amount, memo)
        except LnmeError as e:
            logger.error(
                f"Ticket {token.id} claimed but invoice creation failed, "
                f"reconciliation required: amount={amount} marker={token.path}: {e}"
            )
            raise

        try:
            self.inventory.bind(token, invoice.payment_hash)
        except TicketError as e:
            logger.critical(
                f"RECONCILIATION REQUIRED: invoice {invoice.payment_hash} for {amount} sats "
                f"has no ticket; ticket {token.id} left at {token.path}: {e}"
            )
            raise InconsistentState(
                "Invoice created but ticket could not be bound",
                payment_hash=invoice.payment_hash,
                amount=amount,
                ticket_id=token.id,
            ) from e

        logger.info(f"Ticket {token.id} sold: hash={invoice.payment_hash} amount={amount}")
        return invoice, token

    def resolve_ticket_invoice(self, payment_hash):
        """Current invoice state; the ticket is attached only once settled"""
        invoice = self.node.lookup_invoice(payment_hash)
        result = TicketInvoice(
            payment_hash=invoice.payment_hash,
            payment_request=invoice.payment_request,
            settled=invoice.settled,
        )
        if invoice.settled:
            result.ticket = self.inventory.reveal(invoice.payment_hash)
        return result
