"""
File backed ticket inventory.

Each ticket is a file. Its location is its state:

    tickets_dir/ticket<N>.txt                   available
    pending_dir/ticket<N>-<time>-<uid>.txt      claimed, waiting for an invoice
    hashes_dir/<payment_hash>.txt               bound to a payment

Claiming renames a slot file into pending_dir. Only one rename of a given
source can succeed, so two claimants (threads or processes sharing the
directories) can never get the same ticket. Binding hard links the pending
file to its payment hash name; link() refuses to replace an existing file,
which makes it an atomic create-if-absent. The pending file is removed only
after the link succeeds, so anything left in pending_dir is a claim that
still needs reconciliation.

Ticket files hold UTF-8 text. Undecodable bytes are replaced when a ticket
is read, so verify_install.py rejects stock that does not decode.
"""

import logging
import os
import re
import time
import uuid
from dataclasses import dataclass

from errors import SoldOut, TicketAlreadyBound, TicketBindError
from lnd import normalize_payment_hash

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Not available."

PENDING_PATTERN = re.compile(r'^ticket(\d+)-(\d+)-[0-9a-f]+\.txt$')


@dataclass(frozen=True)
class TicketToken:
    id: int
    content: str
    path: str


@dataclass(frozen=True)
class PendingClaim:
    ticket_id: int
    path: str
    claimed_at: float

    @property
    def age_seconds(self):
        return max(0.0, time.time() - self.claimed_at)


class TicketInventory:
    """
    Pool of ticket slots 1..count.

    Example:
        inventory = TicketInventory("files/tickets", "files/pending", "files/hashes")
        token = inventory.claim_next()
        inventory.bind(token, invoice.payment_hash)
        inventory.reveal(invoice.payment_hash)
    """

    def __init__(self, tickets_dir, pending_dir, hashes_dir, count=20):
        self.tickets_dir = tickets_dir
        self.pending_dir = pending_dir
        self.hashes_dir = hashes_dir
        self.count = count
        self.ensure_directories()

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.tickets_dir, settings.pending_dir, settings.hashes_dir,
                   count=settings.ticket_count)

    def ensure_directories(self):
        os.makedirs(self.pending_dir, exist_ok=True)
        os.makedirs(self.hashes_dir, exist_ok=True)

    def slot_path(self, ticket_id):
        return os.path.join(self.tickets_dir, f"ticket{ticket_id}.txt")

    def binding_path(self, payment_hash):
        return os.path.join(self.hashes_dir, f"{normalize_payment_hash(payment_hash)}.txt")

    def claim_next(self):
        """Reserve the lowest numbered ticket still in stock"""
        for ticket_id in range(1, self.count + 1):
            source = self.slot_path(ticket_id)
            marker = f"ticket{ticket_id}-{int(time.time())}-{uuid.uuid4().hex[:12]}.txt"
            target = os.path.join(self.pending_dir, marker)
            try:
                os.rename(source, target)
            except FileNotFoundError:
                logger.debug(f"Ticket {source} not available")
                continue

            logger.info(f"Ticket claimed: {source} -> {target}")
            try:
                with open(target, "r", encoding="utf-8", errors="replace") as f:
                    content = f.read()
            except OSError as e:
                logger.error(f"Claimed ticket {ticket_id} is unreadable, reconciliation required: {target}: {e}")
                raise TicketBindError(f"Claimed ticket {ticket_id} is unreadable") from e
            return TicketToken(id=ticket_id, content=content, path=target)

        logger.warning("No ticket available")
        raise SoldOut()

    def bind(self, token, payment_hash):
        """Bind a claimed ticket to payment_hash; never replaces an existing binding"""
        target = self.binding_path(payment_hash)
        try:
            os.link(token.path, target)
        except FileExistsError:
            logger.error(f"Payment hash {payment_hash} already has a ticket, not binding ticket {token.id}")
            raise TicketAlreadyBound(f"Payment hash already bound: {payment_hash}")
        except OSError as e:
            logger.error(f"Failed to bind ticket {token.id} to {payment_hash}: {e}")
            raise TicketBindError(f"Failed to bind ticket {token.id}") from e

        try:
            os.unlink(token.path)
        except OSError as e:
            # The binding exists; a stale marker only shows up in pending_claims()
            logger.warning(f"Ticket {token.id} bound but claim marker not removed: {token.path}: {e}")

        logger.info(f"Ticket {token.id} bound to {payment_hash}")

    def reveal(self, payment_hash):
        """Content bound to payment_hash, or NOT_AVAILABLE"""
        try:
            with open(self.binding_path(payment_hash), "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except FileNotFoundError:
            logger.warning(f"No ticket bound to {payment_hash}")
            return NOT_AVAILABLE

    def available(self):
        """Number of tickets still in stock"""
        return sum(1 for ticket_id in range(1, self.count + 1)
                   if os.path.exists(self.slot_path(ticket_id)))

    def pending_claims(self):
        """Claims that were never bound, oldest first"""
        claims = []
        try:
            names = os.listdir(self.pending_dir)
        except FileNotFoundError:
            return claims
        for name in names:
            match = PENDING_PATTERN.match(name)
            if not match:
                continue
            claims.append(PendingClaim(
                ticket_id=int(match.group(1)),
                path=os.path.join(self.pending_dir, name),
                claimed_at=float(match.group(2)),
            ))
        return sorted(claims, key=lambda claim: (claim.claimed_at, claim.ticket_id))
