"""
Exception hierarchy for the LnMe ticket server.

The HTTP layer maps the three families to status codes:
InputError -> 400, ResourceExhausted and UpstreamUnavailable -> 500.
"""


class LnmeError(Exception):
    """Base class for all service errors"""


class ConfigError(LnmeError):
    """Configuration could not be loaded or is invalid"""

    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or []


class CredentialsError(LnmeError):
    """LND credentials are missing or malformed"""


# Client input

class InputError(LnmeError):
    pass


class InvalidHash(InputError):
    """Payment hash is not 32 bytes of hex"""


class InvalidAmount(InputError):
    pass


# Inventory

class ResourceExhausted(LnmeError):
    pass


class SoldOut(ResourceExhausted):
    def __init__(self, message="No ticket available"):
        super().__init__(message)


class TicketError(LnmeError):
    pass


class TicketAlreadyBound(TicketError):
    """A ticket is already bound to this payment hash"""


class TicketBindError(TicketError):
    """Filesystem failure while binding a ticket"""


# Upstream services

class UpstreamUnavailable(LnmeError):
    pass


class NodeUnreachable(UpstreamUnavailable):
    """LND could not be reached or timed out"""


class NodeError(UpstreamUnavailable):
    """LND answered with an error status"""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class InvoiceNotFound(UpstreamUnavailable):
    pass


class PriceUnavailable(UpstreamUnavailable):
    pass


class InconsistentState(LnmeError):
    """Invoice exists at the node but no ticket could be bound to it"""

    def __init__(self, message, payment_hash=None, amount=None, ticket_id=None):
        super().__init__(message)
        self.payment_hash = payment_hash
        self.amount = amount
        self.ticket_id = ticket_id
