"""
Configuration loading and validation.

The JSON config file is merged over DEFAULTS, checked by validate_config()
and turned into a single immutable Settings object at startup.
"""

import json
import logging
import os
import warnings
from dataclasses import dataclass
from typing import Optional

from errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.json")

DEFAULTS = {
    "server": {
        "host": "0.0.0.0",
        "port": 1323,
        "log_file": None,
        "request_limit": 5,
        "disable_cors": False,
        "disable_ln_address": False,
    },
    "lnd": {
        "address": "localhost:8080",
        "macaroon_path": "~/.lnd/data/chain/bitcoin/mainnet/invoice.macaroon",
        "macaroon_hex": None,
        "tls_cert_path": None,
        "verify_ssl": True,
        "timeout": 10,
        "invoice_expiry": 3600,
    },
    "tor": {
        "proxy": "socks5h://127.0.0.1:9050",
    },
    "lnurlp": {
        "min_sendable": 1000,
        "max_sendable": 100000000,
    },
    "tickets": {
        "tickets_dir": "files/tickets",
        "pending_dir": "files/pending",
        "hashes_dir": "files/hashes",
        "count": 20,
        "price": 10,
        "memo": "Ticket Sale",
    },
    "price_feed": {
        "url": "https://api.binance.com/api/v3/ticker/price",
        "symbol": "BTCBRL",
        "timeout": 2,
    },
}

# 10 million sats in millisats
MAX_REASONABLE_AMOUNT = 10_000_000_000


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    log_file: Optional[str]
    request_limit: float
    disable_cors: bool
    disable_ln_address: bool
    lnd_address: str
    macaroon_path: Optional[str]
    macaroon_hex: Optional[str]
    tls_cert_path: Optional[str]
    verify_ssl: bool
    lnd_timeout: float
    invoice_expiry: int
    tor_proxy: str
    min_sendable: int
    max_sendable: int
    tickets_dir: str
    pending_dir: str
    hashes_dir: str
    ticket_count: int
    ticket_price: float
    ticket_memo: str
    price_url: str
    price_symbol: str
    price_timeout: float

    @classmethod
    def from_config(cls, cfg):
        """Build settings from a config dict that passed validate_config()"""
        cfg = merge_defaults(cfg)
        server, lnd, tickets = cfg["server"], cfg["lnd"], cfg["tickets"]
        return cls(
            host=server["host"],
            port=server["port"],
            log_file=server["log_file"],
            request_limit=server["request_limit"],
            disable_cors=server["disable_cors"],
            disable_ln_address=server["disable_ln_address"],
            lnd_address=lnd["address"],
            macaroon_path=_expand(lnd["macaroon_path"]),
            macaroon_hex=lnd["macaroon_hex"],
            tls_cert_path=_expand(lnd["tls_cert_path"]),
            verify_ssl=lnd["verify_ssl"],
            lnd_timeout=lnd["timeout"],
            invoice_expiry=lnd["invoice_expiry"],
            tor_proxy=cfg["tor"]["proxy"],
            min_sendable=cfg["lnurlp"]["min_sendable"],
            max_sendable=cfg["lnurlp"]["max_sendable"],
            tickets_dir=_expand(tickets["tickets_dir"]),
            pending_dir=_expand(tickets["pending_dir"]),
            hashes_dir=_expand(tickets["hashes_dir"]),
            ticket_count=tickets["count"],
            ticket_price=tickets["price"],
            ticket_memo=tickets["memo"],
            price_url=cfg["price_feed"]["url"],
            price_symbol=cfg["price_feed"]["symbol"],
            price_timeout=cfg["price_feed"]["timeout"],
        )


def _expand(path):
    return os.path.expanduser(path) if path else path


def _is_int(value):
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def merge_defaults(cfg):
    """Return a copy of cfg with every section filled in from DEFAULTS"""
    merged = {}
    for section, defaults in DEFAULTS.items():
        values = cfg.get(section) or {}
        if not isinstance(values, dict):
            values = {}
        merged[section] = {**defaults, **values}
    return merged


def validate_config(cfg):
    """Validate configuration values, returning a list of error messages"""
    errors = []

    for section in DEFAULTS:
        if section in cfg and not isinstance(cfg[section], dict):
            errors.append(f"{section} must be an object")
    cfg = merge_defaults(cfg)

    # Server
    port = cfg["server"]["port"]
    if not _is_int(port) or not (1 <= port <= 65535):
        errors.append("server.port must be an integer between 1 and 65535")

    request_limit = cfg["server"]["request_limit"]
    if not _is_number(request_limit) or request_limit < 0:
        errors.append("server.request_limit must be a number >= 0")

    # LND
    lnd = cfg["lnd"]
    if not lnd["address"] or not isinstance(lnd["address"], str):
        errors.append("lnd.address is required")

    if not lnd["macaroon_hex"] and not lnd["macaroon_path"]:
        errors.append("lnd.macaroon_path or lnd.macaroon_hex is required")
    elif not lnd["macaroon_hex"] and not os.path.exists(_expand(lnd["macaroon_path"])):
        errors.append(f"Macaroon file not found: {lnd['macaroon_path']}")

    if lnd["tls_cert_path"] and not os.path.exists(_expand(lnd["tls_cert_path"])):
        errors.append(f"TLS certificate not found: {lnd['tls_cert_path']}")

    if not _is_number(lnd["timeout"]) or lnd["timeout"] <= 0:
        errors.append("lnd.timeout must be a positive number")

    if not _is_int(lnd["invoice_expiry"]) or lnd["invoice_expiry"] < 1:
        errors.append("lnd.invoice_expiry must be a positive integer")

    # LNURL
    min_sendable = cfg["lnurlp"]["min_sendable"]
    if not _is_int(min_sendable) or min_sendable < 1:
        errors.append("lnurlp.min_sendable must be a positive integer")

    max_sendable = cfg["lnurlp"]["max_sendable"]
    if not _is_int(max_sendable) or max_sendable < 1:
        errors.append("lnurlp.max_sendable must be a positive integer")

    if _is_int(min_sendable) and _is_int(max_sendable) and min_sendable > max_sendable:
        errors.append("lnurlp.min_sendable cannot be greater than max_sendable")

    if _is_int(max_sendable) and max_sendable > MAX_REASONABLE_AMOUNT:
        warnings.warn(
            f"max_sendable ({max_sendable} msat = {max_sendable//1000} sats) "
            f"is very high. Recommended maximum: {MAX_REASONABLE_AMOUNT//1000} sats.",
            UserWarning
        )

    # Tickets
    tickets = cfg["tickets"]
    for key in ("tickets_dir", "pending_dir", "hashes_dir"):
        if not tickets[key] or not isinstance(tickets[key], str):
            errors.append(f"tickets.{key} is required")

    if not _is_int(tickets["count"]) or tickets["count"] < 1:
        errors.append("tickets.count must be a positive integer")

    if not _is_number(tickets["price"]) or tickets["price"] <= 0:
        errors.append("tickets.price must be a positive number")

    # Price feed
    if not cfg["price_feed"]["url"]:
        errors.append("price_feed.url is required")

    if not _is_number(cfg["price_feed"]["timeout"]) or cfg["price_feed"]["timeout"] <= 0:
        errors.append("price_feed.timeout must be a positive number")

    return errors


def load_config(path):
    """Read the JSON config file"""
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file: {e}")


def apply_environment(cfg, environ=None):
    """Overlay PORT and LNME_LND_MACAROON from the environment"""
    environ = os.environ if environ is None else environ
    cfg = {section: dict(values) if isinstance(values, dict) else values
           for section, values in cfg.items()}

    port = environ.get("PORT")
    if port:
        try:
            port = int(port)
        except ValueError:
            pass
        cfg.setdefault("server", {})["port"] = port

    macaroon = environ.get("LNME_LND_MACAROON")
    if macaroon:
        cfg.setdefault("lnd", {})["macaroon_hex"] = macaroon

    return cfg


def load_settings(path=DEFAULT_CONFIG_PATH, environ=None):
    """Load, validate and freeze the configuration"""
    cfg = apply_environment(load_config(path), environ)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Configuration validation failed", errors)
    logger.info("Configuration loaded successfully")
    return Settings.from_config(cfg)
