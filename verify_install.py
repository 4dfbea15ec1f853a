#!/usr/bin/env python3
"""
Installation verification script for the LnMe ticket server
Checks that dependencies, configuration, credentials and ticket directories are correct
"""

import os
import sys

from errors import ConfigError, CredentialsError
from lnd import load_macaroon
from settings import DEFAULT_CONFIG_PATH, load_settings
from tickets import TicketInventory


def check_python_version():
    """Verify Python version is 3.8+"""
    if sys.version_info < (3, 8):
        print("❌ Python 3.8+ required")
        print(f"   Current version: {sys.version}")
        return False
    print(f"✅ Python version: {sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}")
    return True


def check_dependencies():
    """Check if required Python packages are installed"""
    try:
        import requests
        print(f"✅ requests module installed (version {requests.__version__})")
        return True
    except ImportError:
        print("❌ requests module not installed")
        print("   Run: pip install -e .")
        return False


def check_config_file(config_path):
    """Verify the config file exists and is valid; returns Settings or None"""
    try:
        settings = load_settings(config_path)
    except ConfigError as e:
        print(f"❌ {e}")
        for error in e.errors:
            print(f"   - {error}")
        if not os.path.exists(config_path):
            print("   Run: cp config.json.example config.json")
        return None
    print(f"✅ {config_path} found and valid")
    return settings


def check_macaroon(settings):
    """Verify the macaroon can be loaded"""
    try:
        macaroon = load_macaroon(settings.macaroon_hex, settings.macaroon_path)
    except CredentialsError as e:
        print(f"❌ {e}")
        return False
    source = "LNME_LND_MACAROON / lnd.macaroon_hex" if settings.macaroon_hex else settings.macaroon_path
    print(f"✅ Macaroon readable ({len(macaroon) // 2} bytes from {source})")
    return True


def check_ticket_directories(settings):
    """Verify ticket directories exist and are writable, and report stock"""
    if not os.path.isdir(settings.tickets_dir):
        print(f"❌ Tickets directory not found: {settings.tickets_dir}")
        return False

    try:
        inventory = TicketInventory.from_settings(settings)
    except OSError as e:
        print(f"❌ Cannot create ticket directories: {e}")
        return False

    ok = True
    for name, directory in [("tickets", inventory.tickets_dir),
                            ("pending", inventory.pending_dir),
                            ("hashes", inventory.hashes_dir)]:
        if not os.access(directory, os.W_OK):
            print(f"❌ No write permission for {name} directory: {directory}")
            ok = False

    if ok and os.stat(inventory.tickets_dir).st_dev != os.stat(inventory.hashes_dir).st_dev:
        print("❌ Tickets, pending and hashes directories must be on the same filesystem")
        ok = False

    available = inventory.available()
    if available:
        print(f"✅ {available} of {inventory.count} tickets available")
    else:
        print(f"⚠️  No tickets available in {inventory.tickets_dir}")

    for ticket_id in range(1, inventory.count + 1):
        path = inventory.slot_path(ticket_id)
        if not os.path.exists(path):
            continue
        with open(path, "rb") as f:
            content = f.read()
        try:
            content.decode("utf-8")
        except UnicodeDecodeError:
            print(f"❌ Ticket {ticket_id} is not valid UTF-8 text: {path}")
            ok = False

    pending = inventory.pending_claims()
    for claim in pending:
        print(f"⚠️  Ticket {claim.ticket_id} claimed but never bound, reconciliation required: {claim.path}")

    return ok


def main(config_path=DEFAULT_CONFIG_PATH):
    print("=" * 60)
    print("LnMe Ticket Server - Installation Verification")
    print("=" * 60)
    print()

    results = []
    for name, check_func in [("Python Version", check_python_version),
                             ("Dependencies", check_dependencies)]:
        print(f"\nChecking {name}...")
        results.append(check_func())

    print("\nChecking Configuration File...")
    settings = check_config_file(config_path)
    results.append(settings is not None)

    if settings is not None:
        for name, check_func in [("Macaroon", check_macaroon),
                                 ("Ticket Directories", check_ticket_directories)]:
            print(f"\nChecking {name}...")
            results.append(check_func(settings))

    print("\n" + "=" * 60)

    if all(results):
        print("✅ All checks passed! Server is ready to start.")
        print("\nTo start the server, run:")
        print("  python server.py")
        return 0
    else:
        print("❌ Some checks failed. Please fix the issues above.")
        return 1


if __name__ == "__main__":
    sys.exit(main(*sys.argv[1:2]))
