#!/usr/bin/env python3
"""Zerodha Kite Connect setup script.

This script prints the Kite login URL for your app and, optionally,
validates the API key/secret by exchanging a request token.

Usage:
    1. Create an app at https://developers.kite.trade and note its API key
       and secret
    2. Set the app's redirect URL to <backend>/api/kite/callback
    3. Run this script and enter the key and secret when prompted
    4. Add the resulting env vars to your .env file (or store them in the
       keychain when offered)
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from integrations.exceptions import BrokerError
from integrations.kite_client import KiteClient
from integrations.provider_protocol import KiteSessionToken


def _offer_keychain_store(credentials: dict[str, str]) -> None:
    """Prompt the user to store credentials in the OS keychain."""
    try:
        from services.credential_manager import set_credential
    except ImportError:
        return

    answer = input("\nStore these credentials in the keychain? [Y/n] ").strip().lower()
    if answer in ("", "y", "yes"):
        for key, value in credentials.items():
            if set_credential(key, value):
                print(f"  Stored {key} in keychain")
            else:
                print(f"  Failed to store {key}")
    else:
        print("  Skipped keychain storage.")


def build_login_url(api_key: str, api_secret: str) -> str:
    """Return the Kite login URL for the given app credentials."""
    client = KiteClient(api_key=api_key, api_secret=api_secret)
    return client.login_url(state="setup")


def validate_credentials(api_key: str, api_secret: str, request_token: str) -> KiteSessionToken:
    """Validate the key/secret pair by exchanging a request token.

    Args:
        api_key: Kite Connect API key.
        api_secret: Kite Connect API secret.
        request_token: ``request_token`` copied from the redirect URL.

    Returns:
        The session token Kite issued.

    Raises:
        BrokerError: If Kite rejects the exchange.
    """
    client = KiteClient(api_key=api_key, api_secret=api_secret)
    return client.exchange_request_token(request_token)


def main():
    """Prompt for credentials and validate them."""
    print("Zerodha Kite Connect Setup")
    print("=" * 50)
    print()
    print("To get your API key and secret:")
    print("  1. Log in to https://developers.kite.trade")
    print("  2. Create (or open) a Connect app")
    print("  3. Set the redirect URL to <backend>/api/kite/callback")
    print()

    api_key = input("Enter your Kite API key: ").strip()
    if not api_key:
        print("Error: No API key provided")
        sys.exit(1)

    api_secret = input("Enter your Kite API secret: ").strip()
    if not api_secret:
        print("Error: No API secret provided")
        sys.exit(1)

    print()
    print("Open this URL in a browser and log in:")
    print(f"  {build_login_url(api_key, api_secret)}")
    print()
    print("After login Kite redirects to your app with ?request_token=...")
    request_token = input("Paste the request_token to validate (Enter to skip): ").strip()

    if request_token:
        print()
        print("Validating credentials...")
        try:
            token = validate_credentials(api_key, api_secret, request_token)
        except BrokerError as e:
            print(f"Error: {e}")
            print()
            print("Common issues:")
            print("  - Request token already used or older than a few minutes")
            print("  - API secret does not belong to this API key")
            print("  - App subscription has lapsed")
            sys.exit(1)
        print(f"  Connected as Kite user {token.broker_user_id or '<unknown>'}")

    print()
    print("Success! Add the following to your .env file:")
    print()
    print(f"KITE_API_KEY={api_key}")
    print(f"KITE_API_SECRET={api_secret}")
    print()
    print("Keep the API secret private - it signs every session exchange.")
    _offer_keychain_store({"KITE_API_KEY": api_key, "KITE_API_SECRET": api_secret})


if __name__ == "__main__":
    main()
