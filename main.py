"""
Obtain an OAuth2 token through a local redirect listener.

Reads the client registration from the environment (or a .env file), prints
the authorization URL, opens it in the browser and waits for the provider
to redirect back. The token is printed to stdout as JSON.

Usage:
    python main.py --port 14565 --timeout 120
"""

import argparse
import dataclasses
import logging
import sys
import webbrowser

from dotenv import load_dotenv

from loopback.core.exceptions import LoopbackOAuthError
from loopback.infrastructure.oauth_providers import AuthlibExchanger
from loopback.logging_config import setup_global_logging
from loopback.oauth.config import get_exchange_config, get_listener_config
from loopback.oauth.flow import LoopbackFlow

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run an OAuth2 authorization code flow with a local redirect listener."
    )
    parser.add_argument("--host", help="Listener host (default: LOOPBACK_HOST or localhost)")
    parser.add_argument("--port", type=int, help="Listener port (default: LOOPBACK_PORT or 14565)")
    parser.add_argument("--callback-path", help="Redirect path (default: /oauth/callback)")
    parser.add_argument(
        "--timeout",
        type=float,
        help="Seconds to wait for the browser redirect (default: LOOPBACK_AUTH_TIMEOUT or 60)",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Only print the authorization URL, do not open a browser",
    )
    parser.add_argument("--log-level", help="Log level (default: LOG_LEVEL or INFO)")
    return parser


def main(argv: list[str] | None = None) -> int:
    # Load environment variables from .env file
    load_dotenv()
    args = build_parser().parse_args(argv)
    setup_global_logging(args.log_level)

    try:
        overrides = {
            name: value
            for name, value in (
                ("host", args.host),
                ("port", args.port),
                ("callback_path", args.callback_path),
                ("auth_timeout", args.timeout),
            )
            if value is not None
        }
        listener_config = dataclasses.replace(get_listener_config(), **overrides)
        exchanger = AuthlibExchanger(get_exchange_config())
        flow = LoopbackFlow(exchanger, listener_config)

        url = flow.authorization_url()
        print(f"Visit this URL to authorize:\n{url}", file=sys.stderr)
        if not args.no_browser:
            webbrowser.open(url)

        token = flow.wait_for_token(timeout=listener_config.auth_timeout)
    except LoopbackOAuthError as e:
        logger.error(f"OAuth flow failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(token.model_dump_json(indent=2, exclude_none=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
