#!/usr/bin/env python3
"""
SpendSense console - personal spending dashboard with Google sign-in.
"""

import argparse
import json
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep spendsense imports lazy (inside functions) so `--help` stays fast.
#


def check_session() -> int:
    """Bootstrap a session store against the configured provider and print its state."""
    import asyncio

    from spendsense.auth.config import load_auth_config
    from spendsense.auth.gotrue import build_provider
    from spendsense.auth.store import SessionStore

    async def _run() -> dict:
        cfg = load_auth_config()
        store = SessionStore(build_provider(cfg), config=cfg)
        try:
            store.mount()
            state = await store.wait_until_ready()
        finally:
            store.close()
        return {
            "providerEnabled": cfg.provider_enabled,
            "signedIn": state.signed_in,
            "email": state.session.email if state.session else None,
        }

    payload = asyncio.run(_run())
    print(json.dumps(payload, indent=2, sort_keys=False))
    return 0


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="SpendSense console",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the console on http://127.0.0.1:3000
  python main.py --serve

  # Show whether the configured identity provider reports a session
  python main.py --check-session
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the console HTTP server")
    parser.add_argument("--check-session", action="store_true", help="Print the current session state as JSON")
    parser.add_argument("--host", default="127.0.0.1", help="Console bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=3000, help="Console listen port (default: 3000)")

    args = parser.parse_args()

    try:
        if args.serve:
            from spendsense.api.console import run as run_console

            run_console(host=args.host, port=args.port)
            return

        if args.check_session:
            sys.exit(check_session())

        # No arguments provided
        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
