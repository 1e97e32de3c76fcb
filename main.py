#!/usr/bin/env python3
"""
BFF gateway - Google login and credential lifecycle for a browser frontend.
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
# NOTE: Keep bff imports lazy (inside functions) so `--help` works without the
# server dependencies configured.
#


def show_config() -> None:
    """Print the resolved auth configuration with secrets redacted."""
    from bff.auth.config import load_auth_config

    cfg = load_auth_config()
    print(
        json.dumps(
            {
                "environment": cfg.environment,
                "credentialMode": cfg.credential_mode,
                "credentialTtlSeconds": cfg.credential_ttl_seconds,
                "cookieName": cfg.cookie_name,
                "cookieSecure": cfg.cookie_secure,
                "headerName": cfg.header_name,
                "googleEnabled": cfg.google_enabled,
                "googleScopes": cfg.google_scopes,
                "sessionStore": cfg.session_store_type if cfg.credential_mode == "session" else None,
                "storeFailurePolicy": cfg.store_failure_policy,
                "frontendBaseUrl": cfg.frontend_base_url,
                "corsOrigins": cfg.cors_origins,
            },
            indent=2,
        )
    )


def sweep_sessions() -> int:
    """Run one expired-session sweep against the configured store."""
    import asyncio

    from bff.auth.config import load_auth_config
    from bff.auth.sessions import SessionSweeper, build_session_store

    cfg = load_auth_config()

    async def _run() -> int:
        store = build_session_store(cfg.session_store_type, redis_url=cfg.redis_url)
        try:
            return await SessionSweeper(store, 0).run_once()
        finally:
            await store.close()

    return asyncio.run(_run())


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="BFF authentication gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP server
  python main.py --serve --port 8080

  # Show the resolved configuration
  python main.py --show-config
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the BFF HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--show-config", action="store_true", help="Print the resolved auth configuration and exit")
    parser.add_argument(
        "--sweep-sessions",
        action="store_true",
        help="Remove expired sessions from the configured session store once and exit",
    )

    args = parser.parse_args()

    try:
        if args.serve:
            from bff.api.app import run

            run(host=args.host, port=args.port)
            return

        if args.show_config:
            show_config()
            return

        if args.sweep_sessions:
            removed = sweep_sessions()
            print(json.dumps({"ok": True, "removed": removed}))
            return

        parser.print_help()

    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        raise


if __name__ == "__main__":
    main()
