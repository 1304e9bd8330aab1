"""
Command-line interface for the mcpchat server.
"""

import argparse
import sys


def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="mcpchat-server",
        description="mcpchat Server - Chat backend for OAuth-protected MCP tool servers",
    )

    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Database URL (default: sqlite:///./mcpchat.db)",
    )
    parser.add_argument(
        "--api-keys",
        default=None,
        help="Comma-separated list of API keys (default: dev-user-key)",
    )
    parser.add_argument(
        "--app-url",
        default=None,
        help="Public URL of the web app; OAuth redirects go to <app-url>/oauth/callback",
    )
    parser.add_argument(
        "--model",
        default=None,
        help="Completion model (default: gpt-5-mini)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )

    args = parser.parse_args()

    api_keys = None
    if args.api_keys:
        api_keys = set(args.api_keys.split(","))

    options = {"debug": args.debug, "log_level": args.log_level}
    if args.app_url:
        options["app_url"] = args.app_url.rstrip("/")
    if args.model:
        options["model"] = args.model

    from .app import MCPChatServer

    print(f"""
mcpchat Server v0.1.0
  Host:     {args.host}
  Port:     {args.port}
  Database: {args.database_url or "sqlite:///./mcpchat.db"}

API Documentation: http://{args.host}:{args.port}/docs

Press Ctrl+C to stop the server.
""")

    try:
        server = MCPChatServer(
            host=args.host,
            port=args.port,
            database_url=args.database_url,
            api_keys=api_keys,
            **options,
        )
        server.run()
    except KeyboardInterrupt:
        print("\nServer stopped.")
        sys.exit(0)


if __name__ == "__main__":
    main()
