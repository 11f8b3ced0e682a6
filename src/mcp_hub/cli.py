"""CLI entry point for MCP Hub."""

import argparse
import os
import sys
from pathlib import Path


def main():
    """Main entry point for MCP Hub."""
    parser = argparse.ArgumentParser(
        prog="mcp-hub",
        description="MCP Hub - connect to, supervise and debug MCP tool servers",
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=8765,
        help="Port to run the server on (default: 8765)"
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--home",
        type=Path,
        default=None,
        help="Data directory (default: $MCP_HUB_HOME or ~/.mcp-hub)"
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Uvicorn log level (default: info)"
    )
    parser.add_argument(
        "--version", "-v",
        action="store_true",
        help="Show version and exit"
    )

    args = parser.parse_args()

    if args.version:
        from mcp_hub import __version__
        print(f"MCP Hub v{__version__}")
        return 0

    # Must be set before the app modules read their configuration
    if args.home is not None:
        os.environ["MCP_HUB_HOME"] = str(args.home.expanduser().resolve())

    from mcp_hub.app.config import APP_HOME

    print(f"""
  MCP Hub
  App data:  {APP_HOME}
  Server:    http://{args.host}:{args.port}
  OAuth redirect: http://{args.host}:{args.port}/api/oauth/callback
    """)
    print("  Press Ctrl+C to stop the server.\n")

    import uvicorn
    uvicorn.run(
        "mcp_hub.app.main:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
